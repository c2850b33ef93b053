"""Lifecycle of the on-device inference model.

Resolution order on `initialize()`:
  1. a previously downloaded model (non-empty file),
  2. the bundled model, unpacked into the local model directory,
  3. nothing: the manager stays "not ready" and `predict()` returns UNAVAILABLE.

Newer models are fetched in the background into a temporary file, validated,
and staged as the candidate for the next `initialize()`. The model in use is
never replaced mid-session.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

import requests

from dal.kv_store import AsyncKeyValueStore
from models.model_asset import UNAVAILABLE, ModelAsset, Prediction
from utils.config import DeviceSettings

LOGGER = logging.getLogger(__name__)

ACTIVE_MODEL_KEY = "activeModelPath"

InferenceRunner = Callable[[Path, Any], Union[Prediction, dict, Awaitable[Any]]]


class ModelDownloadError(Exception):
    """Raised when a model download does not produce a usable file."""


def _non_empty_file(path: Path) -> bool:
    return path.is_file() and path.stat().st_size > 0


class LocalModelManager:
    """Resolve, update and run the active inference model.

    Args:
        settings: Device settings (model URL and local directories).
        runner: Opaque inference capability, called as `runner(model_path, image_ref)`.
        kv_store: Optional store used to record the active model path.
        session: Optional requests-compatible session used for downloads.
    """

    def __init__(
        self,
        settings: DeviceSettings,
        runner: Optional[InferenceRunner] = None,
        kv_store: Optional[AsyncKeyValueStore] = None,
        session: Any = None,
    ) -> None:
        self.settings = settings
        self.runner = runner
        self.kv_store = kv_store
        self.session = session or requests.Session()
        self.active: Optional[ModelAsset] = None
        self._init_task: Optional[asyncio.Task] = None
        self._update_task: Optional[asyncio.Task] = None

    @property
    def model_dir(self) -> Path:
        return self.settings.model_dir

    @property
    def downloaded_path(self) -> Path:
        return self.model_dir / f"model.{self.settings.model_ext}"

    @property
    def candidate_path(self) -> Path:
        return self.model_dir / f"model.{self.settings.model_ext}.next"

    @property
    def bundled_path(self) -> Path:
        return self.model_dir / f"bundled.{self.settings.model_ext}"

    @property
    def is_ready(self) -> bool:
        return self.active is not None

    async def initialize(self, check_for_updates: bool = True) -> Optional[ModelAsset]:
        """Activate the best available model; safe to call more than once.

        Concurrent callers share the same resolution and all see its result.
        """
        if self._init_task is None:
            self._init_task = asyncio.get_running_loop().create_task(self._initialize(check_for_updates))
        return await self._init_task

    async def _initialize(self, check_for_updates: bool) -> Optional[ModelAsset]:
        LOGGER.info("Initializing model manager...")
        await asyncio.to_thread(self.model_dir.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(self._promote_candidate)

        if await asyncio.to_thread(_non_empty_file, self.downloaded_path):
            self.active = ModelAsset(source="downloaded", uri=self.downloaded_path)
        else:
            bundled = await asyncio.to_thread(self._unpack_bundled)
            if bundled is not None:
                self.active = ModelAsset(source="bundled", uri=bundled)

        if self.active is None:
            LOGGER.warning("No inference model available; predictions are unavailable")
            return None

        LOGGER.info("Using %s model at %s", self.active.source, self.active.uri)
        if self.kv_store is not None:
            await self.kv_store.set(ACTIVE_MODEL_KEY, str(self.active.uri))
        if check_for_updates:
            self._update_task = asyncio.get_running_loop().create_task(self.check_for_updates())
        return self.active

    def _promote_candidate(self) -> None:
        """Move a model staged by a previous session into the downloaded slot."""
        if _non_empty_file(self.candidate_path):
            os.replace(self.candidate_path, self.downloaded_path)
            LOGGER.info("Promoted staged model update to %s", self.downloaded_path)
        elif self.candidate_path.exists():
            self.candidate_path.unlink()

    def _unpack_bundled(self) -> Optional[Path]:
        source = self.settings.bundled_model_path
        if source is None or not _non_empty_file(source):
            return None
        target = self.bundled_path
        if _non_empty_file(target) and target.stat().st_size == source.stat().st_size:
            return target
        partial = target.with_name(target.name + ".part")
        shutil.copyfile(source, partial)
        os.replace(partial, target)
        return target

    async def check_for_updates(self) -> bool:
        """Try to stage a newer model; failures are logged and never raised."""
        try:
            LOGGER.info("Checking for model updates at %s", self.settings.model_url)
            await self.download_model()
        except (ModelDownloadError, OSError) as exc:
            LOGGER.info("No model update available or offline: %s", exc)
            return False
        LOGGER.info("Model update downloaded; it will be used on next start")
        return True

    async def download_model(self) -> Path:
        """Download the remote model and stage it as the next-start candidate."""
        return await asyncio.to_thread(self._download_to, self.candidate_path)

    def _download_to(self, destination: Path) -> Path:
        temp_path = destination.with_name(destination.name + ".download")
        size = 0
        try:
            with self.session.get(
                self.settings.model_url, stream=True, timeout=self.settings.http_timeout_seconds
            ) as response:
                if response.status_code != 200:
                    raise ModelDownloadError(f"Failed to download model. Status: {response.status_code}")
                with open(temp_path, "wb") as fh:
                    for chunk in response.iter_content(chunk_size=64 * 1024):
                        if chunk:
                            fh.write(chunk)
                            size += len(chunk)
            if size == 0:
                raise ModelDownloadError("Downloaded model is empty")
            os.replace(temp_path, destination)
        except requests.RequestException as exc:
            raise ModelDownloadError(f"Model download failed: {exc}") from exc
        finally:
            if temp_path.exists():
                temp_path.unlink()
        return destination

    async def update_model(self) -> bool:
        """Download now and switch to the new model (explicit user action)."""
        try:
            await asyncio.to_thread(self._download_to, self.downloaded_path)
        except (ModelDownloadError, OSError) as exc:
            LOGGER.warning("Failed to update model: %s", exc)
            return False
        self.active = ModelAsset(source="downloaded", uri=self.downloaded_path)
        if self.kv_store is not None:
            await self.kv_store.set(ACTIVE_MODEL_KEY, str(self.active.uri))
        return True

    async def predict(self, image_ref: Any) -> Union[Prediction, Any]:
        """Return a Prediction, or UNAVAILABLE when no model or runner can serve it."""
        if self.active is None or self.runner is None:
            LOGGER.debug("Model not ready; prediction unavailable")
            return UNAVAILABLE
        try:
            if inspect.iscoroutinefunction(self.runner):
                result = await self.runner(self.active.uri, image_ref)
            else:
                result = await asyncio.to_thread(self.runner, self.active.uri, image_ref)
            if inspect.isawaitable(result):
                result = await result
            if result is None or result is UNAVAILABLE:
                return UNAVAILABLE
            if isinstance(result, dict):
                label, confidence = result["label"], result["confidence"]
            else:
                label, confidence = result.label, result.confidence
            return Prediction(label=str(label), confidence=min(max(float(confidence), 0.0), 1.0))
        except Exception as exc:  # pylint: disable=broad-exception-caught
            LOGGER.error("Inference failed for %r: %s", image_ref, exc)
            return UNAVAILABLE

    async def wait_for_background(self) -> None:
        if self._update_task is not None:
            await asyncio.gather(self._update_task, return_exceptions=True)

    async def close(self) -> None:
        if self._update_task is not None and not self._update_task.done():
            self._update_task.cancel()
            await asyncio.gather(self._update_task, return_exceptions=True)
        self._update_task = None
