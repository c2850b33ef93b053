"""Wire the on-device services together for a device shell.

The runtime owns the single model manager, the history store and the sync
engine, and exposes the few entry points the capture and history screens use.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from dal.kv_store import AsyncKeyValueStore
from models.diagnosis_record import DiagnosisRecord, GeoPoint
from models.model_asset import UNAVAILABLE
from services.history_store import BackoffPolicy, LocalHistoryStore
from services.image_materializer import ImageMaterializer, TransientBuffers
from services.model_manager import InferenceRunner, LocalModelManager
from services.scan_api_client import ScanApiClient
from services.sync_engine import SyncEngine, SyncReport, SyncTrigger
from utils.config import DeviceSettings

LOGGER = logging.getLogger(__name__)


class DeviceRuntime:
    """Composition root for the offline-first scan core."""

    def __init__(
        self,
        settings: DeviceSettings,
        runner: Optional[InferenceRunner] = None,
        token: Optional[str] = None,
        owner_identity: Optional[str] = None,
        device_info: Optional[Dict[str, Any]] = None,
        client: Optional[ScanApiClient] = None,
    ) -> None:
        self.settings = settings
        self.owner_identity = owner_identity
        self.kv_store = AsyncKeyValueStore(settings.kv_path)
        self.buffers = TransientBuffers()
        self.materializer = ImageMaterializer(settings.images_dir, settings.transient_dir, self.buffers)
        self.history = LocalHistoryStore(
            self.kv_store,
            self.materializer,
            BackoffPolicy(settings.backoff_base_seconds, settings.backoff_max_seconds, settings.max_attempts),
        )
        self.model_manager = LocalModelManager(settings, runner=runner, kv_store=self.kv_store)
        self.client = client or ScanApiClient(settings.api_url, token, timeout=settings.http_timeout_seconds)
        self.sync_engine = SyncEngine(self.history, self.client, self.materializer, device_info)

    async def start(self, check_for_updates: bool = True) -> None:
        await self.kv_store.connect()
        await self.history.load()
        await self.model_manager.initialize(check_for_updates=check_for_updates)

    async def stop(self) -> None:
        await self.model_manager.close()
        await self.kv_store.close()

    async def analyze(
        self,
        image_ref: Any,
        location: Optional[GeoPoint] = None,
        **fields: Any,
    ) -> Optional[DiagnosisRecord]:
        """Classify an image and append the result to the history.

        Returns None when no model is available; nothing is recorded then.
        """
        prediction = await self.model_manager.predict(image_ref)
        if prediction is UNAVAILABLE:
            LOGGER.info("Analysis skipped: inference unavailable")
            return None
        record = DiagnosisRecord(
            image_ref=image_ref,
            label=prediction.label,
            confidence=prediction.confidence,
            user_verified=True,
            location=location,
            owner_identity=self.owner_identity,
            **fields,
        )
        return await self.history.append(record)

    async def sync(self, trigger: SyncTrigger = SyncTrigger.FOCUS) -> SyncReport:
        return await self.sync_engine.sync(trigger)

    async def export(self) -> SyncReport:
        """Explicit export: ignores backoff and returns the summary to show the user."""
        return await self.sync_engine.sync(SyncTrigger.EXPORT)
