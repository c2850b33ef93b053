"""Reconcile the on-device history with the remote scan repository.

One pass walks the unsynced records, uploads images that have no remote URL
yet, submits every ready record in a single batch and marks only the
acknowledged ids as synced. The store is persisted once per pass. Nothing is
kept about a pass in progress: a crash simply means the records are retried
from the top on the next trigger.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from models.diagnosis_record import DiagnosisRecord
from services.history_store import LocalHistoryStore
from services.image_materializer import ImageMaterializer
from services.payload_builder import build_submission
from services.scan_api_client import ScanApiClient, ScanApiError

LOGGER = logging.getLogger(__name__)


class SyncTrigger(str, Enum):
    FOCUS = "focus"
    FOREGROUND = "foreground"
    EXPORT = "export"


@dataclass
class SyncReport:
    """Outcome of one sync trigger."""

    trigger: SyncTrigger
    skipped: bool = False
    candidates: int = 0
    uploaded: List[str] = field(default_factory=list)
    submitted: List[str] = field(default_factory=list)
    synced_ids: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def synced_count(self) -> int:
        return len(self.synced_ids)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncEngine:
    """Single-writer sync over a LocalHistoryStore.

    Overlapping triggers are dropped: while a pass is running, `sync()`
    returns a report with `skipped=True` and touches nothing.
    """

    def __init__(
        self,
        store: LocalHistoryStore,
        client: ScanApiClient,
        materializer: ImageMaterializer,
        device_info: Optional[Dict[str, Any]] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.client = client
        self.materializer = materializer
        self.device_info = device_info or {}
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    async def sync(self, trigger: SyncTrigger = SyncTrigger.FOCUS) -> SyncReport:
        """Run one pass unless another is in flight."""
        trigger = SyncTrigger(trigger)
        if self._lock.locked():
            LOGGER.info("Sync already in progress; dropping %s trigger", trigger.value)
            return SyncReport(trigger=trigger, skipped=True)
        async with self._lock:
            report = await self._run_pass(trigger)
        if trigger is SyncTrigger.EXPORT:
            LOGGER.info(
                "Export finished: %d of %d records synced, %d failed",
                report.synced_count,
                report.candidates,
                len(report.failed),
            )
        return report

    def schedule(self, trigger: SyncTrigger = SyncTrigger.FOCUS) -> "asyncio.Task[SyncReport]":
        """Start a background pass (focus/foreground) and log instead of raising."""
        task = asyncio.get_running_loop().create_task(self.sync(trigger))
        task.add_done_callback(_log_task_failure)
        return task

    async def _run_pass(self, trigger: SyncTrigger) -> SyncReport:
        now = self._clock()
        report = SyncReport(trigger=trigger)
        candidates = await self.store.due_for_sync(now, ignore_backoff=trigger is SyncTrigger.EXPORT)
        report.candidates = len(candidates)
        if not candidates:
            return report

        changed = False
        payloads: List[Dict[str, Any]] = []
        sent: Dict[str, DiagnosisRecord] = {}
        for record in candidates:
            image_url = record.remote_image_url
            if image_url is None and record.image_ref:
                try:
                    image_url = await self._upload_image(record)
                except ScanApiError as exc:
                    LOGGER.warning("Image upload failed for %s: %s", record.id, exc)
                    self.store.record_failure(record.id, str(exc), now)
                    report.failed[record.id] = str(exc)
                    changed = True
                    continue
                if image_url is not None:
                    self.store.set_remote_image_url(record.id, image_url, image_ref=record.image_ref)
                    report.uploaded.append(record.id)
                    changed = True
            payloads.append(await self._build_payload(record, image_url))
            report.submitted.append(record.id)
            sent[record.id] = record

        if payloads:
            changed = True
            try:
                response = await self.client.sync_scans(payloads)
            except ScanApiError as exc:
                LOGGER.warning("Batch submission of %d records failed: %s", len(payloads), exc)
                for record_id in report.submitted:
                    self.store.record_failure(record_id, str(exc), now)
                    report.failed[record_id] = str(exc)
            else:
                self._reconcile(response, report, now, sent)

        if changed:
            await self.store.persist()
        return report

    def _reconcile(
        self,
        response: Dict[str, Any],
        report: SyncReport,
        now: datetime,
        sent: Dict[str, DiagnosisRecord],
    ) -> None:
        submitted = set(report.submitted)
        saved = [str(i) for i in response.get("savedIds", []) if str(i) in submitted]
        report.synced_ids = self.store.mark_synced(saved, sent=sent)

        for err in response.get("errors") or []:
            local_id = str(err.get("localId")) if isinstance(err, dict) else None
            if local_id not in submitted or local_id in saved:
                continue
            message = str(err.get("error") or "rejected by server")
            LOGGER.error("Server rejected scan %s: %s", local_id, message)
            self.store.record_failure(local_id, message, now)
            report.failed[local_id] = message

        for record_id in report.submitted:
            if record_id not in saved and record_id not in report.failed:
                self.store.record_failure(record_id, "not acknowledged by server", now)
                report.failed[record_id] = "not acknowledged by server"

    async def _upload_image(self, record: DiagnosisRecord) -> Optional[str]:
        ref = record.image_ref
        path = self.materializer.resolve(ref)
        if path is not None:
            return await self.client.upload_image(path)
        if isinstance(ref, str) and ref.startswith(("http://", "https://")):
            return ref
        if isinstance(ref, str) and ref.startswith("data:"):
            return await self.client.upload_image_data_uri(ref)
        LOGGER.warning("Image for %s cannot be resolved; submitting without it", record.id)
        return None

    async def _build_payload(self, record: DiagnosisRecord, image_url: Optional[str]) -> Dict[str, Any]:
        if not record.image_metadata:
            path = self.materializer.resolve(record.image_ref)
            if path is not None:
                record = record.copy(image_metadata=await self.materializer.describe(path))
        return build_submission(record, image_url, self.device_info)


def _log_task_failure(task: "asyncio.Task[SyncReport]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.error("Background sync failed: %s", exc, exc_info=exc)
