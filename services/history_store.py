"""Durable, ordered diagnosis history with upsert-by-id semantics."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from dal.kv_store import AsyncKeyValueStore
from models.diagnosis_record import DiagnosisRecord
from services.image_materializer import ImageMaterializer

LOGGER = logging.getLogger(__name__)

HISTORY_KEY = "diagnosisHistory"


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _content(record: DiagnosisRecord) -> DiagnosisRecord:
    """The record with its sync bookkeeping blanked out, for change detection."""
    return record.copy(synced=False, remote_image_url=None, sync_attempts=0, next_attempt_at=None, last_error=None)


@dataclass(frozen=True)
class BackoffPolicy:
    """Bounded exponential backoff for records that failed to sync."""

    base_seconds: float = 30.0
    max_seconds: float = 3600.0
    max_attempts: int = 8

    def delay(self, attempts: int) -> timedelta:
        seconds = self.base_seconds * (2 ** max(attempts - 1, 0))
        return timedelta(seconds=min(seconds, self.max_seconds))


class LocalHistoryStore:
    """Newest-first list of DiagnosisRecords persisted as one snapshot.

    Upsert is the only mutation path: a record whose id is already present is
    replaced in place, so the list never holds two records with the same id.
    Every ephemeral image reference is materialized before the record is kept.
    """

    def __init__(
        self,
        kv_store: AsyncKeyValueStore,
        materializer: ImageMaterializer,
        backoff: Optional[BackoffPolicy] = None,
        key: str = HISTORY_KEY,
    ) -> None:
        self._kv = kv_store
        self._materializer = materializer
        self.backoff = backoff or BackoffPolicy()
        self.key = key
        self._records: List[DiagnosisRecord] = []
        self._loaded = False
        self._write_lock = asyncio.Lock()

    async def load(self) -> List[DiagnosisRecord]:
        """Read the persisted snapshot, dropping duplicate ids (first one wins)."""
        raw = await self._kv.get(self.key)
        records: List[DiagnosisRecord] = []
        if raw:
            try:
                items = json.loads(raw)
            except json.JSONDecodeError as exc:
                LOGGER.error("Stored history is not valid JSON, starting empty: %s", exc)
                items = []
            seen = set()
            for item in items if isinstance(items, list) else []:
                try:
                    record = DiagnosisRecord.from_dict(item)
                except (TypeError, ValueError) as exc:
                    LOGGER.warning("Skipping unreadable history entry: %s", exc)
                    continue
                if record.id in seen:
                    continue
                seen.add(record.id)
                records.append(record)
        self._records = records
        self._loaded = True
        return list(records)

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self.load()

    async def persist(self) -> None:
        """Write the whole list through a staging key so readers never see a partial snapshot."""
        await self._ensure_loaded()
        payload = json.dumps([r.to_dict() for r in self._records])
        async with self._write_lock:
            await self._kv.set_atomic(self.key, payload)

    def _index_of(self, record_id: str) -> Optional[int]:
        for idx, record in enumerate(self._records):
            if record.id == record_id:
                return idx
        return None

    async def upsert(self, record: DiagnosisRecord, persist: bool = True) -> DiagnosisRecord:
        """Insert `record` at the front, or replace the record with the same id in place."""
        await self._ensure_loaded()
        idx = self._index_of(record.id)
        existing = self._records[idx] if idx is not None else None

        image_ref = record.image_ref
        if (
            existing is not None
            and self._materializer.is_ephemeral(image_ref)
            and existing.image_ref
            and not self._materializer.is_ephemeral(existing.image_ref)
        ):
            # Already materialized (and possibly uploaded) once for this record.
            stored = record.copy(
                image_ref=existing.image_ref,
                remote_image_url=record.remote_image_url or existing.remote_image_url,
            )
        else:
            stored = record.copy(image_ref=await self._materializer.materialize(image_ref))

        if idx is None:
            self._records.insert(0, stored)
        else:
            self._records[idx] = stored
        if persist:
            await self.persist()
        return stored

    append = upsert

    async def annotate(self, record_id: str, **changes: Any) -> DiagnosisRecord:
        """Attach post-hoc fields (e.g. vector_observation) and queue the record for re-sync."""
        await self._ensure_loaded()
        idx = self._index_of(record_id)
        if idx is None:
            raise KeyError(f"Diagnosis record {record_id} not found")
        updated = self._records[idx].copy(**changes, synced=False, sync_attempts=0, next_attempt_at=None)
        self._records[idx] = updated
        await self.persist()
        return updated

    def get(self, record_id: str) -> Optional[DiagnosisRecord]:
        idx = self._index_of(record_id)
        return self._records[idx] if idx is not None else None

    def records(self) -> List[DiagnosisRecord]:
        return list(self._records)

    async def list_unsynced(self) -> List[DiagnosisRecord]:
        await self._ensure_loaded()
        return [r for r in self._records if not r.synced]

    async def due_for_sync(self, now: Optional[datetime] = None, ignore_backoff: bool = False) -> List[DiagnosisRecord]:
        """Unsynced records whose backoff window has elapsed.

        Records that exhausted `max_attempts` are parked until an explicit
        sync passes `ignore_backoff=True`.
        """
        unsynced = await self.list_unsynced()
        if ignore_backoff:
            return unsynced
        now = now or datetime.now(timezone.utc)
        due = []
        for record in unsynced:
            if record.sync_attempts >= self.backoff.max_attempts:
                continue
            next_at = _parse_time(record.next_attempt_at)
            if next_at is None or next_at <= now:
                due.append(record)
        return due

    def set_remote_image_url(self, record_id: str, url: str, image_ref: Any = None) -> None:
        """Attach an uploaded image URL, unless the record's image was replaced meanwhile."""
        idx = self._index_of(record_id)
        if idx is None:
            return
        current = self._records[idx]
        if image_ref is not None and current.image_ref != image_ref:
            return
        self._records[idx] = current.copy(remote_image_url=url)

    def mark_synced(
        self,
        ids: Iterable[str],
        remote_image_urls: Optional[Mapping[str, str]] = None,
        sent: Optional[Mapping[str, DiagnosisRecord]] = None,
    ) -> List[str]:
        """Flip `synced` for the given ids only; returns the ids that were marked.

        With `sent`, a record is marked only while its content still equals
        the version that was submitted; one edited in the meantime stays
        unsynced so the edit goes out on the next pass.
        """
        remote_image_urls = remote_image_urls or {}
        sent = sent or {}
        marked = []
        for record_id in ids:
            idx = self._index_of(record_id)
            if idx is None:
                continue
            current = self._records[idx]
            submitted = sent.get(record_id)
            if submitted is not None and _content(submitted) != _content(current):
                LOGGER.info("Record %s changed while its sync was in flight; keeping it queued", record_id)
                continue
            self._records[idx] = current.copy(
                synced=True,
                remote_image_url=remote_image_urls.get(record_id) or current.remote_image_url,
                sync_attempts=0,
                next_attempt_at=None,
                last_error=None,
            )
            marked.append(record_id)
        return marked

    def record_failure(self, record_id: str, error: str, now: Optional[datetime] = None) -> None:
        """Count a failed attempt and push the record's next retry out."""
        idx = self._index_of(record_id)
        if idx is None:
            return
        now = now or datetime.now(timezone.utc)
        current = self._records[idx]
        attempts = current.sync_attempts + 1
        self._records[idx] = current.copy(
            sync_attempts=attempts,
            next_attempt_at=(now + self.backoff.delay(attempts)).isoformat(),
            last_error=error,
        )

    async def reset_sync(self, record_id: str) -> None:
        """Explicitly mark a record unsynced so the next pass re-submits it."""
        await self._ensure_loaded()
        idx = self._index_of(record_id)
        if idx is None:
            raise KeyError(f"Diagnosis record {record_id} not found")
        self._records[idx] = self._records[idx].copy(
            synced=False, sync_attempts=0, next_attempt_at=None, last_error=None
        )
        await self.persist()

    def summary(self) -> Dict[str, Any]:
        """Totals for the history and analytics views."""
        labels = Counter(r.final_label or "Unknown" for r in self._records)
        synced = sum(1 for r in self._records if r.synced)
        return {
            "total": len(self._records),
            "synced": synced,
            "unsynced": len(self._records) - synced,
            "byLabel": dict(labels),
        }
