# =============================================================================
# tests/unit/test_history_store.py
# Unit Tests for LocalHistoryStore and AsyncKeyValueStore
# =============================================================================

import json
from datetime import datetime, timedelta, timezone

import pytest

from conftest import run
from dal.kv_store import AsyncKeyValueStore
from models.diagnosis_record import DiagnosisRecord, GeoPoint
from services.history_store import HISTORY_KEY, BackoffPolicy, LocalHistoryStore
from services.image_materializer import ImageMaterializer, TransientBuffers


def _store(settings, kv, buffers=None):
    materializer = ImageMaterializer(settings.images_dir, settings.transient_dir, buffers)
    return LocalHistoryStore(kv, materializer, BackoffPolicy(30, 600, 3))


class TestUpsert:
    """Upsert-by-id is the only mutation path"""

    def test_same_id_twice_keeps_one_record_with_latest_values(self, device_settings):
        async def scenario():
            async with AsyncKeyValueStore(device_settings.kv_path) as kv:
                store = _store(device_settings, kv)
                await store.load()
                await store.upsert(DiagnosisRecord(id="r1", label="Healthy", confidence=0.7))
                await store.append(DiagnosisRecord(id="r1", label="Maize Streak Virus", confidence=0.9))

                reloaded = _store(device_settings, kv)
                return await reloaded.load()

        records = run(scenario())
        assert len(records) == 1
        assert records[0].label == "Maize Streak Virus"
        assert records[0].confidence == pytest.approx(0.9)

    def test_new_records_are_newest_first_and_updates_keep_position(self, device_settings):
        async def scenario():
            async with AsyncKeyValueStore(device_settings.kv_path) as kv:
                store = _store(device_settings, kv)
                await store.upsert(DiagnosisRecord(id="a", label="Healthy"))
                await store.upsert(DiagnosisRecord(id="b", label="Healthy"))
                await store.upsert(DiagnosisRecord(id="a", label="Rust"))
                return [r.id for r in store.records()]

        assert run(scenario()) == ["b", "a"]

    def test_load_drops_duplicate_ids_from_legacy_snapshot(self, device_settings):
        legacy = [
            {"id": "x", "label": "Rust", "synced": False},
            {"id": "x", "label": "Healthy", "synced": False},
            {"id": "y", "label": "Blight", "synced": True},
        ]

        async def scenario():
            async with AsyncKeyValueStore(device_settings.kv_path) as kv:
                await kv.set(HISTORY_KEY, json.dumps(legacy))
                return await _store(device_settings, kv).load()

        records = run(scenario())
        assert [r.id for r in records] == ["x", "y"]
        assert records[0].label == "Rust"

    def test_final_label_defaults_to_label(self):
        record = DiagnosisRecord(id="r", label="Healthy", confidence=1.4)
        assert record.final_label == "Healthy"
        assert record.confidence == 1.0


class TestSyncBookkeeping:
    """Unsynced listing, markSynced and failure backoff"""

    def test_mark_synced_touches_only_given_ids(self, device_settings):
        async def scenario():
            async with AsyncKeyValueStore(device_settings.kv_path) as kv:
                store = _store(device_settings, kv)
                for rid in ("a", "b", "c"):
                    await store.upsert(DiagnosisRecord(id=rid, label="Healthy"))
                store.mark_synced(["b", "missing"], {"b": "/public/uploads/b.png"})
                await store.persist()
                unsynced = await store.list_unsynced()
                return store, unsynced

        store, unsynced = run(scenario())
        assert sorted(r.id for r in unsynced) == ["a", "c"]
        assert store.get("b").synced is True
        assert store.get("b").remote_image_url == "/public/uploads/b.png"
        assert store.get("a").remote_image_url is None

    def test_failure_pushes_record_out_of_the_due_window(self, device_settings):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)

        async def scenario():
            async with AsyncKeyValueStore(device_settings.kv_path) as kv:
                store = _store(device_settings, kv)
                await store.upsert(DiagnosisRecord(id="a"))
                store.record_failure("a", "timeout", now)
                during = await store.due_for_sync(now + timedelta(seconds=10))
                after = await store.due_for_sync(now + timedelta(seconds=31))
                return store.get("a"), during, after

        record, during, after = run(scenario())
        assert record.sync_attempts == 1
        assert record.last_error == "timeout"
        assert during == []
        assert [r.id for r in after] == ["a"]

    def test_records_past_max_attempts_are_parked_until_forced(self, device_settings):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)

        async def scenario():
            async with AsyncKeyValueStore(device_settings.kv_path) as kv:
                store = _store(device_settings, kv)
                await store.upsert(DiagnosisRecord(id="a"))
                for _ in range(3):
                    store.record_failure("a", "offline", now)
                later = now + timedelta(days=1)
                return await store.due_for_sync(later), await store.due_for_sync(later, ignore_backoff=True)

        automatic, forced = run(scenario())
        assert automatic == []
        assert [r.id for r in forced] == ["a"]

    def test_backoff_delay_is_bounded(self):
        policy = BackoffPolicy(base_seconds=30, max_seconds=100, max_attempts=5)
        assert policy.delay(1) == timedelta(seconds=30)
        assert policy.delay(2) == timedelta(seconds=60)
        assert policy.delay(6) == timedelta(seconds=100)

    def test_annotate_queues_synced_record_for_resync(self, device_settings):
        async def scenario():
            async with AsyncKeyValueStore(device_settings.kv_path) as kv:
                store = _store(device_settings, kv)
                await store.upsert(DiagnosisRecord(id="a", synced=True))
                return await store.annotate("a", vector_observation="Yes")

        record = run(scenario())
        assert record.vector_observation == "Yes"
        assert record.synced is False

    def test_mark_synced_skips_record_edited_after_submission(self, device_settings):
        async def scenario():
            async with AsyncKeyValueStore(device_settings.kv_path) as kv:
                store = _store(device_settings, kv)
                await store.upsert(DiagnosisRecord(id="a", label="Rust"))
                await store.upsert(DiagnosisRecord(id="b", label="Rust"))
                sent = {"a": store.get("a"), "b": store.get("b")}
                store.set_remote_image_url("b", "/public/uploads/b.png")
                await store.annotate("a", vector_observation="No")
                marked = store.mark_synced(["a", "b"], sent=sent)
                return store, marked

        store, marked = run(scenario())
        assert marked == ["b"]
        assert store.get("a").synced is False
        assert store.get("b").synced is True

    def test_remote_url_not_attached_to_replaced_image(self, device_settings, png_bytes):
        async def scenario():
            async with AsyncKeyValueStore(device_settings.kv_path) as kv:
                store = _store(device_settings, kv)
                first = await store.upsert(DiagnosisRecord(id="a", image_ref=png_bytes))
                await store.upsert(DiagnosisRecord(id="a", image_ref=str(first.image_ref) + ".moved"))
                store.set_remote_image_url("a", "/public/uploads/old.png", image_ref=first.image_ref)
                return store.get("a")

        assert run(scenario()).remote_image_url is None

    def test_summary_counts(self, device_settings):
        async def scenario():
            async with AsyncKeyValueStore(device_settings.kv_path) as kv:
                store = _store(device_settings, kv)
                await store.upsert(DiagnosisRecord(id="a", label="Healthy", synced=True))
                await store.upsert(DiagnosisRecord(id="b", label="Rust"))
                await store.upsert(DiagnosisRecord(id="c", label="Rust"))
                return store.summary()

        summary = run(scenario())
        assert summary == {"total": 3, "synced": 1, "unsynced": 2, "byLabel": {"Healthy": 1, "Rust": 2}}


class TestDurability:
    """Persistence and image durability across a simulated restart"""

    def test_round_trip_preserves_location_and_flags(self, device_settings):
        async def scenario():
            async with AsyncKeyValueStore(device_settings.kv_path) as kv:
                store = _store(device_settings, kv)
                await store.upsert(
                    DiagnosisRecord(id="a", label="Rust", location=GeoPoint(-1.28, 36.82), owner_identity="farmer-1")
                )
            async with AsyncKeyValueStore(device_settings.kv_path) as kv:
                return await _store(device_settings, kv).load()

        (record,) = run(scenario())
        assert record.location == GeoPoint(-1.28, 36.82)
        assert record.owner_identity == "farmer-1"

    def test_ephemeral_buffer_resolves_after_restart(self, device_settings, png_bytes):
        async def scenario():
            buffers = TransientBuffers()
            handle = buffers.register(png_bytes)
            async with AsyncKeyValueStore(device_settings.kv_path) as kv:
                stored = await _store(device_settings, kv, buffers).append(DiagnosisRecord(id="a", image_ref=handle))
            # New process: the buffer registry is gone.
            async with AsyncKeyValueStore(device_settings.kv_path) as kv:
                store = _store(device_settings, kv, TransientBuffers())
                (record,) = await store.load()
                return handle, stored, record, store

        handle, stored, record, store = run(scenario())
        assert stored.image_ref != handle
        path = store._materializer.resolve(record.image_ref)
        assert path is not None
        assert path.read_bytes() == png_bytes

    def test_reupsert_with_ephemeral_ref_keeps_uploaded_url(self, device_settings, png_bytes):
        async def scenario():
            async with AsyncKeyValueStore(device_settings.kv_path) as kv:
                store = _store(device_settings, kv)
                first = await store.upsert(DiagnosisRecord(id="a", label="Rust", image_ref=png_bytes))
                store.set_remote_image_url("a", "/public/uploads/a.png")
                again = await store.upsert(DiagnosisRecord(id="a", label="Healthy", image_ref=png_bytes))
                return first, again

        first, again = run(scenario())
        assert again.image_ref == first.image_ref
        assert again.remote_image_url == "/public/uploads/a.png"
        assert again.label == "Healthy"

    def test_failed_staging_swap_keeps_previous_snapshot(self, device_settings, monkeypatch):
        async def scenario():
            async with AsyncKeyValueStore(device_settings.kv_path) as kv:
                store = _store(device_settings, kv)
                await store.upsert(DiagnosisRecord(id="a", label="Healthy"))

                original_set = kv.set

                async def failing_set(key, value):
                    raise OSError("disk full")

                monkeypatch.setattr(kv, "set", failing_set)
                with pytest.raises(OSError):
                    await store.upsert(DiagnosisRecord(id="b", label="Rust"))
                monkeypatch.setattr(kv, "set", original_set)
                return await _store(device_settings, kv).load()

        records = run(scenario())
        assert [r.id for r in records] == ["a"]
