# =============================================================================
# tests/integration/test_device_sync.py
# Integration Tests: capture -> history -> sync against the live app
# =============================================================================

from dataclasses import replace

import pytest

from conftest import run
from models.model_asset import Prediction
from services.device_runtime import DeviceRuntime
from services.scan_api_client import ScanApiClient, ScanApiError
from services.sync_engine import SyncTrigger

pytestmark = pytest.mark.integration


@pytest.fixture
def device_with_model(device_settings, tmp_path):
    bundled = tmp_path / "assets" / "model.tflite"
    bundled.parent.mkdir(parents=True)
    bundled.write_bytes(b"bundled-model")
    return replace(device_settings, bundled_model_path=bundled)


def _runner(model_path, image_ref):
    return Prediction(label="Maize Streak Virus", confidence=0.88)


class TestDeviceToServer:
    """Full offline-first flow over HTTP"""

    def test_captured_buffer_is_synced_with_its_image(self, server, device_with_model, png_bytes):
        client = server["client"]
        api = ScanApiClient("http://testserver/api", server["token"], session=client)

        async def scenario():
            runtime = DeviceRuntime(device_with_model, runner=_runner, owner_identity="farmer-1", client=api)
            await runtime.start(check_for_updates=False)
            try:
                handle = runtime.buffers.register(png_bytes)
                record = await runtime.analyze(handle)
                report = await runtime.export()
                return record, report, runtime.history.get(record.id)
            finally:
                await runtime.stop()

        record, report, stored = run(scenario())
        assert report.trigger is SyncTrigger.EXPORT
        assert report.synced_ids == [record.id]
        assert stored.synced is True

        documents = client.get("/api/scans", headers={"x-auth-token": server["token"]}).json()
        assert [doc["localId"] for doc in documents] == [record.id]
        assert documents[0]["diagnosis"]["modelPrediction"] == "Maize Streak Virus"
        assert documents[0]["diagnosis"]["userVerified"] is True
        assert client.get(documents[0]["imageUrl"]).content == png_bytes

    def test_unavailable_model_records_nothing(self, server, device_settings, png_bytes):
        api = ScanApiClient("http://testserver/api", server["token"], session=server["client"])

        async def scenario():
            runtime = DeviceRuntime(device_settings, runner=_runner, client=api)
            await runtime.start(check_for_updates=False)
            try:
                return await runtime.analyze(png_bytes), runtime.history.records()
            finally:
                await runtime.stop()

        record, records = run(scenario())
        assert record is None
        assert records == []

    def test_bad_token_keeps_records_unsynced(self, server, device_with_model, png_bytes):
        api = ScanApiClient("http://testserver/api", "wrong-token", session=server["client"])

        async def scenario():
            runtime = DeviceRuntime(device_with_model, runner=_runner, client=api)
            await runtime.start(check_for_updates=False)
            try:
                record = await runtime.analyze(png_bytes)
                report = await runtime.sync(SyncTrigger.FOCUS)
                return record, report, runtime.history.get(record.id)
            finally:
                await runtime.stop()

        record, report, stored = run(scenario())
        assert report.synced_ids == []
        assert record.id in report.failed
        assert stored.synced is False
        # The image upload route is public, so only the batch was refused.
        assert stored.remote_image_url is not None

    def test_client_raises_on_http_error(self, server):
        api = ScanApiClient("http://testserver/api", None, session=server["client"])

        with pytest.raises(ScanApiError) as excinfo:
            run(api.sync_scans([]))
        assert excinfo.value.status_code == 401
