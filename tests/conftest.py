# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import asyncio
import io
from pathlib import Path
from typing import Any, Dict, List

import pytest
from PIL import Image

from services.scan_api_client import ScanApiError
from utils.config import DeviceSettings, ServerSettings


# =============================================================================
# IMAGE FIXTURES
# =============================================================================

def make_image_bytes(size=(64, 48), color=(34, 139, 34), fmt="PNG") -> bytes:
    """Encode a solid-colour test image."""
    buffer = io.BytesIO()
    Image.new("RGB", size, color=color).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def png_bytes():
    return make_image_bytes()


@pytest.fixture
def jpeg_bytes():
    return make_image_bytes(size=(40, 80), fmt="JPEG")


# =============================================================================
# SETTINGS FIXTURES
# =============================================================================

@pytest.fixture
def device_settings(tmp_path):
    """Device settings rooted in a temporary directory."""
    return DeviceSettings(
        server_url="http://testserver",
        data_dir=tmp_path / "device",
        backoff_base_seconds=30.0,
        backoff_max_seconds=600.0,
        max_attempts=3,
        http_timeout_seconds=5.0,
    )


@pytest.fixture
def server_settings(tmp_path):
    return ServerSettings(public_dir=tmp_path / "public", max_upload_bytes=64 * 1024, admin_token="admin-secret")


# =============================================================================
# SERVER FIXTURES
# =============================================================================

@pytest.fixture
def server(tmp_path, server_settings):
    """Running app (lifespan entered) plus a token for owner `farmer-1`."""
    from fastapi.testclient import TestClient

    from dal.token_dal import TokenDAL
    from main import create_app
    from utils.database_init import AsyncDatabaseInitializer

    db_dir = tmp_path / "db"
    app = create_app(server_settings, database_dir=db_dir)
    with TestClient(app) as client:
        token = asyncio.run(TokenDAL(AsyncDatabaseInitializer(db_dir)).issue_token("farmer-1"))
        other = asyncio.run(TokenDAL(AsyncDatabaseInitializer(db_dir)).issue_token("farmer-2"))
        yield {"client": client, "token": token, "other_token": other, "settings": server_settings}


# =============================================================================
# FAKE REMOTE REPOSITORY
# =============================================================================

class FakeScanApiClient:
    """In-memory stand-in for ScanApiClient with switchable failures."""

    def __init__(self) -> None:
        self.offline = False
        self.fail_uploads_for: set = set()
        self.reject_ids: Dict[str, str] = {}
        self.uploads: List[str] = []
        self.batches: List[List[Dict[str, Any]]] = []
        self.on_sync = None

    async def upload_image(self, path: Path) -> str:
        if self.offline:
            raise ScanApiError("connection refused")
        if Path(path).name in self.fail_uploads_for:
            raise ScanApiError("upload failed")
        self.uploads.append(str(path))
        return f"/public/uploads/{Path(path).name}"

    async def upload_image_data_uri(self, data_uri: str) -> str:
        if self.offline:
            raise ScanApiError("connection refused")
        self.uploads.append("data-uri")
        return "/public/uploads/inline.png"

    async def sync_scans(self, payloads: List[Dict[str, Any]]) -> Dict[str, Any]:
        if self.on_sync is not None:
            await self.on_sync()
        if self.offline:
            raise ScanApiError("connection refused")
        self.batches.append(payloads)
        saved, errors = [], []
        for item in payloads:
            local_id = item["localId"]
            if local_id in self.reject_ids:
                errors.append({"localId": local_id, "error": self.reject_ids[local_id]})
            else:
                saved.append(local_id)
        return {"syncedCount": len(saved), "savedIds": saved, "errors": errors}

    def submitted_ids(self) -> List[str]:
        return [item["localId"] for batch in self.batches for item in batch]


@pytest.fixture
def fake_client():
    return FakeScanApiClient()


def run(coro):
    """Drive a coroutine to completion from a synchronous test."""
    return asyncio.run(coro)
