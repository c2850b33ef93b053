"""HTTP client for the remote scan repository.

Calls are made with `requests` on a worker thread so the device event loop is
never blocked. Any transport failure or non-2xx response raises ScanApiError.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

LOGGER = logging.getLogger(__name__)


class ScanApiError(Exception):
    """Raised when the scan repository cannot be reached or rejects a call."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ScanApiClient:
    """Thin client for the `/api/scans` routes.

    Args:
        api_url: Base API URL, e.g. `http://10.0.2.2:5001/api`.
        token: Opaque per-user credential sent as `x-auth-token`.
        session: Optional requests-compatible session (shared pool or test double).
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, api_url: str, token: Optional[str] = None, session: Any = None, timeout: float = 15.0) -> None:
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.session = session or requests.Session()
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {"x-auth-token": self.token} if self.token else {}

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.api_url}{path}"
        try:
            response = self.session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except (requests.RequestException, OSError) as exc:
            raise ScanApiError(f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise ScanApiError(
                f"{method} {path} returned {response.status_code}: {_error_message(response)}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ScanApiError(f"{method} {path} returned a non-JSON body") from exc

    def _upload_file(self, path: Path) -> Dict[str, Any]:
        mime_type = mimetypes.guess_type(path.name)[0] or "image/jpeg"
        with open(path, "rb") as fh:
            return self._request("POST", "/scans/upload-image", files={"image": (path.name, fh, mime_type)})

    async def upload_image(self, path: Path) -> str:
        """Upload a local image file; returns the server-relative image URL."""
        data = await asyncio.to_thread(self._upload_file, Path(path))
        return _image_url(data)

    async def upload_image_data_uri(self, data_uri: str) -> str:
        """Upload an inline `data:` URI image; returns the server-relative image URL."""
        data = await asyncio.to_thread(self._request, "POST", "/scans/upload-image-web", json={"imageData": data_uri})
        return _image_url(data)

    async def sync_scans(self, payloads: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Submit a batch; returns `{syncedCount, savedIds, errors}`."""
        data = await asyncio.to_thread(self._request, "POST", "/scans/sync", json=payloads)
        if not isinstance(data, dict) or not isinstance(data.get("savedIds"), list):
            raise ScanApiError("Sync response is missing savedIds")
        data.setdefault("errors", [])
        return data

    async def create_scan(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._request, "POST", "/scans", json=payload)

    async def list_scans(self) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._request, "GET", "/scans")

    def close(self) -> None:
        close = getattr(self.session, "close", None)
        if close is not None:
            close()


def _image_url(data: Any) -> str:
    url = data.get("imageUrl") if isinstance(data, dict) else None
    if not url:
        raise ScanApiError("Upload response is missing imageUrl")
    return url


def _error_message(response: Any) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("msg") or body)
    return str(body)
