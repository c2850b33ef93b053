"""Environment-driven settings for the server and the device runtime.

Values are read from the process environment (optionally populated from a
`.env` file by `python-dotenv`) into frozen dataclasses so that services
receive their configuration explicitly instead of reading globals.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_PUBLIC_DIR = BASE_DIR / "public"
DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class ServerSettings:
    """Settings for the remote scan repository service.

    Attributes:
        public_dir: Directory served under `/public` (models and uploads).
        max_upload_bytes: Maximum accepted size for an uploaded image.
        admin_token: Token required by the admin export route; None disables it.
    """

    public_dir: Path = DEFAULT_PUBLIC_DIR
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    admin_token: Optional[str] = None

    @property
    def uploads_dir(self) -> Path:
        return self.public_dir / "uploads"

    @classmethod
    def from_env(cls) -> "ServerSettings":
        public_dir = os.getenv("PUBLIC_DIR")
        return cls(
            public_dir=Path(public_dir).expanduser() if public_dir else DEFAULT_PUBLIC_DIR,
            max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES),
            admin_token=os.getenv("ADMIN_TOKEN") or None,
        )


@dataclass(frozen=True)
class DeviceSettings:
    """Settings for the on-device model manager, history store and sync engine."""

    server_url: str = "http://10.0.2.2:5001"
    data_dir: Path = BASE_DIR / "device_data"
    bundled_model_path: Optional[Path] = None
    model_version: str = "v1"
    model_ext: str = "tflite"
    backoff_base_seconds: float = 30.0
    backoff_max_seconds: float = 3600.0
    max_attempts: int = 8
    http_timeout_seconds: float = 15.0

    @property
    def api_url(self) -> str:
        return f"{self.server_url.rstrip('/')}/api"

    @property
    def model_url(self) -> str:
        return f"{self.server_url.rstrip('/')}/public/models/{self.model_version}/model.{self.model_ext}"

    @property
    def model_dir(self) -> Path:
        return self.data_dir / "models"

    @property
    def images_dir(self) -> Path:
        return self.data_dir / "images"

    @property
    def transient_dir(self) -> Path:
        """Cache directory the capture layer writes short-lived buffers into."""
        return self.data_dir / "cache"

    @property
    def kv_path(self) -> Path:
        return self.data_dir / "device.db"

    @classmethod
    def from_env(cls) -> "DeviceSettings":
        data_dir = os.getenv("DEVICE_DATA_DIR")
        bundled = os.getenv("BUNDLED_MODEL_PATH")
        return cls(
            server_url=os.getenv("SCAN_SERVER_URL", cls.server_url),
            data_dir=Path(data_dir).expanduser() if data_dir else cls.data_dir,
            bundled_model_path=Path(bundled).expanduser() if bundled else None,
            model_version=os.getenv("MODEL_VERSION", cls.model_version),
            model_ext=os.getenv("MODEL_EXT", cls.model_ext),
            backoff_base_seconds=_env_float("SYNC_BACKOFF_BASE_SECONDS", cls.backoff_base_seconds),
            backoff_max_seconds=_env_float("SYNC_BACKOFF_MAX_SECONDS", cls.backoff_max_seconds),
            max_attempts=_env_int("SYNC_MAX_ATTEMPTS", cls.max_attempts),
            http_timeout_seconds=_env_float("HTTP_TIMEOUT_SECONDS", cls.http_timeout_seconds),
        )
