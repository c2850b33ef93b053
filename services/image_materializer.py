"""Turn ephemeral capture handles into durable image files.

Capture layers hand over images as in-memory buffers, `blob:` handles, inline
`data:` URIs or files in a short-lived cache directory. None of those survive a
process restart, so before a diagnosis record is persisted its image is written
to `<images_dir>/<sha256>.<ext>` and the record keeps that path instead.
"""

from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

import aiofiles
from PIL import Image, UnidentifiedImageError

from utils.media_validation import ImageDataError, parse_data_uri, to_data_uri

LOGGER = logging.getLogger(__name__)

_PIL_EXTENSIONS = {"JPEG": "jpg", "PNG": "png", "WEBP": "webp", "BMP": "bmp", "GIF": "gif", "MPO": "jpg"}


class TransientBuffers:
    """In-memory registry behind `blob:` handles issued by the capture layer.

    Handles are only valid for the lifetime of the process.
    """

    def __init__(self) -> None:
        self._buffers: Dict[str, bytes] = {}

    def register(self, data: bytes) -> str:
        handle = f"blob:{uuid4().hex}"
        self._buffers[handle] = bytes(data)
        return handle

    def get(self, handle: str) -> Optional[bytes]:
        return self._buffers.get(handle)

    def release(self, handle: str) -> None:
        self._buffers.pop(handle, None)


def _inspect_image(raw: bytes) -> Tuple[str, int, int]:
    """Return (extension, width, height) for image bytes; raises ValueError otherwise."""
    try:
        with Image.open(io.BytesIO(raw)) as img:
            fmt = img.format or ""
            width, height = img.size
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ValueError("Bytes are not a supported image format") from exc
    ext = _PIL_EXTENSIONS.get(fmt.upper())
    if ext is None:
        raise ValueError(f"Unsupported image format: {fmt or 'unknown'}")
    return ext, width, height


def _strip_file_scheme(ref: str) -> str:
    return ref[len("file://"):] if ref.startswith("file://") else ref


class ImageMaterializer:
    """Convert ephemeral image references into durable, path-stable ones.

    Args:
        images_dir: Directory that holds durable images.
        transient_dir: Cache directory whose files may disappear at any time.
        buffers: Registry resolving `blob:` handles; a private one is created if omitted.
    """

    def __init__(
        self,
        images_dir: Path,
        transient_dir: Optional[Path] = None,
        buffers: Optional[TransientBuffers] = None,
    ) -> None:
        self.images_dir = Path(images_dir)
        self.transient_dir = Path(transient_dir).resolve() if transient_dir else None
        self.buffers = buffers or TransientBuffers()

    def is_ephemeral(self, ref: Any) -> bool:
        """Return True when `ref` will not resolve after a restart."""
        if isinstance(ref, (bytes, bytearray, memoryview)):
            return True
        if not isinstance(ref, str) or not ref:
            return False
        if ref.startswith(("data:", "blob:")):
            return True
        if self.transient_dir is not None and not ref.startswith(("http://", "https://")):
            try:
                Path(_strip_file_scheme(ref)).resolve().relative_to(self.transient_dir)
            except ValueError:
                return False
            return True
        return False

    async def materialize(self, ref: Any) -> Any:
        """Return a durable reference for `ref`.

        Non-ephemeral references are returned unchanged. When conversion fails
        the original reference is kept (raw buffers become a `data:` URI so the
        record stays serializable) and consumers render a placeholder.
        """
        if not self.is_ephemeral(ref):
            return ref
        try:
            raw = await self._read_bytes(ref)
            ext, _, _ = await asyncio.to_thread(_inspect_image, raw)
            return str(await self._write_durable(raw, ext))
        except (ImageDataError, ValueError, OSError) as exc:
            LOGGER.warning("Could not materialize image reference: %s", exc)
            if isinstance(ref, (bytes, bytearray, memoryview)):
                return to_data_uri(bytes(ref))
            return ref

    async def _read_bytes(self, ref: Any) -> bytes:
        if isinstance(ref, (bytes, bytearray, memoryview)):
            raw = bytes(ref)
        elif ref.startswith("data:"):
            _, raw = parse_data_uri(ref)
        elif ref.startswith("blob:"):
            raw = self.buffers.get(ref)
            if raw is None:
                raise ValueError(f"Buffer {ref} is no longer available")
        else:
            async with aiofiles.open(_strip_file_scheme(ref), "rb") as f:
                raw = await f.read()
        if not raw:
            raise ValueError("Image buffer is empty")
        return raw

    async def _write_durable(self, raw: bytes, ext: str) -> Path:
        """Write content-addressed bytes once; repeated calls are no-ops."""
        self.images_dir.mkdir(parents=True, exist_ok=True)
        target = (self.images_dir / f"{hashlib.sha256(raw).hexdigest()}.{ext}").resolve()
        if target.exists() and target.stat().st_size == len(raw):
            return target
        partial = target.with_name(f".{target.name}.{uuid4().hex[:8]}.part")
        async with aiofiles.open(partial, "wb") as f:
            await f.write(raw)
        os.replace(partial, target)
        return target

    def resolve(self, ref: Any) -> Optional[Path]:
        """Return the local file behind a durable reference, or None if it cannot be rendered."""
        if not isinstance(ref, str) or not ref or ref.startswith(("data:", "blob:", "http://", "https://")):
            return None
        path = Path(_strip_file_scheme(ref))
        return path if path.is_file() else None

    async def describe(self, path: Path) -> Dict[str, Any]:
        """Return capture metadata (resolution and orientation) for a stored image."""
        try:
            async with aiofiles.open(path, "rb") as f:
                raw = await f.read()
            _, width, height = await asyncio.to_thread(_inspect_image, raw)
        except (ValueError, OSError) as exc:
            LOGGER.debug("No metadata for %s: %s", path, exc)
            return {}
        return {
            "resolution": f"{width}x{height}",
            "orientation": "portrait" if height > width else "landscape",
        }
