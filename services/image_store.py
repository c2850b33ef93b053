"""Helpers for saving uploaded scan images under the static uploads directory.

Files land in `<PUBLIC_DIR>/uploads/` and are served by the `/public` static
mount, so the returned relative URL can be fetched unmodified from the same
origin.
"""

from __future__ import annotations

import os
import time
import uuid
from pathlib import Path
from typing import Optional

import aiofiles

from utils.media_validation import extension_for

UPLOAD_URL_PREFIX = "/public/uploads"


async def save_scan_image(
    uploads_dir: Path,
    image_bytes: bytes,
    mime_type: Optional[str],
    original_filename: Optional[str] = None,
) -> str:
    """Write image bytes to the uploads directory and return its public URL.

    Args:
        uploads_dir: Directory served under `/public/uploads`.
        image_bytes: Raw bytes of the uploaded image.
        mime_type: MIME type reported by the client (e.g. image/jpeg).
        original_filename: Client filename, used only to infer the extension.

    Returns:
        A relative URL of the form `/public/uploads/scan-<ms>-<hex>.<ext>`.

    Raises:
        ValueError: If image bytes are missing.
    """
    if not image_bytes:
        raise ValueError("Image bytes are required for saving.")

    ext = extension_for(mime_type, original_filename)
    filename = f"scan-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}.{ext}"

    uploads_dir.mkdir(parents=True, exist_ok=True)
    final_path = uploads_dir / filename
    partial_path = uploads_dir / f".{filename}.part"

    # Readers of the static mount never see a half-written file.
    async with aiofiles.open(partial_path, "wb") as f:
        await f.write(image_bytes)
    os.replace(partial_path, final_path)

    return f"{UPLOAD_URL_PREFIX}/{filename}"
