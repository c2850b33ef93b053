"""Validation helpers for uploaded scan images."""

import base64
import binascii
import re
from pathlib import Path
from typing import Optional, Tuple

from fastapi import HTTPException, UploadFile

ALLOWED_IMAGE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/bmp": "bmp",
    "image/gif": "gif",
    "image/heic": "heic",
}

DATA_URI_PATTERN = re.compile(r"^data:([\w.+-]+/[\w.+-]+);base64,(.+)$", re.DOTALL)


class ImageDataError(ValueError):
    """Raised when an inline image payload cannot be decoded."""


def parse_data_uri(data_uri: str) -> Tuple[str, bytes]:
    """Split a `data:<mime>;base64,<data>` string into (mime, raw bytes).

    Raises:
        ImageDataError: If the string does not match the pattern, the data is
            not valid base64, or it decodes to nothing.
    """
    if not isinstance(data_uri, str):
        raise ImageDataError("Image data must be a data URI string.")
    match = DATA_URI_PATTERN.match(data_uri.strip())
    if not match:
        raise ImageDataError("Invalid image data format. Expected data:<mime>;base64,<data>.")
    mime_type, encoded = match.group(1).lower(), match.group(2)
    try:
        raw = base64.b64decode("".join(encoded.split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ImageDataError("Image data is not valid base64.") from exc
    if not raw:
        raise ImageDataError("Image data is empty.")
    return mime_type, raw


def to_data_uri(raw: bytes, mime_type: str = "application/octet-stream") -> str:
    """Encode raw bytes as a base64 data URI."""
    return f"data:{mime_type};base64,{base64.b64encode(raw).decode('ascii')}"


def extension_for(mime_type: Optional[str], filename: Optional[str] = None) -> str:
    """Pick a file extension from the MIME type, then the filename, else `jpg`."""
    if mime_type:
        ext = ALLOWED_IMAGE_EXTENSIONS.get(mime_type.lower().split(";", 1)[0].strip())
        if ext:
            return ext
    if filename:
        suffix = Path(filename).suffix.lower().lstrip(".")
        if suffix in set(ALLOWED_IMAGE_EXTENSIONS.values()) or suffix == "jpeg":
            return "jpg" if suffix == "jpeg" else suffix
    return "jpg"


async def read_image_bytes(image_file: Optional[UploadFile], max_bytes: int) -> bytes:
    """Read an uploaded image, enforcing presence and the size limit."""
    if image_file is None:
        raise HTTPException(status_code=400, detail="No file uploaded.")
    image_bytes = await image_file.read(max_bytes + 1)
    if not image_bytes:
        raise HTTPException(status_code=400, detail="No file uploaded.")
    if len(image_bytes) > max_bytes:
        raise HTTPException(status_code=413, detail=f"Image exceeds the {max_bytes} byte limit.")
    return image_bytes
