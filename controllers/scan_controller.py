"""Controllers for scan synchronization, creation and image upload."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, Request, UploadFile
from pydantic import ValidationError

from dal.scan_dal import ScanDAL
from models.scan_document import ScanSubmission
from services.image_store import save_scan_image
from utils.media_validation import ImageDataError, parse_data_uri, read_image_bytes

LOGGER = logging.getLogger(__name__)


def describe_validation_error(exc: ValidationError) -> str:
    """Flatten a pydantic ValidationError into a single readable line."""
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def _local_id_of(item: Any) -> Optional[str]:
    if isinstance(item, dict):
        value = item.get("localId", item.get("local_id"))
        return str(value) if value is not None else None
    return None


async def sync_scans(request: Request, owner_id: str, scans: List[Any]) -> Dict[str, Any]:
    """Store each scan in a batch independently and report per-item results.

    A malformed or unstorable element is reported in `errors` and never
    prevents the remaining elements from being saved.

    Args:
        request: FastAPI Request (used to access app.state.db_initializer).
        owner_id: Authenticated owner of every document in the batch.
        scans: Raw JSON array elements from the request body.

    Returns:
        A dict with `msg`, `syncedCount`, `savedIds` and `errors`.
    """
    scan_dal = ScanDAL(request.app.state.db_initializer)
    received_at = datetime.now(timezone.utc)
    saved_ids: List[str] = []
    errors: List[Dict[str, Any]] = []

    for item in scans:
        local_id = _local_id_of(item)
        try:
            submission = ScanSubmission.model_validate(item)
            await scan_dal.upsert_scan(owner_id, submission, received_at=received_at)
        except ValidationError as exc:
            message = describe_validation_error(exc)
            LOGGER.warning("Rejected scan %s from %s: %s", local_id, owner_id, message)
            errors.append({"localId": local_id, "error": message})
            continue
        except Exception as exc:  # pylint: disable=broad-exception-caught
            LOGGER.error("Error saving scan %s for %s: %s", local_id, owner_id, exc)
            errors.append({"localId": local_id, "error": str(exc)})
            continue
        saved_ids.append(submission.local_id)

    return {
        "msg": "Sync complete",
        "syncedCount": len(saved_ids),
        "savedIds": saved_ids,
        "errors": errors,
    }


async def create_scan(request: Request, owner_id: str, payload: Any) -> Dict[str, Any]:
    """Validate and store a single scan document, returning it as JSON."""
    try:
        submission = ScanSubmission.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=describe_validation_error(exc)) from exc
    document = await ScanDAL(request.app.state.db_initializer).upsert_scan(owner_id, submission)
    return document.model_dump(mode="json", by_alias=True)


async def list_scans(request: Request, owner_id: str) -> List[Dict[str, Any]]:
    """Return the caller's documents, newest first."""
    documents = await ScanDAL(request.app.state.db_initializer).list_scans_for_owner(owner_id)
    return [doc.model_dump(mode="json", by_alias=True) for doc in documents]


async def upload_image(request: Request, image: Optional[UploadFile]) -> Dict[str, str]:
    """Persist a multipart image upload and return its public URL."""
    settings = request.app.state.settings
    image_bytes = await read_image_bytes(image, settings.max_upload_bytes)
    image_url = await save_scan_image(
        settings.uploads_dir, image_bytes, image.content_type, original_filename=image.filename
    )
    LOGGER.info("Stored uploaded image %s (%d bytes)", image_url, len(image_bytes))
    return {"imageUrl": image_url}


async def upload_image_web(request: Request, image_data: Any) -> Dict[str, str]:
    """Decode a base64 data URI image and persist it like a multipart upload."""
    settings = request.app.state.settings
    try:
        mime_type, image_bytes = parse_data_uri(image_data)
    except ImageDataError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if len(image_bytes) > settings.max_upload_bytes:
        raise HTTPException(status_code=413, detail=f"Image exceeds the {settings.max_upload_bytes} byte limit.")
    image_url = await save_scan_image(settings.uploads_dir, image_bytes, mime_type)
    LOGGER.info("Stored inline image %s (%d bytes)", image_url, len(image_bytes))
    return {"imageUrl": image_url}


async def export_all(request: Request) -> Dict[str, Any]:
    """Return every stored document with simple totals."""
    scan_dal = ScanDAL(request.app.state.db_initializer)
    documents = await scan_dal.list_all_scans()
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "stats": {"totalOwners": await scan_dal.count_owners(), "totalScans": len(documents)},
        "scans": [doc.model_dump(mode="json", by_alias=True) for doc in documents],
    }
