"""FastAPI routes for scan sync, scan documents and image upload."""

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, File, HTTPException, Request, UploadFile

from controllers.scan_controller import (
	create_scan,
	list_scans,
	sync_scans,
	upload_image,
	upload_image_web,
)
from utils.auth import require_owner

router = APIRouter(prefix="/api/scans", tags=["scans"])


@router.post("/upload-image")
async def upload_image_route(request: Request, image: Optional[UploadFile] = File(None)):
	"""Store a multipart image (field `image`) and return its URL."""
	try:
		return await upload_image(request, image)
	except HTTPException:
		raise
	except ValueError as exc:
		raise HTTPException(status_code=400, detail=str(exc)) from exc
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/upload-image-web")
async def upload_image_web_route(request: Request, payload: Any = Body(None)):
	"""Store a base64 data URI image for clients without multipart support."""
	if not isinstance(payload, dict) or "imageData" not in payload:
		raise HTTPException(status_code=400, detail="imageData is required.")
	try:
		return await upload_image_web(request, payload["imageData"])
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/sync")
async def sync_scans_route(request: Request, payload: Any = Body(None), owner_id: str = Depends(require_owner)):
	"""Store a batch of offline scans with per-item failure isolation."""
	if not isinstance(payload, list):
		raise HTTPException(status_code=400, detail="Data must be an array of scans")
	try:
		return await sync_scans(request, owner_id, payload)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.get("")
async def list_scans_route(request: Request, owner_id: str = Depends(require_owner)):
	try:
		return await list_scans(request, owner_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("")
async def create_scan_route(request: Request, payload: Any = Body(None), owner_id: str = Depends(require_owner)):
	try:
		return await create_scan(request, owner_id, payload)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))
