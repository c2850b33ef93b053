from fastapi import APIRouter, Depends, HTTPException, Request

from controllers.scan_controller import export_all
from utils.auth import require_admin

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/export", dependencies=[Depends(require_admin)])
async def export_route(request: Request):
    """Export every stored scan with owner and scan totals."""
    try:
        return await export_all(request)
    except HTTPException:
        raise
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))
