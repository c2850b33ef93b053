"""Request authentication via the `x-auth-token` header."""

from typing import Optional

from fastapi import Header, HTTPException, Request

from dal.token_dal import TokenDAL


async def require_owner(request: Request, x_auth_token: Optional[str] = Header(None)) -> str:
    """FastAPI dependency returning the authenticated owner id.

    Raises:
        HTTPException(401) when the token is missing or unknown.
    """
    if not x_auth_token:
        raise HTTPException(status_code=401, detail="No token, authorization denied")
    db_initializer = getattr(request.app.state, "db_initializer", None)
    if db_initializer is None:
        raise HTTPException(status_code=500, detail="Database not initialized.")
    owner_id = await TokenDAL(db_initializer).resolve_owner(x_auth_token)
    if owner_id is None:
        raise HTTPException(status_code=401, detail="Token is not valid")
    return owner_id


def require_admin(request: Request, x_admin_token: Optional[str] = Header(None)) -> None:
    """FastAPI dependency guarding the admin export route."""
    settings = request.app.state.settings
    if not settings.admin_token or x_admin_token != settings.admin_token:
        raise HTTPException(status_code=403, detail="Admin access denied")
