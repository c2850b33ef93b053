"""Async Data Access Layer for the AUTH_TOKEN table."""

from __future__ import annotations

import time
from typing import Optional
from uuid import uuid4

from utils.database_init import AsyncDatabaseInitializer


class TokenDAL:
    """Issue and resolve opaque per-user credentials."""

    def __init__(self, db_initializer: AsyncDatabaseInitializer) -> None:
        self._db = db_initializer

    async def issue_token(self, owner_id: str) -> str:
        """Create a new token for `owner_id` and return it."""
        owner_id = owner_id.strip()
        if not owner_id:
            raise ValueError("owner_id is required")
        token = uuid4().hex + uuid4().hex
        async with self._db.connection() as conn:
            await conn.execute(
                "INSERT INTO AUTH_TOKEN (token, owner_id, created_at) VALUES (?, ?, ?)",
                (token, owner_id, int(time.time())),
            )
            await conn.commit()
        return token

    async def resolve_owner(self, token: str) -> Optional[str]:
        """Return the owner id for `token`, or None if unknown."""
        async with self._db.connection() as conn:
            cur = await conn.execute("SELECT owner_id FROM AUTH_TOKEN WHERE token = ?", (token,))
            row = await cur.fetchone()
            return row[0] if row else None

    async def revoke_token(self, token: str) -> bool:
        """Delete a token. Returns True if a row was deleted."""
        async with self._db.connection() as conn:
            await conn.execute("DELETE FROM AUTH_TOKEN WHERE token = ?", (token,))
            await conn.commit()
            cur = await conn.execute("SELECT changes()")
            changed = await cur.fetchone()
            return bool(changed and changed[0] > 0)
