"""Async Data Access Layer for the SCAN table.

Provides ScanDAL with async upsert/list operations compatible with
`utils.database_init.AsyncDatabaseInitializer`.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from models.scan_document import ScanDocument, ScanSubmission
from utils.database_init import AsyncDatabaseInitializer


def _utc_iso(value: Optional[datetime]) -> Optional[str]:
    """Render timestamps in UTC so the TEXT columns sort chronologically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class ScanDAL:
    """Data access layer for remote scan documents.

    The constructor accepts an `AsyncDatabaseInitializer` (or any object
    exposing an async `connection()` context manager that yields an
    `aiosqlite.Connection`).
    """

    _COLUMNS = ("id", "owner_id", "local_id", "received_at", "document")
    _COLUMN_LIST = ", ".join(_COLUMNS)

    def __init__(self, db_initializer: AsyncDatabaseInitializer) -> None:
        self._db = db_initializer

    async def upsert_scan(
        self,
        owner_id: str,
        submission: ScanSubmission,
        received_at: Optional[datetime] = None,
    ) -> ScanDocument:
        """Insert a scan or update the existing one with the same (owner, localId).

        Args:
            owner_id: Authenticated owner of the document.
            submission: Validated submission payload.
            received_at: Server receipt time; defaults to now (UTC).

        Returns:
            The stored ScanDocument, including its row id.
        """
        received_at = received_at or datetime.now(timezone.utc)
        document = submission.model_dump(mode="json", by_alias=True)
        captured_at = _utc_iso(submission.timestamp)

        async with self._db.connection() as conn:
            await conn.execute(
                """
                INSERT INTO SCAN (owner_id, local_id, captured_at, received_at, document)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (owner_id, local_id) DO UPDATE SET
                    captured_at = excluded.captured_at,
                    received_at = excluded.received_at,
                    document = excluded.document
                """,
                (owner_id, submission.local_id, captured_at, _utc_iso(received_at), json.dumps(document)),
            )
            await conn.commit()
            cur = await conn.execute(
                "SELECT id FROM SCAN WHERE owner_id = ? AND local_id = ?",
                (owner_id, submission.local_id),
            )
            row = await cur.fetchone()

        return ScanDocument(
            **submission.model_dump(),
            id=row[0] if row else None,
            owner_id=owner_id,
            received_at=received_at,
        )

    async def list_scans_for_owner(self, owner_id: str, limit: int = 1000, offset: int = 0) -> List[ScanDocument]:
        """Return documents owned by `owner_id`, newest first."""
        async with self._db.connection() as conn:
            cur = await conn.execute(
                f"SELECT {self._COLUMN_LIST} FROM SCAN WHERE owner_id = ? "
                "ORDER BY COALESCE(captured_at, received_at) DESC, id DESC LIMIT ? OFFSET ?",
                (owner_id, limit, offset),
            )
            rows = await cur.fetchall()
            return [self._row_to_document(r) for r in rows]

    async def list_all_scans(self) -> List[ScanDocument]:
        """Return every stored document, newest first."""
        async with self._db.connection() as conn:
            cur = await conn.execute(
                f"SELECT {self._COLUMN_LIST} FROM SCAN ORDER BY COALESCE(captured_at, received_at) DESC, id DESC"
            )
            rows = await cur.fetchall()
            return [self._row_to_document(r) for r in rows]

    async def count_owners(self) -> int:
        async with self._db.connection() as conn:
            cur = await conn.execute("SELECT COUNT(DISTINCT owner_id) FROM SCAN")
            row = await cur.fetchone()
            return int(row[0]) if row and row[0] is not None else 0

    @staticmethod
    def _row_to_document(row: Sequence[object]) -> ScanDocument:
        """Convert a DB row tuple into a ScanDocument."""
        payload = json.loads(row[4])
        return ScanDocument.model_validate(
            {**payload, "id": row[0], "ownerId": row[1], "receivedAt": row[3]}
        )
