"""Durable on-device key-value store.

This module provides an async client over a SQLite file using `aiosqlite`.
It is the single process-wide store that keeps the diagnosis history list and
the active model bookkeeping across restarts.
"""

from __future__ import annotations

import os
import time
from typing import Optional

import aiosqlite


class AsyncKeyValueStore:
	"""Async key-value store backed by a single `KV` table.

	Usage:
		store = AsyncKeyValueStore(db_path)
		await store.connect()
		await store.set_atomic("diagnosisHistory", payload)
		await store.close()
	"""

	STAGING_SUFFIX = ".staging"

	def __init__(self, db_path: str | os.PathLike):
		self.db_path = str(db_path)
		self._conn: Optional[aiosqlite.Connection] = None

	async def connect(self) -> None:
		"""Open an aiosqlite connection, enable WAL journaling and create the table."""
		if self._conn:
			return
		os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
		self._conn = await aiosqlite.connect(self.db_path)
		await self._conn.execute("PRAGMA journal_mode=WAL;")
		await self._conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS KV (
				key TEXT PRIMARY KEY,
				value TEXT NOT NULL,
				updated_at REAL NOT NULL
			)
			"""
		)
		await self._conn.commit()

	async def close(self) -> None:
		"""Close the underlying connection if open."""
		if self._conn:
			await self._conn.close()
			self._conn = None

	def _require_conn(self) -> aiosqlite.Connection:
		if not self._conn:
			raise RuntimeError("Key-value store is not open. Call connect() first.")
		return self._conn

	async def get(self, key: str) -> Optional[str]:
		"""Return the value stored under `key`, or None."""
		conn = self._require_conn()
		async with conn.execute("SELECT value FROM KV WHERE key = ?", (key,)) as cur:
			row = await cur.fetchone()
			return row[0] if row else None

	async def set(self, key: str, value: str) -> None:
		"""Store `value` under `key` in a single statement."""
		conn = self._require_conn()
		await conn.execute(
			"INSERT OR REPLACE INTO KV (key, value, updated_at) VALUES (?, ?, ?)",
			(key, value, time.time()),
		)
		await conn.commit()

	async def delete(self, key: str) -> None:
		conn = self._require_conn()
		await conn.execute("DELETE FROM KV WHERE key = ?", (key,))
		await conn.commit()

	async def set_atomic(self, key: str, value: str) -> None:
		"""Write `value` to a staging key, then swap it onto `key`.

		The swap runs in one transaction; if anything fails the previous value
		of `key` is left untouched and the staging row is discarded.
		"""
		conn = self._require_conn()
		staging = key + self.STAGING_SUFFIX
		await self.set(staging, value)
		try:
			await conn.execute(
				"INSERT OR REPLACE INTO KV (key, value, updated_at) "
				"SELECT ?, value, ? FROM KV WHERE key = ?",
				(key, time.time(), staging),
			)
			await conn.execute("DELETE FROM KV WHERE key = ?", (staging,))
			await conn.commit()
		except Exception:
			await conn.rollback()
			raise

	async def __aenter__(self) -> "AsyncKeyValueStore":
		await self.connect()
		return self

	async def __aexit__(self, exc_type, exc, tb) -> None:
		await self.close()
