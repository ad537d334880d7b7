"""TTL cache for ephemeral PMS and device-sync snapshots."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from .db import DatabaseManager, format_ts, utcnow
from .logging import get_logger


class TtlCache:
    """JSON values with an expiry, stored alongside the relational data.

    Expired entries are never returned; ``purge_expired`` reclaims them.
    """

    def __init__(self, db: DatabaseManager, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self._clock = clock
        self.logger = get_logger("hoteltv.cache")

    async def get(self, key: str) -> Optional[Any]:
        now = format_ts(self._clock())
        return await self.db.run(lambda conn: self._get(conn, key, now))

    def _get(self, conn: sqlite3.Connection, key: str, now: str) -> Optional[Any]:
        row = conn.execute(
            "SELECT value FROM cache_entries WHERE key = ? AND expires_at > ?",
            (key, now),
        ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            self.logger.warning("Discarding undecodable cache entry", extra={"key": key})
            return None

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        expires_at = format_ts(self._clock() + timedelta(seconds=ttl_seconds))
        payload = json.dumps(value, ensure_ascii=False, default=str)
        await self.db.run(lambda conn: self._set(conn, key, payload, expires_at))

    def _set(self, conn: sqlite3.Connection, key: str, payload: str, expires_at: str) -> None:
        conn.execute(
            """
            INSERT INTO cache_entries (key, value, expires_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                expires_at = excluded.expires_at
            """,
            (key, payload, expires_at),
        )
        conn.commit()

    async def delete(self, key: str) -> bool:
        return await self.db.run(lambda conn: self._delete(conn, key))

    def _delete(self, conn: sqlite3.Connection, key: str) -> bool:
        cursor = conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
        conn.commit()
        return cursor.rowcount > 0

    async def purge_expired(self) -> int:
        now = format_ts(self._clock())
        removed = await self.db.run(lambda conn: self._purge_expired(conn, now))
        if removed:
            self.logger.debug("Purged expired cache entries", extra={"count": removed})
        return removed

    def _purge_expired(self, conn: sqlite3.Connection, now: str) -> int:
        cursor = conn.execute("DELETE FROM cache_entries WHERE expires_at <= ?", (now,))
        conn.commit()
        return cursor.rowcount
