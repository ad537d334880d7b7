"""SQLite helpers and migrations for the hotel TV core."""

from __future__ import annotations

import asyncio
import contextlib
import shutil
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Tuple, TypeVar

from .logging import get_logger

Migration = Callable[[sqlite3.Connection], None]

DEFAULT_INTEGRITY_CHECK_INTERVAL = 6 * 60 * 60  # seconds
_PRAGMAS = (
    "PRAGMA foreign_keys = ON",
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA busy_timeout = 5000",
)
_CORRUPTION_MARKERS = ("malformed", "corrupt", "not a database")
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

DEFAULT_ADMIN_ID = 1
DEFAULT_HOTEL_NAME = "Hotel TV Management"

DEFAULT_APPS: Tuple[Tuple[str, str], ...] = (
    ("Netflix", "com.netflix.mediaclient"),
    ("YouTube", "com.google.android.youtube.tv"),
    ("Prime Video", "com.amazon.avod.thirdpartyclient"),
    ("Disney+", "com.disney.disneyplus"),
    ("Spotify", "com.spotify.tv.android"),
)

T = TypeVar("T")


class DatabaseCorruptionError(RuntimeError):
    """The database file failed an integrity check or could not be read."""

    def __init__(self, message: str, backup_path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.backup_path = backup_path


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def format_ts(value: datetime) -> str:
    """Render an instant in the canonical UTC storage format."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored or PMS-provided timestamp into an aware UTC datetime."""

    if value is None or value == "":
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _connect(path: Path) -> sqlite3.Connection:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    for pragma in _PRAGMAS:
        conn.execute(pragma)
    return conn


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS system_settings (
            id INTEGER PRIMARY KEY,
            hotel_name TEXT NOT NULL DEFAULT 'Hotel TV Management',
            logo_url TEXT,
            admin_username TEXT NOT NULL,
            pms_base_url TEXT,
            pms_api_key TEXT,
            pms_username TEXT,
            pms_password_hash TEXT,
            pms_connection_status TEXT NOT NULL DEFAULT 'disconnected'
                CHECK (pms_connection_status IN ('disconnected', 'connected', 'error', 'failed')),
            pms_last_sync TEXT,
            created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now')),
            updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
        );

        CREATE TABLE IF NOT EXISTS media_bundles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            description TEXT,
            is_default INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
        );

        CREATE TABLE IF NOT EXISTS media_content (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            bundle_id INTEGER NOT NULL,
            title TEXT NOT NULL,
            type TEXT NOT NULL CHECK (type IN ('image', 'video')),
            content_url TEXT NOT NULL,
            description TEXT,
            order_index INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now')),
            FOREIGN KEY(bundle_id) REFERENCES media_bundles(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS apps (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            package_name TEXT NOT NULL UNIQUE,
            apk_url TEXT,
            app_logo_url TEXT,
            is_allowed INTEGER NOT NULL DEFAULT 1,
            sort_order INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS devices (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            device_id TEXT NOT NULL UNIQUE,
            room_number TEXT,
            status TEXT NOT NULL DEFAULT 'inactive'
                CHECK (status IN ('inactive', 'active')),
            is_online INTEGER NOT NULL DEFAULT 0,
            last_sync TEXT,
            assigned_bundle_id INTEGER,
            is_room_evacuated INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now')),
            updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now')),
            CHECK (status != 'active' OR room_number IS NOT NULL),
            FOREIGN KEY(assigned_bundle_id) REFERENCES media_bundles(id) ON DELETE SET NULL
        );

        CREATE TABLE IF NOT EXISTS guest_stays (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            room_number TEXT NOT NULL,
            guest_name TEXT NOT NULL,
            check_in TEXT,
            check_out TEXT,
            last_pms_sync TEXT
        );

        CREATE TABLE IF NOT EXISTS bills (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            room_number TEXT NOT NULL,
            label TEXT NOT NULL,
            amount REAL NOT NULL DEFAULT 0,
            bill_date TEXT
        );

        CREATE TABLE IF NOT EXISTS notifications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            device_id TEXT NOT NULL,
            room_number TEXT,
            title TEXT NOT NULL,
            body TEXT NOT NULL,
            notification_type TEXT NOT NULL
                CHECK (notification_type IN ('welcome', 'farewell', 'manual', 'system')),
            guest_name TEXT,
            status TEXT NOT NULL DEFAULT 'new'
                CHECK (status IN ('new', 'sent', 'viewed', 'dismissed')),
            scheduled_for TEXT,
            created_at TEXT NOT NULL,
            sent_at TEXT,
            viewed_at TEXT,
            dismissed_at TEXT,
            FOREIGN KEY(device_id) REFERENCES devices(device_id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS guest_checkins (
            room_number TEXT NOT NULL,
            guest_name TEXT NOT NULL,
            last_check_in TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (room_number, guest_name)
        );

        CREATE TABLE IF NOT EXISTS cache_entries (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            expires_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_devices_room_status
            ON devices (room_number, status);
        CREATE INDEX IF NOT EXISTS idx_devices_last_sync
            ON devices (last_sync);
        CREATE INDEX IF NOT EXISTS idx_guest_stays_room
            ON guest_stays (room_number);
        CREATE INDEX IF NOT EXISTS idx_bills_room
            ON bills (room_number);
        CREATE INDEX IF NOT EXISTS idx_notifications_device_status
            ON notifications (device_id, status);
        CREATE INDEX IF NOT EXISTS idx_notifications_scheduled
            ON notifications (status, scheduled_for);
        CREATE INDEX IF NOT EXISTS idx_cache_expires
            ON cache_entries (expires_at);
        """
    )


def _migration_seed_defaults(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        INSERT OR IGNORE INTO system_settings (id, hotel_name, admin_username)
        VALUES (?, ?, ?)
        """,
        (DEFAULT_ADMIN_ID, DEFAULT_HOTEL_NAME, "admin"),
    )
    has_default = conn.execute(
        "SELECT 1 FROM media_bundles WHERE is_default = 1"
    ).fetchone()
    if not has_default:
        conn.execute(
            """
            INSERT INTO media_bundles (name, description, is_default)
            VALUES ('Default Bundle', 'Default media bundle for all devices', 1)
            """
        )
    conn.executemany(
        """
        INSERT OR IGNORE INTO apps (name, package_name, is_allowed, sort_order)
        VALUES (?, ?, 1, ?)
        """,
        [(name, package, index) for index, (name, package) in enumerate(DEFAULT_APPS)],
    )


MIGRATIONS: List[Tuple[int, Migration]] = [
    (1, _migration_initial_schema),
    (2, _migration_seed_defaults),
]


def apply_migrations(db_path: Path) -> int:
    """Bring the schema at ``db_path`` up to date and return its version.

    The version lives in SQLite's ``user_version`` header field, so a fresh
    file starts at 0 and every migration above it runs in order.
    """

    logger = get_logger("hoteltv.migrations")
    conn = _connect(db_path)
    try:
        version = conn.execute("PRAGMA user_version").fetchone()[0]
        pending = [(target, step) for target, step in MIGRATIONS if target > version]
        if not pending:
            logger.info("Schema up to date", extra={"version": version})
        for target, step in pending:
            step(conn)
            conn.execute(f"PRAGMA user_version = {int(target)}")
            conn.commit()
            logger.info("Schema migrated", extra={"from_version": version, "to_version": target})
            version = target
        return version
    finally:
        conn.close()


class DatabaseManager:
    """One shared connection, used from worker threads one call at a time.

    Every public coroutine funnels into :meth:`run`. A background task can
    periodically run ``PRAGMA integrity_check``; a corrupted file is copied
    aside before :class:`DatabaseCorruptionError` surfaces.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        integrity_check_interval: float = DEFAULT_INTEGRITY_CHECK_INTERVAL,
    ) -> None:
        self.db_path = db_path
        self.logger = get_logger("hoteltv.db")
        self._integrity_interval = integrity_check_interval
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()
        self._watchdog: Optional[asyncio.Task[None]] = None
        self._closed = False

    async def start_integrity_checks(self) -> None:
        if self._watchdog is not None or self._integrity_interval <= 0:
            return
        self._watchdog = asyncio.create_task(self._watch_integrity())
        self.logger.info(
            "Integrity watchdog running", extra={"interval_seconds": self._integrity_interval}
        )

    async def close(self) -> None:
        self._closed = True
        watchdog, self._watchdog = self._watchdog, None
        if watchdog is not None:
            watchdog.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watchdog
        async with self._lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            await asyncio.to_thread(conn.close)

    async def run(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        """Execute ``operation(conn)`` in a worker thread under the manager lock."""

        if self._closed:
            raise RuntimeError(f"Database {self.db_path} is closed")
        async with self._lock:
            try:
                return await asyncio.to_thread(self._execute, operation)
            except sqlite3.DatabaseError as exc:
                if not any(marker in str(exc).lower() for marker in _CORRUPTION_MARKERS):
                    raise
                backup = self._copy_aside(str(exc))
                raise DatabaseCorruptionError(
                    f"Database {self.db_path} is unreadable ({exc})", backup
                ) from exc

    async def check_integrity(self) -> List[str]:
        """Return the problems ``PRAGMA integrity_check`` reports (empty when healthy)."""

        rows = await self.run(lambda conn: conn.execute("PRAGMA integrity_check").fetchall())
        return [str(row[0]) for row in rows if str(row[0]).lower() != "ok"]

    def _execute(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        if self._conn is None:
            self._conn = _connect(self.db_path)
        try:
            return operation(self._conn)
        except Exception:
            if self._conn.in_transaction:
                self._conn.rollback()
            raise

    async def _watch_integrity(self) -> None:
        while not self._closed:
            problems = await self.check_integrity()
            if problems:
                backup = self._copy_aside("; ".join(problems))
                self.logger.error(
                    "Integrity check failed; stopping watchdog",
                    extra={"problems": problems[:10], "backup_path": str(backup)},
                )
                raise DatabaseCorruptionError(
                    f"Integrity check failed for {self.db_path}", backup
                )
            await asyncio.sleep(self._integrity_interval)

    def _copy_aside(self, reason: str) -> Path:
        stamp = utcnow().strftime("%Y%m%dT%H%M%S")
        backup = self.db_path.with_name(f"{self.db_path.name}.corrupt-{stamp}")
        try:
            shutil.copy2(self.db_path, backup)
        except OSError:
            self.logger.exception("Could not copy damaged database", extra={"reason": reason})
        else:
            self.logger.error(
                "Damaged database copied aside", extra={"reason": reason, "backup_path": str(backup)}
            )
        return backup
