"""
SQLite-backed store for reader interactions and site settings.

Holds the continuously growing interactions log (likes, ratings, follows,
views) that retention trimming keeps bounded. Uses WAL journal mode so request
handlers can keep reading while a trim batch deletes. All methods are
synchronous — callers use asyncio.to_thread() from async code.

Usage:
    store = InteractionStore("data/interactions.db")
    store.record_interaction(InteractionRecord(chapter_id=3, kind="like"))
    deleted = store.delete_oldest_anonymous(1000)
"""

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from loguru import logger

from src.trim.interfaces import RecordStore, SettingsStore
from src.trim.schemas import InteractionRecord

# ── SQL Statements ──────────────────────────────────────────────────────────

CREATE_INTERACTIONS_TABLE = """
CREATE TABLE IF NOT EXISTS interactions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         INTEGER,
    chapter_id      INTEGER NOT NULL DEFAULT 0,
    kind            TEXT NOT NULL DEFAULT 'view',
    value           REAL,
    anonymous_uuid  TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
)
"""

CREATE_SETTINGS_TABLE = """
CREATE TABLE IF NOT EXISTS settings (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  TEXT NOT NULL
)
"""

CREATE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_interactions_trim ON interactions(user_id, updated_at, id);
CREATE INDEX IF NOT EXISTS idx_interactions_chapter ON interactions(chapter_id, kind);
"""

INSERT_INTERACTION_SQL = """
INSERT INTO interactions (
    user_id, chapter_id, kind, value, anonymous_uuid, created_at, updated_at
) VALUES (
    :user_id, :chapter_id, :kind, :value, :anonymous_uuid, :created_at, :updated_at
)
"""

DELETE_OLDEST_ANONYMOUS_SQL = """
DELETE FROM interactions
WHERE id IN (
    SELECT id FROM interactions
    WHERE user_id IS NULL
    ORDER BY updated_at ASC, id ASC
    LIMIT :limit
)
"""


# ── Exceptions ──────────────────────────────────────────────────────────────


class StorageError(Exception):
    """Base exception for interaction, trim-state and job-queue storage operations."""


# ── Helper Functions ────────────────────────────────────────────────────────


def dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to a fixed-width UTC ISO 8601 string, or None.

    Fixed width keeps lexicographic order equal to chronological order.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO 8601 string to datetime, or None."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def create_connection(db_path: str) -> sqlite3.Connection:
    """Create a SQLite connection with WAL mode and row factory."""
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn


def _row_to_interaction(row: sqlite3.Row) -> InteractionRecord:
    """Convert a database row to an InteractionRecord model."""
    data = dict(row)
    for dt_field in ("created_at", "updated_at"):
        data[dt_field] = str_to_dt(data[dt_field])
    return InteractionRecord(**data)


def _record_params(record: InteractionRecord) -> dict[str, Any]:
    return {
        "user_id": record.user_id,
        "chapter_id": record.chapter_id,
        "kind": record.kind,
        "value": record.value,
        "anonymous_uuid": record.anonymous_uuid,
        "created_at": dt_to_str(record.created_at),
        "updated_at": dt_to_str(record.updated_at),
    }


# ── InteractionStore ────────────────────────────────────────────────────────


class InteractionStore(RecordStore, SettingsStore):
    """SQLite-backed interactions log plus key/value site settings.

    Thread-safe for single-writer, multiple-reader pattern (WAL mode).

    Usage:
        store = InteractionStore("data/interactions.db")
        store.count_anonymous()
        store.get_setting("cron_hour", 3)
    """

    def __init__(self, db_path: str = "data/interactions.db") -> None:
        self._db_path = db_path
        self._conn = create_connection(db_path)
        self._ensure_tables()

    def _ensure_tables(self) -> None:
        """Create tables and indexes if they don't exist."""
        self._conn.executescript(CREATE_INTERACTIONS_TABLE)
        self._conn.executescript(CREATE_SETTINGS_TABLE)
        self._conn.executescript(CREATE_INDEXES)
        self._conn.commit()
        logger.debug("Interaction store tables ensured at {}", self._db_path)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
        logger.debug("Interaction store connection closed")

    # ── Writes ──────────────────────────────────────────────────────

    def record_interaction(self, record: InteractionRecord) -> int:
        """Insert one interaction and return its new id."""
        cursor = self._conn.execute(INSERT_INTERACTION_SQL, _record_params(record))
        self._conn.commit()
        return int(cursor.lastrowid)

    def insert_many(self, records: Iterable[InteractionRecord]) -> int:
        """Bulk insert interactions in one transaction.

        Returns:
            Number of rows inserted.
        """
        params = [_record_params(r) for r in records]
        if not params:
            return 0
        self._conn.executemany(INSERT_INTERACTION_SQL, params)
        self._conn.commit()
        logger.debug("Inserted {} interactions", len(params))
        return len(params)

    def touch(self, interaction_id: int, when: datetime | None = None) -> bool:
        """Bump updated_at on an interaction (e.g. a re-rating)."""
        when = when or datetime.now(timezone.utc)
        updated = self._conn.execute(
            "UPDATE interactions SET updated_at = :ts WHERE id = :id",
            {"ts": dt_to_str(when), "id": interaction_id},
        ).rowcount
        self._conn.commit()
        return bool(updated)

    # ── Queries ─────────────────────────────────────────────────────

    def get_interaction(self, interaction_id: int) -> InteractionRecord | None:
        row = self._conn.execute(
            "SELECT * FROM interactions WHERE id = :id", {"id": interaction_id}
        ).fetchone()
        if row is None:
            return None
        return _row_to_interaction(row)

    def count_anonymous(self) -> int:
        """Count rows with no owning user — the trimmable population."""
        try:
            row = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM interactions WHERE user_id IS NULL"
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to count anonymous interactions: {e}") from e
        return int(row["cnt"])

    def count_owned(self) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS cnt FROM interactions WHERE user_id IS NOT NULL"
        ).fetchone()
        return int(row["cnt"])

    # ── Retention ───────────────────────────────────────────────────

    def delete_oldest_anonymous(self, limit: int) -> int:
        """Delete up to ``limit`` anonymous interactions, least recently updated first.

        Ties on updated_at are broken by id so repeated batches walk the
        table in a fixed order. Rows with a user_id are never touched.

        Returns:
            Number of rows actually deleted.
        """
        if limit <= 0:
            return 0
        try:
            cursor = self._conn.execute(DELETE_OLDEST_ANONYMOUS_SQL, {"limit": int(limit)})
            self._conn.commit()
        except sqlite3.Error as e:
            self._conn.rollback()
            raise StorageError(f"Failed to delete anonymous interactions: {e}") from e
        return cursor.rowcount

    # ── Settings ────────────────────────────────────────────────────

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Read a JSON-encoded setting, returning ``default`` if unset or unreadable."""
        row = self._conn.execute(
            "SELECT value FROM settings WHERE key = :key", {"key": key}
        ).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            logger.warning("Setting {} holds invalid JSON — using default", key)
            return default

    def set_setting(self, key: str, value: Any) -> Any:
        """Write a setting and return its previous value (None if unset)."""
        previous = self.get_setting(key)
        self._conn.execute(
            """INSERT INTO settings (key, value, updated_at)
               VALUES (:key, :value, :now)
               ON CONFLICT(key) DO UPDATE
               SET value = excluded.value,
                   updated_at = excluded.updated_at""",
            {
                "key": key,
                "value": json.dumps(value),
                "now": dt_to_str(datetime.now(timezone.utc)),
            },
        )
        self._conn.commit()
        logger.info("Setting {} updated: {} → {}", key, previous, value)
        return previous
