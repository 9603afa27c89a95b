"""
SQLite-backed persistence for trim run state and lock leases.

The run state is a single JSON option row replaced atomically on every write.
Leases are named rows with an expiry; acquisition is a single conditional
upsert so two processes can never both take a live lease.

Usage:
    state = TrimStateStore("data/interactions.db")
    if state.try_acquire("interaction_trim_lock", ttl_seconds=165):
        ...
        state.release("interaction_trim_lock")
"""

import sqlite3
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from loguru import logger
from pydantic import ValidationError

from src.storage.sqlite_store import StorageError, create_connection, dt_to_str, str_to_dt
from src.trim.interfaces import LeaseStore, RunStateStore
from src.trim.schemas import RunState

RUN_STATE_OPTION = "interaction_trim_state"

CREATE_OPTIONS_TABLE = """
CREATE TABLE IF NOT EXISTS options (
    name        TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  TEXT NOT NULL
)
"""

CREATE_LEASES_TABLE = """
CREATE TABLE IF NOT EXISTS leases (
    name         TEXT PRIMARY KEY,
    token        TEXT NOT NULL,
    acquired_at  TEXT NOT NULL,
    expires_at   TEXT NOT NULL
)
"""

ACQUIRE_LEASE_SQL = """
INSERT INTO leases (name, token, acquired_at, expires_at)
VALUES (:name, :token, :now, :expires_at)
ON CONFLICT(name) DO UPDATE
SET token = excluded.token,
    acquired_at = excluded.acquired_at,
    expires_at = excluded.expires_at
WHERE leases.expires_at <= :now
"""


class TrimStateStore(RunStateStore, LeaseStore):
    """Run state option plus TTL leases, sharing the interactions database.

    Usage:
        state = TrimStateStore("data/interactions.db")
        state.save_run_state(RunState(remaining=151_500, scheduled_jobs=52))
        state.get_run_state()
    """

    def __init__(
        self,
        db_path: str = "data/interactions.db",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db_path = db_path
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._conn = create_connection(db_path)
        self._conn.executescript(CREATE_OPTIONS_TABLE)
        self._conn.executescript(CREATE_LEASES_TABLE)
        self._conn.commit()
        logger.debug("Trim state tables ensured at {}", db_path)

    def close(self) -> None:
        self._conn.close()

    # ── Run State ───────────────────────────────────────────────────

    def get_run_state(self) -> RunState | None:
        """Return the persisted run state, or None when idle.

        A corrupt row is treated as absent so a new cycle can start cleanly.
        """
        row = self._conn.execute(
            "SELECT value FROM options WHERE name = :name", {"name": RUN_STATE_OPTION}
        ).fetchone()
        if row is None:
            return None
        try:
            return RunState.model_validate_json(row["value"])
        except ValidationError as e:
            logger.warning("Trim state: discarding unreadable run state: {}", e)
            return None

    def save_run_state(self, state: RunState) -> None:
        """Replace the run state in one statement."""
        try:
            self._conn.execute(
                "INSERT OR REPLACE INTO options (name, value, updated_at) "
                "VALUES (:name, :value, :now)",
                {
                    "name": RUN_STATE_OPTION,
                    "value": state.model_dump_json(),
                    "now": dt_to_str(self._clock()),
                },
            )
            self._conn.commit()
        except sqlite3.Error as e:
            self._conn.rollback()
            raise StorageError(f"Failed to save run state: {e}") from e

    def clear_run_state(self) -> None:
        try:
            self._conn.execute(
                "DELETE FROM options WHERE name = :name", {"name": RUN_STATE_OPTION}
            )
            self._conn.commit()
        except sqlite3.Error as e:
            self._conn.rollback()
            raise StorageError(f"Failed to clear run state: {e}") from e

    # ── Leases ──────────────────────────────────────────────────────

    def try_acquire(self, name: str, ttl_seconds: int) -> bool:
        """Take the named lease if it is free or expired.

        Returns:
            True if this call now holds the lease.
        """
        now = self._clock()
        try:
            cursor = self._conn.execute(
                ACQUIRE_LEASE_SQL,
                {
                    "name": name,
                    "token": uuid4().hex,
                    "now": dt_to_str(now),
                    "expires_at": dt_to_str(now + timedelta(seconds=ttl_seconds)),
                },
            )
            self._conn.commit()
        except sqlite3.Error as e:
            self._conn.rollback()
            raise StorageError(f"Failed to acquire lease {name}: {e}") from e
        return cursor.rowcount > 0

    def release(self, name: str) -> None:
        try:
            self._conn.execute("DELETE FROM leases WHERE name = :name", {"name": name})
            self._conn.commit()
        except sqlite3.Error as e:
            self._conn.rollback()
            raise StorageError(f"Failed to release lease {name}: {e}") from e

    def lease_expires_at(self, name: str) -> datetime | None:
        """Expiry of a live lease, or None if the lease is free."""
        row = self._conn.execute(
            "SELECT expires_at FROM leases WHERE name = :name AND expires_at > :now",
            {"name": name, "now": dt_to_str(self._clock())},
        ).fetchone()
        if row is None:
            return None
        return str_to_dt(row["expires_at"])
