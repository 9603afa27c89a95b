"""
SQLite-backed queue of named, time-triggered jobs.

Provides "run this named job at this time" semantics for the trim hooks:
one-shot jobs (continuations) and recurring jobs (the daily trigger).
Dispatchers claim due jobs with a TTL, so a dispatcher that dies mid-job
leaves the job to be claimed again once the claim expires (at-least-once).

Usage:
    queue = JobQueue("data/interactions.db")
    queue.schedule_once("interaction_trim_continue", run_time)
    for job in queue.claim_due("dispatcher-0"):
        ...
        queue.complete(job)
"""

import sqlite3
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from loguru import logger
from pydantic import BaseModel

from src.storage.sqlite_store import StorageError, create_connection, dt_to_str, str_to_dt
from src.trim.interfaces import TaskRunner

# ── SQL Statements ──────────────────────────────────────────────────────────

CREATE_JOBS_TABLE = """
CREATE TABLE IF NOT EXISTS scheduled_jobs (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    name              TEXT NOT NULL,
    run_at            TEXT NOT NULL,
    interval_seconds  INTEGER,
    claim_worker_id   TEXT,
    claimed_until     TEXT,
    created_at        TEXT NOT NULL
)
"""

CREATE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_jobs_name ON scheduled_jobs(name, run_at);
CREATE INDEX IF NOT EXISTS idx_jobs_run_at ON scheduled_jobs(run_at);
"""

# A job is pending when nobody holds a live claim on it.
UNCLAIMED = "(claimed_until IS NULL OR claimed_until <= :now)"


class JobQueueError(StorageError):
    """Raised when the job queue cannot be read or written."""


class ScheduledJob(BaseModel):
    """One row of the job queue."""

    id: int
    name: str
    run_at: datetime
    interval_seconds: int | None = None
    claim_worker_id: str | None = None
    claimed_until: datetime | None = None

    @property
    def is_recurring(self) -> bool:
        return bool(self.interval_seconds)


def _row_to_job(row: sqlite3.Row) -> ScheduledJob:
    data = dict(row)
    data.pop("created_at", None)
    data["run_at"] = str_to_dt(data["run_at"])
    data["claimed_until"] = str_to_dt(data["claimed_until"])
    return ScheduledJob(**data)


class JobQueue(TaskRunner):
    """Persistent scheduled-task runner backed by SQLite.

    Usage:
        queue = JobQueue("data/interactions.db", claim_ttl_seconds=300)
        queue.schedule_recurring("interaction_trim_daily", timedelta(days=1), first_run)
        queue.is_any_scheduled("interaction_trim_daily")
    """

    def __init__(
        self,
        db_path: str = "data/interactions.db",
        claim_ttl_seconds: int = 300,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db_path = db_path
        self._claim_ttl = timedelta(seconds=claim_ttl_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._conn = create_connection(db_path)
        self._conn.executescript(CREATE_JOBS_TABLE)
        self._conn.executescript(CREATE_INDEXES)
        self._conn.commit()
        logger.debug("Job queue tables ensured at {}", db_path)

    def close(self) -> None:
        self._conn.close()

    # ── Scheduling ──────────────────────────────────────────────────

    def schedule_once(self, name: str, run_time: datetime) -> None:
        self._insert(name, run_time, None)

    def schedule_recurring(self, name: str, interval: timedelta, first_run_time: datetime) -> None:
        seconds = int(interval.total_seconds())
        if seconds <= 0:
            raise JobQueueError(f"Recurring job {name} needs a positive interval, got {interval}")
        self._insert(name, first_run_time, seconds)

    def cancel_all(self, name: str) -> int:
        """Remove every job with this name, claimed or not.

        Returns:
            Number of jobs removed.
        """
        try:
            count = self._conn.execute(
                "DELETE FROM scheduled_jobs WHERE name = :name", {"name": name}
            ).rowcount
            self._conn.commit()
        except sqlite3.Error as e:
            self._conn.rollback()
            raise JobQueueError(f"Failed to cancel {name}: {e}") from e
        if count > 0:
            logger.debug("Job queue: cancelled {} x {}", count, name)
        return count

    def is_any_scheduled(self, name: str, include_claimed: bool = False) -> bool:
        """True if a job with this name exists.

        By default a job currently claimed by a dispatcher does not count: it
        is running now, not waiting. Pass ``include_claimed=True`` to ask
        whether the job is installed at all (e.g. a recurring trigger).
        """
        condition = "" if include_claimed else f" AND {UNCLAIMED}"
        try:
            row = self._conn.execute(
                f"SELECT 1 FROM scheduled_jobs WHERE name = :name{condition} LIMIT 1",
                {"name": name, "now": dt_to_str(self._clock())},
            ).fetchone()
        except sqlite3.Error as e:
            raise JobQueueError(f"Failed to look up {name}: {e}") from e
        return row is not None

    def count_scheduled(self, name: str) -> int:
        row = self._conn.execute(
            f"SELECT COUNT(*) AS cnt FROM scheduled_jobs WHERE name = :name AND {UNCLAIMED}",
            {"name": name, "now": dt_to_str(self._clock())},
        ).fetchone()
        return int(row["cnt"])

    def next_run_time(self, name: str) -> datetime | None:
        row = self._conn.execute(
            "SELECT MIN(run_at) AS run_at FROM scheduled_jobs WHERE name = :name",
            {"name": name},
        ).fetchone()
        return str_to_dt(row["run_at"])

    # ── Dispatch ────────────────────────────────────────────────────

    def claim_due(self, worker_id: str, limit: int = 10) -> list[ScheduledJob]:
        """Claim up to ``limit`` jobs whose run time has arrived, oldest first.

        Each claim is a conditional update, so two dispatchers racing for the
        same row cannot both win it.
        """
        now = self._clock()
        params = {"now": dt_to_str(now), "limit": limit}
        rows = self._conn.execute(
            f"""SELECT * FROM scheduled_jobs
                WHERE run_at <= :now AND {UNCLAIMED}
                ORDER BY run_at ASC, id ASC
                LIMIT :limit""",
            params,
        ).fetchall()

        claimed: list[ScheduledJob] = []
        claimed_until = now + self._claim_ttl
        for row in rows:
            job = _row_to_job(row)
            updated = self._conn.execute(
                f"""UPDATE scheduled_jobs
                    SET claim_worker_id = :worker_id, claimed_until = :claimed_until
                    WHERE id = :id AND {UNCLAIMED}""",
                {
                    "worker_id": worker_id,
                    "claimed_until": dt_to_str(claimed_until),
                    "id": job.id,
                    "now": dt_to_str(now),
                },
            ).rowcount
            if updated:
                job.claim_worker_id = worker_id
                job.claimed_until = claimed_until
                claimed.append(job)
        self._conn.commit()
        return claimed

    def complete(self, job: ScheduledJob) -> None:
        """Finish a claimed job: delete one-shots, roll recurring jobs forward.

        A job cancelled while it was running is already gone; that is fine.
        """
        if not job.is_recurring:
            self._conn.execute("DELETE FROM scheduled_jobs WHERE id = :id", {"id": job.id})
            self._conn.commit()
            return

        now = self._clock()
        interval = timedelta(seconds=job.interval_seconds or 0)
        next_run = job.run_at
        while next_run <= now:
            next_run += interval
        self._conn.execute(
            """UPDATE scheduled_jobs
               SET run_at = :run_at, claim_worker_id = NULL, claimed_until = NULL
               WHERE id = :id""",
            {"run_at": dt_to_str(next_run), "id": job.id},
        )
        self._conn.commit()
        logger.debug("Job queue: {} next run at {}", job.name, next_run.isoformat())

    def recycle_expired_claims(self) -> int:
        """Clear claims left by a dispatcher that died. Returns number recycled."""
        count = self._conn.execute(
            """UPDATE scheduled_jobs
               SET claim_worker_id = NULL, claimed_until = NULL
               WHERE claimed_until IS NOT NULL AND claimed_until <= :now""",
            {"now": dt_to_str(self._clock())},
        ).rowcount
        self._conn.commit()
        if count > 0:
            logger.warning("Job queue: recycled {} expired claims", count)
        return count

    # ── Internal Helpers ────────────────────────────────────────────

    def _insert(self, name: str, run_time: datetime, interval_seconds: int | None) -> None:
        try:
            self._conn.execute(
                """INSERT INTO scheduled_jobs (name, run_at, interval_seconds, created_at)
                   VALUES (:name, :run_at, :interval, :now)""",
                {
                    "name": name,
                    "run_at": dt_to_str(run_time),
                    "interval": interval_seconds,
                    "now": dt_to_str(self._clock()),
                },
            )
            self._conn.commit()
        except sqlite3.Error as e:
            self._conn.rollback()
            raise JobQueueError(f"Failed to schedule {name}: {e}") from e
