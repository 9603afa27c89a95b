"""
Shared fixtures: real SQLite stores on tmp_path, a controllable clock,
and small trim thresholds so cycles finish in a handful of batches.
"""

from datetime import datetime, timedelta, timezone

import pytest

from src.config import TrimConfig
from src.scheduler.job_queue import JobQueue
from src.storage.sqlite_store import InteractionStore
from src.storage.state_store import TrimStateStore
from src.trim.schemas import InteractionRecord

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def seed_anonymous(store: InteractionStore, count: int, start: datetime = START) -> None:
    """Insert ``count`` anonymous views, one second apart, oldest first."""
    store.insert_many(
        InteractionRecord(
            chapter_id=i % 7,
            kind="view",
            anonymous_uuid=f"anon-{i}",
            created_at=start + timedelta(seconds=i),
            updated_at=start + timedelta(seconds=i),
        )
        for i in range(count)
    )


def seed_owned(store: InteractionStore, count: int, start: datetime = START) -> None:
    """Insert ``count`` likes owned by real users, older than any anonymous row."""
    store.insert_many(
        InteractionRecord(
            user_id=1000 + i,
            chapter_id=i % 7,
            kind="like",
            created_at=start - timedelta(days=365, seconds=i),
            updated_at=start - timedelta(days=365, seconds=i),
        )
        for i in range(count)
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path: object) -> str:
    return f"{tmp_path}/test_interactions.db"


@pytest.fixture
def records(db_path: str) -> InteractionStore:
    s = InteractionStore(db_path)
    yield s  # type: ignore[misc]
    s.close()


@pytest.fixture
def state(db_path: str, clock: FakeClock) -> TrimStateStore:
    s = TrimStateStore(db_path, clock=clock)
    yield s  # type: ignore[misc]
    s.close()


@pytest.fixture
def queue(db_path: str, clock: FakeClock) -> JobQueue:
    q = JobQueue(db_path, claim_ttl_seconds=300, clock=clock)
    yield q  # type: ignore[misc]
    q.close()


@pytest.fixture
def trim_config() -> TrimConfig:
    """cap=150, target=100, batch_size=10 — one cycle is a few batches."""
    return TrimConfig(cap=150, target=100, batch_size=10)
