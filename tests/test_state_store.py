"""
Tests for src/storage/state_store.py — run state option and TTL leases.
"""

import pytest

from src.storage.sqlite_store import StorageError
from src.storage.state_store import TrimStateStore
from src.trim.schemas import RunState
from tests.conftest import START, FakeClock

class TestRunState:
    """Tests for run state persistence."""

    def test_absent_when_idle(self, state: TrimStateStore) -> None:
        assert state.get_run_state() is None

    def test_save_and_load(self, state: TrimStateStore) -> None:
        saved = RunState(started_at=START, remaining=151_500, scheduled_jobs=52, updated_at=START)
        state.save_run_state(saved)
        loaded = state.get_run_state()
        assert loaded == saved

    def test_save_replaces_whole_record(self, state: TrimStateStore) -> None:
        state.save_run_state(RunState(remaining=500, scheduled_jobs=5))
        state.save_run_state(RunState(remaining=400, scheduled_jobs=4))
        loaded = state.get_run_state()
        assert loaded is not None
        assert (loaded.remaining, loaded.scheduled_jobs) == (400, 4)

    def test_clear(self, state: TrimStateStore) -> None:
        state.save_run_state(RunState(remaining=1))
        state.clear_run_state()
        assert state.get_run_state() is None

    def test_survives_reopen(self, db_path: str, state: TrimStateStore) -> None:
        state.save_run_state(RunState(remaining=77, scheduled_jobs=3))
        reopened = TrimStateStore(db_path)
        try:
            loaded = reopened.get_run_state()
            assert loaded is not None
            assert loaded.remaining == 77
        finally:
            reopened.close()

class TestLeases:
    """Tests for TrimStateStore.try_acquire() / release()."""

    def test_acquire_free_lease(self, state: TrimStateStore) -> None:
        assert state.try_acquire("lock", ttl_seconds=60)

    def test_second_acquire_fails_while_live(self, state: TrimStateStore) -> None:
        assert state.try_acquire("lock", ttl_seconds=60)
        assert not state.try_acquire("lock", ttl_seconds=60)

    def test_release_frees_lease(self, state: TrimStateStore) -> None:
        state.try_acquire("lock", ttl_seconds=60)
        state.release("lock")
        assert state.try_acquire("lock", ttl_seconds=60)

    def test_lease_self_expires(self, state: TrimStateStore, clock: FakeClock) -> None:
        """A lease never released by a dead process frees itself after its TTL."""
        assert state.try_acquire("lock", ttl_seconds=165)
        clock.advance(seconds=164)
        assert not state.try_acquire("lock", ttl_seconds=165)
        clock.advance(seconds=1)
        assert state.try_acquire("lock", ttl_seconds=165)

    def test_independent_names(self, state: TrimStateStore) -> None:
        assert state.try_acquire("a", ttl_seconds=60)
        assert state.try_acquire("b", ttl_seconds=60)

    def test_two_connections_contend(self, db_path: str, clock: FakeClock) -> None:
        """Separate store instances on one database share the lease."""
        first = TrimStateStore(db_path, clock=clock)
        second = TrimStateStore(db_path, clock=clock)
        try:
            assert first.try_acquire("lock", ttl_seconds=60)
            assert not second.try_acquire("lock", ttl_seconds=60)
            first.release("lock")
            assert second.try_acquire("lock", ttl_seconds=60)
        finally:
            first.close()
            second.close()

    def test_lease_expires_at(self, state: TrimStateStore, clock: FakeClock) -> None:
        assert state.lease_expires_at("lock") is None
        state.try_acquire("lock", ttl_seconds=30)
        expires = state.lease_expires_at("lock")
        assert expires is not None
        assert (expires - clock.now).total_seconds() == 30

    def test_expired_lease_reads_as_free(self, state: TrimStateStore, clock: FakeClock) -> None:
        state.try_acquire("old", ttl_seconds=10)
        state.try_acquire("fresh", ttl_seconds=600)
        clock.advance(seconds=11)
        assert state.lease_expires_at("old") is None
        assert state.lease_expires_at("fresh") is not None


class TestErrors:
    def test_release_without_table(self, state: TrimStateStore) -> None:
        state._conn.execute("DROP TABLE leases")
        with pytest.raises(StorageError, match="Failed to release"):
            state.release("lock")

    def test_clear_without_table(self, state: TrimStateStore) -> None:
        state._conn.execute("DROP TABLE options")
        with pytest.raises(StorageError, match="Failed to clear"):
            state.clear_run_state()
