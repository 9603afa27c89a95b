"""
Tests for src/trim/service.py — TrimService wiring and daily trigger management.
"""

from datetime import timedelta

import pytest

from src.config import TrimConfig
from src.scheduler.job_queue import JobQueue
from src.storage.sqlite_store import InteractionStore
from src.storage.state_store import TrimStateStore
from src.trim.service import CRON_HOUR_SETTING, TrimService
from tests.conftest import FakeClock, seed_anonymous

# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def service(
    trim_config: TrimConfig,
    records: InteractionStore,
    state: TrimStateStore,
    queue: JobQueue,
    clock: FakeClock,
) -> TrimService:
    return TrimService(
        config=trim_config,
        records=records,
        run_state=state,
        leases=state,
        runner=queue,
        settings=records,
        clock=clock,
    )


# ── Wiring ──────────────────────────────────────────────────────────────────


class TestHandlers:
    def test_hook_names(self, service: TrimService, trim_config: TrimConfig) -> None:
        handlers = service.handlers()
        assert set(handlers) == {trim_config.daily_hook, trim_config.continuation_hook}
        assert handlers[trim_config.daily_hook] == service.controller.start_cycle
        assert handlers[trim_config.continuation_hook] == service.executor.run_batch

    def test_lock_uses_configured_key(self, service: TrimService, trim_config: TrimConfig) -> None:
        assert service.lock.key == trim_config.lock_key

    def test_manual_trigger_delegates(self, service: TrimService, records: InteractionStore) -> None:
        seed_anonymous(records, 171)
        outcome = service.manual_trigger()
        assert outcome.success
        assert outcome.result.scheduled == 8


# ── Daily Trigger ───────────────────────────────────────────────────────────


class TestScheduleDaily:
    """Tests for schedule_daily / unschedule."""

    def test_installs_at_default_hour(
        self,
        service: TrimService,
        queue: JobQueue,
        clock: FakeClock,
        trim_config: TrimConfig,
    ) -> None:
        """Clock is 12:00, so 03:50 is tomorrow."""
        next_run = service.schedule_daily()
        expected = (clock.now + timedelta(days=1)).replace(hour=3, minute=50)
        assert next_run == expected
        assert queue.next_run_time(trim_config.daily_hook) == expected

    def test_idempotent(
        self, service: TrimService, queue: JobQueue, trim_config: TrimConfig
    ) -> None:
        assert service.schedule_daily() is not None
        assert service.schedule_daily() is None
        assert queue.count_scheduled(trim_config.daily_hook) == 1

    def test_no_duplicate_while_daily_job_runs(
        self,
        service: TrimService,
        queue: JobQueue,
        clock: FakeClock,
        trim_config: TrimConfig,
    ) -> None:
        """Installing while the dispatcher holds the daily job must not add a second one."""
        service.schedule_daily()
        clock.advance(days=1)
        (job,) = queue.claim_due("dispatcher-0")
        assert job.name == trim_config.daily_hook

        assert service.schedule_daily() is None
        queue.complete(job)
        assert queue.count_scheduled(trim_config.daily_hook) == 1

    def test_uses_stored_hour(self, service: TrimService, records: InteractionStore) -> None:
        records.set_setting(CRON_HOUR_SETTING, 18)
        next_run = service.schedule_daily()
        assert next_run is not None
        assert (next_run.hour, next_run.minute) == (18, 50)

    def test_bad_stored_hour_falls_back(
        self, service: TrimService, records: InteractionStore
    ) -> None:
        records.set_setting(CRON_HOUR_SETTING, "whenever")
        assert service.cron_hour() == 3

    def test_unschedule_clears_both_hooks(
        self,
        service: TrimService,
        records: InteractionStore,
        queue: JobQueue,
        trim_config: TrimConfig,
    ) -> None:
        service.schedule_daily()
        seed_anonymous(records, 200)
        service.manual_trigger()
        assert queue.is_any_scheduled(trim_config.continuation_hook)

        service.unschedule()
        assert not queue.is_any_scheduled(trim_config.daily_hook)
        assert not queue.is_any_scheduled(trim_config.continuation_hook)


class TestRescheduleOnSettingsChange:
    def test_same_hour_is_noop(self, service: TrimService, queue: JobQueue) -> None:
        service.schedule_daily()
        assert not service.reschedule_on_settings_change(
            {CRON_HOUR_SETTING: 3}, {CRON_HOUR_SETTING: "3"}
        )

    def test_moves_daily_trigger(
        self, service: TrimService, queue: JobQueue, trim_config: TrimConfig
    ) -> None:
        service.schedule_daily()
        assert service.reschedule_on_settings_change(
            {CRON_HOUR_SETTING: 3}, {CRON_HOUR_SETTING: 22}
        )
        next_run = queue.next_run_time(trim_config.daily_hook)
        assert next_run is not None
        assert (next_run.hour, next_run.minute) == (22, 50)
        assert queue.count_scheduled(trim_config.daily_hook) == 1

    def test_missing_old_hour_uses_default(self, service: TrimService) -> None:
        assert not service.reschedule_on_settings_change({}, {CRON_HOUR_SETTING: 3})
        assert service.reschedule_on_settings_change({}, {CRON_HOUR_SETTING: 4})

    def test_keeps_inflight_continuations(
        self,
        service: TrimService,
        records: InteractionStore,
        queue: JobQueue,
        trim_config: TrimConfig,
    ) -> None:
        seed_anonymous(records, 200)
        service.manual_trigger()
        service.reschedule_on_settings_change({CRON_HOUR_SETTING: 3}, {CRON_HOUR_SETTING: 5})
        assert queue.count_scheduled(trim_config.continuation_hook) == 10


# ── Status ──────────────────────────────────────────────────────────────────


class TestStatus:
    def test_idle(self, service: TrimService, records: InteractionStore) -> None:
        seed_anonymous(records, 20)
        status = service.status()
        assert status["run_state"] is None
        assert status["anonymous"] == 20
        assert status["cap"] == 150
        assert status["target"] == 100
        assert status["cron_hour"] == 3
        assert status["daily_scheduled"] is False
        assert status["continuation_pending"] is False

    def test_in_flight(self, service: TrimService, records: InteractionStore) -> None:
        service.schedule_daily()
        seed_anonymous(records, 200)
        service.manual_trigger()

        status = service.status()
        assert status["run_state"]["scheduled_jobs"] == 10
        assert status["run_state"]["remaining"] == 200
        assert status["daily_scheduled"] is True
        assert status["continuation_pending"] is True

    def test_reports_held_lock(self, service: TrimService, clock: FakeClock) -> None:
        assert service.status()["lock_expires_at"] is None
        assert service.lock.acquire()
        expected = clock.now + timedelta(seconds=service.lock._ttl_seconds)
        assert service.status()["lock_expires_at"] == expected.isoformat()

    def test_daily_counted_while_running(
        self, service: TrimService, queue: JobQueue, clock: FakeClock
    ) -> None:
        service.schedule_daily()
        clock.advance(days=1)
        queue.claim_due("dispatcher-0")
        assert service.status()["daily_scheduled"] is True
