"""
TrimService — composes the trim controller, batch executor and lock manager.

Owns the wiring between the three trim services and their collaborators,
installs and removes the daily trigger, and exposes the hook handlers the
dispatcher needs.

Usage:
    service = TrimService(config.trim, records, state, state, queue, settings)
    service.schedule_daily()
    for name, handler in service.handlers().items():
        scheduler.register(name, handler)
"""

from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

from loguru import logger

from src.config import TrimConfig
from src.trim.controller import TrimController
from src.trim.executor import BatchExecutor
from src.trim.interfaces import LeaseStore, RecordStore, RunStateStore, SettingsStore, TaskRunner
from src.trim.lock import LockManager
from src.trim.schemas import ManualTriggerResult
from src.trim.timing import calculate_next_run_time, normalize_hour

CRON_HOUR_SETTING = "cron_hour"


class TrimService:
    """Single orchestrating entry point for retention trimming.

    Usage:
        service = TrimService(config.trim, records, run_state, leases, runner, settings)
        service.manual_trigger().to_payload()
    """

    def __init__(
        self,
        config: TrimConfig,
        records: RecordStore,
        run_state: RunStateStore,
        leases: LeaseStore,
        runner: TaskRunner,
        settings: SettingsStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._records = records
        self._run_state = run_state
        self._runner = runner
        self._settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.lock = LockManager(leases, config.lock_key, config.lock_ttl_seconds)
        self.controller = TrimController(config, records, run_state, runner, clock=self._clock)
        self.executor = BatchExecutor(
            config, records, run_state, runner, self.lock, clock=self._clock
        )

    # ── Hooks ───────────────────────────────────────────────────────────

    def handlers(self) -> dict[str, Callable[[], Any]]:
        """Job name → handler map for the dispatcher."""
        return {
            self._config.daily_hook: self.controller.start_cycle,
            self._config.continuation_hook: self.executor.run_batch,
        }

    def manual_trigger(self) -> ManualTriggerResult:
        return self.controller.manual_trigger()

    # ── Daily Trigger Management ────────────────────────────────────────

    def cron_hour(self) -> int:
        raw = self._settings.get_setting(CRON_HOUR_SETTING, self._config.default_trigger_hour)
        return normalize_hour(raw, self._config.default_trigger_hour)

    def schedule_daily(self, cron_hour: int | None = None) -> datetime | None:
        """Install the daily trigger unless one is already scheduled.

        Returns:
            First run time if a trigger was installed, else None.
        """
        if self._runner.is_any_scheduled(self._config.daily_hook, include_claimed=True):
            logger.debug("TrimService: daily trigger already scheduled")
            return None
        next_run = calculate_next_run_time(
            self.cron_hour() if cron_hour is None else cron_hour,
            self._config.schedule_offset_minutes,
            now=self._clock(),
        )
        self._runner.schedule_recurring(self._config.daily_hook, timedelta(days=1), next_run)
        logger.info("TrimService: daily trim trigger scheduled for {}", next_run.isoformat())
        return next_run

    def unschedule(self) -> None:
        """Remove the daily trigger and any pending continuations."""
        self._runner.cancel_all(self._config.daily_hook)
        self._runner.cancel_all(self._config.continuation_hook)
        logger.info("TrimService: trim triggers removed")

    def reschedule_on_settings_change(
        self, old_settings: Mapping[str, Any], new_settings: Mapping[str, Any]
    ) -> bool:
        """Move the daily trigger when the configured cron hour changes.

        Returns:
            True if the trigger was rescheduled.
        """
        default = self._config.default_trigger_hour
        old_hour = normalize_hour(old_settings.get(CRON_HOUR_SETTING, default), default)
        new_hour = normalize_hour(new_settings.get(CRON_HOUR_SETTING, default), default)
        if old_hour == new_hour:
            return False
        logger.info("TrimService: cron hour changed {} → {}, rescheduling", old_hour, new_hour)
        # Continuations of an in-flight cycle are left alone.
        self._runner.cancel_all(self._config.daily_hook)
        self.schedule_daily(new_hour)
        return True

    # ── Inspection ──────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        """Snapshot for operators: run state, population and trigger health."""
        state = self._run_state.get_run_state()
        expires = self.lock.expires_at()
        return {
            "run_state": state.model_dump(mode="json") if state is not None else None,
            "anonymous": self._records.count_anonymous(),
            "cap": self._config.cap,
            "target": self._config.target,
            "cron_hour": self.cron_hour(),
            "daily_scheduled": self._runner.is_any_scheduled(
                self._config.daily_hook, include_claimed=True
            ),
            "continuation_pending": self._runner.is_any_scheduled(self._config.continuation_hook),
            "lock_expires_at": expires.isoformat() if expires is not None else None,
        }
