"""
Trim controller — decides whether a trim cycle is needed and schedules it.

Runs once per day from the daily trigger (or on demand from an operator).
When the anonymous population is over the cap it pre-schedules one
continuation per batch needed to get back down to the target, spaced a
fixed interval apart, and records the cycle's run state.

Usage:
    controller = TrimController(config.trim, records, run_state, runner)
    result = controller.start_cycle()
"""

import math
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from loguru import logger

from src.config import TrimConfig
from src.storage.sqlite_store import StorageError
from src.trim.interfaces import RecordStore, RunStateStore, TaskRunner
from src.trim.schemas import ManualTriggerResult, RunState, TrimResult


class TrimController:
    """Starts trim cycles by fanning out continuation triggers.

    Usage:
        controller = TrimController(config.trim, records, run_state, runner)
        controller.start_cycle()
        controller.manual_trigger().to_payload()
    """

    def __init__(
        self,
        config: TrimConfig,
        records: RecordStore,
        run_state: RunStateStore,
        runner: TaskRunner,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._records = records
        self._run_state = run_state
        self._runner = runner
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def batches_needed(self, count: int) -> int:
        """Number of batch activations to bring ``count`` down to the target."""
        rows_to_delete = max(0, count - self._config.target)
        return math.ceil(rows_to_delete / self._config.batch_size)

    def start_cycle(self) -> TrimResult:
        """Begin a new cycle, or confirm there is nothing to do.

        1. Drop any continuation triggers left over from an earlier cycle.
        2. Count anonymous interactions.
        3. At or under the cap: clear run state and return.
        4. Over the cap: schedule one continuation per batch and save run state.

        Returns:
            TrimResult with ``scheduled`` set to the number of continuations.
        """
        cfg = self._config
        cleared = self._runner.cancel_all(cfg.continuation_hook)
        if cleared:
            logger.debug("TrimController: cleared {} stray continuations", cleared)

        count = self._records.count_anonymous()
        result = TrimResult(remaining=count, cap=cfg.cap, target=cfg.target)

        if count <= cfg.cap:
            self._run_state.clear_run_state()
            logger.info(
                "TrimController: {} anonymous interactions within cap {} — nothing to do",
                count,
                cfg.cap,
            )
            return result

        batches = self.batches_needed(count)
        now = self._clock()
        spacing = timedelta(seconds=cfg.continuation_spacing_seconds)
        try:
            for i in range(1, batches + 1):
                self._runner.schedule_once(cfg.continuation_hook, now + spacing * i)
            self._run_state.save_run_state(
                RunState(started_at=now, remaining=count, scheduled_jobs=batches, updated_at=now)
            )
        except StorageError:
            # No continuations survive a cycle start that failed to record its run state.
            self._runner.cancel_all(cfg.continuation_hook)
            raise
        logger.info(
            "TrimController: {} anonymous interactions over cap {} — scheduled {} batches "
            "of {} toward target {}",
            count,
            cfg.cap,
            batches,
            cfg.batch_size,
            cfg.target,
        )
        result.scheduled = batches
        return result

    def manual_trigger(self) -> ManualTriggerResult:
        """Operator entry point: start a cycle now and report the outcome."""
        try:
            result = self.start_cycle()
        except StorageError as e:
            logger.error("TrimController: manual trigger failed: {}", e)
            return ManualTriggerResult(
                success=False,
                message=f"Trim could not start: {e}",
                result=TrimResult(cap=self._config.cap, target=self._config.target),
            )

        if result.scheduled:
            message = (
                f"Trim started: {result.scheduled} batch(es) scheduled to reduce "
                f"{result.remaining} anonymous interactions to {result.target}."
            )
        else:
            message = (
                f"No trim needed: {result.remaining} anonymous interactions "
                f"(cap {result.cap})."
            )
        return ManualTriggerResult(success=True, message=message, result=result)
