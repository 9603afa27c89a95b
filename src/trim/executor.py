"""
Batch executor — one bounded trim step per continuation trigger.

Each activation takes the trim lease, deletes at most one batch of the
oldest anonymous interactions, recounts, and either closes the cycle or
keeps exactly one continuation alive. Nothing is retried in-process: a
skipped or failed activation is made up by the next trigger.

Usage:
    executor = BatchExecutor(config.trim, records, run_state, runner, lock)
    result = executor.run_batch()
"""

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from loguru import logger

from src.config import TrimConfig
from src.trim.interfaces import RecordStore, RunStateStore, TaskRunner
from src.trim.lock import LockManager
from src.trim.schemas import RunState, TrimResult


class BatchExecutor:
    """Deletes one batch under the trim lease and maintains the continuation chain."""

    def __init__(
        self,
        config: TrimConfig,
        records: RecordStore,
        run_state: RunStateStore,
        runner: TaskRunner,
        lock: LockManager,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._records = records
        self._run_state = run_state
        self._runner = runner
        self._lock = lock
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def run_batch(self) -> TrimResult:
        """Run one trim activation.

        Returns:
            TrimResult with the rows deleted and the anonymous count left.
            ``skipped`` is set when another activation holds the lease.

        Raises:
            StorageError: If counting or deleting fails. The lease is released
                and run state is left as it was.
        """
        with self._lock.hold() as acquired:
            if not acquired:
                return TrimResult(cap=self._config.cap, target=self._config.target, skipped=True)
            result = self._run_locked()

        if result.deleted > 0:
            logger.info(
                "BatchExecutor: deleted {} anonymous interactions, {} remaining (target {})",
                result.deleted,
                result.remaining,
                result.target,
            )
        return result

    def _run_locked(self) -> TrimResult:
        cfg = self._config
        count = self._records.count_anonymous()
        if count <= cfg.target:
            self._finish_cycle(count)
            return TrimResult(remaining=count, cap=cfg.cap, target=cfg.target)

        # Never overshoot: the final batch only takes what is over the target.
        limit = min(cfg.batch_size, count - cfg.target)
        deleted = self._records.delete_oldest_anonymous(limit)
        remaining = self._records.count_anonymous()

        if remaining <= cfg.target:
            self._finish_cycle(remaining)
        else:
            self._advance(remaining)
        return TrimResult(deleted=deleted, remaining=remaining, cap=cfg.cap, target=cfg.target)

    def _finish_cycle(self, remaining: int) -> None:
        self._run_state.clear_run_state()
        cancelled = self._runner.cancel_all(self._config.continuation_hook)
        logger.info(
            "BatchExecutor: cycle complete at {} anonymous interactions ({} continuations dropped)",
            remaining,
            cancelled,
        )

    def _advance(self, remaining: int) -> None:
        """Record progress and keep one continuation alive if the chain ran dry."""
        now = self._clock()
        state = self._run_state.get_run_state() or RunState(started_at=now)
        scheduled_jobs = max(0, state.scheduled_jobs - 1)

        if scheduled_jobs == 0:
            hook = self._config.continuation_hook
            if not self._runner.is_any_scheduled(hook):
                run_at = now + timedelta(seconds=self._config.continuation_spacing_seconds)
                self._runner.schedule_once(hook, run_at)
                logger.warning(
                    "BatchExecutor: continuation chain exhausted with {} remaining, "
                    "re-armed one continuation at {}",
                    remaining,
                    run_at.isoformat(),
                )
            scheduled_jobs = 1

        self._run_state.save_run_state(
            RunState(
                started_at=state.started_at,
                remaining=remaining,
                scheduled_jobs=scheduled_jobs,
                updated_at=now,
            )
        )
