"""
Async job dispatcher for the interaction-trimmer hooks.

Polls the JobQueue for due jobs and invokes the handler registered for each
job name. Every dispatch is one bounded activation: the handler runs to
completion in a worker thread, then the job is completed (one-shot jobs are
removed, recurring jobs roll forward). A failing handler is logged and not
retried here; the next scheduled activation picks up the work.

Includes:
- Graceful shutdown via stop() (triggered by SIGINT/SIGTERM in main.py)
- Startup recovery for claims left behind by a crashed dispatcher
- Single-pass run_pending() for cron-driven deployments with no daemon

Usage:
    scheduler = Scheduler(config.scheduler, queue)
    scheduler.register("interaction_trim_continue", executor.run_batch)
    await scheduler.recover_stale_claims()
    await scheduler.start()  # Runs until stopped
"""

import asyncio
from collections.abc import Callable
from typing import Any

from loguru import logger

from src.config import SchedulerConfig
from src.scheduler.job_queue import JobQueue, ScheduledJob


class Scheduler:
    """Dispatches due jobs from a JobQueue to registered handlers.

    Usage:
        scheduler = Scheduler(config.scheduler, queue)
        scheduler.register(name, handler)
        dispatched = await scheduler.run_pending()
    """

    def __init__(
        self,
        config: SchedulerConfig,
        queue: JobQueue,
        worker_id: str = "dispatcher-0",
    ) -> None:
        self._config = config
        self._queue = queue
        self._worker_id = worker_id
        self._handlers: dict[str, Callable[[], Any]] = {}
        self._running = False

    # ── Public API ──────────────────────────────────────────────────────

    def register(self, name: str, handler: Callable[[], Any]) -> None:
        """Bind a job name to a zero-argument handler."""
        self._handlers[name] = handler
        logger.debug("Scheduler: registered handler for {}", name)

    async def start(self) -> None:
        """Poll for due jobs until stop() is called."""
        self._running = True
        logger.info(
            "Scheduler: started (worker={}, poll={}s, hooks={})",
            self._worker_id,
            self._config.poll_interval_seconds,
            sorted(self._handlers),
        )
        while self._running:
            try:
                dispatched = await self.run_pending()
                if dispatched > 0:
                    logger.info("Scheduler: dispatched {} jobs", dispatched)
            except Exception as e:
                logger.error("Scheduler loop error: {}", e)

            await asyncio.sleep(self._config.poll_interval_seconds)

    async def stop(self) -> None:
        """Signal the poll loop to stop after the current pass."""
        logger.info("Scheduler: stopping")
        self._running = False

    async def recover_stale_claims(self) -> int:
        """Release claims left by a dispatcher that crashed mid-job.

        Returns:
            Number of jobs made claimable again.
        """
        recycled = await asyncio.to_thread(self._queue.recycle_expired_claims)
        if recycled > 0:
            logger.warning("Scheduler: recovered {} stale claims from previous session", recycled)
        else:
            logger.info("Scheduler: no stale claims found — clean startup")
        return recycled

    async def run_pending(self) -> int:
        """Claim and run every job that is due right now.

        Returns:
            Number of jobs dispatched (including ones whose handler failed).
        """
        jobs = await asyncio.to_thread(
            self._queue.claim_due, self._worker_id, self._config.max_jobs_per_poll
        )
        for job in jobs:
            await self._dispatch(job)
        return len(jobs)

    # ── Internal ────────────────────────────────────────────────────────

    async def _dispatch(self, job: ScheduledJob) -> None:
        handler = self._handlers.get(job.name)
        if handler is None:
            logger.warning("Scheduler: no handler for job {} ({}), dropping", job.id, job.name)
        else:
            try:
                result = await asyncio.to_thread(handler)
                logger.debug("Scheduler: job {} ({}) finished: {}", job.id, job.name, result)
            except Exception as e:
                logger.error("Scheduler: job {} ({}) failed: {}", job.id, job.name, e)
        await asyncio.to_thread(self._queue.complete, job)
