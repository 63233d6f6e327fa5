"""Scheduler: polls the work queue and hands due items to the engine."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

from .config import SchedulerConfig
from .constants import (
    CLEAN_COMPLETED_AFTER,
    CLEAN_FAILED_AFTER,
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_JITTER_SECONDS,
    DEFAULT_BATCH_SIZE,
    DEFAULT_CONCURRENCY,
    DEFAULT_LEASE_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_POLL_INTERVAL_SECONDS,
)
from .contracts import FinishedItem, QueueStats, StepOutcome, StepResult, WorkItem
from .engine import WorkflowEngine
from .queues import BaseWorkQueue
from .utils.clock import utc_now
from .utils.retry import next_attempt_at

logger = logging.getLogger(__name__)

_MAX_DRAIN_ROUNDS = 1000


class Scheduler:
    """Durable due-time dispatch with bounded retries.

    Items are claimed under a lease, so two schedulers sharing a queue never
    run the same item at once. Transient failures are re-queued with
    exponential backoff until ``max_attempts`` claims have been spent, after
    which the enrollment is failed.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        queue: BaseWorkQueue,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
        backoff_jitter_seconds: float = DEFAULT_BACKOFF_JITTER_SECONDS,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        concurrency: int = DEFAULT_CONCURRENCY,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._engine = engine
        self._queue = queue
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_jitter_seconds = backoff_jitter_seconds
        self.lease_seconds = lease_seconds
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.poll_interval_seconds = poll_interval_seconds

    @classmethod
    def from_config(
        cls, engine: WorkflowEngine, queue: BaseWorkQueue, config: SchedulerConfig
    ) -> "Scheduler":
        return cls(
            engine,
            queue,
            max_attempts=config.max_attempts,
            backoff_base_seconds=config.backoff_base_seconds,
            backoff_jitter_seconds=config.backoff_jitter_seconds,
            lease_seconds=config.lease_seconds,
            batch_size=config.batch_size,
            concurrency=config.concurrency,
            poll_interval_seconds=config.poll_interval_seconds,
        )

    async def schedule(self, enrollment_id: str, step_id: str, due_at: datetime) -> WorkItem:
        """Upsert the enrollment's pending item."""
        return await self._queue.schedule(enrollment_id, step_id, due_at)

    async def poll_due(self, now: Optional[datetime] = None) -> list[StepResult]:
        """Claim one batch of due items and dispatch them. Claims nothing while paused."""
        if await self._queue.is_paused():
            return []
        now = now or utc_now()
        items = await self._queue.claim_due(now, self.batch_size, self.lease_seconds)
        if not items:
            return []
        logger.debug(f"Claimed {len(items)} due work items")

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(item: WorkItem) -> Optional[StepResult]:
            async with semaphore:
                return await self.dispatch(item, now)

        results = await asyncio.gather(*(_bounded(item) for item in items))
        return [r for r in results if r is not None]

    async def dispatch(self, item: WorkItem, now: Optional[datetime] = None) -> Optional[StepResult]:
        """Run one claimed item and settle it in the queue.

        Returns ``None`` when the engine raised; the item then stays leased
        and is redelivered once the lease expires.
        """
        now = now or utc_now()
        try:
            result = await self._engine.execute(item, now)
        except Exception:
            logger.exception(
                f"Unexpected error running step {item.step_id} of enrollment "
                f"{item.enrollment_id}; leaving item {item.id} for redelivery"
            )
            return None

        if result.outcome == StepOutcome.RETRY:
            if item.attempts >= self.max_attempts:
                await self._queue.complete(item, failed=True)
                await self._engine.fail_enrollment(
                    item.enrollment_id,
                    f"Retries exhausted after {item.attempts} attempts: {result.error}",
                    now,
                )
                return result.model_copy(update={"outcome": StepOutcome.FAILED})
            due_at = next_attempt_at(
                item.attempts, now, self.backoff_base_seconds, self.backoff_jitter_seconds
            )
            await self._queue.release(item, due_at)
            logger.info(
                f"Retrying step {item.step_id} of enrollment {item.enrollment_id} "
                f"at {due_at.isoformat()} (attempt {item.attempts}/{self.max_attempts})"
            )
            return result.model_copy(update={"due_at": due_at})

        if result.outcome == StepOutcome.DEFERRED:
            await self._queue.release(item, result.due_at or now, attempts=max(item.attempts - 1, 0))
        return result

    async def drain(self, now: Optional[datetime] = None) -> list[StepResult]:
        """Poll until nothing is due at ``now``."""
        results: list[StepResult] = []
        for _ in range(_MAX_DRAIN_ROUNDS):
            batch = await self.poll_due(now)
            if not batch:
                break
            results.extend(batch)
        return results

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll until ``stop_event`` is set."""
        logger.info(
            f"Scheduler started (batch={self.batch_size}, concurrency={self.concurrency})"
        )
        while not stop_event.is_set():
            try:
                await self.poll_due()
            except Exception:
                logger.exception("Polling the work queue failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Scheduler stopped")

    async def pause(self) -> None:
        """Stop claiming due items. Items already claimed run to completion."""
        await self._queue.pause()
        logger.info("Scheduler paused")

    async def resume(self) -> None:
        await self._queue.resume()
        logger.info("Scheduler resumed")

    async def is_paused(self) -> bool:
        return await self._queue.is_paused()

    async def stats(self, now: Optional[datetime] = None) -> QueueStats:
        return await self._queue.stats(now or utc_now())

    async def recent(self, limit: int = 20) -> list[FinishedItem]:
        return await self._queue.recent(limit)

    async def clean(self, now: Optional[datetime] = None) -> int:
        """Forget completed items older than a day and failed items older than a week."""
        now = now or utc_now()
        removed = await self._queue.clean(now - CLEAN_COMPLETED_AFTER, now - CLEAN_FAILED_AFTER)
        if removed:
            logger.info(f"Cleaned {removed} finished work items")
        return removed
