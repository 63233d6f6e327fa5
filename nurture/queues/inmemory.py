"""In-memory work queue for tests and single-process runs."""

from __future__ import annotations

import asyncio
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Deque, Dict, Optional

from ..constants import QUEUE_HISTORY_LIMIT
from ..contracts import FinishedItem, QueueStats, WorkItem
from .base import BaseWorkQueue


class InMemoryWorkQueue(BaseWorkQueue):
    """Simple in-process queue. Items are lost when the process exits."""

    def __init__(self, history_limit: int = QUEUE_HISTORY_LIMIT) -> None:
        self._items: Dict[str, WorkItem] = {}
        self._counters: Counter[str] = Counter()
        self._history: Deque[FinishedItem] = deque(maxlen=history_limit)
        self._paused = False
        self._lock = asyncio.Lock()

    async def schedule(
        self, enrollment_id: str, step_id: str, due_at: datetime, attempts: int = 0
    ) -> WorkItem:
        item = WorkItem(enrollment_id=enrollment_id, step_id=step_id, due_at=due_at, attempts=attempts)
        async with self._lock:
            self._items[enrollment_id] = item
        return item.model_copy()

    async def claim_due(self, now: datetime, limit: int, lease_seconds: float) -> list[WorkItem]:
        leased_until = now + timedelta(seconds=lease_seconds)
        async with self._lock:
            candidates = sorted(
                (
                    item
                    for item in self._items.values()
                    if item.due_at <= now and (item.leased_until is None or item.leased_until <= now)
                ),
                key=lambda item: item.due_at,
            )[:limit]
            claimed = []
            for item in candidates:
                leased = item.model_copy(
                    update={"attempts": item.attempts + 1, "leased_until": leased_until}
                )
                self._items[item.enrollment_id] = leased
                claimed.append(leased.model_copy())
            return claimed

    def _is_current(self, item: WorkItem) -> bool:
        current = self._items.get(item.enrollment_id)
        return current is not None and current.id == item.id

    def _finish(self, item: WorkItem, failed: bool) -> None:
        self._counters["failed" if failed else "completed"] += 1
        self._history.append(FinishedItem.from_item(item, failed=failed))

    async def release(
        self, item: WorkItem, due_at: datetime, *, attempts: Optional[int] = None
    ) -> bool:
        async with self._lock:
            if not self._is_current(item):
                return False
            current = self._items[item.enrollment_id]
            self._items[item.enrollment_id] = current.model_copy(
                update={
                    "due_at": due_at,
                    "leased_until": None,
                    "attempts": current.attempts if attempts is None else attempts,
                }
            )
            if attempts is None:
                self._counters["retried"] += 1
            return True

    async def complete(self, item: WorkItem, failed: bool = False) -> bool:
        async with self._lock:
            if not self._is_current(item):
                return False
            del self._items[item.enrollment_id]
            self._finish(item, failed)
            return True

    async def complete_and_schedule(
        self, item: WorkItem, step_id: str, due_at: datetime
    ) -> Optional[WorkItem]:
        async with self._lock:
            if not self._is_current(item):
                return None
            self._finish(item, failed=False)
            successor = WorkItem(enrollment_id=item.enrollment_id, step_id=step_id, due_at=due_at)
            self._items[item.enrollment_id] = successor
            return successor.model_copy()

    async def cancel(self, enrollment_id: str) -> bool:
        async with self._lock:
            return self._items.pop(enrollment_id, None) is not None

    async def get(self, enrollment_id: str) -> Optional[WorkItem]:
        item = self._items.get(enrollment_id)
        return item.model_copy() if item else None

    async def recent(self, limit: int = 20) -> list[FinishedItem]:
        return [record.model_copy() for record in reversed(self._history)][:limit]

    async def clean(self, completed_before: datetime, failed_before: datetime) -> int:
        async with self._lock:
            kept = [
                record
                for record in self._history
                if record.finished_at >= (failed_before if record.failed else completed_before)
            ]
            removed = len(self._history) - len(kept)
            self._history.clear()
            self._history.extend(kept)
            return removed

    async def pause(self) -> None:
        self._paused = True

    async def resume(self) -> None:
        self._paused = False

    async def is_paused(self) -> bool:
        return self._paused

    async def stats(self, now: datetime) -> QueueStats:
        stats = QueueStats(
            completed=self._counters["completed"],
            failed=self._counters["failed"],
            retried=self._counters["retried"],
        )
        for item in self._items.values():
            if item.leased_until is not None and item.leased_until > now:
                stats.active += 1
            elif item.due_at <= now:
                stats.waiting += 1
            else:
                stats.delayed += 1
        return stats
