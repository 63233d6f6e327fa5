"""Base interface for the durable work queue behind the scheduler."""

from __future__ import annotations

import abc
from datetime import datetime
from typing import Optional

from ..contracts import FinishedItem, QueueStats, WorkItem


class BaseWorkQueue(metaclass=abc.ABCMeta):
    """Time-ordered queue holding at most one pending item per enrollment.

    Claimed items are leased: they stay invisible to other workers until the
    lease runs out, after which they become claimable again. ``release`` and
    ``complete`` only act on the item if it is still the enrollment's current
    one, so a stale worker cannot clobber a newer schedule. Finished items
    are kept in a bounded history until cleaned.
    """

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def schedule(
        self, enrollment_id: str, step_id: str, due_at: datetime, attempts: int = 0
    ) -> WorkItem:
        """Create or replace the enrollment's pending item."""
        raise NotImplementedError

    @abc.abstractmethod
    async def claim_due(self, now: datetime, limit: int, lease_seconds: float) -> list[WorkItem]:
        """Lease up to ``limit`` due items, earliest first, counting an attempt on each."""
        raise NotImplementedError

    @abc.abstractmethod
    async def release(
        self, item: WorkItem, due_at: datetime, *, attempts: Optional[int] = None
    ) -> bool:
        """Return a claimed item to the queue to run again at ``due_at``.

        Without ``attempts`` the release counts as a retry.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def complete(self, item: WorkItem, failed: bool = False) -> bool:
        """Remove a claimed item once it has been handled."""
        raise NotImplementedError

    @abc.abstractmethod
    async def cancel(self, enrollment_id: str) -> bool:
        """Drop the enrollment's pending item, if any."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get(self, enrollment_id: str) -> Optional[WorkItem]:
        """Return the enrollment's pending item."""
        raise NotImplementedError

    @abc.abstractmethod
    async def stats(self, now: datetime) -> QueueStats:
        """Count items by state."""
        raise NotImplementedError

    @abc.abstractmethod
    async def complete_and_schedule(
        self, item: WorkItem, step_id: str, due_at: datetime
    ) -> Optional[WorkItem]:
        """Complete a claimed item and queue the enrollment's next step in one move.

        Returns the new item, or ``None`` when ``item`` is no longer current
        and nothing was changed.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def recent(self, limit: int = 20) -> list[FinishedItem]:
        """Most recently finished items, newest first."""
        raise NotImplementedError

    @abc.abstractmethod
    async def clean(self, completed_before: datetime, failed_before: datetime) -> int:
        """Forget finished items older than the cutoffs. Returns how many were dropped."""
        raise NotImplementedError

    @abc.abstractmethod
    async def pause(self) -> None:
        """Stop handing out due items to every scheduler sharing this queue."""
        raise NotImplementedError

    @abc.abstractmethod
    async def resume(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def is_paused(self) -> bool:
        raise NotImplementedError
