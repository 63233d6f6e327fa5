"""Records for workflows, enrollments and scheduled work."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .graph import Step, WorkflowGraph
from .utils.clock import utc_now


def new_id() -> str:
    return str(uuid.uuid4())


class TriggerType(str, Enum):
    WELCOME = "welcome"
    ABANDONED_CART = "abandoned_cart"
    ORDER_CONFIRMATION = "order_confirmation"
    SHIPPING = "shipping"
    CUSTOM = "custom"


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXITED = "exited"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not EnrollmentStatus.ACTIVE


class Workflow(BaseModel):
    """A named automation definition triggered by a business event."""

    id: str = Field(default_factory=new_id)
    organization_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    trigger_type: TriggerType
    status: WorkflowStatus = WorkflowStatus.DRAFT
    steps: List[Step] = Field(default_factory=list)
    allow_reentry: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def graph(self) -> WorkflowGraph:
        return WorkflowGraph(self.steps)


class Enrollment(BaseModel):
    """One contact's run through one workflow.

    ``steps`` pins the workflow graph as it was at enrollment time, so edits
    to a live workflow only affect contacts enrolled afterwards.
    """

    id: str = Field(default_factory=new_id)
    workflow_id: str
    contact_id: str
    organization_id: Optional[str] = None
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    current_step_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    steps: List[Step] = Field(default_factory=list)
    enrolled_at: datetime = Field(default_factory=utc_now)
    next_action_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    lease_token: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    def graph(self) -> WorkflowGraph:
        return WorkflowGraph(self.steps)


class WorkItem(BaseModel):
    """Pending work for one enrollment: run ``step_id`` at ``due_at``."""

    id: str = Field(default_factory=new_id)
    enrollment_id: str
    step_id: str
    due_at: datetime
    attempts: int = 0
    leased_until: Optional[datetime] = None


class FinishedItem(BaseModel):
    """A work item that left the queue, kept for inspection until cleaned."""

    item_id: str
    enrollment_id: str
    step_id: str
    attempts: int = 0
    failed: bool = False
    finished_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_item(cls, item: WorkItem, failed: bool = False) -> "FinishedItem":
        return cls(
            item_id=item.id,
            enrollment_id=item.enrollment_id,
            step_id=item.step_id,
            attempts=item.attempts,
            failed=failed,
        )


class QueueStats(BaseModel):
    """Counts of work items by state."""

    waiting: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0


class WorkflowAnalytics(BaseModel):
    workflow_id: str
    total_enrolled: int = 0
    active: int = 0
    completed: int = 0
    exited: int = 0
    failed: int = 0
    completion_rate: float = 0.0


class StepOutcome(str, Enum):
    ADVANCED = "advanced"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY = "retry"
    DEFERRED = "deferred"
    SKIPPED = "skipped"


class StepResult(BaseModel):
    """What happened when a work item was executed."""

    outcome: StepOutcome
    enrollment_id: str
    step_id: Optional[str] = None
    next_step_id: Optional[str] = None
    due_at: Optional[datetime] = None
    error: Optional[str] = None
