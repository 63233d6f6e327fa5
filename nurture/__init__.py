"""Nurture: marketing automation workflows for contacts."""

from .collaborators import Collaborators, DeliveryResult, WebhookResponse
from .contracts import (
    Enrollment,
    EnrollmentStatus,
    StepOutcome,
    StepResult,
    TriggerType,
    WorkItem,
    Workflow,
    WorkflowStatus,
)
from .dispatch import TriggerDispatcher
from .engine import WorkflowEngine
from .graph import Step, StepType, WorkflowGraph
from .persistence import get_repository
from .queues import get_queue
from .runtime import NurtureRuntime
from .scheduler import Scheduler
from .service import WorkflowService
from .validation import ValidationResult, validate_workflow

__version__ = "0.1.0"
__all__ = [
    "Collaborators",
    "DeliveryResult",
    "WebhookResponse",
    "Enrollment",
    "EnrollmentStatus",
    "StepOutcome",
    "StepResult",
    "TriggerType",
    "WorkItem",
    "Workflow",
    "WorkflowStatus",
    "TriggerDispatcher",
    "WorkflowEngine",
    "Step",
    "StepType",
    "WorkflowGraph",
    "get_repository",
    "get_queue",
    "NurtureRuntime",
    "Scheduler",
    "WorkflowService",
    "ValidationResult",
    "validate_workflow",
]
