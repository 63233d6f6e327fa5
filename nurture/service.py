"""Workflow management: saving, activating and reporting on workflows."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from .contracts import (
    Enrollment,
    EnrollmentStatus,
    Workflow,
    WorkflowAnalytics,
    WorkflowStatus,
)
from .exceptions import WorkflowNotFoundError
from .graph import Step
from .persistence import EnrollmentRepository
from .utils.clock import utc_now
from .validation import ValidationResult, validate_workflow

logger = logging.getLogger(__name__)


class WorkflowService:
    """Author-facing operations. Every save and activation returns the full
    validation result so callers can show each error and warning."""

    def __init__(self, repository: EnrollmentRepository) -> None:
        self._repository = repository

    def validate(self, steps: Iterable[Union[Step, Dict[str, Any]]]) -> ValidationResult:
        return validate_workflow(steps)

    async def save_workflow(self, workflow: Workflow) -> ValidationResult:
        """Store the workflow. An active workflow with blocking errors drops back to draft."""
        result = validate_workflow(workflow.steps)
        updates: Dict[str, Any] = {"updated_at": utc_now()}
        if workflow.status == WorkflowStatus.ACTIVE and not result.is_valid:
            logger.warning(
                f"Workflow {workflow.id} has validation errors {result.codes()}; saving as draft"
            )
            updates["status"] = WorkflowStatus.DRAFT
        await self._repository.save_workflow(workflow.model_copy(update=updates))
        return result

    async def get_workflow(self, workflow_id: str) -> Workflow:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    async def list_workflows(self, status: Optional[WorkflowStatus] = None) -> List[Workflow]:
        return await self._repository.list_workflows(status=status)

    async def activate(self, workflow_id: str) -> ValidationResult:
        """Set the workflow active, unless it has blocking validation errors."""
        workflow = await self.get_workflow(workflow_id)
        result = validate_workflow(workflow.steps)
        if not result.is_valid:
            logger.warning(
                f"Refusing to activate workflow {workflow_id}: {result.codes()}"
            )
            return result
        await self._repository.save_workflow(
            workflow.model_copy(update={"status": WorkflowStatus.ACTIVE, "updated_at": utc_now()})
        )
        logger.info(f"Workflow {workflow_id} activated")
        return result

    async def pause(self, workflow_id: str) -> Workflow:
        workflow = await self.get_workflow(workflow_id)
        paused = workflow.model_copy(
            update={"status": WorkflowStatus.PAUSED, "updated_at": utc_now()}
        )
        await self._repository.save_workflow(paused)
        logger.info(f"Workflow {workflow_id} paused")
        return paused

    async def list_enrollments(
        self, workflow_id: str, status: Optional[EnrollmentStatus] = None
    ) -> List[Enrollment]:
        return await self._repository.list_enrollments(workflow_id=workflow_id, status=status)

    async def get_workflow_analytics(self, workflow_id: str) -> WorkflowAnalytics:
        await self.get_workflow(workflow_id)
        enrollments = await self._repository.list_enrollments(workflow_id=workflow_id)
        counts = {status: 0 for status in EnrollmentStatus}
        for enrollment in enrollments:
            counts[enrollment.status] += 1
        total = len(enrollments)
        completed = counts[EnrollmentStatus.COMPLETED]
        return WorkflowAnalytics(
            workflow_id=workflow_id,
            total_enrolled=total,
            active=counts[EnrollmentStatus.ACTIVE],
            completed=completed,
            exited=counts[EnrollmentStatus.EXITED],
            failed=counts[EnrollmentStatus.FAILED],
            completion_rate=round(completed / total * 100, 2) if total else 0.0,
        )
