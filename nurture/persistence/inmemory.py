"""In-memory implementation of the enrollment repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from ..contracts import Enrollment, EnrollmentStatus, TriggerType, Workflow, WorkflowStatus
from .repository import EnrollmentRepository, check_changes


class InMemoryEnrollmentRepository(EnrollmentRepository):
    """Store workflows and enrollments in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._enrollments: Dict[str, Enrollment] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> Workflow:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        workflow = self._workflows.get(workflow_id)
        return workflow.model_copy(deep=True) if workflow else None

    async def list_workflows(
        self,
        trigger_type: TriggerType | None = None,
        status: WorkflowStatus | None = None,
        organization_id: str | None = None,
    ) -> list[Workflow]:
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if (trigger_type is None or wf.trigger_type == trigger_type)
            and (status is None or wf.status == status)
            and (organization_id is None or wf.organization_id == organization_id)
        ]

    # ------------------------------------------------------------------
    async def create_enrollment(
        self, enrollment: Enrollment, exclusive: bool = True
    ) -> Tuple[Enrollment, bool]:
        async with self._lock:
            if exclusive:
                for existing in self._enrollments.values():
                    if (
                        existing.workflow_id == enrollment.workflow_id
                        and existing.contact_id == enrollment.contact_id
                        and existing.status == EnrollmentStatus.ACTIVE
                    ):
                        return existing.model_copy(deep=True), False
            self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)
            return enrollment, True

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        enrollment = self._enrollments.get(enrollment_id)
        return enrollment.model_copy(deep=True) if enrollment else None

    async def list_enrollments(
        self,
        workflow_id: str | None = None,
        status: EnrollmentStatus | None = None,
    ) -> list[Enrollment]:
        matches = [
            e.model_copy(deep=True)
            for e in self._enrollments.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (status is None or e.status == status)
        ]
        return sorted(matches, key=lambda e: e.enrolled_at, reverse=True)

    async def acquire_step(
        self,
        enrollment_id: str,
        step_id: str,
        token: str,
        lease_expires_at: datetime,
        now: datetime,
    ) -> Enrollment | None:
        async with self._lock:
            current = self._enrollments.get(enrollment_id)
            if (
                current is None
                or current.status != EnrollmentStatus.ACTIVE
                or current.current_step_id != step_id
            ):
                return None
            held = current.lease_token is not None and current.lease_token != token
            if held and current.lease_expires_at is not None and current.lease_expires_at > now:
                return None
            updated = current.model_copy(
                update={"lease_token": token, "lease_expires_at": lease_expires_at}
            )
            self._enrollments[enrollment_id] = updated
            return updated.model_copy(deep=True)

    async def transition(
        self,
        enrollment_id: str,
        changes: Dict[str, Any],
        expected_step_id: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Enrollment | None:
        merged = check_changes(changes)
        async with self._lock:
            current = self._enrollments.get(enrollment_id)
            if current is None or current.status != EnrollmentStatus.ACTIVE:
                return None
            if expected_step_id is not None and current.current_step_id != expected_step_id:
                return None
            if token is not None and current.lease_token != token:
                return None
            if "status" in merged:
                merged["status"] = EnrollmentStatus(merged["status"])
            updated = current.model_copy(update=merged)
            self._enrollments[enrollment_id] = updated
            return updated.model_copy(deep=True)
