"""Repository abstraction for workflow and enrollment persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Tuple

from ..contracts import Enrollment, EnrollmentStatus, TriggerType, Workflow, WorkflowStatus

# Columns ``transition`` may change.
MUTABLE_ENROLLMENT_FIELDS = frozenset(
    {
        "status",
        "current_step_id",
        "next_action_at",
        "finished_at",
        "failure_reason",
        "lease_token",
        "lease_expires_at",
    }
)


class EnrollmentRepository(Protocol):
    """Protocol for persistence backends.

    ``acquire_step`` and ``transition`` are compare-and-swap operations: they
    only apply when the enrollment is still ``active`` and matches the
    expected step and claim token.
    """

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        """Insert or replace a workflow definition."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow by id."""

    async def list_workflows(
        self,
        trigger_type: TriggerType | None = None,
        status: WorkflowStatus | None = None,
        organization_id: str | None = None,
    ) -> list[Workflow]:
        """Return workflows matching every given filter."""

    async def create_enrollment(
        self, enrollment: Enrollment, exclusive: bool = True
    ) -> Tuple[Enrollment, bool]:
        """Persist a new enrollment.

        With ``exclusive`` an existing active enrollment for the same
        (workflow, contact) pair is returned instead, with ``created=False``.
        """

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        """Retrieve an enrollment by id."""

    async def list_enrollments(
        self,
        workflow_id: str | None = None,
        status: EnrollmentStatus | None = None,
    ) -> list[Enrollment]:
        """Return enrollments, newest first."""

    async def acquire_step(
        self,
        enrollment_id: str,
        step_id: str,
        token: str,
        lease_expires_at: datetime,
        now: datetime,
    ) -> Enrollment | None:
        """Claim the current step for one dispatch.

        Succeeds only if the enrollment is active, positioned on ``step_id``
        and not held by another unexpired claim.
        """

    async def transition(
        self,
        enrollment_id: str,
        changes: Dict[str, Any],
        expected_step_id: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Enrollment | None:
        """Apply ``changes`` if the enrollment is still active.

        ``expected_step_id`` and ``token`` narrow the guard further. The claim
        is released unless ``changes`` sets it. Returns the updated record, or
        ``None`` when the guard did not hold.
        """

    async def close(self) -> None:
        """Release backend resources (no-op by default)."""
        pass


def check_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(changes) - MUTABLE_ENROLLMENT_FIELDS
    if unknown:
        raise ValueError(f"Cannot change enrollment fields: {sorted(unknown)}")
    merged = {"lease_token": None, "lease_expires_at": None}
    merged.update(changes)
    if isinstance(merged.get("status"), EnrollmentStatus):
        merged["status"] = merged["status"].value
    return merged
