"""Trigger dispatcher: turns business events into enrollments."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .contracts import Enrollment, TriggerType, WorkflowStatus
from .engine import WorkflowEngine
from .exceptions import NurtureError, WorkflowNotFoundError
from .persistence import EnrollmentRepository

logger = logging.getLogger(__name__)


class TriggerDispatcher:
    """Service responsible for enrolling contacts when triggers fire."""

    def __init__(self, repository: EnrollmentRepository, engine: WorkflowEngine) -> None:
        self._repository = repository
        self._engine = engine

    async def trigger_workflows(
        self,
        trigger: TriggerType | str,
        contact_id: str,
        trigger_data: Optional[Dict[str, Any]] = None,
        organization_id: Optional[str] = None,
    ) -> List[Enrollment]:
        """Enroll the contact in every active workflow listening for ``trigger``.

        A workflow that refuses the enrollment is logged and skipped; the
        remaining workflows are still processed.
        """
        trigger_type = TriggerType(trigger)
        workflows = await self._repository.list_workflows(
            trigger_type=trigger_type,
            status=WorkflowStatus.ACTIVE,
            organization_id=organization_id,
        )
        logger.info(
            f"Trigger {trigger_type.value} for contact {contact_id} matched {len(workflows)} workflows"
        )

        enrollments: List[Enrollment] = []
        for workflow in workflows:
            try:
                enrollment = await self._engine.enroll(workflow, contact_id, trigger_data)
            except NurtureError as exc:
                logger.error(
                    f"Could not enroll contact {contact_id} in workflow {workflow.id}: {exc.message}"
                )
                continue
            enrollments.append(enrollment)
        return enrollments

    async def enroll_contact(
        self,
        workflow_id: str,
        contact_id: str,
        trigger_data: Optional[Dict[str, Any]] = None,
    ) -> Enrollment:
        """Enroll the contact in one workflow, regardless of its trigger type."""
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return await self._engine.enroll(workflow, contact_id, trigger_data)
