"""Execution engine: runs one step of an enrollment and records the transition."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .collaborators import Collaborators
from .conditions import evaluate_conditions
from .config import EmailDefaults
from .constants import DEFAULT_LEASE_SECONDS, DEFAULT_PAUSED_RECHECK_SECONDS, DELAY_UNITS
from .contracts import (
    Enrollment,
    EnrollmentStatus,
    StepOutcome,
    StepResult,
    WorkItem,
    Workflow,
    WorkflowStatus,
    new_id,
)
from .exceptions import (
    EnrollmentNotFoundError,
    PermanentStepError,
    TransientStepError,
    WorkflowNotActiveError,
    WorkflowValidationError,
)
from .graph import (
    ConditionConfig,
    DelayConfig,
    EmailConfig,
    Step,
    StepType,
    TagConfig,
    UpdateFieldConfig,
    WebhookConfig,
)
from .persistence import EnrollmentRepository
from .queues import BaseWorkQueue
from .templates import build_template_context, render_template
from .utils.clock import utc_now
from .validation import validate_workflow

logger = logging.getLogger(__name__)

StepHandler = Callable[[Enrollment, Step], Awaitable[Optional[str]]]

# Contact store failures worth retrying
STORE_OUTAGES = (OSError, asyncio.TimeoutError, httpx.HTTPError)


def delay_for(step: Step) -> timedelta:
    """Wait before a delay step fires. Non-delay steps run immediately."""
    if not isinstance(step.config, DelayConfig):
        return timedelta(0)
    unit = DELAY_UNITS.get(step.config.unit or "")
    duration = step.config.duration
    if unit is None or duration is None or duration <= 0:
        raise PermanentStepError(f"Delay step '{step.id}' has an invalid duration")
    return unit * duration


class WorkflowEngine:
    """Owns enrollment state transitions.

    Each work item runs exactly one step. The engine re-reads the enrollment,
    claims the step through the repository, performs the side effect and
    moves the enrollment on, scheduling the successor's work item. Expected
    failures resolve to a :class:`StepResult`; anything else propagates.
    """

    def __init__(
        self,
        repository: EnrollmentRepository,
        queue: BaseWorkQueue,
        collaborators: Collaborators,
        email_defaults: Optional[EmailDefaults] = None,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        paused_recheck_seconds: float = DEFAULT_PAUSED_RECHECK_SECONDS,
    ) -> None:
        self._repository = repository
        self._queue = queue
        self._collaborators = collaborators
        self._email_defaults = email_defaults or EmailDefaults()
        self._lease_seconds = lease_seconds
        self._paused_recheck_seconds = paused_recheck_seconds
        self._handlers: Dict[str, StepHandler] = {
            StepType.TRIGGER.value: self._run_passthrough,
            StepType.DELAY.value: self._run_passthrough,
            StepType.SEND_EMAIL.value: self._run_send_email,
            StepType.CONDITION.value: self._run_condition,
            StepType.ADD_TAG.value: self._run_add_tag,
            StepType.REMOVE_TAG.value: self._run_remove_tag,
            StepType.WEBHOOK.value: self._run_webhook,
            StepType.UPDATE_FIELD.value: self._run_update_field,
        }

    @property
    def repository(self) -> EnrollmentRepository:
        return self._repository

    @property
    def queue(self) -> BaseWorkQueue:
        return self._queue

    # ------------------------------------------------------------------
    # Enrollment lifecycle
    async def enroll(
        self,
        workflow: Workflow,
        contact_id: str,
        trigger_data: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Enrollment:
        """Enroll a contact and schedule its trigger step."""
        if workflow.status != WorkflowStatus.ACTIVE:
            raise WorkflowNotActiveError(workflow.id, workflow.status.value)
        result = validate_workflow(workflow.steps)
        if not result.is_valid:
            raise WorkflowValidationError(workflow.id, result)

        now = now or utc_now()
        trigger = workflow.graph().trigger()
        enrollment = Enrollment(
            workflow_id=workflow.id,
            contact_id=contact_id,
            organization_id=workflow.organization_id,
            current_step_id=trigger.id,
            context=dict(trigger_data or {}),
            steps=[s.model_copy(deep=True) for s in workflow.steps],
            enrolled_at=now,
            next_action_at=now,
        )
        stored, created = await self._repository.create_enrollment(
            enrollment, exclusive=not workflow.allow_reentry
        )
        if not created:
            logger.info(
                f"Contact {contact_id} already active in workflow {workflow.id} "
                f"(enrollment {stored.id})"
            )
            await self._ensure_scheduled(stored, now)
            return stored

        await self._queue.schedule(stored.id, trigger.id, now)
        logger.info(f"Enrolled contact {contact_id} in workflow {workflow.id} as {stored.id}")
        return stored

    async def _ensure_scheduled(self, enrollment: Enrollment, now: datetime) -> None:
        """Queue the current step of an active enrollment that has no pending item."""
        if enrollment.status.is_terminal or enrollment.current_step_id is None:
            return
        if await self._queue.get(enrollment.id) is not None:
            return
        due_at = enrollment.next_action_at or now
        await self._queue.schedule(enrollment.id, enrollment.current_step_id, due_at)
        logger.warning(
            f"Enrollment {enrollment.id} had no pending work; rescheduled step "
            f"{enrollment.current_step_id} at {due_at.isoformat()}"
        )

    async def exit_workflow(self, enrollment_id: str, now: Optional[datetime] = None) -> Enrollment:
        """Stop an active enrollment and drop its pending work item."""
        enrollment = await self._repository.get_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(enrollment_id)
        if enrollment.status.is_terminal:
            return enrollment

        updated = await self._repository.transition(
            enrollment_id,
            {
                "status": EnrollmentStatus.EXITED,
                "finished_at": now or utc_now(),
                "next_action_at": None,
            },
        )
        await self._queue.cancel(enrollment_id)
        if updated is None:
            return await self._repository.get_enrollment(enrollment_id)
        logger.info(f"Enrollment {enrollment_id} exited at step {updated.current_step_id}")
        return updated

    async def fail_enrollment(
        self, enrollment_id: str, reason: str, now: Optional[datetime] = None
    ) -> Optional[Enrollment]:
        """Mark an active enrollment failed and drop its pending work item."""
        updated = await self._repository.transition(
            enrollment_id,
            {
                "status": EnrollmentStatus.FAILED,
                "failure_reason": reason,
                "finished_at": now or utc_now(),
                "next_action_at": None,
            },
        )
        await self._queue.cancel(enrollment_id)
        if updated is not None:
            logger.warning(f"Enrollment {enrollment_id} failed: {reason}")
        return updated

    async def advance(self, enrollment_id: str, now: Optional[datetime] = None) -> StepResult:
        """Run the enrollment's outstanding step right away."""
        now = now or utc_now()
        enrollment = await self._repository.get_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(enrollment_id)
        item = await self._queue.get(enrollment_id)
        if item is None or item.step_id != enrollment.current_step_id:
            item = await self._queue.schedule(enrollment_id, enrollment.current_step_id or "", now)
        result = await self.execute(item, now)
        if result.outcome in (StepOutcome.RETRY, StepOutcome.DEFERRED):
            await self._queue.schedule(
                enrollment_id, item.step_id, result.due_at or now, attempts=item.attempts
            )
        return result

    # ------------------------------------------------------------------
    # Dispatch
    async def execute(self, item: WorkItem, now: Optional[datetime] = None) -> StepResult:
        """Execute the step a work item was scheduled for."""
        now = now or utc_now()
        enrollment = await self._repository.get_enrollment(item.enrollment_id)
        if (
            enrollment is None
            or enrollment.status.is_terminal
            or enrollment.current_step_id != item.step_id
        ):
            logger.info(
                f"Skipping stale work item {item.id} for enrollment {item.enrollment_id} "
                f"at step {item.step_id}"
            )
            await self._settle_stale(enrollment, item, now)
            return self._result(StepOutcome.SKIPPED, item)

        token = new_id()
        claimed = await self._repository.acquire_step(
            item.enrollment_id,
            item.step_id,
            token=token,
            lease_expires_at=now + timedelta(seconds=self._lease_seconds),
            now=now,
        )
        if claimed is None:
            logger.info(
                f"Step {item.step_id} of enrollment {item.enrollment_id} is already being dispatched"
            )
            return self._result(StepOutcome.SKIPPED, item)

        workflow = await self._repository.get_workflow(claimed.workflow_id)
        if workflow is None:
            return await self._fail(
                claimed, item, token, f"Workflow {claimed.workflow_id} no longer exists", now
            )
        if workflow.status == WorkflowStatus.DRAFT:
            return await self._exit(claimed, item, token, now)
        if workflow.status == WorkflowStatus.PAUSED:
            await self._repository.transition(
                claimed.id, {}, expected_step_id=item.step_id, token=token
            )
            due_at = now + timedelta(seconds=self._paused_recheck_seconds)
            logger.info(f"Workflow {workflow.id} is paused; deferring enrollment {claimed.id}")
            return self._result(StepOutcome.DEFERRED, item, due_at=due_at)

        graph = claimed.graph()
        step = graph.get(item.step_id)
        if step is None:
            return await self._fail(
                claimed, item, token, f"Step '{item.step_id}' is not part of the workflow", now
            )

        handler = self._handlers.get(step.type)
        if handler is None:
            return await self._fail(claimed, item, token, f"Unsupported step type '{step.type}'", now)

        try:
            next_step_id = await handler(claimed, step)
        except TransientStepError as exc:
            await self._repository.transition(
                claimed.id, {}, expected_step_id=item.step_id, token=token
            )
            logger.warning(
                f"Step {step.id} of enrollment {claimed.id} failed on attempt "
                f"{item.attempts}: {exc.message}"
            )
            return self._result(StepOutcome.RETRY, item, error=exc.message)
        except PermanentStepError as exc:
            return await self._fail(claimed, item, token, exc.message, now)

        return await self._move_on(claimed, item, token, step, next_step_id, now)

    async def _move_on(
        self,
        enrollment: Enrollment,
        item: WorkItem,
        token: str,
        step: Step,
        next_step_id: Optional[str],
        now: datetime,
    ) -> StepResult:
        if next_step_id is None:
            updated = await self._repository.transition(
                enrollment.id,
                {
                    "status": EnrollmentStatus.COMPLETED,
                    "finished_at": now,
                    "next_action_at": None,
                },
                expected_step_id=step.id,
                token=token,
            )
            if updated is None:
                return self._lost_race(item)
            await self._queue.complete(item)
            logger.info(f"Enrollment {enrollment.id} completed after step {step.id}")
            return self._result(StepOutcome.COMPLETED, item)

        next_step = enrollment.graph().get(next_step_id)
        if next_step is None:
            return await self._fail(
                enrollment,
                item,
                token,
                f"Step '{step.id}' points to unknown step '{next_step_id}'",
                now,
            )
        try:
            due_at = now + delay_for(next_step)
        except PermanentStepError as exc:
            return await self._fail(enrollment, item, token, exc.message, now)

        updated = await self._repository.transition(
            enrollment.id,
            {"current_step_id": next_step_id, "next_action_at": due_at},
            expected_step_id=step.id,
            token=token,
        )
        if updated is None:
            return self._lost_race(item)
        successor = await self._queue.complete_and_schedule(item, next_step_id, due_at)
        if successor is None:
            logger.debug(f"Work item {item.id} was superseded; enrollment {enrollment.id} already queued")
        logger.info(
            f"Enrollment {enrollment.id} advanced {step.id} -> {next_step_id} (due {due_at.isoformat()})"
        )
        return self._result(StepOutcome.ADVANCED, item, next_step_id=next_step_id, due_at=due_at)

    async def _settle_stale(
        self, enrollment: Optional[Enrollment], item: WorkItem, now: datetime
    ) -> None:
        """Drop a stale item, or turn it into the enrollment's current step.

        An active enrollment whose queued item still points at an earlier step
        moved on without its successor being queued; the stale item is
        replaced rather than dropped so the enrollment keeps running.
        """
        if enrollment is None or enrollment.status.is_terminal:
            await self._queue.complete(item)
            return
        pending = await self._queue.get(item.enrollment_id)
        if pending is not None and pending.id != item.id:
            return
        due_at = enrollment.next_action_at or now
        if pending is None:
            await self._queue.schedule(enrollment.id, enrollment.current_step_id, due_at)
        else:
            await self._queue.complete_and_schedule(item, enrollment.current_step_id, due_at)
        logger.warning(
            f"Enrollment {enrollment.id} is at step {enrollment.current_step_id} but its queued "
            f"item was still for {item.step_id}; rescheduled at {due_at.isoformat()}"
        )

    async def _fail(
        self, enrollment: Enrollment, item: WorkItem, token: str, reason: str, now: datetime
    ) -> StepResult:
        updated = await self._repository.transition(
            enrollment.id,
            {
                "status": EnrollmentStatus.FAILED,
                "failure_reason": reason,
                "finished_at": now,
                "next_action_at": None,
            },
            expected_step_id=item.step_id,
            token=token,
        )
        if updated is None:
            return self._lost_race(item)
        await self._queue.complete(item, failed=True)
        logger.warning(f"Enrollment {enrollment.id} failed at step {item.step_id}: {reason}")
        return self._result(StepOutcome.FAILED, item, error=reason)

    async def _exit(self, enrollment: Enrollment, item: WorkItem, token: str, now: datetime) -> StepResult:
        updated = await self._repository.transition(
            enrollment.id,
            {"status": EnrollmentStatus.EXITED, "finished_at": now, "next_action_at": None},
            expected_step_id=item.step_id,
            token=token,
        )
        if updated is None:
            return self._lost_race(item)
        await self._queue.complete(item)
        logger.info(
            f"Workflow {enrollment.workflow_id} is back in draft; enrollment {enrollment.id} exited"
        )
        return self._result(StepOutcome.SKIPPED, item)

    def _lost_race(self, item: WorkItem) -> StepResult:
        logger.info(
            f"Enrollment {item.enrollment_id} changed while step {item.step_id} ran; "
            "discarding the outcome"
        )
        return self._result(StepOutcome.SKIPPED, item)

    @staticmethod
    def _result(outcome: StepOutcome, item: WorkItem, **kwargs: Any) -> StepResult:
        return StepResult(
            outcome=outcome, enrollment_id=item.enrollment_id, step_id=item.step_id, **kwargs
        )

    # ------------------------------------------------------------------
    # Step handlers: return the next step id, or ``None`` to complete.
    async def _run_passthrough(self, enrollment: Enrollment, step: Step) -> Optional[str]:
        return step.next

    async def _run_send_email(self, enrollment: Enrollment, step: Step) -> Optional[str]:
        config: EmailConfig = step.config
        contacts = self._collaborators.contacts
        try:
            contact = await contacts.get_contact(enrollment.contact_id)
        except STORE_OUTAGES as exc:
            raise TransientStepError(f"Contact lookup failed: {exc}") from exc
        if contact is None:
            raise PermanentStepError(f"Contact {enrollment.contact_id} not found")
        recipient = contact.get("email")
        if not recipient:
            raise PermanentStepError(f"Contact {enrollment.contact_id} has no email address")

        subscription = contact.get("subscription_status")
        if subscription and subscription != "subscribed":
            logger.info(
                f"Contact {enrollment.contact_id} is {subscription}; "
                f"skipping email step {step.id} of enrollment {enrollment.id}"
            )
            return step.next

        subject, html_body, text_body = config.subject, config.content, config.text_content
        if config.template_id:
            templates = self._collaborators.templates
            template = await templates.get_template(config.template_id) if templates else None
            if template is None:
                raise PermanentStepError(f"Email template {config.template_id} not found")
            subject = template.subject
            html_body = template.html_body
            text_body = template.text_body

        data = build_template_context(contact, enrollment.context)
        result = await self._collaborators.delivery.send(
            recipient=recipient,
            subject=render_template(subject, data) or "",
            html_body=render_template(html_body, data) or "",
            text_body=render_template(text_body, data),
            from_email=config.from_email or self._email_defaults.default_from_email,
            from_name=config.from_name or self._email_defaults.default_from_name,
        )
        if result.success:
            logger.info(
                f"Sent email step {step.id} to {recipient} for enrollment {enrollment.id} "
                f"(message {result.message_id})"
            )
            return step.next
        if result.permanent:
            raise PermanentStepError(f"Email delivery rejected: {result.error}")
        raise TransientStepError(f"Email delivery failed: {result.error}")

    async def _run_condition(self, enrollment: Enrollment, step: Step) -> Optional[str]:
        config: ConditionConfig = step.config
        try:
            matched = await evaluate_conditions(
                config.conditions or [],
                enrollment.contact_id,
                enrollment.context,
                self._collaborators.contacts,
                match=config.match,
            )
        except STORE_OUTAGES as exc:
            raise TransientStepError(f"Contact field lookup failed: {exc}") from exc
        branch = config.true_branch if matched else config.false_branch
        logger.info(
            f"Condition {step.id} of enrollment {enrollment.id} evaluated {matched}; "
            f"branch {branch or 'end'}"
        )
        return branch

    async def _run_add_tag(self, enrollment: Enrollment, step: Step) -> Optional[str]:
        config: TagConfig = step.config
        try:
            await self._collaborators.contacts.add_tag(enrollment.contact_id, config.tag.strip())
        except STORE_OUTAGES as exc:
            raise TransientStepError(f"Adding tag '{config.tag}' failed: {exc}") from exc
        return step.next

    async def _run_remove_tag(self, enrollment: Enrollment, step: Step) -> Optional[str]:
        config: TagConfig = step.config
        try:
            await self._collaborators.contacts.remove_tag(enrollment.contact_id, config.tag.strip())
        except STORE_OUTAGES as exc:
            raise TransientStepError(f"Removing tag '{config.tag}' failed: {exc}") from exc
        return step.next

    async def _run_update_field(self, enrollment: Enrollment, step: Step) -> Optional[str]:
        config: UpdateFieldConfig = step.config
        try:
            await self._collaborators.contacts.set_field(
                enrollment.contact_id, config.field, config.value
            )
        except STORE_OUTAGES as exc:
            raise TransientStepError(f"Updating field '{config.field}' failed: {exc}") from exc
        return step.next

    async def _run_webhook(self, enrollment: Enrollment, step: Step) -> Optional[str]:
        config: WebhookConfig = step.config
        caller = self._collaborators.webhooks
        if caller is None:
            raise PermanentStepError("No webhook caller configured")
        payload = {
            "workflowId": enrollment.workflow_id,
            "enrollmentId": enrollment.id,
            "contactId": enrollment.contact_id,
            "stepId": step.id,
            "context": enrollment.context,
        }
        method = (config.method or "POST").upper()
        try:
            response = await caller.call(config.url, method, payload)
        except httpx.HTTPError as exc:
            raise TransientStepError(f"Webhook {config.url} unreachable: {exc}") from exc

        status = response.status_code
        if 200 <= status < 300:
            return step.next
        if status >= 500 or status == 429:
            raise TransientStepError(f"Webhook {config.url} returned {status}")
        raise PermanentStepError(f"Webhook {config.url} returned {status}")
