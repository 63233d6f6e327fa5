"""Fake collaborators and workflow builders shared by the tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from nurture.collaborators import (
    Collaborators,
    DeliveryResult,
    EmailTemplate,
    InMemoryContactStore,
    InMemoryTemplateStore,
    WebhookResponse,
)
from nurture.config import NurtureConfig, SchedulerConfig
from nurture.contracts import TriggerType, Workflow, WorkflowStatus
from nurture.persistence import InMemoryEnrollmentRepository
from nurture.queues import BaseWorkQueue, InMemoryWorkQueue
from nurture.runtime import NurtureRuntime

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class CountingDelivery:
    """Records every send. ``failures`` queued results are returned first."""

    def __init__(self, failures: Optional[List[DeliveryResult]] = None, pause: float = 0.0) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.failures = list(failures or [])
        self.pause = pause

    async def send(self, recipient, subject, html_body, text_body, from_email, from_name):
        if self.pause:
            await asyncio.sleep(self.pause)
        if self.failures:
            return self.failures.pop(0)
        self.sent.append(
            {
                "recipient": recipient,
                "subject": subject,
                "html_body": html_body,
                "text_body": text_body,
                "from_email": from_email,
                "from_name": from_name,
            }
        )
        return DeliveryResult(success=True, message_id=f"msg-{len(self.sent)}")


class FakeWebhookCaller:
    """Returns queued status codes (or raises queued exceptions)."""

    def __init__(self, responses: Optional[List[Any]] = None) -> None:
        self.responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []

    async def call(self, url, method, payload):
        self.calls.append({"url": url, "method": method, "payload": payload})
        response = self.responses.pop(0) if self.responses else 200
        if isinstance(response, Exception):
            raise response
        return WebhookResponse(status_code=response)


def connect_error() -> httpx.ConnectError:
    return httpx.ConnectError("connection refused")


class FailingContactStore(InMemoryContactStore):
    """Contact c1 exists, but every lookup and write raises ``error``."""

    def __init__(self, error: Exception) -> None:
        super().__init__({"c1": {"email": "ada@example.com", "first_name": "Ada"}})
        self.error = error

    async def get_contact(self, contact_id):
        raise self.error

    async def get_field(self, contact_id, path):
        raise self.error

    async def add_tag(self, contact_id, tag):
        raise self.error


class FlakyQueue(InMemoryWorkQueue):
    """Raises ``ConnectionError`` from the named operations, ``failures`` times each."""

    def __init__(self, *operations: str, failures: int = 1) -> None:
        super().__init__()
        self.remaining = {operation: failures for operation in operations}

    def _maybe_fail(self, operation: str) -> None:
        if self.remaining.get(operation):
            self.remaining[operation] -= 1
            raise ConnectionError(f"queue unavailable during {operation}")

    async def schedule(self, *args, **kwargs):
        self._maybe_fail("schedule")
        return await super().schedule(*args, **kwargs)

    async def complete_and_schedule(self, *args, **kwargs):
        self._maybe_fail("complete_and_schedule")
        return await super().complete_and_schedule(*args, **kwargs)


def make_collaborators(
    contacts: Optional[Dict[str, Dict[str, Any]]] = None,
    delivery: Optional[CountingDelivery] = None,
    webhooks: Optional[FakeWebhookCaller] = None,
    templates: Optional[Dict[str, EmailTemplate]] = None,
) -> Collaborators:
    return Collaborators(
        delivery=delivery or CountingDelivery(),
        contacts=InMemoryContactStore(
            contacts
            if contacts is not None
            else {"c1": {"email": "ada@example.com", "first_name": "Ada"}}
        ),
        webhooks=webhooks or FakeWebhookCaller(),
        templates=InMemoryTemplateStore(templates or {}),
    )


def make_runtime(
    collaborators: Optional[Collaborators] = None,
    queue: Optional[BaseWorkQueue] = None,
    **scheduler: Any,
) -> NurtureRuntime:
    scheduler.setdefault("backoff_jitter_seconds", 0.0)
    config = NurtureConfig(scheduler=SchedulerConfig(**scheduler))
    return NurtureRuntime(
        repository=InMemoryEnrollmentRepository(),
        queue=queue or InMemoryWorkQueue(),
        collaborators=collaborators or make_collaborators(),
        config=config,
    )


def make_workflow(
    steps: List[Dict[str, Any]],
    trigger_type: TriggerType = TriggerType.WELCOME,
    status: WorkflowStatus = WorkflowStatus.ACTIVE,
    **kwargs: Any,
) -> Workflow:
    return Workflow(name="Test workflow", trigger_type=trigger_type, status=status, steps=steps, **kwargs)


def trigger_step(next_id: Optional[str] = "email1", step_id: str = "start") -> Dict[str, Any]:
    return {"id": step_id, "type": "trigger", "config": {"event": "signup"}, "next": next_id}


def email_step(step_id: str, next_id: Optional[str] = None, subject: str = "Hello {{ first_name }}") -> Dict[str, Any]:
    return {
        "id": step_id,
        "type": "send_email",
        "config": {"subject": subject, "content": "<p>Hi {{ first_name }}</p>"},
        "next": next_id,
    }


def delay_step(step_id: str, next_id: Optional[str], duration: float = 1, unit: str = "hours") -> Dict[str, Any]:
    return {"id": step_id, "type": "delay", "config": {"duration": duration, "unit": unit}, "next": next_id}


def welcome_series() -> List[Dict[str, Any]]:
    """trigger -> email -> delay(1 hour) -> email"""
    return [
        trigger_step("email1"),
        email_step("email1", "wait"),
        delay_step("wait", "email2"),
        email_step("email2", None, subject="Still there, {{ first_name }}?"),
    ]
