"""Narrow interfaces to the services the engine drives.

Email transport, the contact database and template storage live outside
nurture; the engine only sees these protocols. ``HttpxWebhookCaller`` and the
in-memory stores are usable defaults.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Set

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class DeliveryResult(BaseModel):
    """Outcome of handing one email to the delivery provider.

    ``permanent`` marks failures that must not be retried, such as an
    invalid recipient address.
    """

    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    permanent: bool = False


class WebhookResponse(BaseModel):
    status_code: int
    body: Any = None


class EmailTemplate(BaseModel):
    subject: str
    html_body: str
    text_body: Optional[str] = None


class Delivery(Protocol):
    async def send(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        text_body: Optional[str],
        from_email: str,
        from_name: str,
    ) -> DeliveryResult:
        """Send one email."""


class WebhookCaller(Protocol):
    async def call(self, url: str, method: str, payload: Dict[str, Any]) -> WebhookResponse:
        """Issue the HTTP call. Network failures raise ``httpx.HTTPError``."""


class ContactStore(Protocol):
    """Contact profiles and tags.

    Outages should surface as ``OSError`` (connection and timeout errors) or
    ``httpx.HTTPError``; the engine retries those and lets anything else
    propagate.
    """

    async def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        """Return the contact profile used for personalization, or ``None``."""

    async def get_field(self, contact_id: str, path: str) -> Any:
        """Return a contact field, or ``None`` when unset."""

    async def set_field(self, contact_id: str, path: str, value: Any) -> None:
        """Set a contact field."""

    async def add_tag(self, contact_id: str, tag: str) -> None:
        """Attach a tag to the contact."""

    async def remove_tag(self, contact_id: str, tag: str) -> None:
        """Detach a tag from the contact."""


class TemplateStore(Protocol):
    async def get_template(self, template_id: str) -> Optional[EmailTemplate]:
        """Return the stored email template, or ``None``."""


@dataclass
class Collaborators:
    """External services handed to the engine."""

    delivery: Delivery
    contacts: ContactStore
    webhooks: Optional[WebhookCaller] = None
    templates: Optional[TemplateStore] = None


class HttpxWebhookCaller:
    """Webhook caller backed by ``httpx.AsyncClient``."""

    def __init__(self, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self._timeout = timeout
        self._client = client

    async def call(self, url: str, method: str, payload: Dict[str, Any]) -> WebhookResponse:
        request_kwargs: Dict[str, Any] = (
            {"params": _flatten_params(payload)} if method == "GET" else {"json": payload}
        )
        if self._client is not None:
            response = await self._client.request(method, url, **request_kwargs)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.request(method, url, **request_kwargs)
        try:
            body: Any = response.json()
        except ValueError:
            body = response.text
        return WebhookResponse(status_code=response.status_code, body=body)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def _flatten_params(payload: Dict[str, Any]) -> Dict[str, str]:
    return {k: str(v) for k, v in payload.items() if not isinstance(v, (dict, list))}


class DryRunDelivery:
    """Delivery that logs each email instead of sending it."""

    def __init__(self) -> None:
        self.sent: list[Dict[str, Any]] = []

    async def send(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        text_body: Optional[str],
        from_email: str,
        from_name: str,
    ) -> DeliveryResult:
        message_id = f"dry-run-{len(self.sent) + 1}"
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
        logger.info(f"[dry-run] email to {recipient} from {from_name} <{from_email}>: {subject}")
        return DeliveryResult(success=True, message_id=message_id)


class InMemoryContactStore:
    """Contacts kept in local memory. Useful for tests and the CLI demo."""

    def __init__(self, contacts: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self._contacts: Dict[str, Dict[str, Any]] = defaultdict(dict)
        self._tags: Dict[str, Set[str]] = defaultdict(set)
        self._lock = asyncio.Lock()
        for contact_id, fields in (contacts or {}).items():
            self._contacts[contact_id] = dict(fields)

    def fields(self, contact_id: str) -> Dict[str, Any]:
        return self._contacts[contact_id]

    def tags(self, contact_id: str) -> Set[str]:
        return set(self._tags[contact_id])

    async def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        contact = self._contacts.get(contact_id)
        return dict(contact) if contact is not None else None

    async def get_field(self, contact_id: str, path: str) -> Any:
        current: Any = self._contacts.get(contact_id, {})
        if path in current:
            return current[path]
        for part in path.split("."):
            if not isinstance(current, dict) or part not in current:
                return None
            current = current[part]
        return current

    async def set_field(self, contact_id: str, path: str, value: Any) -> None:
        async with self._lock:
            target = self._contacts[contact_id]
            *parents, leaf = path.split(".")
            for part in parents:
                target = target.setdefault(part, {})
            target[leaf] = value

    async def add_tag(self, contact_id: str, tag: str) -> None:
        self._tags[contact_id].add(tag)

    async def remove_tag(self, contact_id: str, tag: str) -> None:
        self._tags[contact_id].discard(tag)


@dataclass
class InMemoryTemplateStore:
    templates: Dict[str, EmailTemplate] = field(default_factory=dict)

    async def get_template(self, template_id: str) -> Optional[EmailTemplate]:
        return self.templates.get(template_id)
