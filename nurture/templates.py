"""Email rendering: subject and bodies rendered with Jinja against the enrollment."""

from __future__ import annotations

from typing import Any, Dict, Optional

from jinja2 import ChainableUndefined, Environment, TemplateError

from .exceptions import PermanentStepError

_env = Environment(autoescape=False, undefined=ChainableUndefined)


def build_template_context(contact: Dict[str, Any], trigger_data: Dict[str, Any]) -> Dict[str, Any]:
    """Variables available to email templates.

    Trigger data is exposed at the top level and under ``trigger``; the
    contact's fields under ``contact`` and, for the common name fields, at the
    top level as well (``{{ first_name }}``).
    """
    context: Dict[str, Any] = {
        "first_name": contact.get("first_name") or contact.get("firstName") or "",
        "last_name": contact.get("last_name") or contact.get("lastName") or "",
        "email": contact.get("email", ""),
    }
    context.update(trigger_data)
    context["contact"] = contact
    context["trigger"] = trigger_data
    return context


def render_template(source: Optional[str], data: Dict[str, Any]) -> Optional[str]:
    """Render one template string. Syntax errors become permanent step failures."""
    if source is None:
        return None
    try:
        return _env.from_string(source).render(**data)
    except TemplateError as exc:
        raise PermanentStepError(f"Template rendering failed: {exc}") from exc
