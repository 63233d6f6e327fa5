"""Condition evaluation for branching steps."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, Optional

from .graph import Condition

if TYPE_CHECKING:
    from .collaborators import ContactStore

logger = logging.getLogger(__name__)

_MISSING = object()


def lookup_path(data: Dict[str, Any], path: str) -> Any:
    """Resolve ``a.b.c`` in nested mappings, falling back to a literal key.

    Returns ``_MISSING`` when nothing matches.
    """
    current: Any = data
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            current = _MISSING
            break
    if current is _MISSING and path in data:
        return data[path]
    return current


async def resolve_field(
    field: str,
    contact_id: str,
    context: Dict[str, Any],
    contacts: Optional["ContactStore"],
) -> Any:
    """Resolve the live value of ``field`` for a condition.

    ``contact.`` reads the contact store, ``trigger.`` and ``context.`` read
    the enrollment's trigger data. A bare path is looked up in the trigger
    data first and then on the contact.
    """
    if field.startswith("contact."):
        if contacts is None:
            return None
        return await contacts.get_field(contact_id, field[len("contact."):])

    for prefix in ("trigger.", "context."):
        if field.startswith(prefix):
            value = lookup_path(context, field[len(prefix):])
            return None if value is _MISSING else value

    value = lookup_path(context, field)
    if value is not _MISSING:
        return value
    if contacts is None:
        return None
    return await contacts.get_field(contact_id, field)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _equals(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    left, right = _as_number(actual), _as_number(expected)
    if left is not None and right is not None:
        return left == right
    if isinstance(actual, bool) or isinstance(expected, bool):
        return str(actual).lower() == str(expected).lower()
    return False


def compare(operator: str, actual: Any, expected: Any) -> bool:
    """Apply a condition operator. Unknown operators evaluate to ``False``."""
    if operator == "equals":
        return _equals(actual, expected)
    if operator == "not_equals":
        return not _equals(actual, expected)
    if operator in ("greater_than", "less_than"):
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return False
        return left > right if operator == "greater_than" else left < right
    if operator == "contains":
        if actual is None:
            return False
        if isinstance(actual, (list, tuple, set)):
            return expected in actual or str(expected) in {str(v) for v in actual}
        return str(expected) in str(actual)
    logger.warning(f"Unknown condition operator '{operator}', evaluating to false")
    return False


async def evaluate_conditions(
    conditions: Iterable[Condition],
    contact_id: str,
    context: Dict[str, Any],
    contacts: Optional["ContactStore"],
    match: str = "all",
) -> bool:
    results = []
    for condition in conditions:
        actual = await resolve_field(condition.field or "", contact_id, context, contacts)
        outcome = compare(condition.operator or "", actual, condition.value)
        logger.debug(
            f"Condition {condition.field} {condition.operator} {condition.value!r} "
            f"(actual={actual!r}) = {outcome}"
        )
        results.append(outcome)
    if not results:
        return False
    return any(results) if match == "any" else all(results)
