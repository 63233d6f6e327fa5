"""Static validation of workflow graphs.

Checks run in a fixed order and accumulate: per-step configuration,
connectivity from the trigger (BFS), cycles (DFS with a recursion stack) and
reachability. Only an empty workflow short-circuits. Errors block activation
and enrollment; warnings are advisory. Unknown condition operators and
references to missing steps are warnings: the former never match and the
latter fail the enrollment that reaches them.
"""

from __future__ import annotations

from collections import deque
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel, to_snake

from .constants import CONDITION_OPERATORS, DELAY_UNITS, WEBHOOK_METHODS
from .graph import (
    ConditionConfig,
    DelayConfig,
    EmailConfig,
    Step,
    StepType,
    CONFIG_TYPES,
    TagConfig,
    TriggerConfig,
    UnknownConfig,
    UpdateFieldConfig,
    WebhookConfig,
    WorkflowGraph,
)


class IssueCode(str, Enum):
    EMPTY_WORKFLOW = "EMPTY_WORKFLOW"
    NO_TRIGGER = "NO_TRIGGER"
    MULTIPLE_TRIGGERS = "MULTIPLE_TRIGGERS"
    MISSING_STEP_ID = "MISSING_STEP_ID"
    DUPLICATE_STEP_ID = "DUPLICATE_STEP_ID"
    INVALID_STEP_CONFIG = "INVALID_STEP_CONFIG"
    INVALID_STEP_TYPE = "INVALID_STEP_TYPE"
    MISSING_TRIGGER_EVENT = "MISSING_TRIGGER_EVENT"
    INVALID_DELAY_DURATION = "INVALID_DELAY_DURATION"
    INVALID_DELAY_UNIT = "INVALID_DELAY_UNIT"
    MISSING_EMAIL_TEMPLATE = "MISSING_EMAIL_TEMPLATE"
    MISSING_EMAIL_CONTENT = "MISSING_EMAIL_CONTENT"
    MISSING_CONDITIONS = "MISSING_CONDITIONS"
    MISSING_CONDITION_FIELD = "MISSING_CONDITION_FIELD"
    MISSING_CONDITION_OPERATOR = "MISSING_CONDITION_OPERATOR"
    INVALID_CONDITION_OPERATOR = "INVALID_CONDITION_OPERATOR"
    MISSING_CONDITION_BRANCHES = "MISSING_CONDITION_BRANCHES"
    MISSING_TAG_NAME = "MISSING_TAG_NAME"
    MISSING_WEBHOOK_URL = "MISSING_WEBHOOK_URL"
    INVALID_WEBHOOK_URL = "INVALID_WEBHOOK_URL"
    INVALID_WEBHOOK_METHOD = "INVALID_WEBHOOK_METHOD"
    MISSING_UPDATE_FIELD = "MISSING_UPDATE_FIELD"
    MISSING_UPDATE_VALUE = "MISSING_UPDATE_VALUE"
    UNKNOWN_STEP_REFERENCE = "UNKNOWN_STEP_REFERENCE"
    DISCONNECTED_STEP = "DISCONNECTED_STEP"
    CIRCULAR_DEPENDENCY = "CIRCULAR_DEPENDENCY"
    UNREACHABLE_STEP = "UNREACHABLE_STEP"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class ValidationIssue(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, use_enum_values=True
    )

    code: str
    message: str
    step_id: Optional[str] = None
    field: Optional[str] = None
    severity: Severity = Severity.ERROR


class ValidationResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    is_valid: bool
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)

    def codes(self) -> List[str]:
        return [issue.code for issue in self.errors + self.warnings]


def _error(code: IssueCode, message: str, step_id: Optional[str] = None, field: Optional[str] = None) -> ValidationIssue:
    return ValidationIssue(code=code.value, message=message, step_id=step_id, field=field)


def _warning(
    code: IssueCode, message: str, step_id: Optional[str] = None, field: Optional[str] = None
) -> ValidationIssue:
    return ValidationIssue(
        code=code.value, message=message, step_id=step_id, field=field, severity=Severity.WARNING
    )


# ----------------------------------------------------------------------
# Per-step checks


def _check_trigger(step: Step, config: TriggerConfig) -> List[ValidationIssue]:
    if not config.event:
        return [
            _error(
                IssueCode.MISSING_TRIGGER_EVENT,
                "Trigger step must specify an event type",
                step.id,
                "event",
            )
        ]
    return []


def _check_delay(step: Step, config: DelayConfig) -> List[ValidationIssue]:
    issues = []
    if config.duration is None or config.duration <= 0:
        issues.append(
            _error(
                IssueCode.INVALID_DELAY_DURATION,
                "Delay step must have a positive duration",
                step.id,
                "duration",
            )
        )
    if config.unit not in DELAY_UNITS:
        issues.append(
            _error(
                IssueCode.INVALID_DELAY_UNIT,
                f"Delay unit must be one of: {', '.join(DELAY_UNITS)}",
                step.id,
                "unit",
            )
        )
    return issues


def _check_email(step: Step, config: EmailConfig) -> List[ValidationIssue]:
    if config.template_id:
        return []
    issues = []
    if not config.subject:
        issues.append(
            _error(
                IssueCode.MISSING_EMAIL_TEMPLATE,
                "Email step must have a template or a subject",
                step.id,
                "template",
            )
        )
    if not config.content:
        issues.append(
            _error(
                IssueCode.MISSING_EMAIL_CONTENT,
                "Email step must have a template or content",
                step.id,
                "content",
            )
        )
    return issues


def _check_condition(step: Step, config: ConditionConfig) -> List[ValidationIssue]:
    issues = []
    if not config.conditions:
        issues.append(
            _error(
                IssueCode.MISSING_CONDITIONS,
                "Condition step must have at least one condition",
                step.id,
                "conditions",
            )
        )
    for condition in config.conditions or []:
        if not condition.field:
            issues.append(
                _error(
                    IssueCode.MISSING_CONDITION_FIELD,
                    "Condition must specify a field",
                    step.id,
                    "conditions",
                )
            )
        if not condition.operator:
            issues.append(
                _error(
                    IssueCode.MISSING_CONDITION_OPERATOR,
                    "Condition must specify an operator",
                    step.id,
                    "conditions",
                )
            )
        elif condition.operator not in CONDITION_OPERATORS:
            issues.append(
                _warning(
                    IssueCode.INVALID_CONDITION_OPERATOR,
                    f"Unknown condition operator: {condition.operator}; it never matches",
                    step.id,
                    "conditions",
                )
            )
    if not config.true_branch and not config.false_branch:
        issues.append(
            _error(
                IssueCode.MISSING_CONDITION_BRANCHES,
                "Condition step must have at least one branch defined",
                step.id,
            )
        )
    return issues


def _check_tag(step: Step, config: TagConfig) -> List[ValidationIssue]:
    if not config.tag or not config.tag.strip():
        return [
            _error(
                IssueCode.MISSING_TAG_NAME,
                "Tag step must specify a tag name",
                step.id,
                "tag",
            )
        ]
    return []


def _is_valid_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _check_webhook(step: Step, config: WebhookConfig) -> List[ValidationIssue]:
    issues = []
    if not config.url:
        issues.append(
            _error(IssueCode.MISSING_WEBHOOK_URL, "Webhook step must have a URL", step.id, "url")
        )
    elif not _is_valid_url(config.url):
        issues.append(
            _error(IssueCode.INVALID_WEBHOOK_URL, "Webhook URL is not valid", step.id, "url")
        )
    if config.method not in WEBHOOK_METHODS:
        issues.append(
            _error(
                IssueCode.INVALID_WEBHOOK_METHOD,
                f"Webhook method must be one of: {', '.join(WEBHOOK_METHODS)}",
                step.id,
                "method",
            )
        )
    return issues


def _check_update_field(step: Step, config: UpdateFieldConfig) -> List[ValidationIssue]:
    issues = []
    if not config.field:
        issues.append(
            _error(
                IssueCode.MISSING_UPDATE_FIELD,
                "Update field step must specify a field name",
                step.id,
                "field",
            )
        )
    if config.value is None:
        issues.append(
            _error(
                IssueCode.MISSING_UPDATE_VALUE,
                "Update field step must specify a value",
                step.id,
                "value",
            )
        )
    return issues


_STEP_CHECKS: Dict[type, Callable[[Step, Any], List[ValidationIssue]]] = {
    TriggerConfig: _check_trigger,
    DelayConfig: _check_delay,
    EmailConfig: _check_email,
    ConditionConfig: _check_condition,
    TagConfig: _check_tag,
    WebhookConfig: _check_webhook,
    UpdateFieldConfig: _check_update_field,
}


def validate_step(step: Step) -> List[ValidationIssue]:
    """Validate the configuration of a single step."""
    if not step.id:
        return [_error(IssueCode.MISSING_STEP_ID, "Step is missing required ID")]
    if isinstance(step.config, UnknownConfig):
        return [
            _error(
                IssueCode.INVALID_STEP_TYPE,
                f"Unknown step type: {step.type}",
                step.id,
                "type",
            )
        ]
    return _STEP_CHECKS[type(step.config)](step, step.config)


# ----------------------------------------------------------------------
# Graph checks


def find_disconnected_steps(graph: WorkflowGraph) -> List[str]:
    """Ids not visited by a breadth-first walk from the trigger."""
    trigger = graph.trigger()
    if trigger is None:
        return graph.ids()

    visited: Set[str] = {trigger.id}
    queue = deque([trigger.id])
    while queue:
        current = queue.popleft()
        for successor in graph.successors(current):
            if successor not in visited:
                visited.add(successor)
                queue.append(successor)
    return [step_id for step_id in graph.ids() if step_id not in visited]


def find_cycles(graph: WorkflowGraph) -> List[List[str]]:
    """Cycle paths found by a depth-first walk from the trigger."""
    cycles: List[List[str]] = []
    visited: Set[str] = set()
    on_stack: Set[str] = set()

    def dfs(step_id: str, path: List[str]) -> None:
        if step_id in on_stack:
            cycles.append(path[path.index(step_id):] + [step_id])
            return
        if step_id in visited or step_id not in graph:
            return
        visited.add(step_id)
        on_stack.add(step_id)
        path.append(step_id)
        for successor in graph.successors(step_id):
            dfs(successor, path)
        path.pop()
        on_stack.discard(step_id)

    trigger = graph.trigger()
    if trigger is not None:
        dfs(trigger.id, [])
    return cycles


def find_unreachable_steps(graph: WorkflowGraph) -> List[str]:
    """Steps that can never execute.

    Currently the same walk as :func:`find_disconnected_steps`; branches a
    condition can never take are not analysed.
    """
    return find_disconnected_steps(graph)


# Config fields whose values failed type coercion, by config type
_COERCION_CODES: Dict[type, Dict[str, IssueCode]] = {
    TriggerConfig: {"event": IssueCode.MISSING_TRIGGER_EVENT},
    DelayConfig: {
        "duration": IssueCode.INVALID_DELAY_DURATION,
        "amount": IssueCode.INVALID_DELAY_DURATION,
        "unit": IssueCode.INVALID_DELAY_UNIT,
    },
    EmailConfig: {
        "template_id": IssueCode.MISSING_EMAIL_TEMPLATE,
        "subject": IssueCode.MISSING_EMAIL_TEMPLATE,
        "content": IssueCode.MISSING_EMAIL_CONTENT,
        "html_body": IssueCode.MISSING_EMAIL_CONTENT,
    },
    ConditionConfig: {"conditions": IssueCode.MISSING_CONDITIONS},
    TagConfig: {"tag": IssueCode.MISSING_TAG_NAME},
    WebhookConfig: {
        "url": IssueCode.INVALID_WEBHOOK_URL,
        "method": IssueCode.INVALID_WEBHOOK_METHOD,
    },
    UpdateFieldConfig: {"field": IssueCode.MISSING_UPDATE_FIELD},
}

_CONDITION_COERCION_CODES = {
    "field": IssueCode.MISSING_CONDITION_FIELD,
    "operator": IssueCode.MISSING_CONDITION_OPERATOR,
}


def _coercion_code(config_type: type, loc: tuple) -> tuple[IssueCode, Optional[str]]:
    names = [to_snake(part) for part in loc if isinstance(part, str)]
    if not names:
        return IssueCode.INVALID_STEP_CONFIG, None
    if names[0] == "conditions" and len(names) > 1:
        return _CONDITION_COERCION_CODES.get(names[1], IssueCode.MISSING_CONDITIONS), "conditions"
    code = _COERCION_CODES.get(config_type, {}).get(names[0], IssueCode.INVALID_STEP_CONFIG)
    return code, names[0]


def _malformed_step_issues(record: Any, exc: ValidationError) -> List[ValidationIssue]:
    """Report a step that failed to parse under the rule its bad field breaks.

    The config is re-validated on its own so each error keeps its field
    location; anything not tied to a known config field is reported as
    ``INVALID_STEP_CONFIG``.
    """
    record = record if isinstance(record, dict) else {}
    step_id = record.get("id")
    step_type = record.get("type")
    config_type = CONFIG_TYPES.get(step_type) if isinstance(step_type, str) else None
    config = record.get("config")
    if config_type is not None and isinstance(config, dict):
        try:
            config_type.model_validate(config)
        except ValidationError as config_exc:
            issues: List[ValidationIssue] = []
            for detail in config_exc.errors():
                code, field = _coercion_code(config_type, detail["loc"])
                if any(issue.code == code.value for issue in issues):
                    continue
                message = f"Invalid value for {field or 'config'}: {detail['msg']}"
                issues.append(_error(code, message, step_id, field))
            return issues
    return [
        _error(
            IssueCode.INVALID_STEP_CONFIG,
            f"Step configuration is malformed: {exc.errors()[0]['msg']}",
            step_id,
        )
    ]


def _parse_steps(
    records: Iterable[Union[Step, Dict[str, Any]]],
) -> tuple[List[Step], List[ValidationIssue], Set[int]]:
    steps: List[Step] = []
    issues: List[ValidationIssue] = []
    malformed: Set[int] = set()
    for record in records:
        if isinstance(record, Step):
            steps.append(record)
            continue
        try:
            steps.append(Step.model_validate(record))
        except ValidationError as exc:
            step_id = record.get("id") if isinstance(record, dict) else None
            issues.extend(_malformed_step_issues(record, exc))
            if step_id:
                # keep the node so connectivity checks still see it
                placeholder = Step.model_construct(
                    id=step_id,
                    type=str(record.get("type")),
                    config=UnknownConfig(),
                    next=record.get("next"),
                )
                malformed.add(id(placeholder))
                steps.append(placeholder)
    return steps, issues, malformed


def validate_workflow(records: Optional[Iterable[Union[Step, Dict[str, Any]]]]) -> ValidationResult:
    """Validate a workflow's step collection.

    Returns a result whose ``is_valid`` is true iff there are no errors.
    """
    records = list(records or [])
    if not records:
        return ValidationResult(
            is_valid=False,
            errors=[_error(IssueCode.EMPTY_WORKFLOW, "Workflow must contain at least one step")],
        )

    steps, errors, malformed = _parse_steps(records)
    warnings: List[ValidationIssue] = []

    triggers = [s for s in steps if s.type == StepType.TRIGGER.value]
    if not triggers:
        errors.append(_error(IssueCode.NO_TRIGGER, "Workflow must have a trigger step"))
    elif len(triggers) > 1:
        errors.append(
            _error(IssueCode.MULTIPLE_TRIGGERS, "Workflow must have exactly one trigger step")
        )

    seen: Set[str] = set()
    for step in steps:
        if step.id and step.id in seen:
            errors.append(
                _error(
                    IssueCode.DUPLICATE_STEP_ID,
                    f'Step id "{step.id}" is used more than once',
                    step.id,
                )
            )
        elif step.id:
            seen.add(step.id)
        if id(step) not in malformed:
            for issue in validate_step(step):
                (warnings if issue.severity == Severity.WARNING else errors).append(issue)

    graph = WorkflowGraph(steps)
    for step in graph:
        for target in graph.successors(step.id):
            if target not in graph:
                warnings.append(
                    _warning(
                        IssueCode.UNKNOWN_STEP_REFERENCE,
                        f'Step "{step.id}" points to missing step "{target}"; '
                        "enrollments taking it will fail",
                        step.id,
                    )
                )

    for step_id in find_disconnected_steps(graph):
        errors.append(
            _error(
                IssueCode.DISCONNECTED_STEP,
                f'Step "{step_id}" is not connected to the workflow',
                step_id,
            )
        )

    cycles = find_cycles(graph)
    if cycles:
        path = " -> ".join(cycles[0])
        warnings.append(
            _warning(
                IssueCode.CIRCULAR_DEPENDENCY,
                f"Potential infinite loop detected in workflow path: {path}",
            )
        )

    for step_id in find_unreachable_steps(graph):
        warnings.append(
            _warning(
                IssueCode.UNREACHABLE_STEP,
                f'Step "{step_id}" may never be reached',
                step_id,
            )
        )

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
