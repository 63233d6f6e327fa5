"""Typed workflow graph: steps keyed by id, linked by successor ids."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


class StepType(str, Enum):
    TRIGGER = "trigger"
    DELAY = "delay"
    SEND_EMAIL = "send_email"
    CONDITION = "condition"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    WEBHOOK = "webhook"
    UPDATE_FIELD = "update_field"


class _StepModel(BaseModel):
    """Accept camelCase or snake_case keys, keep unknown keys."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )


class TriggerConfig(_StepModel):
    event: Optional[str] = None


class DelayConfig(_StepModel):
    duration: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("duration", "amount")
    )
    unit: Optional[str] = None


class EmailConfig(_StepModel):
    template_id: Optional[str] = None
    subject: Optional[str] = None
    content: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("content", "htmlBody", "html_body")
    )
    text_content: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("textContent", "text_content", "textBody"),
    )
    from_email: Optional[str] = None
    from_name: Optional[str] = None


class Condition(_StepModel):
    field: Optional[str] = None
    operator: Optional[str] = None
    value: Any = None


class ConditionConfig(_StepModel):
    conditions: Optional[List[Condition]] = None
    match: Literal["all", "any"] = "all"
    true_branch: Optional[str] = None
    false_branch: Optional[str] = None


class TagConfig(_StepModel):
    tag: Optional[str] = None


class WebhookConfig(_StepModel):
    url: Optional[str] = None
    method: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)


class UpdateFieldConfig(_StepModel):
    field: Optional[str] = None
    value: Any = None


class UnknownConfig(_StepModel):
    """Configuration of a step type the engine does not know."""


StepConfig = Union[
    TriggerConfig,
    DelayConfig,
    EmailConfig,
    ConditionConfig,
    TagConfig,
    WebhookConfig,
    UpdateFieldConfig,
    UnknownConfig,
]

CONFIG_TYPES: Dict[str, type[_StepModel]] = {
    StepType.TRIGGER.value: TriggerConfig,
    StepType.DELAY.value: DelayConfig,
    StepType.SEND_EMAIL.value: EmailConfig,
    StepType.CONDITION.value: ConditionConfig,
    StepType.ADD_TAG.value: TagConfig,
    StepType.REMOVE_TAG.value: TagConfig,
    StepType.WEBHOOK.value: WebhookConfig,
    StepType.UPDATE_FIELD.value: UpdateFieldConfig,
}


_BRANCH_KEYS = ("trueBranch", "falseBranch", "true_branch", "false_branch")


class Step(_StepModel):
    """One node of a workflow graph.

    ``config`` is parsed into the variant matching ``type``; unrecognized
    types keep their raw configuration in :class:`UnknownConfig`.
    """

    id: Optional[str] = None
    type: str
    config: StepConfig = Field(default_factory=UnknownConfig, validate_default=True)
    next: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _nest_branches(cls, data: Any) -> Any:
        """Move top-level ``trueBranch``/``falseBranch`` keys into the config."""
        if not isinstance(data, dict) or data.get("type") != StepType.CONDITION.value:
            return data
        branch_keys = [k for k in _BRANCH_KEYS if k in data]
        config = data.get("config")
        if not branch_keys or not (config is None or isinstance(config, dict)):
            return data
        data = dict(data)
        config = dict(config or {})
        for key in branch_keys:
            config.setdefault(key, data.pop(key))
        data["config"] = config
        return data

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, value: Any) -> Any:
        if isinstance(value, StepType):
            return value.value
        return value

    @field_validator("config", mode="before")
    @classmethod
    def _select_config(cls, value: Any, info: ValidationInfo) -> Any:
        config_type = CONFIG_TYPES.get(info.data.get("type"), UnknownConfig)
        if isinstance(value, config_type):
            return value
        if isinstance(value, BaseModel):
            value = value.model_dump(by_alias=True)
        return config_type.model_validate(value or {})

    @property
    def true_branch(self) -> Optional[str]:
        return self.config.true_branch if isinstance(self.config, ConditionConfig) else None

    @property
    def false_branch(self) -> Optional[str]:
        return self.config.false_branch if isinstance(self.config, ConditionConfig) else None

    def to_record(self) -> dict[str, Any]:
        """Dump to the interchange shape used by the admin UI."""
        return self.model_dump(by_alias=True, exclude_none=True)


class WorkflowGraph:
    """Steps stored by id; successors are resolved by lookup."""

    def __init__(self, steps: Iterable[Step]) -> None:
        self._steps: Dict[str, Step] = {}
        for step in steps:
            if step.id is not None and step.id not in self._steps:
                self._steps[step.id] = step

    @classmethod
    def from_steps(cls, records: Iterable[Union[Step, dict[str, Any]]]) -> "WorkflowGraph":
        return cls(
            record if isinstance(record, Step) else Step.model_validate(record)
            for record in records
        )

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self) -> Iterator[Step]:
        return iter(self._steps.values())

    def ids(self) -> List[str]:
        return list(self._steps)

    def get(self, step_id: Optional[str]) -> Optional[Step]:
        if step_id is None:
            return None
        return self._steps.get(step_id)

    def triggers(self) -> List[Step]:
        return [s for s in self._steps.values() if s.type == StepType.TRIGGER.value]

    def trigger(self) -> Optional[Step]:
        triggers = self.triggers()
        return triggers[0] if triggers else None

    def successors(self, step_id: str) -> List[str]:
        """Return outgoing ids: ``next``, then the true and false branches.

        Ids that name no step are included so traversals can report them.
        """
        step = self._steps.get(step_id)
        if step is None:
            return []
        out: List[str] = []
        if step.next:
            out.append(step.next)
        if step.type == StepType.CONDITION.value:
            for branch in (step.true_branch, step.false_branch):
                if branch:
                    out.append(branch)
        return out
