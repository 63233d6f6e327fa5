"""Validator rules and graph checks."""

import pytest

from nurture.graph import WorkflowGraph
from nurture.validation import (
    find_cycles,
    find_disconnected_steps,
    find_unreachable_steps,
    validate_workflow,
)


def _valid_steps():
    return [
        {"id": "start", "type": "trigger", "config": {"event": "signup"}, "next": "welcome"},
        {
            "id": "welcome",
            "type": "send_email",
            "config": {"subject": "Welcome", "content": "<p>Hi</p>"},
            "next": "wait",
        },
        {"id": "wait", "type": "delay", "config": {"duration": 2, "unit": "days"}, "next": "check"},
        {
            "id": "check",
            "type": "condition",
            "config": {
                "conditions": [{"field": "order.count", "operator": "equals", "value": 0}],
                "trueBranch": "nudge",
                "falseBranch": "tag",
            },
        },
        {"id": "nudge", "type": "webhook", "config": {"url": "https://hooks.example.com/x", "method": "POST"}},
        {"id": "tag", "type": "add_tag", "config": {"tag": "buyer"}, "next": "field"},
        {"id": "field", "type": "update_field", "config": {"field": "stage", "value": "customer"}},
    ]


def test_valid_workflow_has_no_errors():
    result = validate_workflow(_valid_steps())
    assert result.is_valid
    assert result.errors == []
    assert result.warnings == []


def test_empty_workflow_reports_only_empty_error():
    result = validate_workflow([])
    assert not result.is_valid
    assert [e.code for e in result.errors] == ["EMPTY_WORKFLOW"]
    assert result.warnings == []


def test_missing_trigger_is_reported():
    steps = [
        {"id": "a", "type": "send_email", "config": {"subject": "A", "content": "a"}, "next": "b"},
        {"id": "b", "type": "send_email", "config": {"subject": "B", "content": "b"}},
    ]
    result = validate_workflow(steps)
    assert not result.is_valid
    codes = [e.code for e in result.errors]
    assert "NO_TRIGGER" in codes
    # without a trigger nothing is connected
    assert codes.count("DISCONNECTED_STEP") == 2


def test_more_than_one_trigger_is_an_error():
    steps = _valid_steps() + [
        {"id": "start2", "type": "trigger", "config": {"event": "other"}, "next": "welcome"}
    ]
    result = validate_workflow(steps)
    assert "MULTIPLE_TRIGGERS" in result.codes()


def test_delay_duration_and_unit():
    steps = [
        {"id": "start", "type": "trigger", "config": {"event": "signup"}, "next": "wait"},
        {"id": "wait", "type": "delay", "config": {"duration": -5, "unit": "fortnight"}},
    ]
    result = validate_workflow(steps)
    codes = [e.code for e in result.errors]
    assert "INVALID_DELAY_DURATION" in codes
    assert "INVALID_DELAY_UNIT" in codes
    assert all(e.step_id == "wait" for e in result.errors)


def test_delay_accepts_legacy_amount_key():
    steps = [
        {"id": "start", "type": "trigger", "config": {"event": "signup"}, "next": "wait"},
        {"id": "wait", "type": "delay", "config": {"amount": 3, "unit": "hours"}},
    ]
    assert validate_workflow(steps).is_valid


def test_email_requires_template_or_subject_and_content():
    steps = [
        {"id": "start", "type": "trigger", "config": {"event": "signup"}, "next": "mail"},
        {"id": "mail", "type": "send_email", "config": {}},
    ]
    codes = validate_workflow(steps).codes()
    assert "MISSING_EMAIL_TEMPLATE" in codes
    assert "MISSING_EMAIL_CONTENT" in codes

    steps[1]["config"] = {"templateId": "tpl-1"}
    assert validate_workflow(steps).is_valid


def test_condition_checks():
    steps = [
        {"id": "start", "type": "trigger", "config": {"event": "signup"}, "next": "check"},
        {
            "id": "check",
            "type": "condition",
            "config": {"conditions": [{"value": 1}, {"field": "x", "operator": "between"}]},
        },
    ]
    codes = validate_workflow(steps).codes()
    assert "MISSING_CONDITION_FIELD" in codes
    assert "MISSING_CONDITION_OPERATOR" in codes
    assert "INVALID_CONDITION_OPERATOR" in codes
    assert "MISSING_CONDITION_BRANCHES" in codes

    steps[1]["config"] = {}
    assert "MISSING_CONDITIONS" in validate_workflow(steps).codes()


def test_condition_branches_may_sit_beside_config():
    steps = [
        {"id": "start", "type": "trigger", "config": {"event": "signup"}, "next": "check"},
        {
            "id": "check",
            "type": "condition",
            "config": {"conditions": [{"field": "vip", "operator": "equals", "value": True}]},
            "trueBranch": "tag",
        },
        {"id": "tag", "type": "add_tag", "config": {"tag": "vip"}},
    ]
    assert validate_workflow(steps).is_valid


def test_tag_webhook_and_update_field_checks():
    steps = [
        {"id": "start", "type": "trigger", "config": {"event": "signup"}, "next": "tag"},
        {"id": "tag", "type": "remove_tag", "config": {"tag": "   "}, "next": "hook"},
        {"id": "hook", "type": "webhook", "config": {"url": "ftp://example.com", "method": "DELETE"}, "next": "hook2"},
        {"id": "hook2", "type": "webhook", "config": {"method": "GET"}, "next": "field"},
        {"id": "field", "type": "update_field", "config": {}},
    ]
    codes = validate_workflow(steps).codes()
    for code in (
        "MISSING_TAG_NAME",
        "INVALID_WEBHOOK_URL",
        "INVALID_WEBHOOK_METHOD",
        "MISSING_WEBHOOK_URL",
        "MISSING_UPDATE_FIELD",
        "MISSING_UPDATE_VALUE",
    ):
        assert code in codes


def test_unknown_step_type_and_missing_id():
    steps = [
        {"id": "start", "type": "trigger", "config": {"event": "signup"}, "next": "sms"},
        {"id": "sms", "type": "send_sms", "config": {"body": "hi"}},
        {"type": "add_tag", "config": {"tag": "x"}},
    ]
    result = validate_workflow(steps)
    codes = [e.code for e in result.errors]
    assert "INVALID_STEP_TYPE" in codes
    assert "MISSING_STEP_ID" in codes


def test_duplicate_ids_and_dangling_references():
    steps = [
        {"id": "start", "type": "trigger", "config": {"event": "signup"}, "next": "tag"},
        {"id": "tag", "type": "add_tag", "config": {"tag": "a"}, "next": "ghost"},
        {"id": "tag", "type": "add_tag", "config": {"tag": "b"}},
    ]
    result = validate_workflow(steps)
    assert [e.code for e in result.errors] == ["DUPLICATE_STEP_ID"]
    assert [w.code for w in result.warnings] == ["UNKNOWN_STEP_REFERENCE"]


def test_unknown_operator_and_dangling_branch_do_not_block():
    steps = [
        {"id": "start", "type": "trigger", "config": {"event": "signup"}, "next": "check"},
        {
            "id": "check",
            "type": "condition",
            "config": {
                "conditions": [{"field": "email", "operator": "starts_with", "value": "a"}],
                "trueBranch": "ghost",
                "falseBranch": "tag",
            },
        },
        {"id": "tag", "type": "add_tag", "config": {"tag": "other"}},
    ]
    result = validate_workflow(steps)
    assert result.is_valid
    assert result.errors == []
    assert sorted(w.code for w in result.warnings) == [
        "INVALID_CONDITION_OPERATOR",
        "UNKNOWN_STEP_REFERENCE",
    ]
    assert all(w.severity == "warning" and w.step_id == "check" for w in result.warnings)


def test_orphan_step_is_disconnected_and_unreachable():
    steps = _valid_steps() + [
        {"id": "orphan", "type": "add_tag", "config": {"tag": "lost"}, "next": "welcome"}
    ]
    result = validate_workflow(steps)
    assert not result.is_valid
    disconnected = [e for e in result.errors if e.code == "DISCONNECTED_STEP"]
    assert [e.step_id for e in disconnected] == ["orphan"]
    unreachable = [w for w in result.warnings if w.code == "UNREACHABLE_STEP"]
    assert [w.step_id for w in unreachable] == ["orphan"]


def test_cycle_is_a_warning_only():
    steps = [
        {"id": "start", "type": "trigger", "config": {"event": "signup"}, "next": "a"},
        {"id": "a", "type": "add_tag", "config": {"tag": "a"}, "next": "b"},
        {"id": "b", "type": "remove_tag", "config": {"tag": "a"}, "next": "a"},
    ]
    result = validate_workflow(steps)
    assert result.is_valid
    cycle_warnings = [w for w in result.warnings if w.code == "CIRCULAR_DEPENDENCY"]
    assert len(cycle_warnings) == 1
    assert "a" in cycle_warnings[0].message and "b" in cycle_warnings[0].message


def test_malformed_config_is_reported_not_raised():
    steps = [
        {"id": "start", "type": "trigger", "config": {"event": "signup"}, "next": "check"},
        {"id": "check", "type": "condition", "config": {"conditions": "nope", "trueBranch": "start"}},
    ]
    result = validate_workflow(steps)
    assert not result.is_valid
    [issue] = [e for e in result.errors if e.step_id == "check"]
    assert issue.code == "MISSING_CONDITIONS"
    assert issue.field == "conditions"


@pytest.mark.parametrize(
    ("step_type", "config", "expected"),
    [
        ("delay", {"duration": "soon", "unit": "days"}, "INVALID_DELAY_DURATION"),
        ("delay", {"amount": [2], "unit": "days"}, "INVALID_DELAY_DURATION"),
        ("delay", {"duration": 2, "unit": 7}, "INVALID_DELAY_UNIT"),
        ("send_email", {"subject": 42, "content": "<p>x</p>"}, "MISSING_EMAIL_TEMPLATE"),
        ("send_email", {"subject": "Hi", "htmlBody": {"html": "x"}}, "MISSING_EMAIL_CONTENT"),
        ("condition", {"conditions": {"field": "x"}, "trueBranch": "end"}, "MISSING_CONDITIONS"),
        (
            "condition",
            {"conditions": [{"field": 7, "operator": "equals"}], "trueBranch": "end"},
            "MISSING_CONDITION_FIELD",
        ),
        ("add_tag", {"tag": ["vip"]}, "MISSING_TAG_NAME"),
        ("remove_tag", {"tag": {"name": "vip"}}, "MISSING_TAG_NAME"),
        ("webhook", {"url": 8080, "method": "POST"}, "INVALID_WEBHOOK_URL"),
        ("webhook", {"url": "https://hooks.example.com", "method": ["POST"]}, "INVALID_WEBHOOK_METHOD"),
        ("update_field", {"field": {"path": "stage"}, "value": 1}, "MISSING_UPDATE_FIELD"),
        ("webhook", {"url": "https://hooks.example.com", "headers": "x-token"}, "INVALID_STEP_CONFIG"),
    ],
)
def test_wrongly_typed_config_reports_the_rule_it_breaks(step_type, config, expected):
    steps = [
        {"id": "start", "type": "trigger", "config": {"event": "signup"}, "next": "step"},
        {"id": "step", "type": step_type, "config": config},
    ]
    result = validate_workflow(steps)
    assert not result.is_valid
    assert [(e.code, e.step_id) for e in result.errors] == [(expected, "step")]


def test_wrongly_typed_trigger_event():
    steps = [{"id": "start", "type": "trigger", "config": {"event": ["signup"]}}]
    result = validate_workflow(steps)
    assert [e.code for e in result.errors] == ["MISSING_TRIGGER_EVENT"]
    assert result.errors[0].field == "event"


def test_result_dumps_with_camel_case_keys():
    result = validate_workflow([])
    dumped = result.model_dump(by_alias=True)
    assert dumped["isValid"] is False
    assert dumped["errors"][0]["code"] == "EMPTY_WORKFLOW"
    assert "stepId" in dumped["errors"][0]


def test_graph_helpers():
    graph = WorkflowGraph.from_steps(_valid_steps())
    assert find_disconnected_steps(graph) == []
    assert find_unreachable_steps(graph) == []
    assert find_cycles(graph) == []
