"""Workflow definition validator tests."""

from conduit.contracts import WorkflowDefinition
from conduit.validator import format_validation_result, validate_workflow
from tests.fixtures.workflows import definition, step


def test_valid_definition(registry):
    doc = definition(step("s1", "echo", mappings=[{"source": "$.a", "target": "$.a"}]))
    result = validate_workflow(doc, registry)
    assert result.valid
    assert result.errors == []
    assert result.warnings == []


def test_accepts_parsed_model(registry):
    doc = WorkflowDefinition.model_validate(
        definition(step("s1", "echo", mappings=[{"source": "$", "target": "$.all"}]))
    )
    assert validate_workflow(doc, registry).valid


def test_missing_trigger_yields_exactly_one_error(registry):
    doc = definition(step("s1", "echo", mappings=[{"source": "$", "target": "$.x"}]))
    del doc["trigger"]
    result = validate_workflow(doc, registry)
    assert not result.valid
    assert result.error_codes() == ["MISSING_TRIGGER"]


def test_no_steps(registry):
    result = validate_workflow(definition(), registry)
    assert result.error_codes() == ["NO_STEPS"]


def test_step_without_mappings_only_warns(registry):
    result = validate_workflow(definition(step("s1", "echo")), registry)
    assert result.valid
    assert result.warning_codes() == ["NO_MAPPINGS"]


def test_step_without_input_warns(registry):
    doc = definition({"id": "s1", "integration": "core", "action": "echo"})
    result = validate_workflow(doc, registry)
    assert result.valid
    assert result.warning_codes() == ["NO_INPUT"]


def test_missing_version(registry):
    doc = definition(step("s1", "echo"))
    doc["version"] = ""
    assert "MISSING_VERSION" in validate_workflow(doc, registry).error_codes()


def test_trigger_checks(registry):
    cases = {
        "MISSING_INTEGRATION": {"trigger": "manual"},
        "MISSING_TRIGGER_TYPE": {"integration": "core"},
        "INTEGRATION_NOT_FOUND": {"integration": "nope", "trigger": "manual"},
        "TRIGGER_NOT_FOUND": {"integration": "core", "trigger": "webhook"},
    }
    for code, trigger in cases.items():
        doc = definition(step("s1", "echo"), trigger=trigger)
        result = validate_workflow(doc, registry)
        assert result.error_codes() == [code], code
        assert result.errors[0].path.startswith("trigger")


def test_step_checks(registry):
    doc = definition(
        {"integration": "core", "action": "echo", "input": {"mappings": []}},
        {"id": "s2", "action": "echo"},
        {"id": "s3", "integration": "core"},
        step("s4", "echo", integration="nope"),
        step("s5", "nope"),
        step("s6", "echo", retry={"maxAttempts": -1}),
    )
    result = validate_workflow(doc, registry)
    assert result.error_codes() == [
        "MISSING_STEP_ID",
        "MISSING_INTEGRATION",
        "MISSING_ACTION",
        "INTEGRATION_NOT_FOUND",
        "ACTION_NOT_FOUND",
        "INVALID_RETRY_ATTEMPTS",
    ]
    assert [e.path for e in result.errors] == [
        "steps[0].id",
        "steps[1].integration",
        "steps[2].action",
        "steps[3].integration",
        "steps[4].action",
        "steps[5].retry.maxAttempts",
    ]


def test_duplicate_step_ids(registry):
    doc = definition(step("s1", "echo"), step("s1", "echo"))
    result = validate_workflow(doc, registry)
    assert result.error_codes() == ["DUPLICATE_STEP_ID"]
    assert result.errors[0].path == "steps[1].id"


def test_settings_checks(registry):
    doc = definition(step("s1", "echo"), settings={"timeout": -1, "concurrency": 0})
    result = validate_workflow(doc, registry)
    assert result.error_codes() == ["INVALID_TIMEOUT", "INVALID_CONCURRENCY"]


def test_unparseable_definition_reports_errors(registry):
    result = validate_workflow({"version": "1", "steps": "not a list"}, registry)
    assert not result.valid
    assert result.error_codes()[0] == "INVALID_DEFINITION"
    assert result.errors[0].path.startswith("steps")

    result = validate_workflow(["not", "a", "mapping"], registry)
    assert result.error_codes() == ["INVALID_DEFINITION"]


def test_format_validation_result(registry):
    doc = definition(step("s1", "echo"))
    del doc["trigger"]
    text = format_validation_result(validate_workflow(doc, registry))
    assert text.startswith("Workflow validation failed")
    assert "trigger: Workflow trigger is required (MISSING_TRIGGER)" in text
    assert "Warnings:" in text
    assert "(NO_MAPPINGS)" in text
