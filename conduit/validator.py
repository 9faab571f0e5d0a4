"""Static validation of workflow definitions against a capability registry."""

from __future__ import annotations

from typing import Any, List, Mapping, Sequence, Union

from pydantic import BaseModel, Field, ValidationError

from .contracts import Step, WorkflowDefinition, WorkflowSettings, WorkflowTrigger
from .registry import CapabilityRegistry


class ValidationIssue(BaseModel):
    path: str
    message: str
    code: str


class ValidationResult(BaseModel):
    valid: bool = True
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)

    def error_codes(self) -> List[str]:
        return [issue.code for issue in self.errors]

    def warning_codes(self) -> List[str]:
        return [issue.code for issue in self.warnings]


def _loc_to_path(loc: Sequence[Union[str, int]]) -> str:
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path or "$"


class _Collector:
    def __init__(self) -> None:
        self.errors: List[ValidationIssue] = []
        self.warnings: List[ValidationIssue] = []

    def error(self, path: str, message: str, code: str) -> None:
        self.errors.append(ValidationIssue(path=path, message=message, code=code))

    def warning(self, path: str, message: str, code: str) -> None:
        self.warnings.append(ValidationIssue(path=path, message=message, code=code))

    def result(self) -> ValidationResult:
        return ValidationResult(
            valid=not self.errors, errors=self.errors, warnings=self.warnings
        )


def _validate_trigger(
    trigger: WorkflowTrigger, registry: CapabilityRegistry, out: _Collector
) -> None:
    if not trigger.integration:
        out.error("trigger.integration", "Trigger integration is required", "MISSING_INTEGRATION")
        return
    if not trigger.trigger:
        out.error("trigger.trigger", "Trigger type is required", "MISSING_TRIGGER_TYPE")
        return

    integration = registry.get(trigger.integration)
    if integration is None:
        out.error(
            "trigger.integration",
            f"Integration '{trigger.integration}' not found",
            "INTEGRATION_NOT_FOUND",
        )
        return
    if trigger.trigger not in integration.triggers:
        out.error(
            "trigger.trigger",
            f"Trigger '{trigger.trigger}' not found in integration '{trigger.integration}'",
            "TRIGGER_NOT_FOUND",
        )


def _validate_step(
    step: Step, index: int, registry: CapabilityRegistry, out: _Collector
) -> None:
    base = f"steps[{index}]"

    if not step.id:
        out.error(f"{base}.id", "Step ID is required", "MISSING_STEP_ID")
    if not step.integration:
        out.error(f"{base}.integration", "Step integration is required", "MISSING_INTEGRATION")
        return
    if not step.action:
        out.error(f"{base}.action", "Step action is required", "MISSING_ACTION")
        return

    integration = registry.get(step.integration)
    if integration is None:
        out.error(
            f"{base}.integration",
            f"Integration '{step.integration}' not found",
            "INTEGRATION_NOT_FOUND",
        )
        return
    if step.action not in integration.actions:
        out.error(
            f"{base}.action",
            f"Action '{step.action}' not found in integration '{step.integration}'",
            "ACTION_NOT_FOUND",
        )

    if step.input is None:
        out.warning(f"{base}.input", "Step has no input configuration", "NO_INPUT")
    elif not step.input.mappings:
        out.warning(f"{base}.input.mappings", "Step has no field mappings", "NO_MAPPINGS")

    if step.retry is not None and step.retry.max_attempts < 0:
        out.error(
            f"{base}.retry.maxAttempts",
            "Retry maxAttempts must be >= 0",
            "INVALID_RETRY_ATTEMPTS",
        )


def _validate_settings(settings: WorkflowSettings, out: _Collector) -> None:
    if settings.timeout is not None and settings.timeout < 0:
        out.error("settings.timeout", "Timeout must be >= 0", "INVALID_TIMEOUT")
    if settings.concurrency is not None and settings.concurrency < 1:
        out.error("settings.concurrency", "Concurrency must be >= 1", "INVALID_CONCURRENCY")


def validate_workflow(
    definition: Union[WorkflowDefinition, Mapping[str, Any]],
    registry: CapabilityRegistry,
) -> ValidationResult:
    """Check a definition for structural and registry errors.

    Errors make the result invalid; warnings never do. A raw mapping that
    cannot be parsed at all is reported as ``INVALID_DEFINITION`` errors.
    """
    out = _Collector()

    if not isinstance(definition, WorkflowDefinition):
        if not isinstance(definition, Mapping):
            out.error("$", "Workflow definition must be an object", "INVALID_DEFINITION")
            return out.result()
        try:
            definition = WorkflowDefinition.model_validate(dict(definition))
        except ValidationError as exc:
            for err in exc.errors(include_url=False):
                out.error(_loc_to_path(err["loc"]), err["msg"], "INVALID_DEFINITION")
            return out.result()

    if not definition.version:
        out.error("version", "Workflow version is required", "MISSING_VERSION")

    if definition.trigger is None:
        out.error("trigger", "Workflow trigger is required", "MISSING_TRIGGER")
    else:
        _validate_trigger(definition.trigger, registry, out)

    if not definition.steps:
        out.error("steps", "Workflow must have at least one step", "NO_STEPS")
    else:
        seen: dict[str, int] = {}
        for index, step in enumerate(definition.steps):
            _validate_step(step, index, registry, out)
            if step.id:
                if step.id in seen:
                    out.error(
                        f"steps[{index}].id",
                        f"Step ID '{step.id}' already used by steps[{seen[step.id]}]",
                        "DUPLICATE_STEP_ID",
                    )
                else:
                    seen[step.id] = index

    if definition.settings is not None:
        _validate_settings(definition.settings, out)

    return out.result()


def format_validation_result(result: ValidationResult) -> str:
    """Render a validation result as human readable text."""
    lines = ["Workflow is valid" if result.valid else "Workflow validation failed"]

    if result.errors:
        lines.append("\nErrors:")
        lines.extend(
            f"  - {issue.path}: {issue.message} ({issue.code})" for issue in result.errors
        )
    if result.warnings:
        lines.append("\nWarnings:")
        lines.extend(
            f"  - {issue.path}: {issue.message} ({issue.code})" for issue in result.warnings
        )

    return "\n".join(lines)


__all__ = [
    "ValidationIssue",
    "ValidationResult",
    "format_validation_result",
    "validate_workflow",
]
