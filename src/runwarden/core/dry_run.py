"""Dry runs of runbooks.

A dry run validates a runbook and walks its steps in dependency order,
resolving what each one would execute without invoking the script runner.
"""

from __future__ import annotations

from typing import Mapping

from loguru import logger

from runwarden.core.graph import topological_order, validate
from runwarden.models import (
    ConditionType,
    DryRunResult,
    DryRunStep,
    Runbook,
    RunbookStep,
    StepCondition,
    ThingConfig,
)


def describe_condition(condition: StepCondition) -> str:
    """Human-readable form of a step condition."""
    if condition.type == ConditionType.EXPRESSION:
        return f"expression: {condition.expression or ''}".rstrip()
    return condition.type.value


def dry_run(runbook: Runbook, things: Mapping[str, ThingConfig]) -> DryRunResult:
    """Preview a runbook execution.

    Steps are reported in the order they could run. An invalid runbook
    keeps its declared step order, since no execution order exists.

    Args:
        runbook: The runbook to preview
        things: Configured targets by thing_id

    Returns:
        Validation outcome and one entry per step
    """
    validation = validate(runbook)
    steps = topological_order(runbook.steps) if validation.is_valid else list(runbook.steps)

    previews = [_preview_step(step, things) for step in steps]
    result = DryRunResult(
        runbook_id=runbook.id,
        is_valid=validation.is_valid,
        errors=validation.errors,
        steps=previews,
        warnings=[f"{p.step_id}: {warning}" for p in previews for warning in p.warnings],
    )

    logger.debug(
        f"Dry run of '{runbook.id}': {len(result.steps)} steps, "
        f"{len(result.errors)} errors, {len(result.warnings)} warnings"
    )
    return result


def _preview_step(step: RunbookStep, things: Mapping[str, ThingConfig]) -> DryRunStep:
    warnings = []
    command = None

    thing = things.get(step.thing_id)
    if thing is None:
        warnings.append(f"Unknown thing '{step.thing_id}'")
    else:
        if step.arguments_override is None and thing.profiles and step.profile_id not in thing.profiles:
            warnings.append(f"Unknown profile '{step.profile_id}' for thing '{step.thing_id}'")
        command = thing.build_command(step.profile_id, step.arguments_override)

    retry_delays = []
    max_attempts = 1
    if step.retry is not None:
        max_attempts = step.retry.max_attempts
        retry_delays = [step.retry.get_delay(attempt) for attempt in range(1, max_attempts)]

    return DryRunStep(
        step_id=step.step_id,
        name=step.display_name,
        thing_id=step.thing_id,
        profile_id=step.profile_id,
        command=command,
        condition=describe_condition(step.condition),
        depends_on=list(step.depends_on),
        max_attempts=max_attempts,
        retry_delays=retry_delays,
        timeout=step.timeout,
        warnings=warnings,
    )
