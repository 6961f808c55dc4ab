"""Dependency graph queries and structural validation for runbooks."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Sequence

from runwarden.models import Runbook, RunbookStep


@dataclass
class ValidationResult:
    """Outcome of validating a runbook definition."""

    errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate(runbook: Runbook) -> ValidationResult:
    """Validate a runbook's structure.

    All problems are collected; validation never stops at the first error.
    The cycle check is skipped when step IDs are duplicated, since the
    graph is ambiguous in that case.

    Args:
        runbook: The runbook to validate

    Returns:
        ValidationResult with every error found
    """
    result = ValidationResult()

    if not runbook.name or not runbook.name.strip():
        result.errors.append("Runbook name is required")

    if not runbook.steps:
        result.errors.append("Runbook must have at least one step")

    counts = Counter(step.step_id for step in runbook.steps)
    duplicates = [step_id for step_id, count in counts.items() if count > 1]
    for step_id in duplicates:
        result.errors.append(f"Duplicate step ID: {step_id}")

    step_ids = set(counts)
    for step in runbook.steps:
        for dep in step.depends_on:
            if dep not in step_ids:
                result.errors.append(f"Step '{step.step_id}' depends on non-existent step '{dep}'")

    if not duplicates and has_cycle(runbook.steps):
        result.errors.append("Runbook contains a dependency cycle")

    return result


def has_cycle(steps: Sequence[RunbookStep]) -> bool:
    """Check whether the dependency relation contains a directed cycle.

    Dependencies naming unknown steps are ignored.
    """
    graph = {step.step_id: step.depends_on for step in steps}
    visited: set[str] = set()
    on_path: set[str] = set()

    def visit(step_id: str) -> bool:
        visited.add(step_id)
        on_path.add(step_id)

        for dep in graph.get(step_id, []):
            if dep not in graph:
                continue
            if dep in on_path:
                return True
            if dep not in visited and visit(dep):
                return True

        on_path.discard(step_id)
        return False

    for step in steps:
        if step.step_id not in visited and visit(step.step_id):
            return True

    return False


def topological_order(steps: Sequence[RunbookStep]) -> list[RunbookStep]:
    """Order steps so every step comes after all of its dependencies.

    Roots are taken in list order, so independent steps keep their
    declared order. Assumes the graph is acyclic.
    """
    by_id = {step.step_id: step for step in steps}
    visited: set[str] = set()
    order: list[RunbookStep] = []

    def visit(step: RunbookStep) -> None:
        if step.step_id in visited:
            return
        visited.add(step.step_id)

        for dep in step.depends_on:
            dep_step = by_id.get(dep)
            if dep_step is not None:
                visit(dep_step)

        order.append(step)

    for step in steps:
        visit(step)

    return order


def entry_points(steps: Sequence[RunbookStep]) -> list[RunbookStep]:
    """Steps without dependencies."""
    return [step for step in steps if not step.depends_on]


def dependents(steps: Sequence[RunbookStep], step_id: str) -> list[RunbookStep]:
    """Steps that depend directly on `step_id`."""
    return [step for step in steps if step_id in step.depends_on]


def descendants(steps: Sequence[RunbookStep], step_id: str) -> list[RunbookStep]:
    """Steps that depend on `step_id` directly or transitively."""
    found: dict[str, RunbookStep] = {}
    frontier = [step_id]
    while frontier:
        current = frontier.pop()
        for step in dependents(steps, current):
            if step.step_id not in found:
                found[step.step_id] = step
                frontier.append(step.step_id)
    return list(found.values())
