"""Step gating conditions.

A step runs once all of its dependencies are decided and its condition
holds against their statuses. Expressions are a tiny boolean language over
literals of the form ``step_id.state``::

    build.succeeded AND NOT ( tests.failed OR lint.skipped )

States are ``succeeded``, ``failed``, ``skipped`` and ``completed``
(succeeded or failed). Operators and states are case-insensitive.
"""

from __future__ import annotations

from typing import Mapping, Sequence

from runwarden.models import ConditionType, RunbookStep, StepStatus

_OPERATORS = ("AND", "OR")


def should_execute(step: RunbookStep, results: Mapping[str, StepStatus]) -> bool:
    """Decide whether a step should run given its dependencies' statuses.

    Args:
        step: The step being considered
        results: Status of each step by step_id

    Returns:
        True if the step's condition holds
    """
    if not step.depends_on:
        return True

    dep_statuses = [results.get(dep) for dep in step.depends_on]
    condition = step.condition

    if condition.type == ConditionType.ALWAYS:
        return all(s in (StepStatus.SUCCEEDED, StepStatus.FAILED) for s in dep_statuses)

    if condition.type == ConditionType.ON_SUCCESS:
        return all(s == StepStatus.SUCCEEDED for s in dep_statuses)

    if condition.type == ConditionType.ON_FAILURE:
        return any(s == StepStatus.FAILED for s in dep_statuses)

    if condition.type == ConditionType.EXPRESSION:
        return evaluate_expression(condition.expression or "", results)

    return False


def tokenize(expression: str) -> list[str]:
    """Split an expression on whitespace, with parentheses as their own tokens."""
    return expression.replace("(", " ( ").replace(")", " ) ").split()


def referenced_steps(expression: str | None) -> set[str]:
    """Step IDs named by the literals of an expression."""
    if not expression:
        return set()
    names = set()
    for token in tokenize(expression):
        parts = token.split(".")
        if len(parts) == 2:
            names.add(parts[0])
    return names


def evaluate_expression(expression: str, results: Mapping[str, StepStatus]) -> bool:
    """Evaluate a condition expression.

    An empty or blank expression is true.
    """
    if not expression or not expression.strip():
        return True
    return evaluate_tokens(tokenize(expression), results)


def evaluate_tokens(tokens: Sequence[str], results: Mapping[str, StepStatus]) -> bool:
    """Evaluate a token list.

    There is no precedence between AND and OR: the first operator found
    scanning left to right splits the expression, and both sides are
    evaluated recursively. ``a OR b AND c`` is therefore ``a OR (b AND c)``
    while ``a AND b OR c`` is ``a AND (b OR c)``. Existing runbooks depend
    on this, so it must not be changed to conventional precedence.
    """
    if not tokens:
        return True

    if len(tokens) >= 2 and tokens[0].upper() == "NOT":
        return not evaluate_tokens(tokens[1:], results)

    if len(tokens) >= 3 and tokens[0] == "(":
        close = _matching_paren(tokens)
        if close > 0:
            inner = evaluate_tokens(tokens[1:close], results)

            if close == len(tokens) - 1:
                return inner

            rest = tokens[close + 1:]
            if len(rest) >= 2 and rest[0].upper() in _OPERATORS:
                right = evaluate_tokens(rest[1:], results)
                return _combine(rest[0], inner, right)

    for i, token in enumerate(tokens):
        if token.upper() in _OPERATORS:
            left = evaluate_tokens(tokens[:i], results)
            right = evaluate_tokens(tokens[i + 1:], results)
            return _combine(token, left, right)

    if len(tokens) == 1:
        return _evaluate_literal(tokens[0], results)

    return False


def _matching_paren(tokens: Sequence[str]) -> int:
    """Index of the parenthesis closing tokens[0], or -1."""
    depth = 0
    for i, token in enumerate(tokens):
        if token == "(":
            depth += 1
        elif token == ")":
            depth -= 1
            if depth == 0:
                return i
    return -1


def _combine(operator: str, left: bool, right: bool) -> bool:
    if operator.upper() == "AND":
        return left and right
    return left or right


def _evaluate_literal(token: str, results: Mapping[str, StepStatus]) -> bool:
    parts = token.split(".")
    if len(parts) != 2:
        return False

    step_id, state = parts
    status = results.get(step_id)
    if status is None:
        return False

    state = state.lower()
    if state == "succeeded":
        return status == StepStatus.SUCCEEDED
    if state == "failed":
        return status == StepStatus.FAILED
    if state == "skipped":
        return status == StepStatus.SKIPPED
    if state == "completed":
        return status in (StepStatus.SUCCEEDED, StepStatus.FAILED)
    return False
