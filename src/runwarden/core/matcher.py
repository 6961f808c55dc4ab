"""Matching of alerts against self-healing trigger conditions.

Trigger conditions are short clause lists such as::

    alert.metric == 'system.cpu_percent' && alert.severity >= Error
    alert.rule_name contains 'disk' && tag.env == 'prod'

Every clause present must hold; clauses that are absent are not checked.
Matching is case-insensitive throughout.
"""

from __future__ import annotations

import re

from runwarden.models import Alert, AlertRule, AlertSeverity

_TAG_PATTERN = re.compile(r"tag\.(\w+)\s*==\s*'([^']+)'")


def extract_quoted_value(condition: str, field_name: str) -> str | None:
    """Extract the quoted value compared against `field_name`.

    Accepts ``field == 'value'``, ``field contains 'value'`` and
    ``field == "value"``.
    """
    name = re.escape(field_name)
    patterns = (
        rf"{name}\s*==\s*'([^']+)'",
        rf"{name}\s*contains\s*'([^']+)'",
        rf'{name}\s*==\s*"([^"]+)"',
    )

    for pattern in patterns:
        match = re.search(pattern, condition, re.IGNORECASE)
        if match:
            return match.group(1)

    return None


def matches_trigger_condition(condition: str, alert: Alert, alert_rule: AlertRule) -> bool:
    """Check whether an alert satisfies a trigger condition.

    Args:
        condition: The rule's trigger condition
        alert: The alert that fired
        alert_rule: The alerting rule that produced it

    Returns:
        True if every clause in the condition holds
    """
    text = condition.lower()

    if "severity" in text:
        level = alert.severity.level
        if "critical" in text and alert.severity != AlertSeverity.CRITICAL:
            return False
        if "error" in text and level < AlertSeverity.ERROR.level:
            return False
        if "warning" in text and level < AlertSeverity.WARNING.level:
            return False

    if "metric" in text:
        pattern = extract_quoted_value(text, "metric")
        if pattern is not None and pattern not in alert_rule.metric_name.lower():
            return False

    if "rule_name" in text:
        pattern = extract_quoted_value(text, "rule_name")
        if pattern is not None and pattern not in alert.rule_name.lower():
            return False

    if "tag." in text:
        match = _TAG_PATTERN.search(text)
        if match:
            tag_name, expected = match.group(1), match.group(2)
            tags = {k.lower(): v for k, v in alert.tags.items()}
            actual = tags.get(tag_name)
            if actual is None or actual.lower() != expected:
                return False

    return True
