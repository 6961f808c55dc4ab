"""Self-healing engine for RunWarden.

Listens for fired alerts and starts remediation runbooks for matching
self-healing rules:
- Per-rule hourly rate limit and cooldown
- Optional human approval before a runbook starts
- Completion tracked through runbook execution status events
"""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Coroutine

from loguru import logger

from runwarden.core.events import (
    AlertFired,
    AlertResolved,
    ApprovalRequired,
    EventBus,
    ExecutionStatusChanged,
    HealingCompleted,
    HealingTriggered,
)
from runwarden.core.matcher import matches_trigger_condition
from runwarden.models import (
    Alert,
    AlertRule,
    AlertSeverity,
    ExecutionStatus,
    HealingStatus,
    SelfHealingExecution,
    SelfHealingRule,
    utc_now,
)

if TYPE_CHECKING:
    from runwarden.core.executor import RunbookExecutor
    from runwarden.db import Database

RATE_LIMIT_WINDOW = timedelta(hours=1)


class RuleNotFoundError(Exception):
    """No self-healing rule with the given ID."""

    pass


class HealingExecutionNotFoundError(Exception):
    """No pending self-healing execution with the given ID."""

    pass


class RateLimitState:
    """Start history of each rule, for rate limits and cooldowns.

    With a database, hourly counts come from stored executions and the last
    start of a rule is loaded from it on first use, so limits survive a
    restart. Without one, everything is kept in memory.
    """

    def __init__(self, db: "Database | None" = None):
        self._db = db
        self._last_starts: dict[str, datetime] = {}
        self._starts: dict[str, deque[datetime]] = {}

    @property
    def persistent(self) -> bool:
        return self._db is not None

    def record_start(self, rule_id: str, at: datetime) -> None:
        self._last_starts[rule_id] = at
        if self._db is None:
            self._starts.setdefault(rule_id, deque()).append(at)

    def last_start(self, rule_id: str) -> datetime | None:
        if rule_id not in self._last_starts and self._db is not None:
            last = self._db.get_last_healing_start(rule_id)
            if last is not None:
                self._last_starts[rule_id] = last
        return self._last_starts.get(rule_id)

    def count_since(self, rule_id: str, since: datetime) -> int:
        if self._db is not None:
            return self._db.count_healing_executions(rule_id, since)

        starts = self._starts.get(rule_id)
        if not starts:
            return 0
        while starts and starts[0] < since:
            starts.popleft()
        return len(starts)

    def forget(self, rule_id: str) -> None:
        self._last_starts.pop(rule_id, None)
        self._starts.pop(rule_id, None)


class SelfHealingEngine:
    """Runs remediation runbooks in response to alerts."""

    def __init__(
        self,
        db: "Database",
        executor: "RunbookExecutor",
        events: EventBus,
        persist_rate_limits: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the self-healing engine.

        Args:
            db: Database for rules and executions
            executor: Starts remediation runbooks
            events: Bus to subscribe to and publish on
            persist_rate_limits: Derive rate limits from stored executions
            clock: Source of the current time
        """
        self._db = db
        self._executor = executor
        self._events = events
        self._clock = clock
        self._rate_limits = RateLimitState(db if persist_rate_limits else None)

        self._pending_approvals: dict[str, SelfHealingExecution] = {}
        self._active: dict[str, SelfHealingExecution] = {}
        self._by_runbook_execution: dict[str, str] = {}  # runbook execution -> healing execution
        self._tasks: set[asyncio.Task] = set()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Subscribe to alert and execution events.

        Raises:
            RuntimeError: If the engine is already running
        """
        if self._running:
            raise RuntimeError("Self-healing engine is already running")

        self._restore_state()

        self._events.subscribe(AlertFired, self._on_alert_fired)
        self._events.subscribe(AlertResolved, self._on_alert_resolved)
        self._events.subscribe(ExecutionStatusChanged, self._on_execution_status_changed)
        self._running = True

        logger.info(f"Self-healing engine started ({len(self._pending_approvals)} awaiting approval)")

    async def stop(self) -> None:
        """Unsubscribe from events and wait for in-flight remediation starts."""
        if not self._running:
            return

        self._events.unsubscribe(AlertFired, self._on_alert_fired)
        self._events.unsubscribe(AlertResolved, self._on_alert_resolved)
        self._events.unsubscribe(ExecutionStatusChanged, self._on_execution_status_changed)
        self._running = False

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

        logger.info("Self-healing engine stopped")

    def _restore_state(self) -> None:
        """Reload approvals and close executions interrupted by a restart."""
        try:
            awaiting = self._db.get_recent_healing_executions(
                limit=1000, status=HealingStatus.AWAITING_APPROVAL
            )
            for execution in awaiting:
                self._pending_approvals[execution.id] = execution

            for status in (HealingStatus.PENDING, HealingStatus.RUNNING):
                for execution in self._db.get_recent_healing_executions(limit=1000, status=status):
                    if execution.id in self._active:
                        continue
                    execution.status = HealingStatus.FAILED
                    execution.completed_at = self._clock()
                    execution.result = "Interrupted by restart"
                    self._db.save_healing_execution(execution)
        except Exception as e:
            logger.error(f"Failed to restore self-healing state: {e}")

    # Rules

    def create_rule(self, rule: SelfHealingRule) -> SelfHealingRule:
        """Store a new rule."""
        self._db.add_healing_rule(rule)
        logger.info(f"Created self-healing rule: {rule.name}")
        return rule

    def update_rule(self, rule: SelfHealingRule) -> SelfHealingRule:
        """Replace a stored rule.

        Raises:
            RuleNotFoundError: If the rule does not exist
        """
        if not self._db.update_healing_rule(rule):
            raise RuleNotFoundError(f"Rule '{rule.id}' not found")
        logger.info(f"Updated self-healing rule: {rule.name}")
        return rule

    def delete_rule(self, rule_id: str) -> None:
        """Delete a rule.

        Raises:
            RuleNotFoundError: If the rule does not exist
        """
        if not self._db.delete_healing_rule(rule_id):
            raise RuleNotFoundError(f"Rule '{rule_id}' not found")
        self._rate_limits.forget(rule_id)
        logger.info(f"Deleted self-healing rule: {rule_id}")

    def get_rule(self, rule_id: str) -> SelfHealingRule | None:
        return self._db.get_healing_rule(rule_id)

    def get_rules(self, enabled_only: bool = False) -> list[SelfHealingRule]:
        return self._db.list_healing_rules(enabled_only=enabled_only)

    # Executions

    async def trigger_manually(self, rule_id: str) -> SelfHealingExecution:
        """Run a rule's remediation without an alert.

        Condition matching, rate limit and cooldown are bypassed; approval is
        still required if the rule asks for it.

        Raises:
            RuleNotFoundError: If the rule does not exist or is disabled
        """
        rule = self._db.get_healing_rule(rule_id)
        if rule is None or not rule.is_enabled:
            raise RuleNotFoundError(f"Enabled rule '{rule_id}' not found")

        logger.info(f"Manually triggering self-healing rule: {rule.name}")
        execution = self._create_execution(rule, alert=None)
        if not rule.requires_approval:
            await self._execute_runbook(execution, rule)
        return execution

    async def approve_execution(self, execution_id: str) -> SelfHealingExecution:
        """Approve a pending execution and start its remediation runbook.

        Raises:
            HealingExecutionNotFoundError: If nothing is awaiting approval under that ID
            RuleNotFoundError: If the execution's rule was deleted or disabled; the
                execution stays pending
        """
        execution = self._pending_approvals.get(execution_id)
        if execution is None:
            raise HealingExecutionNotFoundError(f"Pending execution not found: {execution_id}")

        rule = self._db.get_healing_rule(execution.rule_id)
        if rule is None or not rule.is_enabled:
            raise RuleNotFoundError(f"Enabled rule not found for execution: {execution.rule_id}")

        del self._pending_approvals[execution_id]
        logger.info(f"Execution {execution_id} approved, starting remediation")

        await self._execute_runbook(execution, rule)
        return execution

    def reject_execution(self, execution_id: str) -> SelfHealingExecution:
        """Reject a pending execution. No runbook is started.

        Raises:
            HealingExecutionNotFoundError: If nothing is awaiting approval under that ID
        """
        execution = self._pending_approvals.pop(execution_id, None)
        if execution is None:
            raise HealingExecutionNotFoundError(f"Pending execution not found: {execution_id}")

        execution.status = HealingStatus.SKIPPED
        execution.completed_at = self._clock()
        execution.result = "Rejected by user"
        self._persist(execution)

        logger.info(f"Execution {execution_id} rejected")
        self._events.emit(
            HealingCompleted(
                healing_execution_id=execution.id,
                rule_id=execution.rule_id,
                status=HealingStatus.SKIPPED,
                duration=execution.completed_at - execution.started_at,
            )
        )
        return execution

    def get_execution(self, execution_id: str) -> SelfHealingExecution | None:
        """Get a self-healing execution, live if in flight."""
        if execution_id in self._active:
            return self._active[execution_id]
        if execution_id in self._pending_approvals:
            return self._pending_approvals[execution_id]
        return self._db.get_healing_execution(execution_id)

    def get_recent_executions(self, limit: int = 50) -> list[SelfHealingExecution]:
        return self._db.get_recent_healing_executions(limit=limit)

    def get_pending_approvals(self) -> list[SelfHealingExecution]:
        return list(self._pending_approvals.values())

    # Rate limiting

    def can_execute(self, rule: SelfHealingRule) -> bool:
        """Check the rule's hourly execution limit."""
        since = self._clock() - RATE_LIMIT_WINDOW
        return self._rate_limits.count_since(rule.id, since) < rule.max_executions_per_hour

    def in_cooldown(self, rule: SelfHealingRule) -> bool:
        """Check whether the rule started too recently."""
        last = self._rate_limits.last_start(rule.id)
        if last is None:
            return False
        return self._clock() - last < rule.cooldown_period

    # Alert processing

    def process_alert(self, alert: Alert, alert_rule: AlertRule) -> list[SelfHealingExecution]:
        """Match an alert against enabled rules and start remediations.

        Limits are checked and the execution recorded before returning, so
        a burst of alerts cannot slip past a rule's limits. Runbooks start
        in background tasks.

        Returns:
            The self-healing executions created
        """
        try:
            rules = self._db.list_healing_rules(enabled_only=True)
        except Exception as e:
            logger.error(f"Failed to load self-healing rules: {e}")
            return []

        created = []
        for rule in rules:
            try:
                if not matches_trigger_condition(rule.trigger_condition, alert, alert_rule):
                    continue

                if not self.can_execute(rule):
                    logger.warning(f"Self-healing rule {rule.name} skipped due to rate limit")
                    continue

                if self.in_cooldown(rule):
                    logger.debug(f"Self-healing rule {rule.name} in cooldown")
                    continue

                execution = self._create_execution(rule, alert=alert)
            except Exception as e:
                logger.error(f"Error evaluating self-healing rule {rule.name}: {e}")
                continue

            created.append(execution)
            if not rule.requires_approval:
                self._spawn(self._execute_runbook(execution, rule))

        return created

    def _create_execution(self, rule: SelfHealingRule, alert: Alert | None) -> SelfHealingExecution:
        """Record a new execution and queue it for approval if required."""
        now = self._clock()
        execution = SelfHealingExecution(
            rule_id=rule.id,
            triggering_alert_id=alert.id if alert else None,
            status=HealingStatus.AWAITING_APPROVAL if rule.requires_approval else HealingStatus.PENDING,
            started_at=now,
        )
        self._rate_limits.record_start(rule.id, now)
        self._persist(execution)

        logger.info(f"Self-healing triggered: {rule.name} for alert {execution.triggering_alert_id}")

        if rule.requires_approval:
            self._pending_approvals[execution.id] = execution
            logger.info(f"Self-healing {execution.id} awaiting approval")
            self._events.emit(
                ApprovalRequired(
                    healing_execution_id=execution.id,
                    rule_id=rule.id,
                    rule_name=rule.name,
                    alert_id=execution.triggering_alert_id,
                )
            )

        return execution

    async def _execute_runbook(self, execution: SelfHealingExecution, rule: SelfHealingRule) -> None:
        """Start the remediation runbook of an execution."""
        execution.status = HealingStatus.RUNNING
        self._active[execution.id] = execution
        self._persist(execution)

        if execution.triggering_alert_id:
            trigger_info = f"Self-healing: {rule.name} (triggered by alert {execution.triggering_alert_id})"
        else:
            trigger_info = f"Self-healing: {rule.name} (manual trigger)"

        try:
            runbook_execution_id = await self._executor.execute_runbook(
                rule.remediation_runbook_id, trigger_info
            )
        except Exception as e:
            logger.error(f"Failed to execute remediation runbook for {execution.id}: {e}")
            self._active.pop(execution.id, None)
            execution.status = HealingStatus.FAILED
            execution.completed_at = self._clock()
            execution.result = str(e)
            self._persist(execution)
            self._events.emit(
                HealingCompleted(
                    healing_execution_id=execution.id,
                    rule_id=execution.rule_id,
                    status=HealingStatus.FAILED,
                    duration=execution.completed_at - execution.started_at,
                    error_message=str(e),
                )
            )
            return

        execution.remediation_execution_id = runbook_execution_id
        self._by_runbook_execution[runbook_execution_id] = execution.id
        self._persist(execution)

        logger.info(f"Self-healing {execution.id} started runbook execution {runbook_execution_id}")
        self._events.emit(
            HealingTriggered(
                healing_execution_id=execution.id,
                rule_id=rule.id,
                rule_name=rule.name,
                alert_id=execution.triggering_alert_id,
                remediation_execution_id=runbook_execution_id,
            )
        )

        # The runbook may already have finished
        if not self._executor.is_active(runbook_execution_id):
            finished = self._executor.get_execution(runbook_execution_id)
            if finished is not None and finished.is_complete:
                self._by_runbook_execution.pop(runbook_execution_id, None)
                self._complete(execution.id, finished.status)

    def _complete(self, healing_execution_id: str, runbook_status: ExecutionStatus) -> None:
        """Record the outcome of a remediation runbook."""
        execution = self._active.pop(healing_execution_id, None)
        if execution is None:
            return

        if runbook_status in (ExecutionStatus.SUCCEEDED, ExecutionStatus.PARTIAL_SUCCESS):
            status = HealingStatus.SUCCEEDED
        else:
            status = HealingStatus.FAILED

        execution.status = status
        execution.completed_at = self._clock()
        execution.result = runbook_status.value
        self._persist(execution)

        logger.info(f"Self-healing {healing_execution_id} completed with status {status.value}")
        self._events.emit(
            HealingCompleted(
                healing_execution_id=execution.id,
                rule_id=execution.rule_id,
                status=status,
                duration=execution.completed_at - execution.started_at,
                error_message="Remediation runbook failed" if status == HealingStatus.FAILED else None,
            )
        )

    # Event handlers

    def _on_alert_fired(self, event: AlertFired) -> None:
        try:
            self.process_alert(event.alert, event.rule)
        except Exception as e:
            logger.error(f"Error processing alert for self-healing: {event.alert.id}: {e}")

    def _on_alert_resolved(self, event: AlertResolved) -> None:
        logger.debug(f"Alert {event.alert.id} resolved")

    def _on_execution_status_changed(self, event: ExecutionStatusChanged) -> None:
        if not event.new_status.is_terminal:
            return
        healing_execution_id = self._by_runbook_execution.pop(event.execution_id, None)
        if healing_execution_id is not None:
            self._complete(healing_execution_id, event.new_status)

    # Helpers

    def _spawn(self, coro: Coroutine) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _persist(self, execution: SelfHealingExecution) -> None:
        try:
            self._db.save_healing_execution(execution)
        except Exception as e:
            logger.error(f"Failed to persist self-healing execution {execution.id}: {e}")


# ============================================================================
# Predefined patterns
# ============================================================================


def severity_condition(min_severity: AlertSeverity) -> str:
    """Trigger condition matching alerts at or above a severity."""
    if min_severity == AlertSeverity.CRITICAL:
        return "alert.severity == Critical"
    if min_severity == AlertSeverity.ERROR:
        return "alert.severity >= Error"
    if min_severity == AlertSeverity.WARNING:
        return "alert.severity >= Warning"
    return "true"


def metric_condition(metric_name: str, min_severity: AlertSeverity | None = None) -> str:
    """Trigger condition matching alerts on a metric, optionally with a severity floor."""
    condition = f"alert.metric == '{metric_name}'"
    if min_severity is not None:
        condition += f" && alert.severity >= {min_severity.value.capitalize()}"
    return condition


def high_cpu_remediation(runbook_id: str) -> SelfHealingRule:
    return SelfHealingRule.create(
        name="High CPU Auto-Remediation",
        description="Automatically restart services or clear caches when CPU exceeds threshold",
        trigger_condition=metric_condition("system.cpu_percent", AlertSeverity.ERROR),
        remediation_runbook_id=runbook_id,
        max_executions_per_hour=2,
        cooldown_period=timedelta(minutes=15),
    )


def high_memory_remediation(runbook_id: str) -> SelfHealingRule:
    return SelfHealingRule.create(
        name="High Memory Auto-Remediation",
        description="Automatically clear caches or restart processes when memory exceeds threshold",
        trigger_condition=metric_condition("system.memory_percent", AlertSeverity.ERROR),
        remediation_runbook_id=runbook_id,
        max_executions_per_hour=2,
        cooldown_period=timedelta(minutes=10),
    )


def low_disk_remediation(runbook_id: str) -> SelfHealingRule:
    return SelfHealingRule.create(
        name="Low Disk Space Auto-Remediation",
        description="Automatically clean up temp files and logs when disk space is low",
        trigger_condition=metric_condition("system.disk_percent", AlertSeverity.WARNING),
        remediation_runbook_id=runbook_id,
        max_executions_per_hour=4,
        cooldown_period=timedelta(minutes=30),
    )


def script_failure_remediation(runbook_id: str) -> SelfHealingRule:
    return SelfHealingRule.create(
        name="Script Failure Recovery",
        description="Notify and optionally retry failed scripts with modified parameters",
        trigger_condition=metric_condition("script.failure", AlertSeverity.ERROR),
        remediation_runbook_id=runbook_id,
        max_executions_per_hour=5,
        cooldown_period=timedelta(minutes=5),
        requires_approval=True,
    )


def critical_alert_remediation(runbook_id: str) -> SelfHealingRule:
    return SelfHealingRule.create(
        name="Critical Alert Emergency Response",
        description="Execute emergency response runbook for any critical alert",
        trigger_condition=severity_condition(AlertSeverity.CRITICAL),
        remediation_runbook_id=runbook_id,
        max_executions_per_hour=1,
        cooldown_period=timedelta(minutes=60),
        requires_approval=True,
    )


PATTERNS: dict[str, Callable[[str], SelfHealingRule]] = {
    "high_cpu": high_cpu_remediation,
    "high_memory": high_memory_remediation,
    "low_disk": low_disk_remediation,
    "script_failure": script_failure_remediation,
    "critical_alert": critical_alert_remediation,
}
