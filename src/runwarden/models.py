"""Pydantic models for RunWarden configuration and state."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Literal, Union
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, field_validator


def new_id() -> str:
    """Generate a new identifier."""
    return uuid.uuid4().hex


def utc_now() -> datetime:
    """Current time in UTC."""
    return datetime.now(ZoneInfo("UTC"))


class ConditionType(str, Enum):
    """How a step decides to run once its dependencies are decided."""

    ALWAYS = "always"  # Dependencies succeeded or failed
    ON_SUCCESS = "on_success"  # All dependencies succeeded
    ON_FAILURE = "on_failure"  # Any dependency failed
    EXPRESSION = "expression"  # Boolean expression over dependency states


class ExecutionStatus(str, Enum):
    """Status of a runbook execution."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    PARTIAL_SUCCESS = "partial_success"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.SUCCEEDED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELED,
            ExecutionStatus.PARTIAL_SUCCESS,
        )


class StepStatus(str, Enum):
    """Status of a single step within an execution."""

    PENDING = "pending"
    WAITING = "waiting"  # Blocked on dependencies
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            StepStatus.SUCCEEDED,
            StepStatus.FAILED,
            StepStatus.SKIPPED,
            StepStatus.CANCELED,
        )


class TriggerType(str, Enum):
    """Type of runbook trigger."""

    MANUAL = "manual"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    FILEWATCH = "filewatch"


class AlertSeverity(str, Enum):
    """Severity of an alert, ordered from least to most severe."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def level(self) -> int:
        return _SEVERITY_LEVELS[self]


_SEVERITY_LEVELS: dict[AlertSeverity, int] = {
    AlertSeverity.INFO: 0,
    AlertSeverity.WARNING: 1,
    AlertSeverity.ERROR: 2,
    AlertSeverity.CRITICAL: 3,
}


class HealingStatus(str, Enum):
    """Status of a self-healing execution."""

    PENDING = "pending"
    AWAITING_APPROVAL = "awaiting_approval"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


# ============================================================================
# Runbook definition
# ============================================================================


class RetryPolicy(BaseModel):
    """Retry policy for failed steps."""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: timedelta = timedelta(seconds=5)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_delay: timedelta = timedelta(minutes=5)

    def get_delay(self, attempt: int) -> timedelta:
        """Delay to wait after `attempt` failed attempts.

        No wait before the first attempt; afterwards the delay grows
        geometrically and is capped at `max_delay`.
        """
        if attempt <= 0:
            return timedelta(0)

        delay = self.initial_delay.total_seconds() * self.backoff_multiplier ** (attempt - 1)
        capped = min(delay, self.max_delay.total_seconds())
        return timedelta(seconds=capped)


class StepCondition(BaseModel):
    """Gating condition of a step."""

    type: ConditionType = ConditionType.ON_SUCCESS
    expression: str | None = None

    @classmethod
    def always(cls) -> "StepCondition":
        return cls(type=ConditionType.ALWAYS)

    @classmethod
    def on_success(cls) -> "StepCondition":
        return cls(type=ConditionType.ON_SUCCESS)

    @classmethod
    def on_failure(cls) -> "StepCondition":
        return cls(type=ConditionType.ON_FAILURE)

    @classmethod
    def from_expression(cls, expression: str) -> "StepCondition":
        return cls(type=ConditionType.EXPRESSION, expression=expression)


class RunbookStep(BaseModel):
    """A single step in a runbook."""

    step_id: str
    name: str = ""
    thing_id: str  # Target executable
    profile_id: str = "default"
    condition: StepCondition = Field(default_factory=StepCondition)
    depends_on: list[str] = Field(default_factory=list)
    retry: RetryPolicy | None = None
    timeout: timedelta | None = None
    arguments_override: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.step_id


class ManualTrigger(BaseModel):
    """Runbook is started by an operator."""

    type: Literal["manual"] = "manual"


class ScheduleTrigger(BaseModel):
    """Runbook runs on a cron schedule."""

    type: Literal["schedule"] = "schedule"
    cron_expression: str
    timezone: str | None = None


class WebhookTrigger(BaseModel):
    """Runbook is started by a signed HTTP POST."""

    type: Literal["webhook"] = "webhook"
    secret: str
    allowed_ip_range: str | None = None  # CIDR, e.g. "10.0.0.0/8"


class FileWatchTrigger(BaseModel):
    """Runbook runs when files change in a directory."""

    type: Literal["filewatch"] = "filewatch"
    path: str
    pattern: str = "*"
    include_subdirectories: bool = False
    debounce: timedelta | None = None


RunbookTrigger = Annotated[
    Union[ManualTrigger, ScheduleTrigger, WebhookTrigger, FileWatchTrigger],
    Field(discriminator="type"),
]


class RunbookDefinition(BaseModel):
    """Editable part of a runbook, as found in YAML files and API payloads."""

    name: str = ""
    description: str = ""
    steps: list[RunbookStep] = Field(default_factory=list)
    trigger: RunbookTrigger | None = None
    is_enabled: bool = True

    def to_runbook(self, runbook_id: str | None = None) -> "Runbook":
        """Create a runbook from this definition."""
        now = utc_now()
        return Runbook(
            id=runbook_id or new_id(),
            name=self.name,
            description=self.description,
            steps=self.steps,
            trigger=self.trigger,
            is_enabled=self.is_enabled,
            created_at=now,
            updated_at=now,
        )


class Runbook(RunbookDefinition):
    """A named DAG of steps with an optional trigger."""

    id: str = Field(default_factory=new_id)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 1

    @property
    def trigger_type(self) -> TriggerType:
        if self.trigger is None:
            return TriggerType.MANUAL
        return TriggerType(self.trigger.type)

    def get_step(self, step_id: str) -> RunbookStep | None:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None


# ============================================================================
# Execution state
# ============================================================================


class StepExecution(BaseModel):
    """Execution of a single step within a runbook execution."""

    step_id: str
    step_name: str
    run_id: str | None = None
    status: StepStatus = StepStatus.PENDING
    started_at: datetime | None = None
    ended_at: datetime | None = None
    attempt: int = 0
    error_message: str | None = None
    output: str | None = None

    @property
    def duration(self) -> timedelta | None:
        if self.started_at and self.ended_at:
            return self.ended_at - self.started_at
        return None


class RunbookExecution(BaseModel):
    """A single execution of a runbook."""

    id: str = Field(default_factory=new_id)
    runbook_id: str
    runbook_version: int = 1
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: datetime = Field(default_factory=utc_now)
    ended_at: datetime | None = None
    step_executions: list[StepExecution] = Field(default_factory=list)
    trigger_info: str | None = None
    error_message: str | None = None

    @property
    def duration(self) -> timedelta | None:
        if self.ended_at:
            return self.ended_at - self.started_at
        return None

    @property
    def is_complete(self) -> bool:
        return self.status.is_terminal

    def get_step(self, step_id: str) -> StepExecution | None:
        for step in self.step_executions:
            if step.step_id == step_id:
                return step
        return None

    def status_counts(self) -> dict[StepStatus, int]:
        """Count steps by status."""
        counts: dict[StepStatus, int] = {}
        for step in self.step_executions:
            counts[step.status] = counts.get(step.status, 0) + 1
        return counts


class RunbookExecutionInfo(BaseModel):
    """Live snapshot of an in-flight execution."""

    execution_id: str
    runbook_id: str
    status: ExecutionStatus
    started_at: datetime
    step_statuses: dict[str, StepStatus]
    is_paused: bool = False


class DryRunStep(BaseModel):
    """What a step would do, resolved without running it."""

    step_id: str
    name: str
    thing_id: str
    profile_id: str
    command: str | None = None  # None when the thing is not configured
    condition: str
    depends_on: list[str] = Field(default_factory=list)
    max_attempts: int = 1
    retry_delays: list[timedelta] = Field(default_factory=list)
    timeout: timedelta | None = None
    warnings: list[str] = Field(default_factory=list)


class DryRunResult(BaseModel):
    """Preview of a runbook execution."""

    runbook_id: str
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    steps: list[DryRunStep] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


# ============================================================================
# Alerts and self-healing
# ============================================================================


class AlertRule(BaseModel):
    """The alerting rule that fired an alert (owned by the alert engine)."""

    id: str = Field(default_factory=new_id)
    name: str
    metric_name: str = ""
    severity: AlertSeverity = AlertSeverity.WARNING
    tags: dict[str, str] = Field(default_factory=dict)


class Alert(BaseModel):
    """An alert emitted by the alert engine."""

    id: str = Field(default_factory=new_id)
    rule_id: str
    rule_name: str
    severity: AlertSeverity = AlertSeverity.WARNING
    message: str = ""
    current_value: float = 0.0
    threshold: float = 0.0
    fired_at: datetime = Field(default_factory=utc_now)
    resolved_at: datetime | None = None
    tags: dict[str, str] = Field(default_factory=dict)


class SelfHealingRule(BaseModel):
    """Standing policy mapping an alert predicate to a remediation runbook."""

    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    trigger_condition: str
    remediation_runbook_id: str
    max_executions_per_hour: int = Field(default=3, ge=0)
    cooldown_period: timedelta = timedelta(minutes=10)
    requires_approval: bool = False
    is_enabled: bool = True

    @classmethod
    def create(
        cls,
        name: str,
        trigger_condition: str,
        remediation_runbook_id: str,
        description: str = "",
        max_executions_per_hour: int = 3,
        cooldown_period: timedelta = timedelta(minutes=10),
        requires_approval: bool = False,
        is_enabled: bool = True,
    ) -> "SelfHealingRule":
        """Build a rule, rejecting missing required fields."""
        if not name or not name.strip():
            raise ValueError("Name is required")
        if not trigger_condition or not trigger_condition.strip():
            raise ValueError("Trigger condition is required")
        if not remediation_runbook_id:
            raise ValueError("Remediation runbook is required")

        return cls(
            name=name,
            description=description,
            trigger_condition=trigger_condition,
            remediation_runbook_id=remediation_runbook_id,
            max_executions_per_hour=max_executions_per_hour,
            cooldown_period=cooldown_period,
            requires_approval=requires_approval,
            is_enabled=is_enabled,
        )


class SelfHealingExecution(BaseModel):
    """Record of one remediation attempt."""

    id: str = Field(default_factory=new_id)
    rule_id: str
    triggering_alert_id: str | None = None
    remediation_execution_id: str | None = None
    status: HealingStatus = HealingStatus.PENDING
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    result: str | None = None


# ============================================================================
# Daemon configuration
# ============================================================================


class ThingConfig(BaseModel):
    """A target executable that steps refer to by thing_id."""

    cmd: str
    description: str = ""
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    profiles: dict[str, str] = Field(default_factory=dict)  # profile_id -> arguments

    def build_command(self, profile_id: str, arguments_override: str | None = None) -> str:
        """Command line for a profile, honoring a per-step argument override."""
        args = arguments_override if arguments_override is not None else self.profiles.get(profile_id, "")
        if args:
            return f"{self.cmd} {args}"
        return self.cmd


class DaemonConfig(BaseModel):
    """Daemon configuration."""

    host: str = "127.0.0.1"
    port: int = 9877
    log_level: str = "INFO"
    max_parallel_steps: int = Field(default=10, ge=1)
    timezone: str = "UTC"


class ApiAuthConfig(BaseModel):
    """API authentication configuration."""

    enabled: bool = False
    token: str | None = None


class ApiConfig(BaseModel):
    """API configuration."""

    auth: ApiAuthConfig = Field(default_factory=ApiAuthConfig)


class SelfHealingSettings(BaseModel):
    """Self-healing engine settings."""

    enabled: bool = True
    # Count hourly executions from the store and seed cooldowns from it on
    # startup. When False, rate-limit state lives only in memory.
    persist_rate_limits: bool = True


class RunWardenConfig(BaseModel):
    """Main RunWarden configuration."""

    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    self_healing: SelfHealingSettings = Field(default_factory=SelfHealingSettings)
    things: dict[str, ThingConfig] = Field(default_factory=dict)

    @field_validator("things")
    @classmethod
    def validate_things(cls, v: dict[str, ThingConfig]) -> dict[str, ThingConfig]:
        for thing_id, thing in v.items():
            if not thing.cmd.strip():
                raise ValueError(f"Thing '{thing_id}' has an empty command")
        return v
