"""RunWarden core components."""

from runwarden.core.events import EventBus
from runwarden.core.executor import RunbookExecutor
from runwarden.core.graph import ValidationResult, validate
from runwarden.core.runner import ShellScriptRunner
from runwarden.core.scheduler import RunbookScheduler
from runwarden.core.self_healing import SelfHealingEngine
from runwarden.core.supervisor import Supervisor
from runwarden.core.triggers import TriggerManager

__all__ = [
    "EventBus",
    "RunbookExecutor",
    "RunbookScheduler",
    "SelfHealingEngine",
    "ShellScriptRunner",
    "Supervisor",
    "TriggerManager",
    "ValidationResult",
    "validate",
]
