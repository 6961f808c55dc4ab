"""RunWarden daemon wiring.

The supervisor owns the database, event bus, executor, triggers, scheduler
and self-healing engine, and exposes the operations used by the API.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path

from loguru import logger

from runwarden.config import load_config, load_runbooks
from runwarden.core.dry_run import dry_run
from runwarden.core.events import AlertFired, AlertResolved, EventBus
from runwarden.core.executor import (
    RunbookExecutor,
    RunbookNotFoundError,
    RunbookValidationError,
)
from runwarden.core.graph import ValidationResult, validate
from runwarden.core.runner import ScriptRunner, ShellScriptRunner
from runwarden.core.scheduler import RunbookScheduler
from runwarden.core.self_healing import SelfHealingEngine
from runwarden.core.triggers import TriggerEvent, TriggerManager, TriggerResult
from runwarden.db import Database
from runwarden.models import (
    Alert,
    AlertRule,
    DryRunResult,
    Runbook,
    RunbookDefinition,
    RunWardenConfig,
    TriggerType,
    utc_now,
)


class Supervisor:
    """Runbook daemon tying all components together."""

    def __init__(
        self,
        config: RunWardenConfig | None = None,
        db: Database | None = None,
        runner: ScriptRunner | None = None,
        runbooks_dir: Path | None = None,
    ):
        """Initialize the supervisor."""
        self.config = config or load_config()
        self.db = db or Database()
        self.runbooks_dir = runbooks_dir
        self.events = EventBus()

        self._shutdown_event = asyncio.Event()
        self._running = False
        self.started_at: datetime | None = None

        self.executor = RunbookExecutor(
            db=self.db,
            runner=runner or ShellScriptRunner(self.config.things),
            events=self.events,
            max_parallel_steps=self.config.daemon.max_parallel_steps,
        )

        self.self_healing = SelfHealingEngine(
            db=self.db,
            executor=self.executor,
            events=self.events,
            persist_rate_limits=self.config.self_healing.persist_rate_limits,
        )

        self.triggers = TriggerManager(on_trigger=self._on_trigger)

        self.scheduler = RunbookScheduler(
            on_trigger=self._on_schedule,
            timezone=self.config.daemon.timezone,
        )

    # Runbooks

    def validate_runbook(self, runbook: Runbook) -> ValidationResult:
        return validate(runbook)

    def create_runbook(self, definition: RunbookDefinition, runbook_id: str | None = None) -> Runbook:
        """Validate and store a new runbook.

        Raises:
            RunbookValidationError: If the runbook is invalid
            ValueError: If the ID is taken
        """
        runbook = definition.to_runbook(runbook_id)
        result = validate(runbook)
        if not result.is_valid:
            raise RunbookValidationError(result.errors)

        self.db.add_runbook(runbook)
        self._register_triggers(runbook)
        logger.info(f"Created runbook '{runbook.name}' ({runbook.id})")
        return runbook

    def update_runbook(self, runbook_id: str, definition: RunbookDefinition) -> Runbook:
        """Validate and store a new version of a runbook.

        Raises:
            RunbookNotFoundError: If the runbook does not exist
            RunbookValidationError: If the runbook is invalid
        """
        existing = self.db.get_runbook(runbook_id)
        if existing is None:
            raise RunbookNotFoundError(f"Runbook '{runbook_id}' not found")

        runbook = definition.to_runbook(runbook_id)
        result = validate(runbook)
        if not result.is_valid:
            raise RunbookValidationError(result.errors)

        updated = self.db.update_runbook(runbook)
        self._register_triggers(updated)
        logger.info(f"Updated runbook '{updated.name}' to version {updated.version}")
        return updated

    def delete_runbook(self, runbook_id: str) -> None:
        """Delete a runbook.

        Raises:
            RunbookNotFoundError: If the runbook does not exist
        """
        if not self.db.delete_runbook(runbook_id):
            raise RunbookNotFoundError(f"Runbook '{runbook_id}' not found")

        self.triggers.unregister_runbook(runbook_id)
        self.scheduler.remove_runbook(runbook_id)
        logger.info(f"Deleted runbook '{runbook_id}'")

    def get_runbook(self, runbook_id: str) -> Runbook | None:
        return self.db.get_runbook(runbook_id)

    def list_runbooks(self) -> list[Runbook]:
        return self.db.list_runbooks()

    def dry_run_runbook(self, runbook_id: str) -> DryRunResult:
        """Preview a stored runbook without running any step.

        Raises:
            RunbookNotFoundError: If the runbook does not exist
        """
        runbook = self.db.get_runbook(runbook_id)
        if runbook is None:
            raise RunbookNotFoundError(f"Runbook '{runbook_id}' not found")
        return dry_run(runbook, self.config.things)

    def import_runbooks(self) -> int:
        """Import runbook files from the runbooks directory.

        New runbooks are added; existing ones are updated when their
        definition changed.

        Returns:
            Number of runbooks added or updated
        """
        changed = 0
        for runbook_id, runbook in load_runbooks(self.runbooks_dir).items():
            result = validate(runbook)
            if not result.is_valid:
                logger.error(f"Skipping invalid runbook '{runbook_id}': {'; '.join(result.errors)}")
                continue

            existing = self.db.get_runbook(runbook_id)
            if existing is None:
                self.db.add_runbook(runbook)
                changed += 1
            elif _definition(existing) != _definition(runbook):
                self.db.update_runbook(runbook)
                changed += 1

        if changed:
            logger.info(f"Imported {changed} runbooks from files")
        return changed

    def _register_triggers(self, runbook: Runbook) -> None:
        self.triggers.register_runbook(runbook)
        self.scheduler.add_runbook(runbook)

    # Executions

    async def start_runbook(
        self,
        runbook_id: str,
        trigger_type: TriggerType = TriggerType.MANUAL,
        trigger_info: str | None = None,
        payload: dict | None = None,
        source: str | None = None,
    ) -> str:
        """Start a stored runbook and record the trigger.

        Raises:
            RunbookNotFoundError: If the runbook does not exist
            RunbookValidationError: If the runbook is invalid
        """
        runbook = self.db.get_runbook(runbook_id)
        if runbook is None:
            raise RunbookNotFoundError(f"Runbook '{runbook_id}' not found")

        try:
            execution_id = await self.executor.start_execution(runbook, trigger_info or trigger_type.value)
        except Exception as e:
            self._record_trigger(runbook_id, trigger_type, None, payload, source, success=False, message=str(e))
            raise

        self._record_trigger(runbook_id, trigger_type, execution_id, payload, source)
        return execution_id

    async def _on_trigger(self, event: TriggerEvent) -> TriggerResult:
        """Start a runbook for a manual, webhook or file trigger."""
        runbook = self.db.get_runbook(event.runbook_id)
        if runbook is None:
            return TriggerResult(success=False, message=f"Runbook '{event.runbook_id}' not found")
        if not runbook.is_enabled and event.trigger_type != TriggerType.MANUAL:
            return TriggerResult(success=False, message=f"Runbook '{event.runbook_id}' is disabled")

        execution_id = await self.start_runbook(
            event.runbook_id,
            trigger_type=event.trigger_type,
            trigger_info=event.trigger_info,
            payload=event.payload,
            source=event.source,
        )
        return TriggerResult(success=True, message="Triggered", execution_id=execution_id)

    async def _on_schedule(self, runbook_id: str, scheduled_for: datetime) -> None:
        runbook = self.db.get_runbook(runbook_id)
        if runbook is None or not runbook.is_enabled:
            self.scheduler.remove_runbook(runbook_id)
            return

        await self.start_runbook(
            runbook_id,
            trigger_type=TriggerType.SCHEDULE,
            trigger_info=f"schedule at {scheduled_for.isoformat()}",
        )

    async def handle_webhook(
        self,
        runbook_id: str,
        body: bytes,
        signature: str | None,
        source_ip: str | None = None,
    ) -> TriggerResult:
        """Validate and fire a webhook trigger."""
        result = await self.triggers.handle_webhook(runbook_id, body, signature, source_ip)
        if not result.success and result.execution_id is None:
            self._record_trigger(
                runbook_id,
                TriggerType.WEBHOOK,
                None,
                None,
                source_ip,
                success=False,
                message=result.message,
            )
        return result

    def _record_trigger(
        self,
        runbook_id: str,
        trigger_type: TriggerType,
        execution_id: str | None,
        payload: dict | None,
        source: str | None,
        success: bool = True,
        message: str | None = None,
    ) -> None:
        try:
            self.db.add_trigger_history(
                runbook_id=runbook_id,
                trigger_type=trigger_type.value,
                execution_id=execution_id,
                payload=payload,
                source=source,
                success=success,
                message=message,
            )
        except Exception as e:
            logger.error(f"Failed to record trigger for '{runbook_id}': {e}")

    # Alerts

    def fire_alert(self, alert: Alert, rule: AlertRule) -> None:
        """Publish a fired alert."""
        logger.info(f"Alert fired: {alert.rule_name} ({alert.severity.value})")
        self.events.emit(AlertFired(alert=alert, rule=rule))

    def resolve_alert(self, alert: Alert) -> None:
        """Publish a resolved alert."""
        if alert.resolved_at is None:
            alert.resolved_at = utc_now()
        self.events.emit(AlertResolved(alert=alert))

    # Lifecycle

    async def start(self) -> None:
        """Recover state and start the engines, without the API server."""
        self.executor.recover_interrupted()
        self.import_runbooks()

        for runbook in self.db.list_runbooks(enabled_only=True):
            self._register_triggers(runbook)

        if self.config.self_healing.enabled:
            await self.self_healing.start()

    async def stop(self) -> None:
        """Stop the engines and cancel active executions."""
        self.scheduler.stop()
        self.triggers.stop()
        await self.self_healing.stop()
        await self.executor.shutdown()

    async def run(self) -> None:
        """Run the supervisor main loop."""
        self._running = True
        self.started_at = utc_now()
        logger.info("Supervisor started")

        await self.start()

        from runwarden.api.server import run_server
        api_task = asyncio.create_task(
            run_server(
                self,
                host=self.config.daemon.host,
                port=self.config.daemon.port,
            )
        )
        scheduler_task = asyncio.create_task(self.scheduler.run())
        trigger_task = asyncio.create_task(self.triggers.run())

        try:
            await self._shutdown_event.wait()
        except Exception as e:
            logger.error(f"Supervisor error: {e}")
        finally:
            await self.stop()

            for task in [api_task, scheduler_task, trigger_task]:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

            self._running = False
            logger.info("Supervisor stopped")

    def shutdown(self) -> None:
        """Signal the supervisor to shut down."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    @property
    def is_running(self) -> bool:
        """Check if the supervisor is running."""
        return self._running


def _definition(runbook: Runbook) -> dict:
    return RunbookDefinition.model_validate(runbook.model_dump()).model_dump(mode="json")
