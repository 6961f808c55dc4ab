"""Runbook execution engine.

Runs the steps of a runbook as a dependency graph:
- A step becomes eligible once every dependency is terminal
- Its condition then decides between running and skipping
- Independent steps run concurrently, bounded by max_parallel_steps
- Failed attempts are retried with exponential backoff
- Every transition is persisted and published on the event bus
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Sequence

from loguru import logger

from runwarden.core.conditions import referenced_steps, should_execute
from runwarden.core.events import EventBus, ExecutionStatusChanged, StepCompleted
from runwarden.core.graph import dependents, descendants, topological_order, validate
from runwarden.core.retry import should_retry, wait_for_retry
from runwarden.core.runner import ScriptResult, ScriptRunner, StepContext
from runwarden.models import (
    ConditionType,
    ExecutionStatus,
    Runbook,
    RunbookExecution,
    RunbookExecutionInfo,
    RunbookStep,
    StepExecution,
    StepStatus,
    utc_now,
)

if TYPE_CHECKING:
    from runwarden.db import Database


class RunbookValidationError(Exception):
    """A runbook failed structural validation."""

    def __init__(self, errors: Sequence[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class RunbookNotFoundError(Exception):
    """No runbook with the given ID."""

    pass


class ExecutionNotFoundError(Exception):
    """No active execution with the given ID."""

    pass


def aggregate_status(
    runbook: Runbook,
    steps: Sequence[StepExecution],
    canceled: bool = False,
) -> ExecutionStatus:
    """Compute the final status of an execution from its step outcomes.

    A failed step is recovered when a step downstream of it consumed the
    failure and succeeded: a direct dependent that ran (an on_failure or
    always branch, for example), or any later step whose expression names
    the failed step. Skipped steps are branches that were not taken and do
    not affect the outcome.

    Args:
        runbook: The runbook that was executed
        steps: Final step executions
        canceled: Whether cancellation was requested

    Returns:
        CANCELED, FAILED, PARTIAL_SUCCESS or SUCCEEDED
    """
    if canceled:
        return ExecutionStatus.CANCELED

    statuses = {s.step_id: s.status for s in steps}
    failed = [step_id for step_id, status in statuses.items() if status == StepStatus.FAILED]

    if not failed:
        return ExecutionStatus.SUCCEEDED

    for step_id in failed:
        consumers = dependents(runbook.steps, step_id) + [
            step
            for step in descendants(runbook.steps, step_id)
            if step.condition.type == ConditionType.EXPRESSION
            and step_id in referenced_steps(step.condition.expression)
        ]
        recovered = any(statuses.get(step.step_id) == StepStatus.SUCCEEDED for step in consumers)
        if not recovered:
            return ExecutionStatus.FAILED

    return ExecutionStatus.PARTIAL_SUCCESS


@dataclass
class _ExecutionState:
    """In-memory state of an active execution."""

    runbook: Runbook
    execution: RunbookExecution
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    paused: bool = False
    step_tasks: dict[str, asyncio.Task] = field(default_factory=dict)
    task: asyncio.Task | None = None

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    def results(self) -> dict[str, StepStatus]:
        return {s.step_id: s.status for s in self.execution.step_executions}

    def all_terminal(self) -> bool:
        return all(s.status.is_terminal for s in self.execution.step_executions)


class RunbookExecutor:
    """Executes runbooks and tracks active executions."""

    def __init__(
        self,
        db: "Database",
        runner: ScriptRunner,
        events: EventBus,
        max_parallel_steps: int = 10,
    ):
        """Initialize the executor.

        Args:
            db: Database for persistence
            runner: Runs the target of each step
            events: Bus for step and execution events
            max_parallel_steps: Max steps running at once across executions
        """
        self._db = db
        self._runner = runner
        self._events = events
        self._semaphore = asyncio.Semaphore(max_parallel_steps)
        self._active: dict[str, _ExecutionState] = {}

    # Public API

    async def start_execution(self, runbook: Runbook, trigger_info: str | None = None) -> str:
        """Start executing a runbook.

        Returns as soon as the execution is recorded; steps run in the
        background.

        Args:
            runbook: The runbook to execute
            trigger_info: Free-form description of what started it

        Returns:
            The execution ID

        Raises:
            RunbookValidationError: If the runbook is structurally invalid
        """
        result = validate(runbook)
        if not result.is_valid:
            raise RunbookValidationError(result.errors)

        execution = RunbookExecution(
            runbook_id=runbook.id,
            runbook_version=runbook.version,
            trigger_info=trigger_info,
            step_executions=[
                StepExecution(step_id=step.step_id, step_name=step.display_name)
                for step in runbook.steps
            ],
        )
        self._db.add_execution(execution)

        state = _ExecutionState(runbook=runbook, execution=execution)
        self._active[execution.id] = state

        logger.info(f"Starting runbook '{runbook.name}' ({runbook.id}) execution {execution.id}")
        self._set_status(state, ExecutionStatus.RUNNING)

        state.task = asyncio.create_task(self._run_execution(state))
        return execution.id

    async def execute_runbook(self, runbook_id: str, trigger_info: str | None = None) -> str:
        """Load a stored runbook and start it.

        Raises:
            RunbookNotFoundError: If the runbook does not exist
            RunbookValidationError: If the runbook is structurally invalid
        """
        runbook = self._db.get_runbook(runbook_id)
        if runbook is None:
            raise RunbookNotFoundError(f"Runbook '{runbook_id}' not found")
        return await self.start_execution(runbook, trigger_info)

    async def pause_execution(self, execution_id: str) -> bool:
        """Stop launching new steps. Running steps finish normally.

        Returns:
            True if the execution was running and is now paused
        """
        state = self._get_state(execution_id)
        async with state.lock:
            if state.execution.status != ExecutionStatus.RUNNING:
                return False
            state.paused = True
            self._set_status(state, ExecutionStatus.PAUSED)

        logger.info(f"Paused execution {execution_id}")
        return True

    async def resume_execution(self, execution_id: str) -> bool:
        """Resume a paused execution.

        Returns:
            True if the execution was paused and is now running
        """
        state = self._get_state(execution_id)
        async with state.lock:
            if state.execution.status != ExecutionStatus.PAUSED:
                return False
            state.paused = False
            self._set_status(state, ExecutionStatus.RUNNING)
            state.wakeup.set()

        logger.info(f"Resumed execution {execution_id}")
        return True

    async def cancel_execution(self, execution_id: str) -> bool:
        """Cancel an execution.

        No new steps are launched, running steps are canceled and steps that
        already finished keep their status.

        Returns:
            True if cancellation was requested
        """
        state = self._get_state(execution_id)
        async with state.lock:
            if state.execution.is_complete or state.cancel_requested:
                return False
            state.cancel_event.set()
            tasks = list(state.step_tasks.values())
            state.wakeup.set()

        for task in tasks:
            task.cancel()

        logger.info(f"Canceling execution {execution_id} ({len(tasks)} running steps)")
        return True

    def get_execution_info(self, execution_id: str) -> RunbookExecutionInfo | None:
        """Live snapshot of an active execution."""
        state = self._active.get(execution_id)
        if state is None:
            return None
        return self._to_info(state)

    def list_active_executions(self) -> list[RunbookExecutionInfo]:
        """Snapshots of all active executions."""
        return [self._to_info(state) for state in self._active.values()]

    def get_execution(self, execution_id: str) -> RunbookExecution | None:
        """Get an execution, live if active, otherwise from the database."""
        state = self._active.get(execution_id)
        if state is not None:
            return state.execution.model_copy(deep=True)
        return self._db.get_execution(execution_id)

    def is_active(self, execution_id: str) -> bool:
        return execution_id in self._active

    async def wait_for_completion(
        self,
        execution_id: str,
        timeout: float | None = None,
    ) -> RunbookExecution | None:
        """Wait until an execution reaches a terminal status.

        Raises:
            asyncio.TimeoutError: If it does not finish within `timeout` seconds
        """
        state = self._active.get(execution_id)
        if state is not None:
            await asyncio.wait_for(state.done.wait(), timeout=timeout)
            return state.execution.model_copy(deep=True)
        return self._db.get_execution(execution_id)

    def recover_interrupted(self) -> int:
        """Fail executions left unfinished by a previous process.

        Returns:
            Number of executions recovered
        """
        recovered = 0
        for execution in self._db.get_unfinished_executions():
            if execution.id in self._active:
                continue

            now = utc_now()
            for step in execution.step_executions:
                if not step.status.is_terminal:
                    step.status = StepStatus.CANCELED
                    step.ended_at = now
                    self._db.update_step_execution(execution.id, step)

            execution.status = ExecutionStatus.FAILED
            execution.ended_at = now
            execution.error_message = "Interrupted by restart"
            self._db.update_execution(execution)
            recovered += 1

        if recovered:
            logger.warning(f"Marked {recovered} interrupted executions as failed")
        return recovered

    async def shutdown(self) -> None:
        """Cancel all active executions and wait for them to finish."""
        for execution_id in list(self._active):
            state = self._active.get(execution_id)
            if state is None:
                continue
            await self.cancel_execution(execution_id)
            if state.task is not None:
                await asyncio.gather(state.task, return_exceptions=True)

    # Scheduling

    async def _run_execution(self, state: _ExecutionState) -> None:
        """Drive an execution until no more steps can run."""
        execution = state.execution
        try:
            while True:
                state.wakeup.clear()

                async with state.lock:
                    if state.cancel_requested:
                        break
                    if not state.paused:
                        self._schedule_ready_steps(state)
                    if state.all_terminal():
                        break
                    if not state.step_tasks and not state.paused:
                        self._skip_unreachable(state)
                        break

                await state.wakeup.wait()

            if state.step_tasks:
                await asyncio.gather(*state.step_tasks.values(), return_exceptions=True)

            async with state.lock:
                self._finish(state)

        except Exception as e:
            logger.exception(f"Execution {execution.id} failed unexpectedly: {e}")
            for task in list(state.step_tasks.values()):
                task.cancel()
            if state.step_tasks:
                await asyncio.gather(*state.step_tasks.values(), return_exceptions=True)
            self._cancel_unfinished_steps(state)
            self._set_status(state, ExecutionStatus.FAILED, error_message=str(e))

        finally:
            self._active.pop(execution.id, None)
            state.done.set()

    def _schedule_ready_steps(self, state: _ExecutionState) -> None:
        """Decide every step whose dependencies are terminal.

        Must be called with the execution lock held. Skips cascade through
        the graph within one call.
        """
        results = state.results()

        for step in topological_order(state.runbook.steps):
            step_exec = state.execution.get_step(step.step_id)
            if step_exec is None or step.step_id in state.step_tasks:
                continue
            if step_exec.status not in (StepStatus.PENDING, StepStatus.WAITING):
                continue

            deps_done = all(
                results.get(dep) is not None and results[dep].is_terminal
                for dep in step.depends_on
            )
            if not deps_done:
                if step_exec.status == StepStatus.PENDING:
                    step_exec.status = StepStatus.WAITING
                    self._persist_step(state, step_exec)
                continue

            if should_execute(step, results):
                task = asyncio.create_task(self._run_step(state, step, step_exec))
                state.step_tasks[step.step_id] = task
            else:
                logger.info(f"Skipping step '{step.step_id}': condition not met")
                self._complete_step(state, step_exec, StepStatus.SKIPPED)
                results[step.step_id] = StepStatus.SKIPPED

    def _skip_unreachable(self, state: _ExecutionState) -> None:
        """Skip steps that can never become eligible."""
        for step_exec in state.execution.step_executions:
            if not step_exec.status.is_terminal:
                logger.warning(f"Step '{step_exec.step_id}' is unreachable, skipping")
                self._complete_step(state, step_exec, StepStatus.SKIPPED)

    def _cancel_unfinished_steps(self, state: _ExecutionState) -> None:
        for step_exec in state.execution.step_executions:
            if not step_exec.status.is_terminal:
                self._complete_step(state, step_exec, StepStatus.CANCELED)

    def _finish(self, state: _ExecutionState) -> None:
        """Aggregate the final status. Must be called with the lock held."""
        canceled = state.cancel_requested
        if canceled:
            self._cancel_unfinished_steps(state)

        final = aggregate_status(state.runbook, state.execution.step_executions, canceled)
        error_message = None
        if final == ExecutionStatus.FAILED:
            failed = [s.step_id for s in state.execution.step_executions if s.status == StepStatus.FAILED]
            error_message = f"Steps failed: {', '.join(failed)}"
        elif final == ExecutionStatus.CANCELED:
            error_message = "Canceled"

        self._set_status(state, final, error_message=error_message)

        counts = state.execution.status_counts()
        summary = ", ".join(f"{status.value}={count}" for status, count in counts.items())
        logger.info(f"Execution {state.execution.id} finished: {final.value} ({summary})")

    # Steps

    async def _run_step(self, state: _ExecutionState, step: RunbookStep, step_exec: StepExecution) -> None:
        """Run one step with retries until it reaches a terminal status."""
        attempt = 0
        result: ScriptResult | None = None
        final = StepStatus.FAILED

        try:
            while True:
                attempt += 1

                async with self._semaphore:
                    async with state.lock:
                        step_exec.status = StepStatus.RUNNING
                        step_exec.attempt = attempt
                        if step_exec.started_at is None:
                            step_exec.started_at = utc_now()
                        self._persist_step(state, step_exec)

                    logger.debug(f"Step '{step.step_id}' running (attempt {attempt})")
                    result = await self._invoke(state, step, attempt)

                if result.succeeded:
                    final = StepStatus.SUCCEEDED
                    break

                if not should_retry(step.retry, attempt):
                    final = StepStatus.FAILED
                    break

                logger.warning(
                    f"Step '{step.step_id}' failed (attempt {attempt}/{step.retry.max_attempts}): "
                    f"{result.error}"
                )
                async with state.lock:
                    step_exec.error_message = result.error
                    step_exec.output = result.output
                    step_exec.run_id = result.run_id
                    self._persist_step(state, step_exec)

                if not await wait_for_retry(step.retry, attempt, state.cancel_event):
                    final = StepStatus.CANCELED
                    break

        except asyncio.CancelledError:
            async with state.lock:
                self._apply_result(step_exec, result)
                self._complete_step(state, step_exec, StepStatus.CANCELED)
                state.step_tasks.pop(step.step_id, None)
                state.wakeup.set()
            raise

        async with state.lock:
            self._apply_result(step_exec, result)
            self._complete_step(state, step_exec, final)
            state.step_tasks.pop(step.step_id, None)
            state.wakeup.set()

    async def _invoke(self, state: _ExecutionState, step: RunbookStep, attempt: int) -> ScriptResult:
        """Run the step's script, turning errors and timeouts into failed results."""
        context = StepContext(
            execution_id=state.execution.id,
            runbook_id=state.runbook.id,
            step=step,
            attempt=attempt,
            trigger_info=state.execution.trigger_info,
        )
        timeout = step.timeout.total_seconds() if step.timeout else None

        try:
            return await asyncio.wait_for(self._runner.run(context), timeout=timeout)
        except asyncio.TimeoutError:
            return ScriptResult(exit_code=-1, error=f"Timed out after {timeout:g}s")
        except Exception as e:
            logger.error(f"Runner error in step '{step.step_id}': {e}")
            return ScriptResult(exit_code=-1, error=str(e))

    def _apply_result(self, step_exec: StepExecution, result: ScriptResult | None) -> None:
        if result is None:
            return
        step_exec.run_id = result.run_id
        step_exec.output = result.output
        step_exec.error_message = None if result.succeeded else result.error

    def _complete_step(self, state: _ExecutionState, step_exec: StepExecution, status: StepStatus) -> None:
        """Move a step to a terminal status, persist it and emit StepCompleted."""
        step_exec.status = status
        step_exec.ended_at = utc_now()
        if status == StepStatus.CANCELED and not step_exec.error_message:
            step_exec.error_message = "Canceled"
        self._persist_step(state, step_exec)

        if status == StepStatus.FAILED:
            logger.warning(f"Step '{step_exec.step_id}' failed: {step_exec.error_message}")
        else:
            logger.info(f"Step '{step_exec.step_id}' {status.value}")

        self._events.emit(
            StepCompleted(
                execution_id=state.execution.id,
                step_id=step_exec.step_id,
                step_name=step_exec.step_name,
                status=status,
                run_id=step_exec.run_id,
                duration=step_exec.duration,
                error_message=step_exec.error_message,
            )
        )

    # Helpers

    def _get_state(self, execution_id: str) -> _ExecutionState:
        state = self._active.get(execution_id)
        if state is None:
            raise ExecutionNotFoundError(f"Execution '{execution_id}' is not active")
        return state

    def _set_status(
        self,
        state: _ExecutionState,
        status: ExecutionStatus,
        error_message: str | None = None,
    ) -> None:
        """Change the execution status, persist it and emit ExecutionStatusChanged."""
        execution = state.execution
        old_status = execution.status
        if old_status == status:
            return

        execution.status = status
        if error_message is not None:
            execution.error_message = error_message
        if status.is_terminal:
            execution.ended_at = utc_now()

        try:
            self._db.update_execution(execution)
        except Exception as e:
            logger.error(f"Failed to persist execution {execution.id}: {e}")

        self._events.emit(
            ExecutionStatusChanged(
                execution_id=execution.id,
                runbook_id=execution.runbook_id,
                old_status=old_status,
                new_status=status,
            )
        )

    def _persist_step(self, state: _ExecutionState, step_exec: StepExecution) -> None:
        try:
            self._db.update_step_execution(state.execution.id, step_exec)
        except Exception as e:
            logger.error(f"Failed to persist step '{step_exec.step_id}' of {state.execution.id}: {e}")

    def _to_info(self, state: _ExecutionState) -> RunbookExecutionInfo:
        return RunbookExecutionInfo(
            execution_id=state.execution.id,
            runbook_id=state.runbook.id,
            status=state.execution.status,
            started_at=state.execution.started_at,
            step_statuses=state.results(),
            is_paused=state.paused,
        )
