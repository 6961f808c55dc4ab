"""Script execution for runbook steps.

The executor hands each step to a ``ScriptRunner``. The default runner
resolves the step's target from the configured things and runs it as a
shell command in its own process group.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import psutil
from loguru import logger

from runwarden.models import RunbookStep, ThingConfig, new_id

# Keep the tail of large outputs
MAX_OUTPUT_CHARS = 64 * 1024


@dataclass
class StepContext:
    """What a runner needs to know about the step it runs."""

    execution_id: str
    runbook_id: str
    step: RunbookStep
    attempt: int
    trigger_info: str | None = None


@dataclass
class ScriptResult:
    """Outcome of a single script run."""

    exit_code: int
    output: str = ""
    error: str | None = None
    run_id: str = field(default_factory=new_id)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.error is None


class ScriptRunner(Protocol):
    """Runs the target of one step and reports its outcome."""

    async def run(self, context: StepContext) -> ScriptResult:
        ...


def _truncate(text: str) -> str:
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    return text[-MAX_OUTPUT_CHARS:]


def _kill_process_tree(pid: int) -> None:
    """Kill a process and all of its children."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    procs = parent.children(recursive=True) + [parent]
    for proc in procs:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass

    psutil.wait_procs(procs, timeout=5)


class ShellScriptRunner:
    """Runs step targets as shell commands."""

    def __init__(self, things: dict[str, ThingConfig]):
        """Initialize the runner.

        Args:
            things: Target executables by thing_id
        """
        self._things = things

    def update_things(self, things: dict[str, ThingConfig]) -> None:
        self._things = things

    def build_command(self, step: RunbookStep) -> tuple[str, ThingConfig]:
        """Resolve the command line of a step.

        Raises:
            KeyError: If the step's thing is not configured
        """
        thing = self._things.get(step.thing_id)
        if thing is None:
            raise KeyError(f"Unknown thing '{step.thing_id}'")
        return thing.build_command(step.profile_id, step.arguments_override), thing

    async def run(self, context: StepContext) -> ScriptResult:
        """Run the step's command and capture its combined output.

        Cancellation kills the whole process group before re-raising.
        """
        run_id = new_id()
        step = context.step

        try:
            cmd, thing = self.build_command(step)
        except KeyError as e:
            return ScriptResult(exit_code=-1, error=str(e.args[0]), run_id=run_id)

        cwd = Path(thing.cwd).expanduser() if thing.cwd else None
        if cwd is not None and not cwd.exists():
            return ScriptResult(
                exit_code=-1,
                error=f"Working directory does not exist: {cwd}",
                run_id=run_id,
            )

        env = os.environ.copy()
        env.update(thing.env)
        env["RUNWARDEN_EXECUTION_ID"] = context.execution_id
        env["RUNWARDEN_RUNBOOK_ID"] = context.runbook_id
        env["RUNWARDEN_STEP_ID"] = step.step_id
        env["RUNWARDEN_ATTEMPT"] = str(context.attempt)
        env["RUNWARDEN_RUN_ID"] = run_id
        if context.trigger_info:
            env["RUNWARDEN_TRIGGER_INFO"] = context.trigger_info

        logger.debug(f"Running step '{step.step_id}' (attempt {context.attempt}): {cmd}")

        process = await asyncio.create_subprocess_shell(
            cmd,
            cwd=str(cwd) if cwd else None,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )

        try:
            stdout, _ = await process.communicate()
        except asyncio.CancelledError:
            logger.info(f"Killing step '{step.step_id}' (pid {process.pid})")
            _kill_process_tree(process.pid)
            raise

        output = _truncate(stdout.decode(errors="replace")) if stdout else ""
        exit_code = process.returncode if process.returncode is not None else -1
        error = None if exit_code == 0 else f"Exit code {exit_code}"

        return ScriptResult(exit_code=exit_code, output=output, error=error, run_id=run_id)
