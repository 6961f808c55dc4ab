"""Shared fixtures and fakes for RunWarden tests."""

import asyncio
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from runwarden.core.runner import ScriptResult, StepContext
from runwarden.db import Database
from runwarden.models import (
    RetryPolicy,
    Runbook,
    RunbookStep,
    StepCondition,
    utc_now,
)


class FakeRunner:
    """Script runner with scripted exit codes and delays.

    `outcomes` maps step_id to the exit code of each attempt; the last code
    repeats. Steps not listed succeed.
    """

    def __init__(
        self,
        outcomes: dict[str, list[int]] | None = None,
        delays: dict[str, float] | None = None,
        delay: float = 0.0,
    ):
        self.outcomes = outcomes or {}
        self.delays = delays or {}
        self.delay = delay
        self.calls: list[tuple[str, int]] = []
        self.contexts: list[StepContext] = []
        self.running = 0
        self.max_running = 0

    async def run(self, context: StepContext) -> ScriptResult:
        step_id = context.step.step_id
        self.calls.append((step_id, context.attempt))
        self.contexts.append(context)

        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            delay = self.delays.get(step_id, self.delay)
            if delay:
                await asyncio.sleep(delay)
        finally:
            self.running -= 1

        codes = self.outcomes.get(step_id, [0])
        code = codes[min(context.attempt, len(codes)) - 1]
        return ScriptResult(
            exit_code=code,
            output=f"{step_id} attempt {context.attempt}",
            error=None if code == 0 else f"Exit code {code}",
        )

    def called_steps(self) -> list[str]:
        return [step_id for step_id, _ in self.calls]


class FakeClock:
    """Controllable clock for rate limit and cooldown tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or utc_now()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


def make_step(
    step_id: str,
    depends_on: list[str] | None = None,
    condition: StepCondition | None = None,
    retry: RetryPolicy | None = None,
    timeout: timedelta | None = None,
    thing_id: str = "thing",
) -> RunbookStep:
    return RunbookStep(
        step_id=step_id,
        name=step_id.title(),
        thing_id=thing_id,
        depends_on=depends_on or [],
        condition=condition or StepCondition.on_success(),
        retry=retry,
        timeout=timeout,
    )


def make_runbook(*steps: RunbookStep, runbook_id: str = "rb-test", name: str = "Test Runbook") -> Runbook:
    return Runbook(id=runbook_id, name=name, steps=list(steps))


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    """Poll until `predicate()` is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def temp_db():
    """Create a temporary database."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Database(Path(tmpdir) / "test.db")


@pytest.fixture
def fake_runner():
    return FakeRunner()
