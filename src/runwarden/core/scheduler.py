"""Cron scheduler for runbooks."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Awaitable, Callable

import pytz
from croniter import croniter
from loguru import logger

from runwarden.models import Runbook, ScheduleTrigger


class RunbookScheduler:
    """Starts runbooks with a schedule trigger when their cron time comes."""

    def __init__(
        self,
        on_trigger: Callable[[str, datetime], Awaitable[object]],
        timezone: str = "UTC",
    ):
        """Initialize the scheduler.

        Args:
            on_trigger: Coroutine called with (runbook_id, scheduled_time) when due.
            timezone: Default timezone for schedules.
        """
        self._on_trigger = on_trigger
        self._default_tz = timezone
        self._schedules: dict[str, ScheduleTrigger] = {}
        self._next_runs: dict[str, datetime] = {}
        self._running = False

    def add_runbook(self, runbook: Runbook) -> bool:
        """Schedule a runbook if it is enabled and has a schedule trigger.

        Returns:
            True if the runbook is now scheduled
        """
        self.remove_runbook(runbook.id)

        trigger = runbook.trigger
        if not runbook.is_enabled or not isinstance(trigger, ScheduleTrigger):
            return False

        self._schedules[runbook.id] = trigger
        self._calculate_next_run(runbook.id)
        if runbook.id not in self._next_runs:
            self._schedules.pop(runbook.id, None)
            return False

        logger.debug(f"Scheduled runbook '{runbook.id}' - next run: {self._next_runs[runbook.id]}")
        return True

    def remove_runbook(self, runbook_id: str) -> None:
        """Remove a scheduled runbook."""
        self._schedules.pop(runbook_id, None)
        self._next_runs.pop(runbook_id, None)

    def _calculate_next_run(self, runbook_id: str, after: datetime | None = None) -> None:
        """Calculate the next run time for a runbook."""
        trigger = self._schedules.get(runbook_id)
        if not trigger:
            return

        try:
            tz = pytz.timezone(trigger.timezone or self._default_tz)
            now = after.astimezone(tz) if after else datetime.now(tz)
            cron = croniter(trigger.cron_expression, now)
            self._next_runs[runbook_id] = cron.get_next(datetime)
        except Exception as e:
            logger.error(f"Invalid schedule for runbook '{runbook_id}': {e}")
            self._next_runs.pop(runbook_id, None)

    def get_next_run(self, runbook_id: str) -> datetime | None:
        """Get the next scheduled run time for a runbook."""
        return self._next_runs.get(runbook_id)

    def get_all_next_runs(self) -> dict[str, datetime]:
        """Get all next run times."""
        return self._next_runs.copy()

    async def run(self) -> None:
        """Run the scheduler loop."""
        self._running = True
        logger.info(f"Scheduler started with {len(self._schedules)} runbooks")

        while self._running:
            await self.check_schedules()
            await asyncio.sleep(1)  # Check every second

        logger.info("Scheduler stopped")

    async def check_schedules(self, now: datetime | None = None) -> list[str]:
        """Trigger every runbook whose next run time has passed.

        Returns:
            IDs of the runbooks triggered
        """
        now = now or datetime.now(pytz.utc)
        triggered = []

        for runbook_id, next_run in list(self._next_runs.items()):
            if now < next_run:
                continue

            logger.info(f"Triggering scheduled runbook '{runbook_id}'")
            try:
                await self._on_trigger(runbook_id, next_run)
            except Exception as e:
                logger.error(f"Scheduled trigger failed for '{runbook_id}': {e}")

            triggered.append(runbook_id)
            self._calculate_next_run(runbook_id, after=max(now, next_run))

        return triggered

    def stop(self) -> None:
        """Stop the scheduler."""
        self._running = False

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running
