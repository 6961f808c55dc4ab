"""Retry backoff for runbook steps."""

from __future__ import annotations

import asyncio

from loguru import logger

from runwarden.models import RetryPolicy


def should_retry(policy: RetryPolicy | None, attempt: int) -> bool:
    """Check whether another attempt is allowed after `attempt` attempts."""
    if policy is None:
        return False
    return attempt < policy.max_attempts


async def wait_for_retry(
    policy: RetryPolicy,
    attempt: int,
    cancel_event: asyncio.Event | None = None,
) -> bool:
    """Sleep for the backoff delay before the next attempt.

    Args:
        policy: Retry policy of the step
        attempt: Number of attempts made so far
        cancel_event: Set when the execution is canceled

    Returns:
        True if the delay elapsed, False if canceled while waiting
    """
    delay = policy.get_delay(attempt).total_seconds()
    logger.debug(f"Retry backoff: attempt {attempt}, waiting {delay:.1f}s")

    if cancel_event is None:
        await asyncio.sleep(delay)
        return True

    if cancel_event.is_set():
        return False

    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return True

    return False
