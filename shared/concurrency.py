"""Optimistic concurrency helpers.

Writers read a record together with its ``version``, compute the new state
and issue a conditional write that only matches the version they read. A
write that matches nothing raises ``VersionConflict``; ``run_optimistic``
re-runs the whole read-compute-write cycle a bounded number of times and
surfaces ``ConcurrencyExhausted`` when every attempt lost the race.
"""
import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import ConcurrencyExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


class VersionConflict(Exception):
    """Conditional write matched no row: another writer committed first."""

    def __init__(self, resource: str, expected_version: int):
        super().__init__(f"{resource} changed since version {expected_version} was read")
        self.resource = resource
        self.expected_version = expected_version


async def run_optimistic(
    operation: Callable[[], Awaitable[T]],
    resource: str,
    max_retries: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 2.0,
) -> T:
    """
    Run a read-compute-write cycle, retrying it on version conflicts.

    Args:
        operation: Coroutine factory performing one full cycle
        resource: Human-readable name of the contended record, for errors
        max_retries: Retries after the first attempt
        base_delay: Multiplier for the exponential backoff between attempts
        max_delay: Upper bound for a single backoff

    Returns:
        Whatever the successful attempt returned

    Raises:
        ConcurrencyExhausted: every attempt hit a version conflict
    """
    attempts = max_retries + 1
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=base_delay, max=max_delay),
            retry=retry_if_exception_type(VersionConflict),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        ):
            with attempt:
                result = await operation()
    except RetryError as e:
        logger.error(f"Gave up on {resource} after {attempts} conflicting attempts")
        raise ConcurrencyExhausted(resource, attempts) from e

    return result
