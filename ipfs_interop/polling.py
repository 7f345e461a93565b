"""
polling.py – Turning eventually-consistent propagation into pass / fail.

Two primitives:
  • retry()       re-invokes an async action at a fixed interval until it
                  succeeds or the attempt budget is spent
  • wait_until()  polls a cheap in-process predicate until it is true or a
                  timeout elapses
"""

from typing import Awaitable, Callable, TypeVar

import trio

from .config import CONDITION_POLL_INTERVAL, CONDITION_TIMEOUT
from .errors import PropagationTimeout
from .logs import setup_logging

logger = setup_logging("polling")

T = TypeVar("T")


async def retry(
    action: Callable[[], Awaitable[T]],
    attempts: int = 5,
    interval: float = 2.0,
    retry_on: type[BaseException] | tuple[type[BaseException], ...] = Exception,
    label: str = "",
) -> T:
    """
    Run *action* up to *attempts* times, sleeping *interval* seconds between
    failed attempts.  Returns the first successful result.

    When every attempt fails the last error is re-raised unchanged.
    Errors that are not instances of *retry_on* are raised immediately.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be positive, got {attempts}")

    name = label or getattr(action, "__name__", "action")
    for attempt in range(1, attempts + 1):
        try:
            return await action()
        except retry_on as e:
            if attempt == attempts:
                logger.warning(f"{name}: giving up after {attempts} attempts: {e}")
                raise
            logger.debug(f"{name}: attempt {attempt}/{attempts} failed: {e}")
        await trio.sleep(interval)


async def wait_until(
    predicate: Callable[[], bool],
    timeout: float = CONDITION_TIMEOUT,
    interval: float = CONDITION_POLL_INTERVAL,
    label: str = "condition",
) -> None:
    """Block until *predicate()* is true; raise PropagationTimeout after *timeout*."""
    if interval <= 0:
        raise ValueError("interval must be positive")

    deadline = trio.current_time() + timeout
    while True:
        if predicate():
            return
        if trio.current_time() >= deadline:
            logger.warning(f"Timed out after {timeout}s waiting for {label}")
            raise PropagationTimeout(f"{label} not met within {timeout}s", timeout)
        await trio.sleep(min(interval, max(deadline - trio.current_time(), 0)))
