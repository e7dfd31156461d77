"""Bounded waits for asynchronous signals.

``first_of`` races an awaitable signal against a fixed timeout. Whichever
side finishes first decides the outcome, and the losing side is cancelled
and awaited before ``first_of`` returns, on both branches. No timer or
listener outlives the call.

Architecture:
    ::

        first_of(signal, timeout)
          ├── signal task ─┐
          ├── timer task  ─┤  asyncio.wait(FIRST_COMPLETED)
          │                ▼
          ├── signal first → return its result (or re-raise its error)
          ├── timer first  → raise TimeoutExpired
          └── finally      → cancel + await whichever is still pending

Examples:
    >>> started = await first_of(runtime.start_container(spec), 2.0,
    ...                          operation="start container")

Guardrails:
    - A signal that completes at the same instant as the timer wins.
    - The signal's own exception propagates unchanged.

Tags:
    timeout, deadline, race, asyncio
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable
from typing import TypeVar

T = TypeVar("T")


class TimeoutExpired(TimeoutError):
    """Raised when a signal does not arrive before its deadline.

    Inherits from built-in TimeoutError for broad exception handling.

    Attributes:
        timeout: The timeout value that was exceeded
        elapsed: How long the race ran before the timer won
        operation: Name/description of the operation
    """

    def __init__(
        self,
        timeout: float,
        elapsed: float | None = None,
        operation: str = "operation",
    ):
        self.timeout = timeout
        self.elapsed = elapsed
        self.operation = operation
        msg = f"Operation '{operation}' timed out after {timeout}s"
        if elapsed is not None:
            msg += f" (ran for {elapsed:.2f}s)"
        super().__init__(msg)


async def first_of(
    signal: Awaitable[T],
    timeout: float,
    *,
    operation: str = "operation",
) -> T:
    """Return the result of *signal*, or raise if *timeout* elapses first.

    Args:
        signal: Awaitable producing the awaited signal
        timeout: Bound in seconds, must be positive
        operation: Name/description for error messages

    Raises:
        TimeoutExpired: If the timer resolves before the signal
        ValueError: If timeout <= 0
    """
    if timeout <= 0:
        raise ValueError(f"Timeout must be positive, got {timeout}")

    start = time.monotonic()
    signal_task = asyncio.ensure_future(signal)
    timer_task = asyncio.ensure_future(asyncio.sleep(timeout))
    try:
        done, _ = await asyncio.wait(
            {signal_task, timer_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if signal_task in done:
            return signal_task.result()
        raise TimeoutExpired(
            timeout=timeout,
            elapsed=time.monotonic() - start,
            operation=operation,
        )
    finally:
        for pending in (signal_task, timer_task):
            if not pending.done():
                pending.cancel()
        await asyncio.gather(signal_task, timer_task, return_exceptions=True)


__all__ = ["TimeoutExpired", "first_of"]
