"""Deadlines, cancellable sleeps and remote call dispatch.

Shared by the retry executor and the state poller. Remote client bindings are
usually synchronous (the Azure SDK is), so they run in the default executor the
same way the long-running-operation pollers do; coroutine functions are
awaited directly.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from .errors import Cancelled

T = TypeVar("T")

RemoteCall = Callable[[], T] | Callable[[], Awaitable[T]]


class Deadline:
    """Monotonic deadline measured from construction."""

    def __init__(self, seconds: float) -> None:
        self._seconds = seconds
        self._start = time.monotonic()

    @property
    def seconds(self) -> float:
        return self._seconds

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._start

    @property
    def remaining(self) -> float:
        return max(0.0, self._seconds - self.elapsed)

    @property
    def expired(self) -> bool:
        return self.elapsed >= self._seconds


async def interruptible_sleep(seconds: float, cancel_event: asyncio.Event | None) -> None:
    """Sleep for ``seconds`` unless the cancel event fires first.

    Raises:
        Cancelled: If the cancel event is set before or during the sleep.
    """
    if cancel_event is not None and cancel_event.is_set():
        raise Cancelled("operation cancelled")

    if seconds <= 0:
        # Still yield to the loop so a pending cancel can be observed
        await asyncio.sleep(0)
    elif cancel_event is None:
        await asyncio.sleep(seconds)
    else:
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    if cancel_event is not None and cancel_event.is_set():
        raise Cancelled("operation cancelled")


async def call_remote(op: Callable[[], Any]) -> Any:
    """Invoke a remote capability without blocking the event loop."""
    if inspect.iscoroutinefunction(op):
        return await op()

    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, op)
    if inspect.isawaitable(result):
        return await result
    return result
