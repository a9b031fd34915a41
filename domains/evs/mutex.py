"""Strict FIFO async mutex.

At most one task runs inside ``run()`` per instance; queued tasks run in
submission order. A failing task releases the lock like any other, so the
queue keeps draining.
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


class Mutex:
    """Serializes coroutines submitted through ``run()``.

    Usage:
        mutex = Mutex()
        result = await mutex.run(fetch_balance, username, password)
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._queued = 0

    @property
    def queued(self) -> int:
        """Tasks currently running or waiting on this mutex."""
        return self._queued

    async def run(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``fn(*args, **kwargs)`` once every earlier submission has settled."""
        self._queued += 1
        try:
            # asyncio.Lock wakes waiters in FIFO order
            async with self._lock:
                return await fn(*args, **kwargs)
        finally:
            self._queued -= 1
