"""
RequestCoalescer - identical concurrent GETs share one in-flight task.

The first caller for a key starts the task; later callers join it until it
finishes. Each caller waits through its own CancellationToken, so one caller
giving up never aborts the shared request.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from carelink.services.cancellation import CancellationToken, guarded

T = TypeVar("T")


@dataclass
class CoalescerStats:
    started: int = 0  # Requests actually sent
    joined: int = 0  # Callers served by an in-flight request
    in_flight: int = 0

    @property
    def join_rate(self) -> float:
        callers = self.started + self.joined
        return self.joined / callers if callers else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "started": self.started,
            "joined": self.joined,
            "in_flight": self.in_flight,
            "join_rate": f"{self.join_rate:.2%}",
        }


class RequestCoalescer:
    """
    Usage:
        coalescer = RequestCoalescer()
        response = await coalescer.run(key, lambda: send(descriptor), token)
    """

    def __init__(self, debug: bool = False):
        self._tasks: dict[str, asyncio.Task[Any]] = {}
        self._stats = CoalescerStats()
        self._debug = debug

    async def run(
        self,
        key: str,
        factory: Callable[[], Awaitable[T]],
        token: CancellationToken | None = None,
    ) -> T:
        """Await the in-flight task for `key`, starting it with `factory` if none."""
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.create_task(factory())
            self._tasks[key] = task
            task.add_done_callback(lambda t: self._finish(key, t))
            self._stats.started += 1
            self._log(f"START {key[:60]}")
        else:
            self._stats.joined += 1
            self._log(f"JOIN {key[:60]}")

        return await guarded(token, asyncio.shield(task))

    def _finish(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if not task.cancelled():
            # Waiters receive the exception through the shield
            task.exception()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def cancel_all(self) -> int:
        tasks, self._tasks = list(self._tasks.values()), {}
        for task in tasks:
            task.cancel()
        if tasks:
            self._log(f"CANCEL {len(tasks)} in-flight requests")
        return len(tasks)

    def get_stats(self) -> CoalescerStats:
        self._stats.in_flight = len(self._tasks)
        return self._stats

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[RequestCoalescer] {message}")
