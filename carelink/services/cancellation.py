"""
CancellationToken - cooperative cancellation for request tasks.

A token is handed to each logical request. The executor checks it at every
suspension point, and `guard()` cancels the in-flight child task as soon as
the token fires.
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from carelink.services.errors import cancelled_error

T = TypeVar("T")


class CancellationToken:
    """
    Cooperative cancellation signal.

    Usage:
        token = CancellationToken()
        data = await token.guard(client.get(url))

        # elsewhere
        token.cancel()
    """

    def __init__(self, parent: "CancellationToken | None" = None):
        self._cancelled = False
        self._reason: str | None = None
        self._callbacks: list[Callable[[], Any]] = []
        if parent is not None:
            parent.add_callback(self.cancel)
            if parent.cancelled:
                self.cancel(parent.reason)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        """Fire the token. Idempotent."""
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason or "Request was cancelled"
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], Any]) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        if self._cancelled:
            callback()
            return lambda: None

        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise cancelled_error(self._reason or "Request was cancelled")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` as a child task that is cancelled with this token.

        Raises ApiError(REQUEST_CANCELLED) if the token fires first.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        remove = self.add_callback(task.cancel)
        try:
            return await task
        except asyncio.CancelledError:
            if self._cancelled:
                raise cancelled_error(self._reason or "Request was cancelled") from None
            raise
        finally:
            remove()


async def guarded(token: CancellationToken | None, awaitable: Awaitable[T]) -> T:
    """Await through `token` when one is given."""
    if token is None:
        return await awaitable
    return await token.guard(awaitable)
