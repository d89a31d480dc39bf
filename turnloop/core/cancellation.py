"""
Cooperative cancellation tokens.

Tokens form a tree: a linked token is cancelled whenever any of its parents
is, and can additionally carry its own timeout. Long awaits are wrapped with
``guard`` so a cancellation interrupts them instead of waiting them out.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationCancelledError(Exception):
    """Raised when an operation observes a fired cancellation token."""

    def __init__(self, message: str = "Operation was cancelled", timed_out: bool = False):
        self.timed_out = timed_out
        super().__init__(message)


class CancellationToken:
    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None
        self._timed_out = False
        self._callbacks: list[Callable[[], None]] = []
        self._waiters: set[asyncio.Future] = set()
        self._timer: asyncio.TimerHandle | None = None
        self._unlinks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def timed_out(self) -> bool:
        return self._timed_out

    @property
    def reason(self) -> str:
        return self._reason or "Operation was cancelled"

    def cancel(self, reason: str | None = None, timed_out: bool = False) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        self._timed_out = timed_out
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        logger.debug("Cancellation requested: %s", self.reason)
        for callback in list(self._callbacks):
            callback()
        self._callbacks.clear()
        for waiter in list(self._waiters):
            if not waiter.done():
                waiter.set_result(None)

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation. Returns a function that unregisters it."""
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def unregister() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unregister

    @classmethod
    def linked(cls, *parents: CancellationToken | None) -> CancellationToken:
        """A token cancelled when any non-None parent is cancelled."""
        child = cls()
        for parent in parents:
            if parent is None:
                continue

            def propagate(parent: CancellationToken = parent) -> None:
                child.cancel(parent.reason, parent.timed_out)

            child._unlinks.append(parent.register(propagate))
        return child

    def cancel_after(self, seconds: float) -> None:
        """Cancel this token once ``seconds`` have elapsed on the running loop."""
        if self._cancelled:
            return
        loop = asyncio.get_running_loop()
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(
            seconds, self.cancel, f"Operation timed out after {seconds:g}s", True
        )

    def dispose(self) -> None:
        """Detach from parents and drop a pending timer."""
        for unlink in self._unlinks:
            unlink()
        self._unlinks.clear()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelledError(self.reason, self._timed_out)

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.add(waiter)
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self._waiters.discard(waiter)
            if not task.done() and not self._cancelled:
                # outer task was cancelled
                task.cancel()
        if task.done():
            return task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise OperationCancelledError(self.reason, self._timed_out)
