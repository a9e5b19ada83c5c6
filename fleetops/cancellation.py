"""
Cancellation token shared by all async work of one user-initiated operation.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional, Set, TypeVar

from .errors import OperationCancelled
from .logger import get_logger

logger = get_logger()

T = TypeVar("T")


class CancellationToken:
    """
    Revocable handle for one run.

    Tasks started through spawn() are cancelled together by cancel(), and
    registered callbacks run once. A cancelled token stays cancelled; start
    a new operation with a new token.
    """

    def __init__(self, name: str = "operation"):
        self.name = name
        self.reason: Optional[str] = None
        self._cancelled = False
        self._tasks: Set[asyncio.Task] = set()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable[T]) -> "asyncio.Task[T]":
        """Run coro as a task owned by this token."""
        if self._cancelled:
            # Close the coroutine so it does not warn about never being awaited
            close = getattr(coro, "close", None)
            if close is not None:
                close()
            raise OperationCancelled(f"{self.name} was cancelled")
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def on_cancel(self, callback: Callable[[], None]) -> None:
        if self._cancelled:
            callback()
            return
        self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled(f"{self.name} was cancelled")

    def cancel(self, reason: str = "cancelled") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        outstanding = [t for t in self._tasks if not t.done()]
        for task in outstanding:
            task.cancel()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()
        logger.debug("Token cancelled", token=self.name, reason=reason, aborted_tasks=len(outstanding))

    async def sleep(self, delay: float) -> None:
        """Sleep unless cancelled first. Raises OperationCancelled on cancel."""
        self.raise_if_cancelled()
        try:
            await self.spawn(asyncio.sleep(delay))
        except asyncio.CancelledError:
            if self._cancelled:
                raise OperationCancelled(f"{self.name} was cancelled")
            raise
