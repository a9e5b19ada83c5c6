import asyncio
from typing import Any, Awaitable, Callable, Optional

from .logger import get_logger

logger = get_logger()


class Debouncer:
    """
    Collapse bursts of calls into the last one.

    schedule() cancels whatever is pending and starts a new timer. Each
    call gets a generation number; only the latest generation is current.
    """

    def __init__(self, delay: float = 0.3):
        self.delay = delay
        self.generation = 0
        self._pending: Optional[asyncio.Task] = None

    def schedule(self, factory: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        """Run factory() after the delay unless another call arrives first."""
        self.cancel()
        self.generation += 1
        self._pending = asyncio.ensure_future(self._fire(self.generation, factory))
        return self._pending

    def is_current(self, generation: int) -> bool:
        return generation == self.generation

    def cancel(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    @property
    def pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def _fire(self, generation: int, factory: Callable[[], Awaitable[Any]]) -> Any:
        await asyncio.sleep(self.delay)
        if not self.is_current(generation):
            return None
        logger.debug("Debounced call firing", generation=generation)
        return await factory()
