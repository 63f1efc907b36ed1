"""Cancel-and-reschedule debounce for coroutine triggers."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class Debouncer:
    """Runs ``action`` once, ``delay`` seconds after the most recent trigger."""

    def __init__(self, action: Callable[[], Awaitable[object]], delay: float, name: str = "debounce"):
        self._action = action
        self.delay = delay
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def trigger(self) -> None:
        """(Re)start the countdown. Must be called from the event loop."""
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(self._run())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def flush(self) -> None:
        """Run a pending action now instead of waiting for the delay."""
        if not self.pending:
            return
        self.cancel()
        await self._action()

    async def _run(self) -> None:
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            return
        try:
            await self._action()
        except Exception:
            logger.exception("%s: debounced action failed", self.name)
