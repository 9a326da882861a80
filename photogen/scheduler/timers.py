import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

class Ticker:
    """
    Runs an async callback every `interval` seconds until stopped.

    The first tick happens one interval after start(). A failing tick is
    logged and the loop carries on; the next tick is the retry.
    stop() is synchronous: it cancels the task, so nothing after the
    current await point of a running tick executes.
    """

    def __init__(self, interval: float, callback: Callable[[], Awaitable[Any]], name: str = "ticker"):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name)
        logger.debug("Ticker %s started (interval=%ss)", self.name, self.interval)

    def stop(self):
        if self._task:
            self._task.cancel()
            self._task = None
            logger.debug("Ticker %s stopped", self.name)

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.callback()
            except Exception as e:
                logger.error(f"Error in ticker {self.name}: {e}", exc_info=True)

class Deadline:
    """
    One-shot wall-clock timer. Not renewed by activity.
    """

    def __init__(self, seconds: float, callback: Callable[[], Any], name: str = "deadline"):
        self.seconds = seconds
        self.callback = callback
        self.name = name
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    def start(self):
        if self._handle is not None:
            return
        self._handle = asyncio.get_running_loop().call_later(self.seconds, self._fire)

    def cancel(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self):
        self._handle = None
        logger.info("Deadline %s elapsed after %ss", self.name, self.seconds)
        try:
            self.callback()
        except Exception as e:
            logger.error(f"Error in deadline {self.name}: {e}", exc_info=True)
