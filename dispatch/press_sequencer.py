"""
Serialized button presses against the Companion HTTP API.

Each press is a "down" followed by an "up" for one button location. Presses
run strictly one at a time, in the order they were queued, with a minimum
gap between the end of one press and the next "down".
"""
import asyncio
import functools
import logging
from collections import deque
from typing import Deque, Optional

import requests

from midi.error_tracking import ErrorTracker, SOURCE_PRESS
from midi.models import ButtonLocation

logger = logging.getLogger(__name__)

DEFAULT_INTER_PRESS_DELAY = 0.5
DEFAULT_SETTLE_DELAY = 0.2
DEFAULT_POST_SETTLE_DELAY = 0.15
DEFAULT_QUEUE_SIZE = 64
DEFAULT_HTTP_TIMEOUT = 2.0

STEP_DOWN = "down"
STEP_UP = "up"
STEP_PRESS = "press"


class PressSequencer:
    """FIFO press queue drained by a single task.

    ``processing`` is a flag, not a lock: presses queued while the drain task
    runs are picked up by that task. When the queue is full the oldest
    pending press is dropped.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 8000,
                 inter_press_delay: float = DEFAULT_INTER_PRESS_DELAY,
                 settle_delay: float = DEFAULT_SETTLE_DELAY,
                 post_settle_delay: float = DEFAULT_POST_SETTLE_DELAY,
                 max_queue: int = DEFAULT_QUEUE_SIZE,
                 timeout: float = DEFAULT_HTTP_TIMEOUT,
                 errors: Optional[ErrorTracker] = None):
        self.host = host
        self.port = port
        self.inter_press_delay = inter_press_delay
        self.settle_delay = settle_delay
        self.post_settle_delay = post_settle_delay
        self.timeout = timeout
        self.errors = errors or ErrorTracker()
        self.processing = False
        self.completed = 0
        self._queue: Deque[ButtonLocation] = deque(maxlen=max_queue)
        self._task: Optional[asyncio.Task] = None
        self._last_done: Optional[float] = None
        self._closed = False
        self._session = requests.Session()

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def pending(self) -> int:
        return len(self._queue)

    def location_url(self, button: ButtonLocation, step: str) -> str:
        return f"{self.base_url}/api/location/{button.page}/{button.row}/{button.column}/{step}"

    def enqueue(self, button: ButtonLocation) -> bool:
        """Queue a press. Must be called on the event loop."""
        if self._closed:
            logger.warning(f"Press sequencer closed, ignoring press {button}")
            return False
        if len(self._queue) == self._queue.maxlen:
            dropped = self._queue[0]
            logger.warning(f"Press queue full, dropping oldest press {dropped}")
        self._queue.append(button)
        logger.debug(f"Queued press {button} ({len(self._queue)} pending)")
        if not self.processing:
            self.processing = True
            self._task = asyncio.get_running_loop().create_task(self._drain())
        return True

    async def _drain(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while self._queue:
                button = self._queue.popleft()
                if self._last_done is not None:
                    wait = self._last_done + self.inter_press_delay - loop.time()
                    if wait > 0:
                        await asyncio.sleep(wait)
                try:
                    await self._press(button)
                except Exception:
                    logger.exception(f"Unexpected error pressing {button}")
                self.completed += 1
                self._last_done = loop.time()
        finally:
            self.processing = False

    async def _press(self, button: ButtonLocation) -> None:
        if not await self._post(self.location_url(button, STEP_DOWN)):
            self.errors.add_error(SOURCE_PRESS, f"Down failed for button {button}, falling back to press")
            if not await self._post(self.location_url(button, STEP_PRESS)):
                self.errors.add_error(SOURCE_PRESS, f"Press failed for button {button}")
            return

        await asyncio.sleep(self.settle_delay)
        if not await self._post(self.location_url(button, STEP_UP)):
            logger.warning(f"Up failed for {button}")
        await asyncio.sleep(self.post_settle_delay)
        logger.debug(f"Pressed {button}")

    async def _post(self, url: str) -> bool:
        """POST an empty JSON body; True on a 2xx response."""
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None, functools.partial(self._session.post, url, json={}, timeout=self.timeout))
        except requests.RequestException as e:
            logger.warning(f"HTTP error for {url}: {e}")
            return False
        if not 200 <= response.status_code < 300:
            logger.warning(f"HTTP {response.status_code} for {url}")
            return False
        return True

    async def close(self) -> None:
        """Drop pending presses and wait for the one in flight."""
        self._closed = True
        dropped = len(self._queue)
        self._queue.clear()
        if dropped:
            logger.info(f"Dropped {dropped} pending presses")
        if self._task is not None and not self._task.done():
            await self._task
        self._session.close()
