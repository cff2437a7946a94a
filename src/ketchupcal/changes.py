from __future__ import annotations
import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import List, Optional

from .errors import CalendarError
from .models import CalendarProvider
from .providers import CalendarAdapter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalendarChange:
    source: CalendarProvider
    detected_at: datetime


class ChangeFeed:
    """Publish/subscribe channel for external calendar changes."""

    def __init__(self, maxsize: int = 16) -> None:
        self.maxsize = maxsize
        self._subscribers: List[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, change: CalendarChange) -> None:
        # Best-effort: a subscriber that is not keeping up simply misses the message.
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(change)
            except asyncio.QueueFull:
                logger.debug("Dropping %s change notification; subscriber queue is full", change.source.value)


class ChangeMonitor:
    """Polls an adapter's change token and publishes to the feed when it moves."""

    def __init__(self, adapter: CalendarAdapter, feed: ChangeFeed, interval_seconds: float = 60) -> None:
        self.adapter = adapter
        self.feed = feed
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._last_token: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._last_token = None
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Started %s calendar change monitoring", self.adapter.provider.value)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def check_once(self) -> bool:
        """Compare the change token with the last one seen; publish when it changed."""
        token = await self.adapter.change_token()
        previous, self._last_token = self._last_token, token
        if previous is None or previous == token:
            return False
        self.feed.publish(CalendarChange(source=self.adapter.provider, detected_at=datetime.now(timezone.utc)))
        return True

    async def _run(self) -> None:
        while True:
            if self.adapter.is_authorized:
                try:
                    await self.check_once()
                except CalendarError as e:
                    logger.debug("Change check for %s failed: %s", self.adapter.provider.value, e)
            await asyncio.sleep(self.interval_seconds)
