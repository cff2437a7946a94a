from __future__ import annotations
import asyncio
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .models import CalendarEvent

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheEntry:
    fetched_at: datetime
    events: Tuple[CalendarEvent, ...]

    def is_fresh(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.fetched_at < ttl


class DayCache:
    """Per-day event cache with a time-to-live.

    Every method is synchronous and runs on the event loop thread, so each call
    is atomic with respect to other coroutines. Fetches in flight are tracked per
    day so concurrent readers share one fetch, and a generation counter per day
    lets an invalidation that lands mid-fetch veto storing the fetched result.
    """

    def __init__(self, ttl_seconds: float = 300, clock: Clock = utc_now) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._entries: Dict[date, CacheEntry] = {}
        self._pending: Dict[date, asyncio.Future] = {}
        self._generations: Dict[date, int] = {}

    def fresh(self, key: date) -> Optional[List[CalendarEvent]]:
        entry = self._entries.get(key)
        if entry is None or not entry.is_fresh(self.clock(), self.ttl):
            return None
        return list(entry.events)

    def stale(self, key: date) -> Optional[List[CalendarEvent]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return list(entry.events)

    def generation(self, key: date) -> int:
        return self._generations.get(key, 0)

    def store(self, key: date, events: Iterable[CalendarEvent], generation: int) -> bool:
        if self.generation(key) != generation:
            return False
        self._entries[key] = CacheEntry(fetched_at=self.clock(), events=tuple(events))
        return True

    def pending(self, key: date) -> Optional[asyncio.Future]:
        return self._pending.get(key)

    def begin_fetch(self, key: date) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        return future

    def end_fetch(self, key: date, future: asyncio.Future) -> None:
        if self._pending.get(key) is future:
            del self._pending[key]

    def invalidate(self, key: date) -> None:
        # Readers arriving after this must not join a fetch that started before it.
        self._entries.pop(key, None)
        self._pending.pop(key, None)
        self._generations[key] = self.generation(key) + 1

    def invalidate_event(self, event_key: Tuple[str, str]) -> List[date]:
        days = [day for day, entry in self._entries.items() if any(e.key == event_key for e in entry.events)]
        for day in days:
            self.invalidate(day)
        return days

    def clear(self) -> None:
        for key in set(self._entries) | set(self._pending):
            self._generations[key] = self.generation(key) + 1
        self._entries.clear()
        self._pending.clear()

    def __contains__(self, key: date) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
