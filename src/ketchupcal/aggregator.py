from __future__ import annotations
import asyncio
from dataclasses import replace
from datetime import date, datetime, time, timedelta
import logging
from typing import Dict, Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo

from .cache import Clock, DayCache, utc_now
from .changes import CalendarChange, ChangeFeed, ChangeMonitor
from .days import DayLike, as_aware, day_key, day_range
from .errors import CalendarError, ProviderUnavailable, Unauthorized
from .models import (
    DEFAULT_EVENT_DURATION_SECONDS,
    AuthorizationResult,
    CalendarEvent,
    CalendarEventResult,
    CalendarProvider,
    ConnectedCalendar,
    EventPatch,
    EventSpec,
    SessionRestoreResult,
)
from .preferences import Preferences, PreferencesStore
from .providers import CalendarAdapter

logger = logging.getLogger(__name__)

SUGGESTION_FIRST_HOUR = 9
SUGGESTION_LAST_HOUR = 21


def _merge_sort_key(e: CalendarEvent):
    return (e.start_at, e.source.value, e.id)


def merge_events(groups: Iterable[Iterable[CalendarEvent]]) -> List[CalendarEvent]:
    merged: List[CalendarEvent] = []
    for group in groups:
        merged.extend(group)
    return sorted(merged, key=_merge_sort_key)


class CalendarAggregator:
    """Merges both providers' events per day, caches them, and routes writes by provider."""

    def __init__(
        self,
        adapters: Sequence[CalendarAdapter],
        tz: ZoneInfo,
        preferences: PreferencesStore,
        cache_ttl_seconds: float = 300,
        default_duration_seconds: float = DEFAULT_EVENT_DURATION_SECONDS,
        change_poll_seconds: float = 60,
        feed: Optional[ChangeFeed] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.tz = tz
        self.default_duration_seconds = default_duration_seconds
        self.clock = clock
        self.cache = DayCache(ttl_seconds=cache_ttl_seconds, clock=clock)
        self.feed = feed or ChangeFeed()
        self._adapters: Dict[CalendarProvider, CalendarAdapter] = {a.provider: a for a in adapters}
        self._monitors: Dict[CalendarProvider, ChangeMonitor] = {
            a.provider: ChangeMonitor(a, self.feed, change_poll_seconds)
            for a in adapters
            if a.supports_change_tracking
        }
        self._preferences = preferences
        self._selected = preferences.load().default_provider
        self._connected_calendars: List[ConnectedCalendar] = []
        self._listener: Optional[asyncio.Task] = None

    # -- published state ---------------------------------------------------

    def _is_authorized(self, provider: CalendarProvider) -> bool:
        adapter = self._adapters.get(provider)
        return adapter is not None and adapter.is_authorized

    @property
    def is_local_authorized(self) -> bool:
        return self._is_authorized(CalendarProvider.LOCAL)

    @property
    def is_cloud_authorized(self) -> bool:
        return self._is_authorized(CalendarProvider.CLOUD)

    @property
    def local_account(self) -> Optional[str]:
        adapter = self._adapters.get(CalendarProvider.LOCAL)
        return adapter.account if adapter is not None else None

    @property
    def cloud_account(self) -> Optional[str]:
        adapter = self._adapters.get(CalendarProvider.CLOUD)
        return adapter.account if adapter is not None else None

    @property
    def connected_calendars(self) -> List[ConnectedCalendar]:
        return list(self._connected_calendars)

    @property
    def selected_provider(self) -> CalendarProvider:
        return self._selected

    @selected_provider.setter
    def selected_provider(self, provider: CalendarProvider) -> None:
        if provider == self._selected:
            return
        logger.info("Default calendar provider changed to %s", provider.value)
        self._selected = provider
        self._preferences.save(Preferences(default_provider=provider))

    @property
    def has_selected_provider_access(self) -> bool:
        return self._is_authorized(self._selected)

    # -- lifecycle ---------------------------------------------------------

    async def restore_sessions(self) -> List[SessionRestoreResult]:
        results = []
        for adapter in self._adapters.values():
            result = await adapter.restore_session()
            if result.restored:
                self._start_monitor(adapter.provider)
            results.append(result)
        self.clear_all()
        await self.refresh_connected_calendars()
        return results

    def start(self) -> None:
        if self._listener is None or self._listener.done():
            self._listener = asyncio.get_running_loop().create_task(self.run_change_listener())
        for provider in self._monitors:
            if self._is_authorized(provider):
                self._start_monitor(provider)

    async def stop(self) -> None:
        for monitor in self._monitors.values():
            await monitor.stop()
        listener, self._listener = self._listener, None
        if listener is not None:
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass

    def _start_monitor(self, provider: CalendarProvider) -> None:
        monitor = self._monitors.get(provider)
        if monitor is not None:
            monitor.start()

    # -- authorization -----------------------------------------------------

    def _adapter(self, provider: CalendarProvider) -> CalendarAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise ProviderUnavailable(provider, f"{provider.value} calendar is not configured")
        return adapter

    def _authorized_adapter(self, provider: CalendarProvider) -> CalendarAdapter:
        adapter = self._adapter(provider)
        if not adapter.is_authorized:
            raise Unauthorized(provider, f"{provider.value} calendar is not authorized")
        return adapter

    async def _authorize(self, provider: CalendarProvider) -> AuthorizationResult:
        adapter = self._adapter(provider)
        was_authorized = adapter.is_authorized
        result = await adapter.authorize()
        self._start_monitor(provider)
        if not was_authorized:
            # Days cached before this provider joined are missing its events.
            self.clear_all()
            await self.refresh_connected_calendars()
        return result

    async def request_access(self) -> AuthorizationResult:
        return await self._authorize(CalendarProvider.LOCAL)

    async def request_cloud_access(self) -> AuthorizationResult:
        result = await self._authorize(CalendarProvider.CLOUD)
        self.selected_provider = CalendarProvider.CLOUD
        return result

    async def sign_out_cloud(self) -> None:
        adapter = self._adapters.get(CalendarProvider.CLOUD)
        if adapter is None:
            return
        await adapter.sign_out()
        self.clear_all()
        await self.refresh_connected_calendars()

    async def refresh_connected_calendars(self) -> List[ConnectedCalendar]:
        calendars: List[ConnectedCalendar] = []
        for adapter in self._adapters.values():
            if adapter.is_authorized:
                calendars.extend(await adapter.list_calendars())
        self._connected_calendars = calendars
        return list(calendars)

    # -- reads -------------------------------------------------------------

    async def _fetch_from(self, adapter: CalendarAdapter, day_start: datetime, day_end: datetime) -> Optional[List[CalendarEvent]]:
        try:
            return await adapter.fetch_events(day_start, day_end)
        except CalendarError as e:
            logger.warning("%s calendar fetch failed; continuing without it. Error: %s", adapter.provider.value, e)
            return None

    async def _fetch_day(self, key: date) -> List[CalendarEvent]:
        day_start, day_end = day_range(key, self.tz)
        adapters = [a for a in self._adapters.values() if a.is_authorized]
        generation = self.cache.generation(key)
        results = await asyncio.gather(*(self._fetch_from(a, day_start, day_end) for a in adapters))

        if adapters and all(r is None for r in results):
            stale = self.cache.stale(key)
            if stale is not None:
                logger.warning("All calendar providers failed for %s; serving stale cached events", key)
                return stale
            logger.warning("All calendar providers failed for %s; no events available", key)
            return []

        events = merge_events(r for r in results if r is not None)
        if not self.cache.store(key, events, generation):
            logger.debug("Cache for %s was invalidated during fetch; result not stored", key)
        return events

    async def get_events(self, day: DayLike) -> List[CalendarEvent]:
        key = day_key(day, self.tz)
        if not any(a.is_authorized for a in self._adapters.values()):
            return []

        while True:
            cached = self.cache.fresh(key)
            if cached is not None:
                return cached
            pending = self.cache.pending(key)
            if pending is None:
                break
            try:
                return list(await asyncio.shield(pending))
            except asyncio.CancelledError:
                if pending.cancelled():
                    # The fetch we were sharing was cancelled by its owner.
                    continue
                raise

        future = self.cache.begin_fetch(key)
        try:
            events = await self._fetch_day(key)
        except BaseException:
            future.cancel()
            raise
        finally:
            self.cache.end_fetch(key, future)
        future.set_result(events)
        return list(events)

    def invalidate(self, day: DayLike) -> None:
        self.cache.invalidate(day_key(day, self.tz))

    def clear_all(self) -> None:
        self.cache.clear()

    # -- writes ------------------------------------------------------------

    async def create_hangout_event(self, spec: EventSpec) -> CalendarEventResult:
        provider = spec.provider or self._selected
        adapter = self._authorized_adapter(provider)
        duration = self.default_duration_seconds if spec.duration_seconds is None else spec.duration_seconds
        spec = replace(spec, start=as_aware(spec.start, self.tz), duration_seconds=duration, provider=provider)
        result = await adapter.create_event(spec)
        self.invalidate(spec.start)
        return result

    def _invalidate_after_write(self, event_id: str, source: CalendarProvider, new_start: Optional[datetime]) -> None:
        self.cache.invalidate_event((source.value, event_id))
        if new_start is not None:
            self.invalidate(new_start)

    async def update_event(self, event_id: str, source: CalendarProvider, patch: EventPatch) -> None:
        adapter = self._authorized_adapter(source)
        if patch.start is not None:
            patch = replace(patch, start=as_aware(patch.start, self.tz))
        await adapter.update_event(event_id, patch)
        self._invalidate_after_write(event_id, source, patch.start)

    async def delete_event(self, event_id: str, source: CalendarProvider) -> None:
        adapter = self._authorized_adapter(source)
        await adapter.delete_event(event_id)
        self._invalidate_after_write(event_id, source, None)

    async def sync_cloud_attendees(self, event_id: str, known_emails: Iterable[str]) -> Optional[List[str]]:
        """Attendee emails of a cloud event, or None when they match `known_emails`."""
        adapter = self._authorized_adapter(CalendarProvider.CLOUD)
        emails = await adapter.fetch_attendee_emails(event_id)
        if set(emails) == set(known_emails):
            return None
        return emails

    # -- changes -----------------------------------------------------------

    def today(self) -> date:
        return self.clock().astimezone(self.tz).date()

    async def handle_change(self, change: CalendarChange) -> None:
        logger.info("%s calendar changed externally; refreshing today", change.source.value)
        today = self.today()
        self.invalidate(today)
        await self.get_events(today)

    async def run_change_listener(self) -> None:
        queue = self.feed.subscribe()
        try:
            while True:
                change = await queue.get()
                try:
                    await self.handle_change(change)
                except Exception:
                    logger.exception("Refreshing after %s calendar change failed", change.source.value)
        finally:
            self.feed.unsubscribe(queue)

    # -- availability ------------------------------------------------------

    async def is_time_slot_available(self, start: datetime, duration_seconds: Optional[float] = None) -> bool:
        start = as_aware(start, self.tz)
        if duration_seconds is None:
            duration_seconds = self.default_duration_seconds
        if duration_seconds <= 0:
            raise ValueError("Slot duration must be positive")
        end = start + timedelta(seconds=duration_seconds)
        day = day_key(start, self.tz)
        last_day = day_key(end - timedelta(microseconds=1), self.tz)
        while day <= last_day:
            for event in await self.get_events(day):
                if not event.all_day and event.overlaps(start, end):
                    return False
            day += timedelta(days=1)
        return True

    async def suggest_available_time_slots(
        self,
        duration_seconds: Optional[float] = None,
        limit: int = 3,
        days: int = 14,
    ) -> List[datetime]:
        now = self.clock().astimezone(self.tz)
        suggestions: List[datetime] = []
        for offset in range(days):
            day = now.date() + timedelta(days=offset)
            for hour in range(SUGGESTION_FIRST_HOUR, SUGGESTION_LAST_HOUR):
                candidate = datetime.combine(day, time(hour), tzinfo=self.tz)
                if candidate < now:
                    continue
                if await self.is_time_slot_available(candidate, duration_seconds):
                    suggestions.append(candidate)
                    if len(suggestions) >= limit:
                        return suggestions
        return suggestions
