from __future__ import annotations
import asyncio
from datetime import date, datetime, timedelta, timezone
import logging
import threading
from typing import Any, Callable, List, Optional
import uuid
from zoneinfo import ZoneInfo

import caldav
from caldav.elements import dav
from caldav.elements.base import ValuedBaseElement
from caldav.lib import error as caldav_error
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent
from icalendar import vCalAddress

from .config import ICLOUD_CALDAV_URL
from .days import as_aware, midnight
from .errors import AccessDenied, EventNotFound, EventWriteFailed, FetchFailed, ProviderUnavailable, Unauthorized
from .models import (
    HANGOUT_EVENT_MARKER,
    AuthorizationResult,
    AuthorizationState,
    CalendarEvent,
    CalendarEventResult,
    CalendarProvider,
    ConnectedCalendar,
    EventPatch,
    EventSpec,
    SessionRestoreResult,
    looks_like_hangout,
)
from .providers import AuthSession

logger = logging.getLogger(__name__)

_ICAL_COMPAT_MSG = "Ical data was modified to avoid compatibility issues"
_RECURRENCE_SEP = "#"


class GetCTag(ValuedBaseElement):
    tag = "{http://calendarserver.org/ns/}getctag"


class _IcalCompatibilityFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return _ICAL_COMPAT_MSG not in record.getMessage()


def _install_ical_compatibility_filter() -> None:
    root_logger = logging.getLogger()
    if any(isinstance(f, _IcalCompatibilityFilter) for f in root_logger.filters):
        return
    root_logger.addFilter(_IcalCompatibilityFilter())


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _to_datetime(value: Any, tz: ZoneInfo) -> datetime:
    if isinstance(value, datetime):
        return as_aware(value, tz)
    # date-only values are all-day boundaries: local midnight, no offset applied
    return midnight(value, tz)


def _event_id(vevent: ICEvent) -> str:
    uid = str(vevent.get("UID", "")).strip()
    if vevent.get("RECURRENCE-ID") is None:
        return uid
    recurrence = vevent.decoded("RECURRENCE-ID")
    stamp = recurrence.isoformat() if isinstance(recurrence, (date, datetime)) else str(recurrence)
    return f"{uid}{_RECURRENCE_SEP}{stamp}"


def _master_uid(event_id: str) -> str:
    return event_id.split(_RECURRENCE_SEP, 1)[0]


def vevent_to_event(vevent: ICEvent, tz: ZoneInfo) -> Optional[CalendarEvent]:
    if vevent.get("DTSTART") is None:
        return None

    dtstart = vevent.decoded("DTSTART")
    all_day = not isinstance(dtstart, datetime)
    start = _to_datetime(dtstart, tz)

    if vevent.get("DTEND") is not None:
        end = _to_datetime(vevent.decoded("DTEND"), tz)
    elif vevent.get("DURATION") is not None:
        end = start + vevent.decoded("DURATION")
    elif all_day:
        # RFC 5545: an all-day event without DTEND lasts one day
        end = midnight(dtstart + timedelta(days=1), tz)
    else:
        end = start

    if end < start:
        end = start

    title = str(vevent.get("SUMMARY", "")).strip() or "(No title)"
    location = str(vevent.get("LOCATION", "")).strip() or None
    description = str(vevent.get("DESCRIPTION", "")).strip()

    return CalendarEvent(
        id=_event_id(vevent),
        source=CalendarProvider.LOCAL,
        title=title,
        start_at=start,
        end_at=end,
        all_day=all_day,
        location=location,
        is_hangout=looks_like_hangout(title, description),
    )


def resource_to_events(resource: Any, tz: ZoneInfo) -> List[CalendarEvent]:
    calendar_obj = ICalendar.from_ical(_decode_raw_ical(resource.data))
    events: List[CalendarEvent] = []
    for component in calendar_obj.walk():
        if component.name != "VEVENT":
            continue
        event = vevent_to_event(component, tz)
        if event is not None:
            events.append(event)
    return events


def _attendee(email: str) -> vCalAddress:
    address = vCalAddress(f"mailto:{email}")
    address.params["ROLE"] = "REQ-PARTICIPANT"
    address.params["PARTSTAT"] = "NEEDS-ACTION"
    return address


def build_ical(spec: EventSpec, uid: str) -> str:
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", "-//ketchupcal//Hangouts//EN")
    calendar_obj.add("VERSION", "2.0")
    vevent = ICEvent()
    vevent.add("UID", uid)
    vevent.add("DTSTAMP", datetime.now(timezone.utc))
    vevent.add("SUMMARY", spec.title)
    if spec.location:
        vevent.add("LOCATION", spec.location)
    vevent.add("DESCRIPTION", HANGOUT_EVENT_MARKER)
    vevent.add("DTSTART", spec.start)
    vevent.add("DTEND", spec.end)
    # No invitations are sent from the local store; attendees are only recorded.
    for email in spec.attendee_emails:
        vevent.add("ATTENDEE", _attendee(email))
    calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")


def _replace(vevent: ICEvent, name: str, value: Any) -> None:
    if name in vevent:
        del vevent[name]
    vevent.add(name, value)


def apply_patch(raw_ical: str, patch: EventPatch, tz: ZoneInfo) -> str:
    calendar_obj = ICalendar.from_ical(raw_ical)
    for vevent in calendar_obj.walk("VEVENT"):
        if patch.title is not None:
            _replace(vevent, "SUMMARY", patch.title)
        if patch.location is not None:
            _replace(vevent, "LOCATION", patch.location)
        if patch.changes_time:
            current = vevent_to_event(vevent, tz)
            if current is None:
                raise ValueError("Event has no start time")
            start, end = patch.resolve_times(current.start_at, current.end_at)
            _replace(vevent, "DTSTART", start)
            if "DURATION" in vevent:
                del vevent["DURATION"]
            _replace(vevent, "DTEND", end)
        if patch.attendee_emails is not None:
            if "ATTENDEE" in vevent:
                del vevent["ATTENDEE"]
            for email in patch.attendee_emails:
                vevent.add("ATTENDEE", _attendee(email))
        break
    return calendar_obj.to_ical().decode("utf-8")


class CalDAVCalendarAdapter:
    """Local calendar store (iCloud or any CalDAV account)."""

    provider = CalendarProvider.LOCAL
    supports_change_tracking = True

    def __init__(
        self,
        tz: ZoneInfo,
        username: str,
        app_password: str,
        url: str = ICLOUD_CALDAV_URL,
        calendar_name_allowlist: Optional[List[str]] = None,
        client_factory: Callable[..., Any] = caldav.DAVClient,
    ) -> None:
        self.tz = tz
        self.url = url
        self.username = username
        self._password = app_password
        self.calendar_name_allowlist = list(calendar_name_allowlist or [])
        self._client_factory = client_factory
        self._principal: Any = None
        self._lock = threading.Lock()
        self._session = AuthSession(self.provider)

    @property
    def state(self) -> AuthorizationState:
        return self._session.state

    @property
    def account(self) -> Optional[str]:
        return self._session.account

    @property
    def is_authorized(self) -> bool:
        return self._session.is_authorized

    # -- authorization -----------------------------------------------------

    def _connect(self) -> Any:
        with self._lock:
            if self._principal is not None:
                return self._principal
            _install_ical_compatibility_filter()
            client = self._client_factory(url=self.url, username=self.username, password=self._password)
            self._principal = client.principal()
            return self._principal

    async def authorize(self) -> AuthorizationResult:
        if self._session.is_authorized:
            return self._session.result()
        if not self.username or not self._password:
            raise AccessDenied(self.provider, "CalDAV username/app password are not configured")

        try:
            await asyncio.to_thread(self._connect)
        except caldav_error.AuthorizationError as e:
            raise AccessDenied(self.provider, str(e)) from e
        except (caldav_error.DAVError, OSError) as e:
            raise ProviderUnavailable(self.provider, str(e)) from e

        logger.info("Local calendar authorized for %s", self.username)
        return self._session.grant(self.username)

    async def restore_session(self) -> SessionRestoreResult:
        try:
            result = await self.authorize()
        except (AccessDenied, ProviderUnavailable) as e:
            return SessionRestoreResult(provider=self.provider, restored=False, error=str(e))
        return SessionRestoreResult(provider=self.provider, restored=True, account=result.account)

    async def sign_out(self) -> None:
        with self._lock:
            self._principal = None
        self._session.clear()

    # -- calendars ---------------------------------------------------------

    def _calendar_name(self, cal: Any) -> str:
        name = getattr(cal, "name", None)
        if name:
            return str(name)
        return str(cal.get_properties([dav.DisplayName()]).get(dav.DisplayName.tag, "") or "")

    def _allowed_calendars(self) -> List[Any]:
        principal = self._connect()
        calendars = []
        for cal in principal.calendars():
            name = self._calendar_name(cal)
            if self.calendar_name_allowlist and name not in self.calendar_name_allowlist:
                continue
            calendars.append(cal)
        return calendars

    def _on_auth_error(self, e: Exception) -> None:
        if isinstance(e, caldav_error.AuthorizationError):
            self._session.revoke()
            with self._lock:
                self._principal = None

    def _revoked(self, e: Exception) -> Unauthorized:
        self._on_auth_error(e)
        return Unauthorized(self.provider, str(e))

    async def list_calendars(self) -> List[ConnectedCalendar]:
        if not self._session.is_authorized:
            return []

        def _list() -> List[ConnectedCalendar]:
            return [
                ConnectedCalendar(id=str(cal.url), provider=self.provider, name=self._calendar_name(cal))
                for cal in self._allowed_calendars()
            ]

        try:
            return await asyncio.to_thread(_list)
        except (caldav_error.DAVError, OSError) as e:
            self._on_auth_error(e)
            logger.warning("Failed to list local calendars: %s", e)
            return []

    # -- events ------------------------------------------------------------

    def _search(self, day_start: datetime, day_end: datetime) -> List[CalendarEvent]:
        events: List[CalendarEvent] = []
        for cal in self._allowed_calendars():
            for resource in cal.search(start=day_start, end=day_end, event=True, expand=True):
                for event in resource_to_events(resource, self.tz):
                    if event.overlaps(day_start, day_end):
                        events.append(event)
        return events

    async def fetch_events(self, day_start: datetime, day_end: datetime) -> List[CalendarEvent]:
        self._session.require()
        try:
            return await asyncio.to_thread(self._search, day_start, day_end)
        except caldav_error.AuthorizationError as e:
            raise self._revoked(e) from e
        except (caldav_error.DAVError, OSError, ValueError) as e:
            self._on_auth_error(e)
            raise FetchFailed(self.provider, str(e)) from e

    def _find_resource(self, event_id: str) -> Any:
        uid = _master_uid(event_id)
        for cal in self._allowed_calendars():
            try:
                return cal.event_by_uid(uid)
            except caldav_error.NotFoundError:
                continue
        raise EventNotFound(self.provider, f"No local event with id {event_id!r}")

    def _create(self, spec: EventSpec) -> str:
        calendars = self._allowed_calendars()
        if not calendars:
            raise EventWriteFailed(self.provider, "No writable local calendar is available")
        uid = str(uuid.uuid4())
        calendars[0].save_event(build_ical(spec, uid))
        return uid

    def _update(self, event_id: str, patch: EventPatch) -> None:
        resource = self._find_resource(event_id)
        resource.data = apply_patch(_decode_raw_ical(resource.data), patch, self.tz)
        resource.save()

    def _delete(self, event_id: str) -> None:
        self._find_resource(event_id).delete()

    async def _write(self, func: Callable[..., Any], *args: Any) -> Any:
        self._session.require()
        try:
            return await asyncio.to_thread(func, *args)
        except caldav_error.NotFoundError as e:
            raise EventNotFound(self.provider, str(e)) from e
        except caldav_error.AuthorizationError as e:
            raise self._revoked(e) from e
        except (caldav_error.DAVError, OSError, ValueError) as e:
            self._on_auth_error(e)
            raise EventWriteFailed(self.provider, str(e), user_message=f"Your calendar rejected the change: {e}") from e

    async def create_event(self, spec: EventSpec) -> CalendarEventResult:
        uid = await self._write(self._create, spec)
        logger.info("Created local event %s", uid)
        return CalendarEventResult(event_id=uid, source=self.provider)

    async def update_event(self, event_id: str, patch: EventPatch) -> None:
        await self._write(self._update, event_id, patch)

    async def delete_event(self, event_id: str) -> None:
        await self._write(self._delete, event_id)

    # -- change tracking ---------------------------------------------------

    def _ctags(self) -> str:
        parts = []
        for cal in self._allowed_calendars():
            ctag = cal.get_property(GetCTag())
            parts.append(f"{cal.url}={ctag or ''}")
        return "|".join(sorted(parts))

    async def change_token(self) -> str:
        self._session.require()
        try:
            return await asyncio.to_thread(self._ctags)
        except caldav_error.AuthorizationError as e:
            raise self._revoked(e) from e
        except (caldav_error.DAVError, OSError) as e:
            self._on_auth_error(e)
            raise FetchFailed(self.provider, str(e)) from e
