from __future__ import annotations
import asyncio
from datetime import date, datetime, timedelta, timezone
import logging
import os
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from google.auth.exceptions import GoogleAuthError, RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
import httplib2
from oauthlib.oauth2.rfc6749.errors import OAuth2Error

from .config import MANAGED_CALENDAR_NAME
from .days import as_aware, midnight
from .errors import (
    AccessDenied,
    CalendarError,
    EventNotFound,
    EventWriteFailed,
    FetchFailed,
    ProviderUnavailable,
    Unauthorized,
)
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

SCOPES = ["https://www.googleapis.com/auth/calendar"]
TOKEN_REFRESH_BUFFER = timedelta(minutes=5)
PRIMARY = "primary"

_TRANSPORT_ERRORS = (HttpError, GoogleAuthError, httplib2.HttpLib2Error, OSError)
_RESTORE_ERRORS = (LookupError, ValueError) + _TRANSPORT_ERRORS


def _build_service(creds: Credentials) -> Any:
    return build("calendar", "v3", credentials=creds, cache_discovery=False)


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _http_status(e: HttpError) -> int:
    return int(getattr(e.resp, "status", 0) or 0)


def google_item_to_event(item: Dict[str, Any], tz: ZoneInfo) -> CalendarEvent:
    title = item.get("summary") or "(No title)"
    location = item.get("location") or None

    start_obj = item.get("start", {})
    end_obj = item.get("end", {})

    # All-day events have "date" not "dateTime"; end date is exclusive
    if "date" in start_obj:
        start = midnight(date.fromisoformat(start_obj["date"]), tz)
        end_date = end_obj.get("date") or start_obj["date"]
        end = midnight(date.fromisoformat(end_date), tz)
        all_day = True
    else:
        start = _parse_datetime(start_obj["dateTime"]).astimezone(tz)
        end = _parse_datetime(end_obj.get("dateTime", start_obj["dateTime"])).astimezone(tz)
        all_day = False

    return CalendarEvent(
        id=str(item["id"]),
        source=CalendarProvider.CLOUD,
        title=title,
        start_at=start,
        end_at=max(start, end),
        all_day=all_day,
        location=location,
        is_hangout=looks_like_hangout(title, item.get("description")),
    )


def _event_time(value: datetime, tz: ZoneInfo) -> Dict[str, str]:
    return {"dateTime": as_aware(value, tz).isoformat(), "timeZone": tz.key}


def _attendees(emails: List[str]) -> List[Dict[str, Any]]:
    return [
        {"email": email, "responseStatus": "needsAction", "optional": False, "additionalGuests": 0}
        for email in emails
    ]


class GoogleCalendarAdapter:
    """Google Calendar (cloud) provider. Sends invitations and returns shareable links."""

    provider = CalendarProvider.CLOUD
    supports_change_tracking = False

    def __init__(
        self,
        tz: ZoneInfo,
        credentials_path: str,
        token_path: str,
        calendar_ids: Optional[List[str]] = None,
        managed_calendar_name: str = MANAGED_CALENDAR_NAME,
        service_factory: Callable[[Credentials], Any] = _build_service,
    ) -> None:
        self.tz = tz
        self.credentials_path = credentials_path
        self.token_path = token_path
        self.calendar_ids = list(calendar_ids or [PRIMARY])
        self.managed_calendar_name = managed_calendar_name
        self._service_factory = service_factory
        self._creds: Optional[Credentials] = None
        self._service: Any = None
        self._managed_calendar_id: Optional[str] = None
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

    # -- credentials -------------------------------------------------------

    def _load_stored_credentials(self) -> Optional[Credentials]:
        if not self.token_path or not os.path.exists(self.token_path):
            return None
        return Credentials.from_authorized_user_file(self.token_path, SCOPES)

    def _save_credentials(self, creds: Credentials) -> None:
        directory = os.path.dirname(self.token_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.token_path, "w", encoding="utf-8") as f:
            f.write(creds.to_json())

    def _run_consent_flow(self) -> Credentials:
        flow = InstalledAppFlow.from_client_secrets_file(self.credentials_path, SCOPES)
        return flow.run_local_server(port=0)

    def _refresh_if_needed(self, creds: Credentials) -> None:
        if not creds.refresh_token:
            return
        expiry = creds.expiry  # naive UTC
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        if expiry is not None and expiry - now > TOKEN_REFRESH_BUFFER:
            return
        logger.debug("Refreshing Google token (expiry %s)", expiry)
        creds.refresh(Request())
        self._save_credentials(creds)

    def _account_email(self, service: Any) -> Optional[str]:
        entry = service.calendarList().get(calendarId=PRIMARY).execute()
        return entry.get("id")

    def _list_calendar_entries(self, service: Any) -> List[Dict[str, Any]]:
        entries: List[Dict[str, Any]] = []
        page_token = None
        while True:
            resp = service.calendarList().list(pageToken=page_token).execute()
            entries.extend(resp.get("items", []))
            page_token = resp.get("nextPageToken")
            if not page_token:
                return entries

    def _find_managed_calendar(self, service: Any) -> Optional[str]:
        if not self.managed_calendar_name:
            return None
        for entry in self._list_calendar_entries(service):
            if entry.get("summary") == self.managed_calendar_name:
                return entry.get("id")
        return None

    def _open(self, creds: Credentials) -> Optional[str]:
        self._refresh_if_needed(creds)
        service = self._service_factory(creds)
        email = self._account_email(service)
        self._managed_calendar_id = self._find_managed_calendar(service)
        self._creds = creds
        self._service = service
        return email

    # -- authorization -----------------------------------------------------

    def _authorize_sync(self) -> Optional[str]:
        creds = self._load_stored_credentials()
        if creds is not None:
            try:
                return self._open(creds)
            except RefreshError:
                logger.info("Stored Google token was rejected; asking for consent again")
        if not self.credentials_path or not os.path.exists(self.credentials_path):
            raise AccessDenied(self.provider, "Google OAuth client secrets are not configured")
        creds = self._run_consent_flow()
        self._save_credentials(creds)
        return self._open(creds)

    async def authorize(self) -> AuthorizationResult:
        if self._session.is_authorized:
            return self._session.result()
        try:
            email = await asyncio.to_thread(self._authorize_sync)
        except OAuth2Error as e:
            raise AccessDenied(self.provider, str(e)) from e
        except RefreshError as e:
            raise AccessDenied(self.provider, f"Stored Google sign-in is no longer valid: {e}") from e
        except HttpError as e:
            if _http_status(e) in (401, 403):
                raise AccessDenied(self.provider, str(e)) from e
            raise ProviderUnavailable(self.provider, str(e)) from e
        except (GoogleAuthError, httplib2.HttpLib2Error, OSError) as e:
            raise ProviderUnavailable(self.provider, str(e)) from e

        logger.info("Google Calendar authorized for %s", email)
        return self._session.grant(email)

    def _restore_sync(self) -> Optional[str]:
        creds = self._load_stored_credentials()
        if creds is None:
            raise LookupError("No stored Google sign-in")
        return self._open(creds)

    async def restore_session(self) -> SessionRestoreResult:
        if self._session.is_authorized:
            return SessionRestoreResult(provider=self.provider, restored=True, account=self.account)
        try:
            email = await asyncio.to_thread(self._restore_sync)
        except _RESTORE_ERRORS as e:
            logger.info("Could not restore Google sign-in: %s", e)
            return SessionRestoreResult(provider=self.provider, restored=False, error=str(e))
        self._session.grant(email)
        return SessionRestoreResult(provider=self.provider, restored=True, account=email)

    async def sign_out(self) -> None:
        self._creds = None
        self._service = None
        self._managed_calendar_id = None
        self._session.clear()
        if self.token_path and os.path.exists(self.token_path):
            os.remove(self.token_path)

    # -- request plumbing --------------------------------------------------

    def _translate(self, e: Exception, write: bool) -> CalendarError:
        failure = EventWriteFailed if write else FetchFailed
        if isinstance(e, RefreshError):
            self._session.revoke()
            return Unauthorized(self.provider, str(e))
        if isinstance(e, HttpError):
            status = _http_status(e)
            if status == 401:
                self._session.revoke()
                return Unauthorized(self.provider, str(e))
            if write and status in (404, 410):
                return EventNotFound(self.provider, str(e))
            return failure(self.provider, str(e), user_message=f"Google Calendar error: {e.reason}" if write else None)
        return failure(self.provider, str(e))

    async def _call(self, func: Callable[..., Any], *args: Any, write: bool = False) -> Any:
        self._session.require()

        def _run() -> Any:
            self._refresh_if_needed(self._creds)
            return func(self._service, *args)

        try:
            return await asyncio.to_thread(_run)
        except _TRANSPORT_ERRORS as e:
            raise self._translate(e, write) from e

    # -- calendars ---------------------------------------------------------

    async def list_calendars(self) -> List[ConnectedCalendar]:
        if not self._session.is_authorized:
            return []
        try:
            entries = await self._call(self._list_calendar_entries)
        except CalendarError as e:
            logger.warning("Failed to list Google calendars: %s", e)
            return []
        return [
            ConnectedCalendar(id=str(entry.get("id")), provider=self.provider, name=entry.get("summary") or "Untitled")
            for entry in entries
            if entry.get("id")
        ]

    def _read_calendar_ids(self) -> List[str]:
        ids = list(self.calendar_ids)
        if self._managed_calendar_id and self._managed_calendar_id not in ids:
            ids.append(self._managed_calendar_id)
        return ids

    # -- events ------------------------------------------------------------

    def _list_events(self, service: Any, day_start: datetime, day_end: datetime) -> List[CalendarEvent]:
        events: Dict[str, CalendarEvent] = {}
        for cal_id in self._read_calendar_ids():
            page_token = None
            while True:
                resp = service.events().list(
                    calendarId=cal_id,
                    timeMin=day_start.isoformat(),
                    timeMax=day_end.isoformat(),
                    singleEvents=True,
                    orderBy="startTime",
                    pageToken=page_token,
                ).execute()
                for item in resp.get("items", []):
                    if item.get("status") == "cancelled":
                        continue
                    event = google_item_to_event(item, self.tz)
                    if event.overlaps(day_start, day_end):
                        events.setdefault(event.id, event)
                page_token = resp.get("nextPageToken")
                if not page_token:
                    break
        return list(events.values())

    async def fetch_events(self, day_start: datetime, day_end: datetime) -> List[CalendarEvent]:
        return await self._call(self._list_events, day_start, day_end)

    def _write_calendar_id(self, service: Any) -> str:
        if not self.managed_calendar_name:
            return PRIMARY
        if self._managed_calendar_id is None:
            self._managed_calendar_id = self._find_managed_calendar(service)
        if self._managed_calendar_id is None:
            created = service.calendars().insert(
                body={
                    "summary": self.managed_calendar_name,
                    "description": "Calendar for Ketchup Soon events - Managed by the Ketchup Soon app",
                    "timeZone": self.tz.key,
                }
            ).execute()
            self._managed_calendar_id = created["id"]
            logger.info("Created managed Google calendar %s", self._managed_calendar_id)
        return self._managed_calendar_id

    def _insert(self, service: Any, spec: EventSpec) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "summary": spec.title,
            "location": spec.location,
            "description": HANGOUT_EVENT_MARKER,
            "start": _event_time(spec.start, self.tz),
            "end": _event_time(spec.end, self.tz),
            "guestsCanModify": True,
            "guestsCanSeeOtherGuests": True,
            "guestsCanInviteOthers": False,
            "anyoneCanAddSelf": False,
            "transparency": "opaque",
            "visibility": "private",
        }
        if spec.attendee_emails:
            body["attendees"] = _attendees(spec.attendee_emails)
        return service.events().insert(
            calendarId=self._write_calendar_id(service),
            body=body,
            sendUpdates="all",
        ).execute()

    async def create_event(self, spec: EventSpec) -> CalendarEventResult:
        created = await self._call(self._insert, spec, write=True)
        logger.info("Created Google event %s", created.get("id"))
        return CalendarEventResult(event_id=created["id"], source=self.provider, html_link=created.get("htmlLink"))

    def _owning_calendars(self) -> List[str]:
        ids = []
        if self._managed_calendar_id:
            ids.append(self._managed_calendar_id)
        ids.extend(cal_id for cal_id in self.calendar_ids if cal_id not in ids)
        return ids

    def _locate(self, service: Any, event_id: str) -> tuple[str, Dict[str, Any]]:
        for cal_id in self._owning_calendars():
            try:
                item = service.events().get(calendarId=cal_id, eventId=event_id).execute()
            except HttpError as e:
                if _http_status(e) in (404, 410):
                    continue
                raise
            if item.get("status") != "cancelled":
                return cal_id, item
        raise EventNotFound(self.provider, f"No Google event with id {event_id!r}")

    def _patch(self, service: Any, event_id: str, patch: EventPatch) -> None:
        cal_id, item = self._locate(service, event_id)
        body: Dict[str, Any] = {}
        if patch.title is not None:
            body["summary"] = patch.title
        if patch.location is not None:
            body["location"] = patch.location
        if patch.changes_time:
            current = google_item_to_event(item, self.tz)
            start, end = patch.resolve_times(current.start_at, current.end_at)
            body["start"] = _event_time(start, self.tz)
            body["end"] = _event_time(end, self.tz)
        if patch.attendee_emails is not None:
            body["attendees"] = _attendees(patch.attendee_emails)
        if not body:
            return
        service.events().patch(calendarId=cal_id, eventId=event_id, body=body, sendUpdates="all").execute()

    def _delete(self, service: Any, event_id: str) -> None:
        cal_id, _ = self._locate(service, event_id)
        service.events().delete(calendarId=cal_id, eventId=event_id, sendUpdates="all").execute()

    async def update_event(self, event_id: str, patch: EventPatch) -> None:
        await self._call(self._patch, event_id, patch, write=True)

    async def delete_event(self, event_id: str) -> None:
        await self._call(self._delete, event_id, write=True)

    def _attendee_emails(self, service: Any, event_id: str) -> List[str]:
        _, item = self._locate(service, event_id)
        return [a["email"] for a in item.get("attendees", []) if a.get("email")]

    async def fetch_attendee_emails(self, event_id: str) -> List[str]:
        return await self._call(self._attendee_emails, event_id)

    async def change_token(self) -> str:
        raise ProviderUnavailable(self.provider, "Google Calendar has no change token; changes are picked up by cache expiry")
