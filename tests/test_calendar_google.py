from __future__ import annotations

from datetime import date, datetime, timezone
from types import SimpleNamespace
from zoneinfo import ZoneInfo

from googleapiclient.errors import HttpError
import httplib2
import pytest

from fakes import FakeRequest
from ketchupcal import calendar_google
from ketchupcal.calendar_google import GoogleCalendarAdapter, google_item_to_event
from ketchupcal.errors import AccessDenied, EventNotFound, FetchFailed, ProviderUnavailable, Unauthorized
from ketchupcal.models import HANGOUT_EVENT_MARKER, AuthorizationState, CalendarProvider, EventPatch, EventSpec

TZ = ZoneInfo("America/Los_Angeles")


def _http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({"status": status, "reason": "error"}), b"{}")


class FakeEvents:
    def __init__(self):
        self.items = {}
        self.list_errors = {}
        self.inserted = []
        self.patched = []
        self.deleted = []

    def list(self, calendarId, pageToken=None, **kwargs):
        if calendarId in self.list_errors:
            return FakeRequest(error=self.list_errors[calendarId])
        items = [item for (cal_id, _), item in self.items.items() if cal_id == calendarId]
        return FakeRequest({"items": items})

    def get(self, calendarId, eventId):
        item = self.items.get((calendarId, eventId))
        if item is None:
            return FakeRequest(error=_http_error(404))
        return FakeRequest(item)

    def insert(self, calendarId, body, sendUpdates=None):
        self.inserted.append((calendarId, body, sendUpdates))
        created = dict(body, id=f"evt-{len(self.inserted)}", htmlLink=f"https://calendar.google.com/event?eid={len(self.inserted)}")
        self.items[(calendarId, created["id"])] = created
        return FakeRequest(created)

    def patch(self, calendarId, eventId, body, sendUpdates=None):
        self.patched.append((calendarId, eventId, body, sendUpdates))
        return FakeRequest({})

    def delete(self, calendarId, eventId, sendUpdates=None):
        self.deleted.append((calendarId, eventId, sendUpdates))
        return FakeRequest({})


class FakeCalendarList:
    def __init__(self, entries):
        self.entries = entries

    def get(self, calendarId):
        return FakeRequest({"id": "me@gmail.com"})

    def list(self, pageToken=None):
        return FakeRequest({"items": list(self.entries)})


class FakeCalendars:
    def __init__(self, calendar_list: FakeCalendarList):
        self.calendar_list = calendar_list
        self.inserted = []

    def insert(self, body):
        self.inserted.append(body)
        created = dict(body, id="managed@group.calendar.google.com")
        self.calendar_list.entries.append(created)
        return FakeRequest(created)


class FakeService:
    def __init__(self, entries=None):
        self._events = FakeEvents()
        self._calendar_list = FakeCalendarList(list(entries or [{"id": "primary", "summary": "me@gmail.com"}]))
        self._calendars = FakeCalendars(self._calendar_list)

    def events(self):
        return self._events

    def calendarList(self):
        return self._calendar_list

    def calendars(self):
        return self._calendars


def _adapter(tmp_path, service: FakeService, monkeypatch) -> GoogleCalendarAdapter:
    adapter = GoogleCalendarAdapter(
        tz=TZ,
        credentials_path=str(tmp_path / "credentials.json"),
        token_path=str(tmp_path / "token.json"),
        service_factory=lambda creds: service,
    )
    monkeypatch.setattr(adapter, "_load_stored_credentials", lambda: SimpleNamespace(refresh_token=None, expiry=None))
    return adapter


def test_all_day_item_keeps_its_calendar_date():
    event = google_item_to_event(
        {"id": "x", "summary": "Holiday", "start": {"date": "2024-03-01"}, "end": {"date": "2024-03-02"}},
        TZ,
    )

    assert event.all_day
    assert event.start_at == datetime(2024, 3, 1, tzinfo=TZ)
    assert event.end_at == datetime(2024, 3, 2, tzinfo=TZ)
    assert event.start_at.date() == date(2024, 3, 1)


def test_timed_item_is_converted_to_reference_timezone():
    event = google_item_to_event(
        {
            "id": "x",
            "summary": "Lunch with Alex",
            "start": {"dateTime": "2024-03-01T20:00:00Z"},
            "end": {"dateTime": "2024-03-01T21:00:00Z"},
        },
        TZ,
    )

    assert not event.all_day
    assert event.start_at.tzinfo == TZ
    assert event.start_at.hour == 12
    assert event.start_at == datetime(2024, 3, 1, 20, 0, tzinfo=timezone.utc)
    assert event.is_hangout
    assert event.source is CalendarProvider.CLOUD


def test_item_without_summary_gets_placeholder_title():
    event = google_item_to_event(
        {"id": "x", "start": {"dateTime": "2024-03-01T20:00:00Z"}, "end": {"dateTime": "2024-03-01T20:00:00Z"}},
        TZ,
    )

    assert event.title == "(No title)"
    assert event.start_at == event.end_at


@pytest.mark.asyncio
async def test_authorize_is_idempotent(tmp_path, monkeypatch):
    built = []
    service = FakeService()
    adapter = _adapter(tmp_path, service, monkeypatch)
    adapter._service_factory = lambda creds: built.append(creds) or service

    first = await adapter.authorize()
    second = await adapter.authorize()

    assert first == second
    assert first.account == "me@gmail.com"
    assert first.state is AuthorizationState.AUTHORIZED
    assert len(built) == 1


@pytest.mark.asyncio
async def test_authorize_without_token_or_client_secrets_is_denied(tmp_path):
    adapter = GoogleCalendarAdapter(tz=TZ, credentials_path=str(tmp_path / "missing.json"), token_path=str(tmp_path / "token.json"))

    with pytest.raises(AccessDenied):
        await adapter.authorize()
    assert not adapter.is_authorized


@pytest.mark.asyncio
async def test_restore_session_without_token_reports_not_restored(tmp_path):
    adapter = GoogleCalendarAdapter(tz=TZ, credentials_path="", token_path=str(tmp_path / "token.json"))

    result = await adapter.restore_session()

    assert result.restored is False
    assert result.error
    assert adapter.state is AuthorizationState.UNAUTHORIZED


@pytest.mark.asyncio
async def test_fetch_events_reads_day_and_skips_cancelled(tmp_path, monkeypatch):
    service = FakeService()
    service._events.items[("primary", "a")] = {
        "id": "a",
        "summary": "Standup",
        "start": {"dateTime": "2024-03-01T09:00:00-08:00"},
        "end": {"dateTime": "2024-03-01T09:30:00-08:00"},
    }
    service._events.items[("primary", "b")] = {
        "id": "b",
        "status": "cancelled",
        "start": {"dateTime": "2024-03-01T10:00:00-08:00"},
        "end": {"dateTime": "2024-03-01T11:00:00-08:00"},
    }
    adapter = _adapter(tmp_path, service, monkeypatch)
    await adapter.authorize()

    events = await adapter.fetch_events(datetime(2024, 3, 1, tzinfo=TZ), datetime(2024, 3, 2, tzinfo=TZ))

    assert [e.id for e in events] == ["a"]


@pytest.mark.asyncio
async def test_fetch_events_401_revokes_session(tmp_path, monkeypatch):
    service = FakeService()
    service._events.list_errors["primary"] = _http_error(401)
    adapter = _adapter(tmp_path, service, monkeypatch)
    await adapter.authorize()

    with pytest.raises(Unauthorized):
        await adapter.fetch_events(datetime(2024, 3, 1, tzinfo=TZ), datetime(2024, 3, 2, tzinfo=TZ))

    assert adapter.state is AuthorizationState.REVOKED
    assert not adapter.is_authorized


@pytest.mark.asyncio
async def test_fetch_events_server_error_is_fetch_failure(tmp_path, monkeypatch):
    service = FakeService()
    service._events.list_errors["primary"] = _http_error(503)
    adapter = _adapter(tmp_path, service, monkeypatch)
    await adapter.authorize()

    with pytest.raises(FetchFailed):
        await adapter.fetch_events(datetime(2024, 3, 1, tzinfo=TZ), datetime(2024, 3, 2, tzinfo=TZ))

    assert adapter.is_authorized


@pytest.mark.asyncio
async def test_fetch_before_authorize_is_unauthorized(tmp_path, monkeypatch):
    adapter = _adapter(tmp_path, FakeService(), monkeypatch)

    with pytest.raises(Unauthorized):
        await adapter.fetch_events(datetime(2024, 3, 1, tzinfo=TZ), datetime(2024, 3, 2, tzinfo=TZ))


@pytest.mark.asyncio
async def test_create_event_uses_managed_calendar_and_invites_attendees(tmp_path, monkeypatch):
    service = FakeService()
    adapter = _adapter(tmp_path, service, monkeypatch)
    await adapter.authorize()

    result = await adapter.create_event(
        EventSpec(
            title="Dinner with Sam",
            start=datetime(2024, 3, 1, 19, 0, tzinfo=TZ),
            location="Tacos",
            attendee_emails=["sam@example.com"],
        )
    )

    assert service._calendars.inserted[0]["summary"] == "Ketchup Soon Events"
    calendar_id, body, send_updates = service._events.inserted[0]
    assert calendar_id == "managed@group.calendar.google.com"
    assert send_updates == "all"
    assert body["description"] == HANGOUT_EVENT_MARKER
    assert body["start"] == {"dateTime": "2024-03-01T19:00:00-08:00", "timeZone": "America/Los_Angeles"}
    assert body["end"]["dateTime"] == "2024-03-01T20:00:00-08:00"
    assert [a["email"] for a in body["attendees"]] == ["sam@example.com"]
    assert result.event_id == "evt-1"
    assert result.html_link.startswith("https://calendar.google.com/")


@pytest.mark.asyncio
async def test_second_create_reuses_managed_calendar(tmp_path, monkeypatch):
    service = FakeService()
    adapter = _adapter(tmp_path, service, monkeypatch)
    await adapter.authorize()
    spec = EventSpec(title="Walk", start=datetime(2024, 3, 1, 9, 0, tzinfo=TZ))

    await adapter.create_event(spec)
    await adapter.create_event(spec)

    assert len(service._calendars.inserted) == 1


@pytest.mark.asyncio
async def test_update_moves_event_and_keeps_its_length(tmp_path, monkeypatch):
    service = FakeService()
    service._events.items[("primary", "a")] = {
        "id": "a",
        "summary": "Coffee",
        "start": {"dateTime": "2024-03-01T09:00:00-08:00"},
        "end": {"dateTime": "2024-03-01T09:30:00-08:00"},
    }
    adapter = _adapter(tmp_path, service, monkeypatch)
    await adapter.authorize()

    await adapter.update_event("a", EventPatch(start=datetime(2024, 3, 2, 10, 0, tzinfo=TZ)))

    calendar_id, event_id, body, send_updates = service._events.patched[0]
    assert (calendar_id, event_id, send_updates) == ("primary", "a", "all")
    assert body["start"]["dateTime"] == "2024-03-02T10:00:00-08:00"
    assert body["end"]["dateTime"] == "2024-03-02T10:30:00-08:00"
    assert "summary" not in body


@pytest.mark.asyncio
async def test_delete_unknown_event_is_not_found(tmp_path, monkeypatch):
    adapter = _adapter(tmp_path, FakeService(), monkeypatch)
    await adapter.authorize()

    with pytest.raises(EventNotFound):
        await adapter.delete_event("missing")


@pytest.mark.asyncio
async def test_delete_sends_cancellations(tmp_path, monkeypatch):
    service = FakeService()
    service._events.items[("primary", "a")] = {
        "id": "a",
        "start": {"dateTime": "2024-03-01T09:00:00-08:00"},
        "end": {"dateTime": "2024-03-01T10:00:00-08:00"},
    }
    adapter = _adapter(tmp_path, service, monkeypatch)
    await adapter.authorize()

    await adapter.delete_event("a")

    assert service._events.deleted == [("primary", "a", "all")]


@pytest.mark.asyncio
async def test_fetch_attendee_emails(tmp_path, monkeypatch):
    service = FakeService()
    service._events.items[("primary", "a")] = {
        "id": "a",
        "attendees": [{"email": "sam@example.com"}, {"displayName": "no email"}],
        "start": {"dateTime": "2024-03-01T09:00:00-08:00"},
        "end": {"dateTime": "2024-03-01T10:00:00-08:00"},
    }
    adapter = _adapter(tmp_path, service, monkeypatch)
    await adapter.authorize()

    assert await adapter.fetch_attendee_emails("a") == ["sam@example.com"]


@pytest.mark.asyncio
async def test_sign_out_removes_stored_token(tmp_path, monkeypatch):
    adapter = _adapter(tmp_path, FakeService(), monkeypatch)
    await adapter.authorize()
    token = tmp_path / "token.json"
    token.write_text("{}")

    await adapter.sign_out()

    assert not token.exists()
    assert adapter.account is None
    assert await adapter.list_calendars() == []


def test_refresh_skipped_while_token_is_fresh(monkeypatch):
    adapter = GoogleCalendarAdapter(tz=TZ, credentials_path="", token_path="")
    refreshed = []
    creds = SimpleNamespace(
        refresh_token="r",
        expiry=datetime(2100, 1, 1),
        refresh=lambda request: refreshed.append(request),
    )

    adapter._refresh_if_needed(creds)

    assert refreshed == []


def test_refresh_runs_inside_buffer(monkeypatch, tmp_path):
    adapter = GoogleCalendarAdapter(tz=TZ, credentials_path="", token_path=str(tmp_path / "token.json"))
    refreshed = []
    creds = SimpleNamespace(
        refresh_token="r",
        expiry=datetime(2000, 1, 1),
        refresh=lambda request: refreshed.append(request),
        to_json=lambda: "{}",
    )
    monkeypatch.setattr(calendar_google, "Request", lambda: "request")

    adapter._refresh_if_needed(creds)

    assert refreshed == ["request"]
    assert (tmp_path / "token.json").read_text() == "{}"


@pytest.mark.asyncio
async def test_change_token_is_a_calendar_error(tmp_path, monkeypatch):
    adapter = _adapter(tmp_path, FakeService(), monkeypatch)
    await adapter.authorize()

    assert adapter.supports_change_tracking is False
    with pytest.raises(ProviderUnavailable):
        await adapter.change_token()
