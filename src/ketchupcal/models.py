from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Tuple

DEFAULT_EVENT_DURATION_SECONDS = 3600
HANGOUT_EVENT_MARKER = "KetchupSoon Event 🍅"


class CalendarProvider(str, Enum):
    LOCAL = "local"
    CLOUD = "cloud"

    @classmethod
    def parse(cls, value: Optional[str], default: Optional["CalendarProvider"] = None) -> "CalendarProvider":
        # Older builds persisted "apple" / "google".
        normalized = (value or "").strip().lower()
        if normalized in {"local", "apple", "icloud", "caldav"}:
            return cls.LOCAL
        if normalized in {"cloud", "google"}:
            return cls.CLOUD
        if default is not None:
            return default
        raise ValueError(f"Unknown calendar provider: {value!r}")


class AuthorizationState(str, Enum):
    UNAUTHORIZED = "unauthorized"
    AUTHORIZED = "authorized"
    REVOKED = "revoked"


def looks_like_hangout(title: str, description: Optional[str]) -> bool:
    if description and HANGOUT_EVENT_MARKER in description:
        return True
    return " with " in f" {title} "


@dataclass(frozen=True)
class CalendarEvent:
    id: str
    source: CalendarProvider
    title: str
    start_at: datetime          # timezone-aware
    end_at: datetime            # timezone-aware
    all_day: bool = False
    location: Optional[str] = None
    is_hangout: bool = False

    def __post_init__(self) -> None:
        if self.end_at < self.start_at:
            raise ValueError(f"Event {self.id!r} ends before it starts")

    @property
    def key(self) -> Tuple[str, str]:
        return (self.source.value, self.id)

    def overlaps(self, start: datetime, end: datetime) -> bool:
        if self.start_at == self.end_at:
            return start <= self.start_at < end
        return self.start_at < end and start < self.end_at


@dataclass(frozen=True)
class ConnectedCalendar:
    id: str
    provider: CalendarProvider
    name: str
    is_enabled: bool = True


@dataclass
class EventSpec:
    title: str
    start: datetime
    duration_seconds: Optional[float] = None  # None: the configured default
    location: str = ""
    attendee_emails: List[str] = field(default_factory=list)
    provider: Optional[CalendarProvider] = None

    def __post_init__(self) -> None:
        if self.duration_seconds is not None and self.duration_seconds <= 0:
            raise ValueError("Event duration must be positive")

    @property
    def end(self) -> datetime:
        duration = DEFAULT_EVENT_DURATION_SECONDS if self.duration_seconds is None else self.duration_seconds
        return self.start + timedelta(seconds=duration)


@dataclass
class EventPatch:
    title: Optional[str] = None
    start: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    location: Optional[str] = None
    attendee_emails: Optional[List[str]] = None

    @property
    def changes_time(self) -> bool:
        return self.start is not None or self.duration_seconds is not None

    def resolve_times(self, current_start: datetime, current_end: datetime) -> Tuple[datetime, datetime]:
        """New (start, end) for an event currently at [current_start, current_end).

        A missing duration keeps the event's current length.
        """
        start = self.start if self.start is not None else current_start
        if self.duration_seconds is not None:
            length = timedelta(seconds=self.duration_seconds)
        else:
            length = current_end - current_start
        return start, start + length


@dataclass(frozen=True)
class CalendarEventResult:
    event_id: str
    source: CalendarProvider
    html_link: Optional[str] = None


@dataclass(frozen=True)
class AuthorizationResult:
    provider: CalendarProvider
    state: AuthorizationState
    account: Optional[str] = None


@dataclass(frozen=True)
class SessionRestoreResult:
    provider: CalendarProvider
    restored: bool
    account: Optional[str] = None
    error: Optional[str] = None
