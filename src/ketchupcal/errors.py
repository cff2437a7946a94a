from __future__ import annotations
from typing import Optional

from .models import CalendarProvider


class CalendarError(Exception):
    """Base error for provider adapters; `user_message` is safe to show in the UI."""

    default_message = "Something went wrong with your calendar."

    def __init__(
        self,
        provider: Optional[CalendarProvider] = None,
        detail: str = "",
        user_message: Optional[str] = None,
    ) -> None:
        self.provider = provider
        self.detail = detail
        self.user_message = user_message or self.default_message
        super().__init__(detail or self.user_message)


class AccessDenied(CalendarError):
    default_message = "Calendar access was denied. Connect your calendar to continue."


class ProviderUnavailable(CalendarError):
    default_message = "The calendar service could not be reached."


class FetchFailed(CalendarError):
    default_message = "Failed to fetch calendar events."


class EventNotFound(CalendarError):
    default_message = "The calendar event no longer exists."


class Unauthorized(CalendarError):
    default_message = "Not authorized to access this calendar. Please connect it again."


class EventWriteFailed(CalendarError):
    default_message = "Failed to save the calendar event."
