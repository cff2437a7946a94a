"""Adapter contract shared by the calendar providers."""

from __future__ import annotations
from datetime import datetime
import logging
from typing import List, Optional, Protocol

from .errors import Unauthorized
from .models import (
    AuthorizationResult,
    AuthorizationState,
    CalendarEvent,
    CalendarEventResult,
    CalendarProvider,
    ConnectedCalendar,
    EventPatch,
    EventSpec,
    SessionRestoreResult,
)

logger = logging.getLogger(__name__)


class CalendarAdapter(Protocol):
    provider: CalendarProvider
    supports_change_tracking: bool

    @property
    def state(self) -> AuthorizationState: ...

    @property
    def account(self) -> Optional[str]: ...

    @property
    def is_authorized(self) -> bool: ...

    async def authorize(self) -> AuthorizationResult: ...

    async def restore_session(self) -> SessionRestoreResult: ...

    async def list_calendars(self) -> List[ConnectedCalendar]: ...

    async def fetch_events(self, day_start: datetime, day_end: datetime) -> List[CalendarEvent]: ...

    async def create_event(self, spec: EventSpec) -> CalendarEventResult: ...

    async def update_event(self, event_id: str, patch: EventPatch) -> None: ...

    async def delete_event(self, event_id: str) -> None: ...

    async def sign_out(self) -> None: ...

    async def change_token(self) -> str: ...


class AuthSession:
    """Per-provider authorization state. Only the owning adapter mutates it."""

    def __init__(self, provider: CalendarProvider) -> None:
        self.provider = provider
        self.state = AuthorizationState.UNAUTHORIZED
        self.account: Optional[str] = None

    @property
    def is_authorized(self) -> bool:
        return self.state is AuthorizationState.AUTHORIZED

    def grant(self, account: Optional[str]) -> AuthorizationResult:
        self.state = AuthorizationState.AUTHORIZED
        self.account = account
        return self.result()

    def revoke(self) -> None:
        if self.state is AuthorizationState.AUTHORIZED:
            logger.warning("%s calendar session was revoked", self.provider.value)
            self.state = AuthorizationState.REVOKED

    def clear(self) -> None:
        self.state = AuthorizationState.UNAUTHORIZED
        self.account = None

    def result(self) -> AuthorizationResult:
        return AuthorizationResult(provider=self.provider, state=self.state, account=self.account)

    def require(self) -> None:
        if not self.is_authorized:
            raise Unauthorized(self.provider, f"{self.provider.value} calendar is not authorized")
