"""Fixtures shared by the sync service tests."""

from dataclasses import replace
from typing import Dict, List, Optional

import pytest
from unittest.mock import AsyncMock, Mock

from shared.db_operations import DatabaseOperations
from shared.encryption import EncryptionService
from shared.models import CalendarInfo, ExternalEvent, OAuthTokens
from services.calendar_client.client import CalendarAPIError, TokenError

USER_ID = "user_1"


class FakeCalendarClient:
    """In-memory stand-in for GoogleCalendarClient; events are kept per calendar."""

    def __init__(self):
        self.events: Dict[str, List[ExternalEvent]] = {}
        self.calendars: List[CalendarInfo] = []
        self.tokens: Optional[OAuthTokens] = None
        self.token_valid = True
        self.refresh_error: Optional[Exception] = None
        self.list_error: Optional[BaseException] = None
        self.fail_create_titles = set()
        self.fail_update_ids = set()
        self.creates: List[str] = []
        self.updates: List[str] = []
        self.deletes: List[str] = []
        self.list_calls: List[str] = []
        self.refresh_calls = 0
        self._next_id = 1

    def add_event(self, calendar_id: str, event: ExternalEvent) -> ExternalEvent:
        self.events.setdefault(calendar_id, []).append(event)
        return event

    def find(self, calendar_id: str, event_id: str) -> Optional[ExternalEvent]:
        for event in self.events.get(calendar_id, []):
            if event.id == event_id:
                return event
        return None

    # GoogleCalendarClient interface

    def set_tokens(self, tokens: OAuthTokens) -> None:
        self.tokens = tokens

    def build_authorization_url(self, state: Optional[str] = None) -> str:
        return f"https://accounts.google.com/o/oauth2/v2/auth?state={state}"

    async def exchange_code(self, code: str) -> OAuthTokens:
        if code == "bad-code":
            raise TokenError("invalid_grant")
        self.tokens = OAuthTokens(f"access-{code}", f"refresh-{code}")
        return self.tokens

    async def verify_token(self) -> bool:
        return self.token_valid

    async def refresh_access_token(self) -> OAuthTokens:
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        if not self.tokens or not self.tokens.refresh_token:
            raise TokenError("No refresh token available; the calendar account must be reconnected")
        self.tokens = OAuthTokens("refreshed-access", self.tokens.refresh_token)
        self.token_valid = True
        return self.tokens

    async def list_calendars(self) -> List[CalendarInfo]:
        return list(self.calendars)

    async def list_events(self, calendar_id, time_min=None, time_max=None) -> List[ExternalEvent]:
        self.list_calls.append(calendar_id)
        if self.list_error is not None:
            raise self.list_error
        return list(self.events.get(calendar_id, []))

    async def create_event(self, calendar_id: str, event: ExternalEvent) -> ExternalEvent:
        if event.summary in self.fail_create_titles:
            raise CalendarAPIError(500, "Backend Error")
        created = replace(event, id=f"evt_created_{self._next_id}")
        self._next_id += 1
        self.add_event(calendar_id, created)
        self.creates.append(created.id)
        return created

    async def update_event(self, calendar_id: str, event_id: str, event: ExternalEvent) -> ExternalEvent:
        existing = self.find(calendar_id, event_id)
        if event_id in self.fail_update_ids or existing is None:
            raise CalendarAPIError(404, "Not Found")
        updated = replace(event, id=event_id)
        events = self.events[calendar_id]
        events[events.index(existing)] = updated
        self.updates.append(event_id)
        return updated

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        self.events[calendar_id] = [e for e in self.events.get(calendar_id, []) if e.id != event_id]
        self.deletes.append(event_id)


@pytest.fixture
def fake_client():
    return FakeCalendarClient()


@pytest.fixture
def client_factory(fake_client):
    """Factory with the create_calendar_client signature returning the fake client."""
    def factory(http_client, rate_limiter=None, user_id=None, tokens=None):
        if tokens is not None:
            fake_client.set_tokens(tokens)
        return fake_client
    return factory


@pytest.fixture
def db_ops():
    db = DatabaseOperations(database_url="sqlite:///:memory:")
    db.create_tables()
    return db


@pytest.fixture
def encryption_service():
    return EncryptionService(EncryptionService.generate_key())


@pytest.fixture
def mock_notification_service():
    service = Mock()
    service.send_critical_error_notification = AsyncMock(return_value=True)
    return service


@pytest.fixture
def connected_user(db_ops, encryption_service):
    """A user with stored tokens and sync enabled."""
    db_ops.store_tokens(USER_ID, OAuthTokens("access-1", "refresh-1"), encryption_service)
    db_ops.update_sync_config(USER_ID, enabled=True)
    return USER_ID

