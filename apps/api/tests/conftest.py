"""
Test configuration and fixtures.

Provides:
- Database session inside an outer transaction (rolled back after each test)
- JWT session cookie minting for authenticated tests
- HTTPX AsyncClient against the ASGI app
- A fake Google Calendar wired into calendar_service
"""
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Generator

import pytest
from cryptography.fernet import Fernet
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

# Must be set before any vesta_calendar import reads settings
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("FERNET_KEY", Fernet.generate_key().decode())
os.environ["TESTING"] = "1"
os.environ["REDIS_URL"] = "memory://"

from vesta_calendar.main import app
from vesta_calendar.core import sync_lock
from vesta_calendar.core.cache import CacheService
from vesta_calendar.core.config import settings
from vesta_calendar.core.deps import COOKIE_NAME, get_db
from vesta_calendar.core.encryption import encrypt_token
from vesta_calendar.core.security import create_session_token
from vesta_calendar.db.base import Base
from vesta_calendar.db.models import User, UserIntegration
from vesta_calendar.db.session import SessionLocal, engine
from vesta_calendar.services import calendar_service


# =============================================================================
# Database Fixtures (Savepoint pattern)
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def _schema() -> Generator[None, None, None]:
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Creates a database session inside an outer transaction.

    App code can call commit()/rollback() freely: the session only
    releases or rolls back SAVEPOINTs, and the outer transaction is
    rolled back when the test ends.
    """
    connection = engine.connect()
    transaction = connection.begin()
    session = SessionLocal(bind=connection, join_transaction_mode="create_savepoint")

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture(autouse=True)
def _reset_process_state(monkeypatch):
    """Fresh sync lease map and status cache for every test."""
    monkeypatch.setattr(sync_lock, "_sync_lock", None)
    app.state.cache = CacheService(default_ttl_seconds=settings.STATUS_CACHE_TTL_SECONDS)


@pytest.fixture(scope="function")
def test_user(db: Session) -> User:
    """Create an active test user."""
    user = User(
        id=uuid.uuid4(),
        email=f"agent-{uuid.uuid4().hex[:8]}@vesta.test",
        display_name="Test Agent",
    )
    db.add(user)
    db.flush()
    return user


# =============================================================================
# Auth Fixtures
# =============================================================================

@dataclass
class TestAuth:
    """Test authentication context."""
    user: User
    token: str
    cookie_name: str = COOKIE_NAME


@pytest.fixture(scope="function")
def test_auth(test_user: User) -> TestAuth:
    """Create session JWT for the test user."""
    token = create_session_token(
        user_id=test_user.id,
        token_version=test_user.token_version,
    )
    return TestAuth(user=test_user, token=token)


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """
    Create unauthenticated AsyncClient for testing public endpoints.
    """
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def authed_client(
    db: Session,
    test_auth: TestAuth,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Create authenticated AsyncClient carrying the session cookie.
    """
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        cookies={test_auth.cookie_name: test_auth.token},
    ) as c:
        yield c

    app.dependency_overrides.clear()


# =============================================================================
# Google Calendar Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def google_integration(db: Session, test_user: User) -> UserIntegration:
    """Active Google Calendar integration with a valid (non-expiring) access token."""
    now = datetime.now(timezone.utc)
    integration = UserIntegration(
        user_id=test_user.id,
        access_token_encrypted=encrypt_token("access-token"),
        refresh_token_encrypted=encrypt_token("refresh-token"),
        token_expires_at=now + timedelta(hours=1),
        account_email="agent@example.com",
        connected_at=now - timedelta(days=1),
        created_at=now - timedelta(days=1),
        updated_at=now - timedelta(days=1),
    )
    db.add(integration)
    db.commit()
    return integration


def _google_event(
    event_id: str,
    *,
    summary: str = "Visita - Ana García",
    start: str = "2024-01-01T10:00:00Z",
    end: str = "2024-01-01T11:00:00Z",
    etag: str | None = None,
    status: str = "confirmed",
    updated: str = "2024-01-01T09:00:00Z",
    description: str | None = None,
) -> dict[str, Any]:
    """An events.list item as Google returns it."""
    item: dict[str, Any] = {
        "id": event_id,
        "etag": etag or f'"{event_id}-etag"',
        "status": status,
        "summary": summary,
        "start": {"dateTime": start},
        "end": {"dateTime": end},
        "updated": updated,
    }
    if description is not None:
        item["description"] = description
    return item


class FakeGoogleCalendar:
    """
    In-memory stand-in for the calendar_service API calls.

    list_events_page serves queued responses in order (an exception in the
    queue is raised); once the queue is empty it returns an empty final page.
    """

    def __init__(self):
        self.list_responses: list[Any] = []
        self.list_calls: list[dict[str, Any]] = []
        self.inserted: list[dict[str, Any]] = []
        self.updated: list[tuple[str, dict[str, Any]]] = []
        self.deleted: list[str] = []
        self.calendar_checks = 0
        self.stopped_channels: list[tuple[str, str]] = []
        self.fail_inserts_for: set[str] = set()
        self.next_sync_token = "next-sync-token"
        self._counter = 0

    def queue_page(
        self,
        items: list[dict[str, Any]],
        *,
        next_page_token: str | None = None,
        next_sync_token: str | None = None,
    ) -> None:
        self.list_responses.append(
            calendar_service.EventsPage(
                items=items,
                next_page_token=next_page_token,
                next_sync_token=next_sync_token,
            )
        )

    def queue_error(self, exc: Exception) -> None:
        self.list_responses.append(exc)

    async def list_events_page(self, access_token, calendar_id, **kwargs):
        self.list_calls.append({"access_token": access_token, **kwargs})
        if not self.list_responses:
            return calendar_service.EventsPage(
                items=[], next_page_token=None, next_sync_token=self.next_sync_token
            )
        response = self.list_responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def get_calendar(self, access_token, calendar_id):
        self.calendar_checks += 1
        return {"id": calendar_id}

    async def insert_event(self, access_token, calendar_id, body):
        from vesta_calendar.core.exceptions import ProviderApiError

        if body["summary"] in self.fail_inserts_for:
            raise ProviderApiError("Create event: backend error", status_code=500)
        self._counter += 1
        self.inserted.append(body)
        return {"id": f"created-{self._counter}", "etag": f'"created-{self._counter}"'}

    async def update_event(self, access_token, calendar_id, event_id, body):
        self._counter += 1
        self.updated.append((event_id, body))
        return {"id": event_id, "etag": f'"updated-{self._counter}"'}

    async def delete_event(self, access_token, calendar_id, event_id):
        self.deleted.append(event_id)
        return True

    async def stop_channel(self, access_token, channel_id, resource_id):
        self.stopped_channels.append((channel_id, resource_id))
        return True


@pytest.fixture(scope="function")
def fake_google(monkeypatch) -> FakeGoogleCalendar:
    """Route calendar_service API calls to a FakeGoogleCalendar."""
    fake = FakeGoogleCalendar()
    for name in (
        "list_events_page",
        "get_calendar",
        "insert_event",
        "update_event",
        "delete_event",
        "stop_channel",
    ):
        monkeypatch.setattr(calendar_service, name, getattr(fake, name))
    return fake


@pytest.fixture
def google_event():
    """Factory for events.list items."""
    return _google_event
