"""Tests for the Google Calendar integration endpoints."""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from vesta_calendar.core.config import settings
from vesta_calendar.core.exceptions import TokenExchangeError
from vesta_calendar.core.security import create_oauth_state
from vesta_calendar.core.sync_lock import get_sync_lock
from vesta_calendar.db.models import Appointment, UserIntegration
from vesta_calendar.services import google_calendar_sync_service, oauth_service


CALLBACK = "/api/google/calendar/callback"


def _redirect_query(response) -> dict[str, list[str]]:
    location = response.headers["location"]
    assert location.startswith(f"{settings.FRONTEND_URL}/calendario?")
    return parse_qs(urlparse(location).query)


@pytest.fixture
def scheduled_syncs(monkeypatch):
    calls = []

    async def record(user_id, **kwargs):
        calls.append((user_id, kwargs))

    monkeypatch.setattr(google_calendar_sync_service, "run_sync_in_background", record)
    return calls


# =============================================================================
# Connect + Callback
# =============================================================================

@pytest.mark.asyncio
async def test_connect_requires_session(client):
    response = await client.get("/api/google/calendar/connect")

    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}


@pytest.mark.asyncio
async def test_connect_redirects_to_google_with_signed_state(authed_client, test_auth, monkeypatch):
    monkeypatch.setattr(settings, "GOOGLE_CLIENT_ID", "client-123")

    response = await authed_client.get("/api/google/calendar/connect")

    assert response.status_code == 302
    location = response.headers["location"]
    assert location.startswith(oauth_service.GOOGLE_AUTH_URL)
    state = parse_qs(urlparse(location).query)["state"][0]
    from vesta_calendar.core.security import verify_oauth_state

    assert verify_oauth_state(state, test_auth.user.id) == (True, "")
    assert "set-cookie" not in response.headers


@pytest.mark.asyncio
async def test_connect_when_not_configured(authed_client, monkeypatch):
    monkeypatch.setattr(settings, "GOOGLE_CLIENT_ID", "")

    response = await authed_client.get("/api/google/calendar/connect")

    assert response.status_code == 503
    assert "error" in response.json()


@pytest.mark.asyncio
async def test_callback_with_google_error(authed_client):
    response = await authed_client.get(CALLBACK, params={"error": "access_denied"})

    assert response.status_code == 302
    assert _redirect_query(response) == {"error": ["oauth_failed"]}


@pytest.mark.asyncio
async def test_callback_missing_code_or_state(authed_client):
    response = await authed_client.get(CALLBACK, params={"code": "abc"})

    assert _redirect_query(response) == {"error": ["invalid_callback"]}


@pytest.mark.asyncio
async def test_callback_without_session(client, test_user):
    state = create_oauth_state(test_user.id)

    response = await client.get(CALLBACK, params={"code": "abc", "state": state})

    assert _redirect_query(response) == {"error": ["unauthorized"]}


@pytest.mark.asyncio
async def test_callback_rejects_state_for_other_user(authed_client, db):
    import uuid

    state = create_oauth_state(uuid.uuid4())

    response = await authed_client.get(CALLBACK, params={"code": "abc", "state": state})

    assert _redirect_query(response) == {"error": ["invalid_state"]}
    assert db.query(UserIntegration).count() == 0


@pytest.mark.asyncio
async def test_callback_token_exchange_failure(authed_client, test_auth, monkeypatch):
    async def fake_exchange(code):
        raise TokenExchangeError("invalid_grant")

    monkeypatch.setattr(oauth_service, "exchange_code_for_tokens", fake_exchange)
    state = create_oauth_state(test_auth.user.id)

    response = await authed_client.get(CALLBACK, params={"code": "used", "state": state})

    assert _redirect_query(response) == {"error": ["token_exchange_failed"]}


@pytest.mark.asyncio
async def test_callback_unexpected_failure(authed_client, test_auth, monkeypatch):
    async def fake_exchange(code):
        return {"access_token": "ya29.access", "refresh_token": "1//refresh", "expires_at": None}

    def broken_store(db, user_id, tokens, account_email=None):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(oauth_service, "exchange_code_for_tokens", fake_exchange)
    monkeypatch.setattr(oauth_service, "store_user_integration", broken_store)
    state = create_oauth_state(test_auth.user.id)

    response = await authed_client.get(CALLBACK, params={"code": "abc", "state": state})

    assert _redirect_query(response) == {"error": ["callback_failed"]}


@pytest.mark.asyncio
async def test_callback_stores_integration_and_schedules_initial_sync(
    authed_client, db, test_auth, monkeypatch, scheduled_syncs
):
    async def fake_exchange(code):
        assert code == "good-code"
        return {
            "access_token": "ya29.access",
            "refresh_token": "1//refresh",
            "expires_at": datetime.now(timezone.utc) + timedelta(hours=1),
        }

    monkeypatch.setattr(oauth_service, "exchange_code_for_tokens", fake_exchange)
    state = create_oauth_state(test_auth.user.id)

    response = await authed_client.get(CALLBACK, params={"code": "good-code", "state": state})

    assert response.status_code == 302
    assert _redirect_query(response) == {"success": ["google_connected"]}
    integration = oauth_service.get_active_integration(db, test_auth.user.id)
    assert integration is not None
    # No HTTPS webhook configured in tests: push stays off, polling covers it
    assert integration.channel_id is None
    assert scheduled_syncs == [(test_auth.user.id, {"initial": True})]


# =============================================================================
# Status
# =============================================================================

@pytest.mark.asyncio
async def test_status_not_connected(authed_client):
    response = await authed_client.get("/api/google/calendar/status")

    assert response.status_code == 200
    assert response.json() == {"connected": False, "lastSync": None, "calendarId": None}


@pytest.mark.asyncio
async def test_status_connected_is_cached_until_sync(
    authed_client, db, google_integration, fake_google
):
    first = await authed_client.get("/api/google/calendar/status")
    assert first.json()["connected"] is True
    assert first.json()["calendarId"] == "primary"
    assert first.json()["lastSync"] is None

    google_integration.last_sync_at = datetime.now(timezone.utc)
    db.commit()
    cached = await authed_client.get("/api/google/calendar/status")
    assert cached.json()["lastSync"] is None

    sync = await authed_client.post("/api/google/calendar/sync")
    assert sync.status_code == 200

    fresh = await authed_client.get("/api/google/calendar/status")
    assert fresh.json()["lastSync"] is not None


# =============================================================================
# Manual sync
# =============================================================================

@pytest.mark.asyncio
async def test_manual_sync_reports_synced_events(
    authed_client, google_integration, fake_google, google_event
):
    fake_google.queue_page([google_event("evt_1")], next_sync_token="def")

    response = await authed_client.post("/api/google/calendar/sync")

    assert response.status_code == 200
    assert response.json() == {"success": True, "syncedEvents": 1}


@pytest.mark.asyncio
async def test_manual_sync_with_direction_none_succeeds_with_zero_changes(
    authed_client, db, google_integration, fake_google
):
    google_integration.sync_direction = "none"
    db.commit()

    response = await authed_client.post("/api/google/calendar/sync")

    assert response.status_code == 200
    assert response.json() == {"success": True, "syncedEvents": 0}


@pytest.mark.asyncio
async def test_manual_sync_while_running_returns_409(authed_client, google_integration, fake_google):
    lease = await get_sync_lock().acquire(google_integration.user_id)

    response = await authed_client.post("/api/google/calendar/sync")

    await get_sync_lock().release(lease)
    assert response.status_code == 409
    assert response.json() == {"error": "Sync already in progress"}


@pytest.mark.asyncio
async def test_manual_sync_without_integration_returns_500(authed_client, fake_google):
    response = await authed_client.post("/api/google/calendar/sync")

    assert response.status_code == 500
    assert response.json() == {"error": "Google Calendar is not connected"}


# =============================================================================
# Settings
# =============================================================================

@pytest.mark.asyncio
async def test_settings_round_trip(authed_client, db, google_integration):
    response = await authed_client.get("/api/google/calendar/settings")
    assert response.json() == {"syncDirection": "bidirectional"}

    response = await authed_client.put(
        "/api/google/calendar/settings", json={"syncDirection": "google_to_vesta"}
    )
    assert response.status_code == 200
    assert response.json() == {"syncDirection": "google_to_vesta"}

    db.refresh(google_integration)
    assert google_integration.sync_direction == "google_to_vesta"


@pytest.mark.asyncio
async def test_settings_accepts_direction_aliases(authed_client, google_integration):
    response = await authed_client.put(
        "/api/google/calendar/settings", json={"syncDirection": "local_to_remote"}
    )

    assert response.status_code == 200
    assert response.json() == {"syncDirection": "vesta_to_google"}


@pytest.mark.asyncio
async def test_settings_rejects_unknown_direction(authed_client, google_integration):
    response = await authed_client.put(
        "/api/google/calendar/settings", json={"syncDirection": "sideways"}
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_settings_without_integration(authed_client):
    get_response = await authed_client.get("/api/google/calendar/settings")
    put_response = await authed_client.put(
        "/api/google/calendar/settings", json={"syncDirection": "none"}
    )

    assert get_response.status_code == 404
    assert put_response.status_code == 404


# =============================================================================
# Disconnect
# =============================================================================

@pytest.mark.asyncio
async def test_disconnect_clears_external_ids(
    authed_client, db, google_integration, fake_google, monkeypatch
):
    async def fake_revoke(token):
        return True

    monkeypatch.setattr(oauth_service, "revoke_token", fake_revoke)
    now = datetime.now(timezone.utc)
    appointment = Appointment(
        user_id=google_integration.user_id,
        datetime_start=now,
        datetime_end=now + timedelta(hours=1),
        google_event_id="evt_1",
        google_etag='"1"',
        last_synced_at=now,
        updated_at=now,
    )
    db.add(appointment)
    db.commit()

    response = await authed_client.post("/api/google/calendar/disconnect")

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Google Calendar disconnected"}
    db.refresh(appointment)
    assert appointment.google_event_id is None
    assert db.query(Appointment).count() == 1

    status = await authed_client.get("/api/google/calendar/status")
    assert status.json()["connected"] is False


@pytest.mark.asyncio
async def test_disconnect_when_not_connected(authed_client):
    response = await authed_client.post("/api/google/calendar/disconnect")

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "Google Calendar was not connected",
    }


@pytest.mark.asyncio
async def test_disconnect_failure_returns_500(authed_client, google_integration, monkeypatch):
    async def broken_disconnect(db, user_id):
        raise RuntimeError("revoke exploded")

    monkeypatch.setattr(
        google_calendar_sync_service, "disconnect_google_calendar", broken_disconnect
    )

    response = await authed_client.post("/api/google/calendar/disconnect")

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to disconnect Google Calendar"}
