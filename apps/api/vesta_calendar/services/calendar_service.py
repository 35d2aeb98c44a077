"""Calendar service - Google Calendar v3 API client and event mapping.

Handles:
- Incremental/full event listing (sync tokens, pagination)
- Event creation/update/deletion
- Push notification channels (events.watch / channels.stop)
- Mapping between Google events and local appointments

Note: Requires calendar.readonly and calendar.events scopes.
All calls take an access token; token freshness is the caller's concern
(see oauth_service.with_fresh_token).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, TypedDict
from urllib.parse import quote, unquote

import httpx

from vesta_calendar.core.config import settings
from vesta_calendar.core.exceptions import ProviderApiError, SyncTokenExpiredError
from vesta_calendar.db.enums import AppointmentStatus, AppointmentType
from vesta_calendar.db.models import Appointment
from vesta_calendar.services.http_service import request_with_retries
from vesta_calendar.utils.datetime_parsing import (
    now_utc,
    parse_google_date,
    parse_google_datetime,
    to_utc,
)

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"
DEFAULT_PAGE_SIZE = 250
REMINDER_POPUP_MINUTES = 15


# =============================================================================
# Types
# =============================================================================

class EventsPage(TypedDict):
    """One page of an events.list response."""
    items: list[dict[str, Any]]
    next_page_token: str | None
    next_sync_token: str | None


class WatchChannel(TypedDict):
    """A registered push notification channel."""
    channel_id: str
    resource_id: str
    expires_at: datetime | None


class RemoteEvent(TypedDict):
    """A Google event reduced to the fields appointments care about."""
    event_id: str
    etag: str | None
    cancelled: bool
    summary: str
    description: str
    start: datetime | None
    end: datetime | None
    is_all_day: bool
    updated: datetime | None


# =============================================================================
# Helpers
# =============================================================================

def _to_google_datetime(value: datetime) -> str:
    utc_value = to_utc(value) or now_utc()
    return utc_value.isoformat().replace("+00:00", "Z")


def _encode_google_id(value: str) -> str:
    return quote(unquote(value), safe="")


def _error_message(payload: dict[str, Any] | None) -> str | None:
    if payload and isinstance(payload.get("error"), dict):
        raw_message = payload["error"].get("message")
        if isinstance(raw_message, str) and raw_message.strip():
            return raw_message.strip()
    return None


async def _google_request(
    *,
    access_token: str,
    method: str,
    path: str,
    params: dict[str, str] | None = None,
    json_body: dict[str, object] | None = None,
) -> tuple[int, dict[str, Any] | None]:
    """
    Call the Calendar API with retries on 429/5xx.

    Returns (status_code, json payload). Transport failures raise
    ProviderApiError with status_code 0.
    """
    url = f"{GOOGLE_CALENDAR_API_BASE}{path}"
    try:
        async with httpx.AsyncClient(timeout=settings.GOOGLE_API_TIMEOUT_SECONDS) as client:
            response = await request_with_retries(
                lambda: client.request(
                    method,
                    url,
                    headers={"Authorization": f"Bearer {access_token}"},
                    params=params,
                    json=json_body,
                )
            )
    except httpx.RequestError as exc:
        logger.warning(
            "Google Calendar request failed method=%s path=%s error=%s", method, path, exc
        )
        raise ProviderApiError(f"Google Calendar unreachable: {exc}") from exc

    payload: dict[str, Any] | None = None
    if response.content:
        try:
            decoded = response.json()
            if isinstance(decoded, dict):
                payload = decoded
        except ValueError:
            payload = None

    if response.status_code >= 400:
        logger.warning(
            "Google Calendar API error method=%s path=%s status=%s message=%s",
            method,
            path,
            response.status_code,
            _error_message(payload) or response.text[:300],
        )
    return response.status_code, payload


def _raise_for_status(status_code: int, payload: dict[str, Any] | None, action: str) -> None:
    if status_code < 400:
        return
    message = _error_message(payload) or f"{action} failed"
    raise ProviderApiError(f"{action}: {message}", status_code=status_code)


# =============================================================================
# Events (Read)
# =============================================================================

async def list_events_page(
    access_token: str,
    calendar_id: str,
    *,
    sync_token: str | None = None,
    page_token: str | None = None,
    time_min: datetime | None = None,
    time_max: datetime | None = None,
    max_results: int = DEFAULT_PAGE_SIZE,
) -> EventsPage:
    """
    Fetch one page of events.

    With a sync token only changes since that token are returned (Google
    rejects time bounds in that mode). Without one, the window bounds a
    full listing. Deleted events are included so cancellations propagate.

    Raises:
        SyncTokenExpiredError: the sync token is invalid/expired (410 Gone)
        ProviderApiError: any other failure
    """
    params: dict[str, str] = {
        "singleEvents": "true",  # Expand recurring events
        "showDeleted": "true",
        "maxResults": str(max_results),
    }
    if sync_token:
        params["syncToken"] = sync_token
    else:
        if time_min:
            params["timeMin"] = _to_google_datetime(time_min)
        if time_max:
            params["timeMax"] = _to_google_datetime(time_max)
    if page_token:
        params["pageToken"] = page_token

    status_code, payload = await _google_request(
        access_token=access_token,
        method="GET",
        path=f"/calendars/{_encode_google_id(calendar_id)}/events",
        params=params,
    )
    if status_code == 410 or (
        sync_token
        and status_code == 400
        and "sync token" in (_error_message(payload) or "").lower()
    ):
        raise SyncTokenExpiredError("Sync token is no longer valid")
    _raise_for_status(status_code, payload, "List events")

    payload = payload or {}
    items = payload.get("items")
    return EventsPage(
        items=[item for item in items if isinstance(item, dict)] if isinstance(items, list) else [],
        next_page_token=payload.get("nextPageToken") or None,
        next_sync_token=payload.get("nextSyncToken") or None,
    )


async def get_calendar(access_token: str, calendar_id: str) -> dict[str, Any]:
    """Fetch calendar metadata; used as a connectivity check."""
    status_code, payload = await _google_request(
        access_token=access_token,
        method="GET",
        path=f"/calendars/{_encode_google_id(calendar_id)}",
    )
    _raise_for_status(status_code, payload, "Get calendar")
    return payload or {}


# =============================================================================
# Events (Write)
# =============================================================================

async def insert_event(
    access_token: str, calendar_id: str, body: dict[str, Any]
) -> dict[str, Any]:
    """Create an event. Returns the created event resource."""
    status_code, payload = await _google_request(
        access_token=access_token,
        method="POST",
        path=f"/calendars/{_encode_google_id(calendar_id)}/events",
        json_body=body,
    )
    _raise_for_status(status_code, payload, "Create event")
    return payload or {}


async def update_event(
    access_token: str, calendar_id: str, event_id: str, body: dict[str, Any]
) -> dict[str, Any]:
    """Replace an event. Returns the updated event resource."""
    status_code, payload = await _google_request(
        access_token=access_token,
        method="PUT",
        path=(
            f"/calendars/{_encode_google_id(calendar_id)}"
            f"/events/{_encode_google_id(event_id)}"
        ),
        json_body=body,
    )
    _raise_for_status(status_code, payload, "Update event")
    return payload or {}


async def delete_event(access_token: str, calendar_id: str, event_id: str) -> bool:
    """Delete an event. Already-deleted events (404/410) count as success."""
    status_code, payload = await _google_request(
        access_token=access_token,
        method="DELETE",
        path=(
            f"/calendars/{_encode_google_id(calendar_id)}"
            f"/events/{_encode_google_id(event_id)}"
        ),
    )
    if status_code in (404, 410):
        return True
    _raise_for_status(status_code, payload, "Delete event")
    return True


# =============================================================================
# Push Channels
# =============================================================================

async def watch_events(
    access_token: str,
    calendar_id: str,
    *,
    channel_id: str,
    channel_token: str,
    address: str,
    ttl_seconds: int,
) -> WatchChannel:
    """Register a push notification channel for the calendar's events."""
    status_code, payload = await _google_request(
        access_token=access_token,
        method="POST",
        path=f"/calendars/{_encode_google_id(calendar_id)}/events/watch",
        json_body={
            "id": channel_id,
            "type": "web_hook",
            "address": address,
            "token": channel_token,
            "params": {"ttl": str(ttl_seconds)},
        },
    )
    _raise_for_status(status_code, payload, "Watch events")
    payload = payload or {}

    resource_id = payload.get("resourceId")
    if not isinstance(resource_id, str) or not resource_id:
        raise ProviderApiError("Watch events: response missing resourceId")

    expires_at = None
    expiration = payload.get("expiration")
    if expiration is not None:
        try:
            expires_at = datetime.fromtimestamp(int(expiration) / 1000, tz=timezone.utc)
        except (TypeError, ValueError):
            expires_at = None

    return WatchChannel(channel_id=channel_id, resource_id=resource_id, expires_at=expires_at)


async def stop_channel(access_token: str, channel_id: str, resource_id: str) -> bool:
    """Stop a push channel. Unknown/expired channels (404) count as stopped."""
    status_code, payload = await _google_request(
        access_token=access_token,
        method="POST",
        path="/channels/stop",
        json_body={"id": channel_id, "resourceId": resource_id},
    )
    if status_code == 404:
        return True
    _raise_for_status(status_code, payload, "Stop channel")
    return True


# =============================================================================
# Mapping
# =============================================================================

def extract_appointment_type(summary: str | None) -> str:
    """Recognise the appointment type in an event title (default: Reunión)."""
    text = summary or ""
    for appointment_type in AppointmentType:
        if appointment_type.value in text:
            return appointment_type.value
    return AppointmentType.REUNION.value


def extract_contact_name(summary: str | None) -> str | None:
    """Titles written by Vesta look like "<Type> - <Contact>"."""
    if not summary:
        return None
    parts = summary.split(" - ", 1)
    if len(parts) < 2:
        return None
    name = parts[1].strip()
    return name or None


def _parse_event_time(data: dict[str, Any], tz_name: str) -> datetime | None:
    if data.get("dateTime"):
        return parse_google_datetime(data.get("dateTime"))
    # All-day events carry a bare date; they start at local midnight
    return parse_google_date(data.get("date"), data.get("timeZone") or tz_name)


def parse_remote_event(item: dict[str, Any], timezone_name: str | None = None) -> RemoteEvent | None:
    """Normalise an events.list item. Returns None for items without an id."""
    event_id = item.get("id")
    if not isinstance(event_id, str) or not event_id:
        return None

    tz_name = timezone_name or settings.GOOGLE_CALENDAR_DEFAULT_TIMEZONE
    start_data = item.get("start") if isinstance(item.get("start"), dict) else {}
    end_data = item.get("end") if isinstance(item.get("end"), dict) else {}
    summary = item.get("summary") if isinstance(item.get("summary"), str) else ""
    description = item.get("description") if isinstance(item.get("description"), str) else ""

    return RemoteEvent(
        event_id=event_id,
        etag=item.get("etag") if isinstance(item.get("etag"), str) else None,
        cancelled=item.get("status") == "cancelled",
        summary=summary,
        description=description,
        start=_parse_event_time(start_data, tz_name),
        end=_parse_event_time(end_data, tz_name),
        is_all_day="date" in start_data and "dateTime" not in start_data,
        updated=parse_google_datetime(item.get("updated")),
    )


def remote_event_to_fields(event: RemoteEvent) -> dict[str, Any]:
    """Appointment column values for a non-cancelled remote event with a start."""
    return {
        "datetime_start": event["start"],
        "datetime_end": event["end"] or event["start"],
        "notes": event["description"] or event["summary"] or None,
        "type": extract_appointment_type(event["summary"]),
        "contact_name": extract_contact_name(event["summary"]),
        "status": AppointmentStatus.SCHEDULED.value,
    }


def build_event_body(appointment: Appointment, timezone_name: str | None = None) -> dict[str, Any]:
    """Google event resource for an appointment."""
    tz_name = timezone_name or settings.GOOGLE_CALENDAR_DEFAULT_TIMEZONE
    contact_name = appointment.contact_name or "Contacto"
    appointment_type = appointment.type or AppointmentType.REUNION.value
    return {
        "summary": f"{appointment_type} - {contact_name}",
        "description": appointment.notes or "",
        "start": {
            "dateTime": _to_google_datetime(appointment.datetime_start),
            "timeZone": tz_name,
        },
        "end": {
            "dateTime": _to_google_datetime(appointment.datetime_end),
            "timeZone": tz_name,
        },
        "reminders": {
            "useDefault": False,
            "overrides": [{"method": "popup", "minutes": REMINDER_POPUP_MINUTES}],
        },
    }
