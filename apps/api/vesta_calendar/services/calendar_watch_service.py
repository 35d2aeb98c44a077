"""Google Calendar push channel registration.

Channels are best effort: a missing/invalid webhook address or a Google
refusal only disables push for the user (manual and polling sync still
work), it never blocks connecting the calendar.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import TypedDict

from sqlalchemy.orm import Session

from vesta_calendar.core.config import settings
from vesta_calendar.core.encryption import encrypt_token
from vesta_calendar.core.exceptions import CalendarSyncError
from vesta_calendar.core.structured_logging import build_log_context
from vesta_calendar.db.enums import GOOGLE_CALENDAR_PROVIDER
from vesta_calendar.db.models import UserIntegration
from vesta_calendar.services import calendar_service, oauth_service
from vesta_calendar.utils.datetime_parsing import now_utc, to_utc

logger = logging.getLogger(__name__)


class WatchRefreshCounts(TypedDict):
    checked: int
    renewed: int
    failed: int


def _new_channel_id(user_id: uuid.UUID) -> str:
    return f"vesta-{user_id}-{secrets.token_hex(4)}"


def _clear_channel(integration: UserIntegration) -> None:
    integration.channel_id = None
    integration.resource_id = None
    integration.channel_token_encrypted = None
    integration.channel_expires_at = None


def _channel_expiring(integration: UserIntegration, now: datetime) -> bool:
    if not integration.channel_id or not integration.channel_expires_at:
        return True
    threshold = now + timedelta(hours=settings.GOOGLE_CALENDAR_WATCH_RENEW_BEFORE_HOURS)
    return to_utc(integration.channel_expires_at) <= threshold


async def start_watch_channel(db: Session, user_id: uuid.UUID) -> bool:
    """
    Register a push channel for the user's calendar.

    Returns True if a channel is now active. Never raises.
    """
    if not settings.google_calendar_push_enabled:
        logger.info(
            "Google Calendar push disabled (no HTTPS webhook URL) user=%s", user_id
        )
        return False

    integration = oauth_service.get_active_integration(db, user_id)
    if integration is None:
        return False

    channel_id = _new_channel_id(user_id)
    channel_token = secrets.token_urlsafe(32)
    ttl_seconds = settings.GOOGLE_CALENDAR_WATCH_TTL_DAYS * 24 * 60 * 60

    async def _watch(access_token: str) -> calendar_service.WatchChannel:
        return await calendar_service.watch_events(
            access_token,
            integration.calendar_id,
            channel_id=channel_id,
            channel_token=channel_token,
            address=settings.GOOGLE_CALENDAR_WEBHOOK_URL,
            ttl_seconds=ttl_seconds,
        )

    try:
        channel = await oauth_service.with_fresh_token(db, integration, _watch)
        integration.channel_id = channel["channel_id"]
        integration.resource_id = channel["resource_id"]
        integration.channel_token_encrypted = encrypt_token(channel_token)
        integration.channel_expires_at = channel["expires_at"] or (
            now_utc() + timedelta(seconds=ttl_seconds)
        )
        integration.updated_at = now_utc()
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "Failed to start Google Calendar watch channel",
            extra=build_log_context(user_id=str(user_id)),
        )
        return False

    logger.info(
        "Google Calendar watch channel started user=%s channel=%s", user_id, channel_id
    )
    return True


async def stop_watch_channel(db: Session, integration: UserIntegration) -> bool:
    """
    Stop the integration's push channel at Google and forget it locally.

    Local channel fields are cleared even if Google could not be reached;
    an orphaned channel simply expires and its pushes get 404s.
    """
    if not integration.channel_id or not integration.resource_id:
        _clear_channel(integration)
        db.commit()
        return True

    channel_id = integration.channel_id
    resource_id = integration.resource_id

    async def _stop(access_token: str) -> bool:
        return await calendar_service.stop_channel(access_token, channel_id, resource_id)

    stopped = False
    try:
        stopped = await oauth_service.with_fresh_token(db, integration, _stop)
    except CalendarSyncError as exc:
        logger.warning(
            "Failed to stop Google Calendar channel user=%s channel=%s error=%s",
            integration.user_id,
            channel_id,
            exc,
        )

    _clear_channel(integration)
    integration.updated_at = now_utc()
    db.commit()
    return stopped


async def ensure_watch_channel(
    db: Session, user_id: uuid.UUID, *, now: datetime | None = None
) -> bool:
    """Renew the user's channel when missing or close to expiry."""
    now = now or now_utc()
    integration = oauth_service.get_active_integration(db, user_id)
    if integration is None:
        return False
    if not _channel_expiring(integration, now):
        return True

    if integration.channel_id:
        await stop_watch_channel(db, integration)
    return await start_watch_channel(db, user_id)


async def refresh_expiring_watch_channels(
    db: Session, *, now: datetime | None = None
) -> WatchRefreshCounts:
    """Sweep active integrations and renew channels expiring soon."""
    now = now or now_utc()
    integrations = (
        db.query(UserIntegration)
        .filter(
            UserIntegration.provider == GOOGLE_CALENDAR_PROVIDER,
            UserIntegration.is_active.is_(True),
        )
        .all()
    )

    checked = 0
    renewed = 0
    failed = 0
    for integration in integrations:
        checked += 1
        if not _channel_expiring(integration, now):
            continue
        if await ensure_watch_channel(db, integration.user_id, now=now):
            renewed += 1
        else:
            failed += 1

    return {"checked": checked, "renewed": renewed, "failed": failed}
