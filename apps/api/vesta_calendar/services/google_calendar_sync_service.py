"""Google Calendar <-> Vesta appointment synchronization.

Keeps router layers thin: the pull/push engine, push-notification
validation, disconnect and the background/polling entry points live here.

Every sync for a user runs under that user's lease (core.sync_lock).
Remote events are applied one SAVEPOINT at a time, so a bad event is
skipped without undoing the ones before it. The sync token is only
advanced after the last page has been processed, and is committed before
any local change is pushed.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import TypedDict

from sqlalchemy.orm import Session

from vesta_calendar.core.config import settings
from vesta_calendar.core.encryption import decrypt_token, verify_encrypted_token
from vesta_calendar.core.exceptions import (
    CalendarSyncError,
    IntegrationNotFoundError,
    SyncInProgressError,
    SyncTokenExpiredError,
    WebhookValidationError,
)
from vesta_calendar.core.structured_logging import build_log_context
from vesta_calendar.core.sync_lock import get_sync_lock
from vesta_calendar.db.enums import (
    AppointmentStatus,
    ChangeOrigin,
    GOOGLE_CALENDAR_PROVIDER,
    SyncDirection,
    SyncOperation,
)
from vesta_calendar.db.models import Appointment, UserIntegration
from vesta_calendar.db.session import SessionLocal
from vesta_calendar.services import calendar_service, calendar_watch_service, oauth_service
from vesta_calendar.services.sync_policy import resolve_conflict, should_apply
from vesta_calendar.utils.datetime_parsing import now_utc, to_utc

logger = logging.getLogger(__name__)

# Extra passes a lease holder runs for pushes that arrived mid-sync
MAX_COALESCED_RERUNS = 2


class SyncResult(TypedDict):
    success: bool
    synced_events: int
    error: str | None


class PushOutcome(TypedDict):
    action: str  # "sync" | "acknowledged" | "ignored"
    user_id: str | None
    reason: str | None


class PollingSyncCounts(TypedDict):
    checked: int
    synced: int
    failed: int


def _ok(synced_events: int) -> SyncResult:
    return {"success": True, "synced_events": synced_events, "error": None}


def _failed(error: str) -> SyncResult:
    return {"success": False, "synced_events": 0, "error": error}


def _sync_window(now: datetime) -> tuple[datetime, datetime]:
    return (
        now - timedelta(days=settings.GOOGLE_CALENDAR_FULL_SYNC_PAST_DAYS),
        now + timedelta(days=settings.GOOGLE_CALENDAR_FULL_SYNC_FUTURE_DAYS),
    )


def _mark_synced(appointment: Appointment) -> None:
    # updated_at == last_synced_at means "no local edits pending"
    stamp = now_utc()
    appointment.last_synced_at = stamp
    appointment.updated_at = stamp


def _has_local_changes(appointment: Appointment) -> bool:
    last_synced = to_utc(appointment.last_synced_at)
    if last_synced is None:
        return True
    return to_utc(appointment.updated_at) > last_synced


# =============================================================================
# Remote -> Local
# =============================================================================

def _find_by_event_id(db: Session, user_id: uuid.UUID, event_id: str) -> Appointment | None:
    return (
        db.query(Appointment)
        .filter(Appointment.user_id == user_id, Appointment.google_event_id == event_id)
        .first()
    )


def _apply_remote_event(
    db: Session,
    integration: UserIntegration,
    direction: SyncDirection,
    event: calendar_service.RemoteEvent,
) -> bool:
    """Upsert/cancel the local appointment for one remote event. Returns True if changed."""
    local = _find_by_event_id(db, integration.user_id, event["event_id"])

    if event["cancelled"]:
        if local is None:
            return False
        if not local.is_active and local.status == AppointmentStatus.CANCELLED.value:
            return False
        local.is_active = False
        local.status = AppointmentStatus.CANCELLED.value
        local.google_etag = event["etag"]
        _mark_synced(local)
        return True

    if event["start"] is None:
        return False

    if local is not None:
        if local.google_etag and local.google_etag == event["etag"]:
            return False
        if _has_local_changes(local):
            winner = resolve_conflict(direction, local.updated_at, event["updated"])
            if winner == ChangeOrigin.LOCAL:
                logger.info(
                    "Local edit wins over Google change user=%s event=%s",
                    integration.user_id,
                    event["event_id"],
                )
                return False

    fields = calendar_service.remote_event_to_fields(event)
    if local is None:
        local = Appointment(
            user_id=integration.user_id,
            google_event_id=event["event_id"],
            **fields,
        )
        db.add(local)
    else:
        for key, value in fields.items():
            if key == "contact_name" and value is None:
                continue
            setattr(local, key, value)
        local.is_active = True

    local.google_etag = event["etag"]
    _mark_synced(local)
    return True


async def _pull_remote_changes(
    db: Session,
    integration: UserIntegration,
    direction: SyncDirection,
) -> int:
    """Page through Google's changes, apply them, then advance the sync token."""
    user_id = integration.user_id
    calendar_id = integration.calendar_id
    applied = 0
    restarted = False
    sync_token = integration.sync_token
    page_token: str | None = None
    time_min, time_max = _sync_window(now_utc())

    while True:
        current_sync_token = sync_token
        current_page_token = page_token

        async def _list(access_token: str) -> calendar_service.EventsPage:
            return await calendar_service.list_events_page(
                access_token,
                calendar_id,
                sync_token=current_sync_token,
                page_token=current_page_token,
                time_min=None if current_sync_token else time_min,
                time_max=None if current_sync_token else time_max,
            )

        try:
            page = await oauth_service.with_fresh_token(db, integration, _list)
        except SyncTokenExpiredError:
            if restarted:
                raise
            logger.info("Google sync token expired, running full resync user=%s", user_id)
            restarted = True
            integration.sync_token = None
            db.commit()
            sync_token = None
            page_token = None
            continue

        for item in page["items"]:
            event = calendar_service.parse_remote_event(item)
            if event is None:
                continue
            try:
                with db.begin_nested():
                    if _apply_remote_event(db, integration, direction, event):
                        applied += 1
            except Exception:
                logger.exception(
                    "Failed to apply Google event user=%s event=%s",
                    user_id,
                    event["event_id"],
                )
        db.commit()

        if page["next_page_token"]:
            page_token = page["next_page_token"]
            continue

        if page["next_sync_token"]:
            integration.sync_token = page["next_sync_token"]
            # Cursor is durable before any push runs
            db.commit()
        break

    return applied


# =============================================================================
# Local -> Remote
# =============================================================================

async def _push_appointment(
    db: Session, integration: UserIntegration, appointment: Appointment
) -> bool:
    """Push one appointment's pending local state. Returns True if Google changed."""
    calendar_id = integration.calendar_id
    removed = (
        not appointment.is_active
        or appointment.status == AppointmentStatus.CANCELLED.value
    )

    if removed:
        if not appointment.google_event_id:
            return False
        event_id = appointment.google_event_id

        async def _delete(access_token: str) -> bool:
            return await calendar_service.delete_event(access_token, calendar_id, event_id)

        await oauth_service.with_fresh_token(db, integration, _delete)
        appointment.google_etag = None
        _mark_synced(appointment)
        db.commit()
        return True

    body = calendar_service.build_event_body(appointment)
    if appointment.google_event_id:
        event_id = appointment.google_event_id

        async def _update(access_token: str) -> dict:
            return await calendar_service.update_event(access_token, calendar_id, event_id, body)

        remote = await oauth_service.with_fresh_token(db, integration, _update)
    else:
        async def _insert(access_token: str) -> dict:
            return await calendar_service.insert_event(access_token, calendar_id, body)

        remote = await oauth_service.with_fresh_token(db, integration, _insert)
        appointment.google_event_id = remote.get("id")

    appointment.google_etag = remote.get("etag")
    _mark_synced(appointment)
    db.commit()
    return True


def _pending_local_changes(db: Session, integration: UserIntegration) -> list[Appointment]:
    connected_since = to_utc(integration.connected_at)
    candidates = db.query(Appointment).filter(Appointment.user_id == integration.user_id).all()
    pending = []
    for appointment in candidates:
        if not _has_local_changes(appointment):
            continue
        if not appointment.google_event_id:
            # Only rows edited since the calendar was connected are created remotely
            if not appointment.is_active:
                continue
            if connected_since and to_utc(appointment.updated_at) < connected_since:
                continue
        pending.append(appointment)
    return pending


async def _push_local_changes(db: Session, integration: UserIntegration) -> int:
    pushed = 0
    for appointment in _pending_local_changes(db, integration):
        try:
            if await _push_appointment(db, integration, appointment):
                pushed += 1
        except CalendarSyncError as exc:
            db.rollback()
            logger.warning(
                "Failed to push appointment to Google user=%s appointment=%s error=%s",
                integration.user_id,
                appointment.id,
                exc,
            )
    return pushed


# =============================================================================
# Sync Entry Points
# =============================================================================

def _record_sync_error(db: Session, user_id: uuid.UUID, error: str) -> None:
    try:
        integration = oauth_service.get_user_integration(db, user_id)
        if integration is None:
            return
        integration.last_sync_error = error[:1000]
        integration.updated_at = now_utc()
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to record Google Calendar sync error user=%s", user_id)


async def _run_sync(db: Session, user_id: uuid.UUID) -> SyncResult:
    try:
        integration = oauth_service.require_active_integration(db, user_id)
        direction = SyncDirection(integration.sync_direction)

        if direction == SyncDirection.NONE:
            calendar_id = integration.calendar_id

            async def _check(access_token: str) -> dict:
                return await calendar_service.get_calendar(access_token, calendar_id)

            await oauth_service.with_fresh_token(db, integration, _check)
            return _ok(0)

        synced = 0
        if should_apply(direction, ChangeOrigin.REMOTE):
            synced += await _pull_remote_changes(db, integration, direction)
        if should_apply(direction, ChangeOrigin.LOCAL):
            synced += await _push_local_changes(db, integration)

        integration.last_sync_at = now_utc()
        integration.last_sync_error = None
        integration.updated_at = now_utc()
        db.commit()
        return _ok(synced)
    except IntegrationNotFoundError as exc:
        return _failed(str(exc))
    except CalendarSyncError as exc:
        db.rollback()
        logger.warning("Google Calendar sync failed user=%s error=%s", user_id, exc)
        _record_sync_error(db, user_id, str(exc))
        return _failed(str(exc))
    except Exception as exc:
        db.rollback()
        logger.exception(
            "Unexpected Google Calendar sync failure",
            extra=build_log_context(user_id=str(user_id)),
        )
        _record_sync_error(db, user_id, str(exc))
        return _failed("Sync failed")


async def sync_from_google(
    db: Session,
    user_id: uuid.UUID,
    *,
    coalesce: bool = False,
) -> SyncResult:
    """
    Run a full pull/push cycle for the user.

    Returns {success, synced_events, error}; provider and data errors are
    reported in the result, never raised.

    Raises:
        SyncInProgressError: another sync holds the lease and coalesce=False.
            With coalesce=True the holder is asked to run once more instead.
    """
    lock = get_sync_lock()
    lease = await lock.acquire(user_id)
    if lease is None:
        if coalesce:
            await lock.request_rerun(user_id)
            logger.info("Google Calendar sync coalesced into running sync user=%s", user_id)
            return _ok(0)
        raise SyncInProgressError("Sync already in progress")

    try:
        result = await _run_sync(db, user_id)
        total = result["synced_events"]
        for _ in range(MAX_COALESCED_RERUNS):
            if not result["success"] or not await lock.consume_rerun(user_id):
                break
            result = await _run_sync(db, user_id)
            total += result["synced_events"]
        if result["success"]:
            return _ok(total)
        return result
    finally:
        await lock.release(lease)


async def perform_initial_sync(db: Session, user_id: uuid.UUID) -> SyncResult:
    """First sync after connecting: full window listing, then push."""
    integration = oauth_service.get_active_integration(db, user_id)
    if integration is not None and integration.sync_token:
        integration.sync_token = None
        db.commit()
    return await sync_from_google(db, user_id, coalesce=True)


async def run_sync_in_background(user_id: uuid.UUID, *, initial: bool = False) -> None:
    """Fire-and-forget sync (webhook, post-connect). Never raises."""
    db = SessionLocal()
    try:
        if initial:
            result = await perform_initial_sync(db, user_id)
        else:
            result = await sync_from_google(db, user_id, coalesce=True)
        if not result["success"]:
            logger.warning(
                "Background Google Calendar sync failed user=%s error=%s",
                user_id,
                result["error"],
            )
    except Exception:
        logger.exception(
            "Background Google Calendar sync crashed",
            extra=build_log_context(user_id=str(user_id)),
        )
    finally:
        db.close()


async def sync_appointment_to_google(
    db: Session,
    appointment: Appointment,
    operation: SyncOperation | str | None = None,
) -> bool:
    """
    Push a single appointment right after a CRM edit.

    Returns False when nothing was pushed (no integration, direction does not
    push, or a sync is running; the running sync is asked to rerun and will
    pick the row up since it still has pending local changes).
    """
    integration = oauth_service.get_active_integration(db, appointment.user_id)
    if integration is None:
        return False
    if not should_apply(integration.sync_direction, ChangeOrigin.LOCAL):
        return False

    if operation is not None and SyncOperation(operation) == SyncOperation.DELETE:
        appointment.is_active = False
        db.commit()

    lock = get_sync_lock()
    lease = await lock.acquire(appointment.user_id)
    if lease is None:
        await lock.request_rerun(appointment.user_id)
        return False
    try:
        return await _push_appointment(db, integration, appointment)
    except CalendarSyncError as exc:
        db.rollback()
        logger.warning(
            "Failed to push appointment to Google appointment=%s error=%s",
            appointment.id,
            exc,
        )
        return False
    finally:
        await lock.release(lease)


async def run_polling_sync(db: Session, *, now: datetime | None = None) -> PollingSyncCounts:
    """Sync integrations that have no live push channel (polling fallback)."""
    now = now or now_utc()
    integrations = (
        db.query(UserIntegration)
        .filter(
            UserIntegration.provider == GOOGLE_CALENDAR_PROVIDER,
            UserIntegration.is_active.is_(True),
        )
        .all()
    )
    targets = [
        integration.user_id
        for integration in integrations
        if not integration.channel_id
        or integration.channel_expires_at is None
        or to_utc(integration.channel_expires_at) <= now
    ]

    synced = 0
    failed = 0
    for user_id in targets:
        result = await sync_from_google(db, user_id, coalesce=True)
        if result["success"]:
            synced += 1
        else:
            failed += 1
    return {"checked": len(targets), "synced": synced, "failed": failed}


# =============================================================================
# Push Notifications
# =============================================================================

def process_push_notification(
    db: Session,
    *,
    channel_id: str | None,
    resource_id: str | None,
    channel_token: str | None,
    resource_state: str | None,
    message_number: str | None = None,
) -> PushOutcome:
    """
    Validate a Google push notification.

    Raises:
        WebhookValidationError: channel id or resource id header missing
        IntegrationNotFoundError: no active integration owns the channel
    """
    if not channel_id or not resource_id:
        raise WebhookValidationError("Missing channel headers")

    integration = (
        db.query(UserIntegration)
        .filter(
            UserIntegration.provider == GOOGLE_CALENDAR_PROVIDER,
            UserIntegration.channel_id == channel_id,
            UserIntegration.resource_id == resource_id,
            UserIntegration.is_active.is_(True),
        )
        .first()
    )
    if integration is None:
        raise IntegrationNotFoundError("Channel not found")

    user_id = str(integration.user_id)
    if integration.channel_token_encrypted and not verify_encrypted_token(
        integration.channel_token_encrypted, channel_token
    ):
        logger.warning(
            "Ignored Google Calendar push with invalid channel token user=%s channel=%s",
            user_id,
            channel_id,
        )
        return {"action": "ignored", "user_id": user_id, "reason": "invalid_token"}

    if resource_state == "exists":
        logger.info(
            "Google Calendar change notification user=%s channel=%s message=%s",
            user_id,
            channel_id,
            message_number,
        )
        return {"action": "sync", "user_id": user_id, "reason": None}

    # "sync" is the handshake sent right after watch; nothing changed yet
    return {"action": "acknowledged", "user_id": user_id, "reason": resource_state}


# =============================================================================
# Disconnect
# =============================================================================

async def disconnect_google_calendar(db: Session, user_id: uuid.UUID) -> None:
    """
    Stop the channel, revoke tokens, soft-disable the integration and unlink
    the user's appointments (appointments themselves are kept).
    """
    integration = oauth_service.require_active_integration(db, user_id)

    await calendar_watch_service.stop_watch_channel(db, integration)

    revoke_target = integration.refresh_token_encrypted or integration.access_token_encrypted
    if revoke_target:
        try:
            await oauth_service.revoke_token(decrypt_token(revoke_target))
        except ValueError:
            logger.warning("Stored Google token unreadable, skipping revoke user=%s", user_id)

    oauth_service.deactivate_integration(db, integration)

    db.query(Appointment).filter(Appointment.user_id == user_id).update(
        {
            Appointment.google_event_id: None,
            Appointment.google_etag: None,
            Appointment.last_synced_at: None,
            # Unlinking is not a local edit
            Appointment.updated_at: Appointment.updated_at,
        },
        synchronize_session=False,
    )
    db.commit()
    db.expire_all()
    logger.info("Google Calendar disconnected user=%s", user_id)
