"""Google Calendar integration router.

Per-user OAuth connect/callback, status, manual sync, sync settings and
disconnect. The push notification receiver lives in routers/webhooks.py.
"""
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from vesta_calendar.core.cache import CacheService, ScopedCache
from vesta_calendar.core.config import settings
from vesta_calendar.core.deps import (
    get_cache_service,
    get_current_user,
    get_db,
    get_optional_user,
    get_user_cache,
)
from vesta_calendar.core.exceptions import (
    IntegrationNotFoundError,
    SyncInProgressError,
    TokenExchangeError,
)
from vesta_calendar.core.security import create_oauth_state, verify_oauth_state
from vesta_calendar.core.structured_logging import build_log_context
from vesta_calendar.schemas.google_calendar import (
    ActionResponse,
    CalendarStatusResponse,
    ManualSyncResponse,
    SyncSettingsResponse,
    SyncSettingsUpdate,
)
from vesta_calendar.services import (
    calendar_watch_service,
    google_calendar_sync_service,
    oauth_service,
)

router = APIRouter(prefix="/api/google/calendar", tags=["google-calendar"])
logger = logging.getLogger(__name__)

STATUS_CACHE_KEY = "google_calendar_status"
CALENDAR_PAGE_PATH = "/calendario"


def _calendar_redirect(query: str) -> RedirectResponse:
    return RedirectResponse(
        f"{settings.FRONTEND_URL}{CALENDAR_PAGE_PATH}?{query}", status_code=302
    )


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


# ============================================================================
# OAuth
# ============================================================================

@router.get("/connect")
def connect_google_calendar(user=Depends(get_current_user)):
    """Redirect to Google consent. The signed state rides in the URL; no cookies."""
    if not settings.GOOGLE_CLIENT_ID:
        return _error(503, "Google Calendar integration not configured")

    state = create_oauth_state(user.id)
    return RedirectResponse(
        oauth_service.get_google_calendar_auth_url(state), status_code=302
    )


@router.get("/callback")
async def google_calendar_callback(
    background_tasks: BackgroundTasks,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    db: Session = Depends(get_db),
    user=Depends(get_optional_user),
    cache: CacheService = Depends(get_cache_service),
) -> RedirectResponse:
    """Handle Google's redirect: exchange the code, store tokens, start push + first sync."""
    if error:
        logger.info("Google Calendar consent returned error=%s", error)
        return _calendar_redirect("error=oauth_failed")
    if not code or not state:
        return _calendar_redirect("error=invalid_callback")
    if user is None:
        return _calendar_redirect("error=unauthorized")

    valid, reason = verify_oauth_state(state, user.id)
    if not valid:
        logger.warning("Google Calendar callback rejected user=%s reason=%s", user.id, reason)
        return _calendar_redirect("error=invalid_state")

    try:
        tokens = await oauth_service.exchange_code_for_tokens(code)
    except TokenExchangeError as exc:
        logger.warning("Google Calendar code exchange failed user=%s error=%s", user.id, exc)
        return _calendar_redirect("error=token_exchange_failed")

    try:
        oauth_service.store_user_integration(db, user.id, tokens)
        await calendar_watch_service.start_watch_channel(db, user.id)
    except Exception:
        db.rollback()
        logger.exception(
            "Google Calendar callback failed",
            extra=build_log_context(user_id=str(user.id), route="/api/google/calendar/callback"),
        )
        return _calendar_redirect("error=callback_failed")

    cache.clear_namespace(str(user.id))
    background_tasks.add_task(
        google_calendar_sync_service.run_sync_in_background, user.id, initial=True
    )
    return _calendar_redirect("success=google_connected")


@router.post("/disconnect", response_model=ActionResponse)
async def disconnect_google_calendar(
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
    cache: ScopedCache = Depends(get_user_cache),
) -> Any:
    """Stop push, revoke tokens and soft-disable the integration."""
    try:
        await google_calendar_sync_service.disconnect_google_calendar(db, user.id)
    except IntegrationNotFoundError:
        return ActionResponse(success=True, message="Google Calendar was not connected")
    except Exception:
        db.rollback()
        logger.exception(
            "Google Calendar disconnect failed",
            extra=build_log_context(user_id=str(user.id), route="/api/google/calendar/disconnect"),
        )
        return _error(500, "Failed to disconnect Google Calendar")
    finally:
        cache.clear()

    return ActionResponse(success=True, message="Google Calendar disconnected")


# ============================================================================
# Status + Sync
# ============================================================================

@router.get("/status", response_model=CalendarStatusResponse)
def google_calendar_status(
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
    cache: ScopedCache = Depends(get_user_cache),
) -> CalendarStatusResponse:
    """Connection status for the current user (cached briefly per user)."""
    cached = cache.get(STATUS_CACHE_KEY)
    if cached is not None:
        return cached

    integration = oauth_service.get_active_integration(db, user.id)
    response = CalendarStatusResponse(
        connected=integration is not None,
        last_sync=integration.last_sync_at if integration else None,
        calendar_id=integration.calendar_id if integration else None,
    )
    cache.set(STATUS_CACHE_KEY, response)
    return response


@router.post("/sync", response_model=ManualSyncResponse)
async def sync_google_calendar(
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
    cache: ScopedCache = Depends(get_user_cache),
) -> Any:
    """Run a sync now and report how many events changed."""
    try:
        result = await google_calendar_sync_service.sync_from_google(db, user.id)
    except SyncInProgressError:
        return _error(409, "Sync already in progress")

    cache.delete(STATUS_CACHE_KEY)
    if not result["success"]:
        return _error(500, result["error"] or "Sync failed")
    return ManualSyncResponse(success=True, synced_events=result["synced_events"])


# ============================================================================
# Settings
# ============================================================================

@router.get("/settings", response_model=SyncSettingsResponse)
def get_sync_settings(
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
) -> Any:
    integration = oauth_service.get_active_integration(db, user.id)
    if integration is None:
        return _error(404, "Google Calendar is not connected")
    return SyncSettingsResponse(sync_direction=integration.sync_direction)


@router.put("/settings", response_model=SyncSettingsResponse)
def update_sync_settings(
    data: SyncSettingsUpdate,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
    cache: ScopedCache = Depends(get_user_cache),
) -> Any:
    """Change which way appointments flow between Vesta and Google."""
    integration = oauth_service.get_active_integration(db, user.id)
    if integration is None:
        return _error(404, "Google Calendar is not connected")

    integration.sync_direction = data.sync_direction.value
    integration.updated_at = datetime.now(timezone.utc)
    db.commit()
    cache.delete(STATUS_CACHE_KEY)
    logger.info(
        "Google Calendar sync direction changed user=%s direction=%s",
        user.id,
        integration.sync_direction,
    )
    return SyncSettingsResponse(sync_direction=integration.sync_direction)
