"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from external cron (Render/Railway/GH Actions).
"""
from fastapi import APIRouter, Header, HTTPException

from vesta_calendar.core.config import settings
from vesta_calendar.db.session import SessionLocal
from vesta_calendar.schemas.google_calendar import PollingSyncResponse, WatchRefreshResponse
from vesta_calendar.services import calendar_watch_service, google_calendar_sync_service


router = APIRouter(prefix="/internal/scheduled", tags=["internal"])


def verify_internal_secret(x_internal_secret: str = Header(...)):
    """Verify the internal secret header."""
    expected = settings.INTERNAL_SECRET
    if not expected:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if x_internal_secret != expected:
        raise HTTPException(status_code=403, detail="Invalid internal secret")


@router.post("/google-calendar-watch-refresh", response_model=WatchRefreshResponse)
async def refresh_google_calendar_watches(x_internal_secret: str = Header(...)):
    """
    Renew push channels that are missing or expire soon.

    Google caps channel lifetime, so this should run at least daily.
    """
    verify_internal_secret(x_internal_secret)

    with SessionLocal() as db:
        counts = await calendar_watch_service.refresh_expiring_watch_channels(db)
    return WatchRefreshResponse(**counts)


@router.post("/google-calendar-sync", response_model=PollingSyncResponse)
async def poll_google_calendar_sync(x_internal_secret: str = Header(...)):
    """Polling fallback: sync users whose push channel is missing or expired."""
    verify_internal_secret(x_internal_secret)

    with SessionLocal() as db:
        counts = await google_calendar_sync_service.run_polling_sync(db)
    return PollingSyncResponse(**counts)
