"""API routers."""

from vesta_calendar.routers.google_calendar import router as google_calendar_router
from vesta_calendar.routers.internal import router as internal_router
from vesta_calendar.routers.webhooks import router as webhooks_router

__all__ = [
    "google_calendar_router",
    "internal_router",
    "webhooks_router",
]
