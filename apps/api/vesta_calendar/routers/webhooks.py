"""Webhooks router - Google Calendar push notifications."""

import logging
import uuid

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from vesta_calendar.core.deps import get_db
from vesta_calendar.core.exceptions import IntegrationNotFoundError, WebhookValidationError
from vesta_calendar.core.rate_limit import WEBHOOK_LIMIT, limiter
from vesta_calendar.services import google_calendar_sync_service

router = APIRouter(prefix="/api/google/calendar", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.get("/webhook")
async def verify_google_calendar_webhook():
    """Answer Google's verification pings."""
    return {"status": "ok"}


@router.post("/webhook")
@limiter.limit(WEBHOOK_LIMIT)
async def receive_google_calendar_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """
    Receive a Google Calendar push notification.

    Security:
    - Channel + resource id must match an active integration
    - X-Goog-Channel-Token must match the token stored for the channel

    Processing:
    - "sync" handshake is acknowledged only
    - "exists" schedules an incremental sync after the response is sent
    - Always 200 unless the request is malformed (400) or the channel is
      unknown (404), so Google does not back off and retry
    """
    headers = request.headers
    try:
        outcome = google_calendar_sync_service.process_push_notification(
            db,
            channel_id=headers.get("x-goog-channel-id"),
            resource_id=headers.get("x-goog-resource-id"),
            channel_token=headers.get("x-goog-channel-token"),
            resource_state=headers.get("x-goog-resource-state"),
            message_number=headers.get("x-goog-message-number"),
        )
    except WebhookValidationError as exc:
        return JSONResponse(status_code=400, content={"error": str(exc)})
    except IntegrationNotFoundError:
        logger.info(
            "Google Calendar push for unknown channel=%s", headers.get("x-goog-channel-id")
        )
        return JSONResponse(status_code=404, content={"error": "Channel not found"})
    except Exception:
        logger.exception("Google Calendar webhook processing failed")
        return {"success": True}

    if outcome["action"] == "sync" and outcome["user_id"]:
        background_tasks.add_task(
            google_calendar_sync_service.run_sync_in_background,
            uuid.UUID(outcome["user_id"]),
        )
    return {"success": True}
