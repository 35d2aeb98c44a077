"""Google Calendar OAuth integration service.

Handles the consent/code exchange flow, encrypted token storage and the
access-token lifecycle for each user's Google Calendar integration.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, TypedDict, TypeVar
from urllib.parse import urlencode

import httpx
from sqlalchemy.orm import Session

from vesta_calendar.core.config import settings
from vesta_calendar.core.encryption import decrypt_token, encrypt_token
from vesta_calendar.core.exceptions import (
    IntegrationNotFoundError,
    ProviderApiError,
    TokenExchangeError,
    TokenRefreshError,
)
from vesta_calendar.db.enums import GOOGLE_CALENDAR_PROVIDER
from vesta_calendar.db.models import UserIntegration
from vesta_calendar.services.http_service import request_with_retries
from vesta_calendar.utils.datetime_parsing import now_utc, to_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/calendar.readonly",
]


class GoogleTokens(TypedDict):
    access_token: str
    refresh_token: str | None
    expires_at: datetime | None


def _expires_within(expires_at: datetime | None, seconds: int) -> bool:
    """True if the token expires within `seconds` (unknown expiry counts as fresh)."""
    if expires_at is None:
        return False
    return to_utc(expires_at) <= now_utc() + timedelta(seconds=seconds)


def _tokens_from_payload(payload: dict[str, Any]) -> GoogleTokens:
    expires_in = payload.get("expires_in")
    expires_at = None
    if isinstance(expires_in, (int, float)) and expires_in > 0:
        expires_at = now_utc() + timedelta(seconds=int(expires_in))
    return GoogleTokens(
        access_token=payload["access_token"],
        refresh_token=payload.get("refresh_token") or None,
        expires_at=expires_at,
    )


def _oauth_error(response: httpx.Response) -> tuple[str, str]:
    """Extract (error, description) from a Google OAuth error response."""
    try:
        payload = response.json()
    except ValueError:
        return "", response.text[:300]
    if not isinstance(payload, dict):
        return "", ""
    error = payload.get("error")
    description = payload.get("error_description")
    return (
        error if isinstance(error, str) else "",
        description if isinstance(description, str) else "",
    )


async def _post_token_endpoint(data: dict[str, str]) -> httpx.Response:
    async with httpx.AsyncClient(timeout=settings.GOOGLE_API_TIMEOUT_SECONDS) as client:
        return await request_with_retries(
            lambda: client.post(GOOGLE_TOKEN_URL, data=data)
        )


# ============================================================================
# Consent + Code Exchange
# ============================================================================


def get_google_calendar_auth_url(state: str) -> str:
    """Generate the Google consent URL (offline access, forced consent)."""
    params = {
        "client_id": settings.GOOGLE_CLIENT_ID,
        "redirect_uri": settings.GOOGLE_CALENDAR_REDIRECT_URI,
        "response_type": "code",
        "scope": " ".join(GOOGLE_CALENDAR_SCOPES),
        "access_type": "offline",
        "prompt": "consent",
        "include_granted_scopes": "true",
        "state": state,
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


async def exchange_code_for_tokens(code: str) -> GoogleTokens:
    """
    Exchange an authorization code for tokens.

    Raises:
        TokenExchangeError: code rejected (expired, reused, redirect mismatch)
            or Google unreachable
    """
    try:
        response = await _post_token_endpoint(
            {
                "client_id": settings.GOOGLE_CLIENT_ID,
                "client_secret": settings.GOOGLE_CLIENT_SECRET,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": settings.GOOGLE_CALENDAR_REDIRECT_URI,
            }
        )
    except httpx.RequestError as exc:
        raise TokenExchangeError(f"Token endpoint unreachable: {exc}") from exc

    if response.status_code != 200:
        error, description = _oauth_error(response)
        logger.warning(
            "Google code exchange failed status=%s error=%s", response.status_code, error
        )
        raise TokenExchangeError(description or error or "Code exchange failed")

    payload = response.json()
    if not payload.get("access_token"):
        raise TokenExchangeError("Token response missing access_token")
    return _tokens_from_payload(payload)


async def refresh_access_token(refresh_token: str) -> GoogleTokens:
    """
    Obtain a new access token from a refresh token.

    Raises:
        TokenRefreshError: invalid_grant=True when Google revoked/expired the
            refresh token; otherwise a transient failure
    """
    try:
        response = await _post_token_endpoint(
            {
                "client_id": settings.GOOGLE_CLIENT_ID,
                "client_secret": settings.GOOGLE_CLIENT_SECRET,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            }
        )
    except httpx.RequestError as exc:
        raise TokenRefreshError(f"Token endpoint unreachable: {exc}") from exc

    if response.status_code != 200:
        error, description = _oauth_error(response)
        raise TokenRefreshError(
            description or error or f"Token refresh failed ({response.status_code})",
            invalid_grant=error == "invalid_grant",
        )

    payload = response.json()
    if not payload.get("access_token"):
        raise TokenRefreshError("Refresh response missing access_token")
    return _tokens_from_payload(payload)


async def revoke_token(token: str) -> bool:
    """Best-effort revocation at Google. Returns True if Google accepted it."""
    if not token:
        return False
    try:
        async with httpx.AsyncClient(timeout=settings.GOOGLE_API_TIMEOUT_SECONDS) as client:
            response = await client.post(GOOGLE_REVOKE_URL, data={"token": token})
    except httpx.RequestError as exc:
        logger.warning("Google token revoke failed error=%s", exc)
        return False
    # 400 invalid_token: already revoked or expired
    return response.status_code in (200, 400)


# ============================================================================
# Integration CRUD
# ============================================================================


def get_user_integration(db: Session, user_id: uuid.UUID) -> UserIntegration | None:
    """Get a user's Google Calendar integration (active or not)."""
    return (
        db.query(UserIntegration)
        .filter(
            UserIntegration.user_id == user_id,
            UserIntegration.provider == GOOGLE_CALENDAR_PROVIDER,
        )
        .first()
    )


def get_active_integration(db: Session, user_id: uuid.UUID) -> UserIntegration | None:
    """Get a user's Google Calendar integration if it is active."""
    integration = get_user_integration(db, user_id)
    if integration is None or not integration.is_active:
        return None
    return integration


def require_active_integration(db: Session, user_id: uuid.UUID) -> UserIntegration:
    integration = get_active_integration(db, user_id)
    if integration is None:
        raise IntegrationNotFoundError("Google Calendar is not connected")
    return integration


def store_user_integration(
    db: Session,
    user_id: uuid.UUID,
    tokens: GoogleTokens,
    account_email: str | None = None,
) -> UserIntegration:
    """
    Save or update the user's Google Calendar integration.

    The access token and expiry are always overwritten. Google only issues a
    refresh token on consent, so an existing one is kept when none is given.
    Reactivating a disconnected integration discards its stale sync cursor.
    """
    integration = get_user_integration(db, user_id)
    now = now_utc()

    if integration:
        integration.access_token_encrypted = encrypt_token(tokens["access_token"])
        if tokens.get("refresh_token"):
            integration.refresh_token_encrypted = encrypt_token(tokens["refresh_token"])
        integration.token_expires_at = tokens.get("expires_at")
        if account_email:
            integration.account_email = account_email
        if not integration.is_active:
            integration.is_active = True
            integration.sync_token = None
            integration.last_sync_error = None
            integration.connected_at = now
        integration.updated_at = now
    else:
        refresh = tokens.get("refresh_token")
        integration = UserIntegration(
            user_id=user_id,
            provider=GOOGLE_CALENDAR_PROVIDER,
            access_token_encrypted=encrypt_token(tokens["access_token"]),
            refresh_token_encrypted=encrypt_token(refresh) if refresh else None,
            token_expires_at=tokens.get("expires_at"),
            account_email=account_email,
            is_active=True,
            connected_at=now,
            created_at=now,
            updated_at=now,
        )
        db.add(integration)

    db.commit()
    db.refresh(integration)
    return integration


def deactivate_integration(
    db: Session, integration: UserIntegration, reason: str | None = None
) -> None:
    """Soft-disable an integration (never deleted)."""
    integration.is_active = False
    integration.sync_token = None
    integration.channel_id = None
    integration.resource_id = None
    integration.channel_token_encrypted = None
    integration.channel_expires_at = None
    if reason:
        integration.last_sync_error = reason
    integration.updated_at = now_utc()
    db.commit()


# ============================================================================
# Access Token Lifecycle
# ============================================================================


async def ensure_fresh_access_token(
    db: Session, integration: UserIntegration, *, force: bool = False
) -> str:
    """
    Return a usable access token, refreshing when it expires soon.

    A refresh token rejected with invalid_grant marks the integration
    inactive; the user has to reconnect.
    """
    if not integration.access_token_encrypted:
        raise IntegrationNotFoundError("Integration has no access token")

    needs_refresh = force or _expires_within(
        integration.token_expires_at, settings.GOOGLE_TOKEN_REFRESH_MARGIN_SECONDS
    )
    if not needs_refresh:
        return decrypt_token(integration.access_token_encrypted)

    if not integration.refresh_token_encrypted:
        raise TokenRefreshError("No refresh token stored", invalid_grant=True)

    try:
        tokens = await refresh_access_token(decrypt_token(integration.refresh_token_encrypted))
    except TokenRefreshError as exc:
        if exc.invalid_grant:
            logger.warning(
                "Google refresh token rejected, deactivating integration user=%s",
                integration.user_id,
            )
            deactivate_integration(db, integration, reason="Refresh token revoked")
        raise

    integration.access_token_encrypted = encrypt_token(tokens["access_token"])
    if tokens.get("refresh_token"):
        integration.refresh_token_encrypted = encrypt_token(tokens["refresh_token"])
    integration.token_expires_at = tokens.get("expires_at")
    integration.updated_at = now_utc()
    db.commit()
    return tokens["access_token"]


async def with_fresh_token(
    db: Session,
    integration: UserIntegration,
    fn: Callable[[str], Awaitable[T]],
) -> T:
    """
    Run a provider call with a fresh access token.

    If Google answers 401 (token revoked early or clock skew) the token is
    force-refreshed and the call retried exactly once.
    """
    token = await ensure_fresh_access_token(db, integration)
    try:
        return await fn(token)
    except ProviderApiError as exc:
        if exc.status_code != 401:
            raise
        logger.info("Google returned 401, refreshing token user=%s", integration.user_id)
    token = await ensure_fresh_access_token(db, integration, force=True)
    return await fn(token)
