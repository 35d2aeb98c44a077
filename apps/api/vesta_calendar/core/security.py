"""Security utilities for JWT session tokens and OAuth state management."""

import secrets
from datetime import datetime, timedelta, timezone
from uuid import UUID

import jwt

from vesta_calendar.core.config import settings


OAUTH_STATE_PURPOSE = "google_calendar_connect"


# =============================================================================
# Session Token (JWT in cookie)
# =============================================================================

def create_session_token(user_id: UUID, token_version: int) -> str:
    """
    Create signed session JWT.

    Sessions are issued by the auth service; this helper mirrors its format
    so tests and local tooling can mint cookies.
    """
    payload = {
        "sub": str(user_id),
        "token_version": token_version,
        "iat": datetime.now(timezone.utc),
        "exp": datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRES_HOURS),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def _decode_with_rotation(token: str) -> dict:
    last_error = None
    for secret in settings.jwt_secrets:
        try:
            return jwt.decode(token, secret, algorithms=["HS256"])
        except jwt.InvalidTokenError as e:
            last_error = e
            continue
    raise last_error  # type: ignore


def decode_session_token(token: str) -> dict:
    """
    Decode and verify session JWT.

    Tries current secret first, then previous (for rotation support).

    Raises:
        jwt.InvalidTokenError: If token invalid with all secrets
    """
    return _decode_with_rotation(token)


# =============================================================================
# OAuth State (signed, carried in the URL)
# =============================================================================

def create_oauth_state(user_id: UUID) -> str:
    """
    Create the signed `state` parameter for the Google consent redirect.

    The state travels in the URL only, so it carries the user id, a random
    nonce and a short expiry under the session signing key.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "purpose": OAUTH_STATE_PURPOSE,
        "nonce": secrets.token_urlsafe(16),
        "iat": now,
        "exp": now + timedelta(seconds=settings.OAUTH_STATE_MAX_AGE_SECONDS),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def verify_oauth_state(state: str, expected_user_id: UUID) -> tuple[bool, str]:
    """
    Verify an OAuth callback state.

    Checks:
    1. Signature and expiry
    2. Purpose claim
    3. Bound to the user completing the callback

    Returns:
        (success, error_message)
    """
    try:
        payload = _decode_with_rotation(state)
    except jwt.InvalidTokenError:
        return False, "Invalid or expired state"

    if payload.get("purpose") != OAUTH_STATE_PURPOSE:
        return False, "State purpose mismatch"

    if payload.get("sub") != str(expected_user_id):
        return False, "State issued for a different user"

    return True, ""
