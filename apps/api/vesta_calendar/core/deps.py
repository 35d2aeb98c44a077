"""FastAPI dependencies for authentication, caching, and database access."""

import uuid
from typing import Generator

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from vesta_calendar.core.cache import CacheService, ScopedCache
from vesta_calendar.core.config import settings
from vesta_calendar.core.exceptions import AuthError
from vesta_calendar.core.security import decode_session_token
from vesta_calendar.db.session import SessionLocal


# Session cookie issued by the auth service
COOKIE_NAME = "vesta_session"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _load_session_user(request: Request, db: Session):
    # Import here to avoid circular imports
    from vesta_calendar.db.models import User

    token = request.cookies.get(COOKIE_NAME)
    if not token:
        raise AuthError("Not authenticated")

    try:
        payload = decode_session_token(token)
    except Exception:
        raise AuthError("Invalid session")

    user = db.query(User).filter(User.id == _parse_uuid(payload.get("sub"))).first()
    if not user:
        raise AuthError("User not found")

    if not user.is_active:
        raise AuthError("Account disabled")

    # Token version check (revocation support)
    if user.token_version != payload.get("token_version"):
        raise AuthError("Session revoked")

    return user


def _parse_uuid(value) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise AuthError("Invalid session")


def get_current_user(request: Request, db: Session = Depends(get_db)):
    """
    Get authenticated user from session cookie.

    Validates:
    - Session cookie exists
    - JWT is valid and not expired
    - User exists and is active
    - Token version matches (for revocation support)

    Raises:
        AuthError: Authentication failed (rendered as 401)
    """
    return _load_session_user(request, db)


def get_optional_user(request: Request, db: Session = Depends(get_db)):
    """Like get_current_user, but returns None instead of raising."""
    try:
        return _load_session_user(request, db)
    except AuthError:
        return None


def get_cache_service(request: Request) -> CacheService:
    """Application-wide cache service (created at startup, stored on app.state)."""
    cache = getattr(request.app.state, "cache", None)
    if cache is None:
        cache = CacheService(default_ttl_seconds=settings.STATUS_CACHE_TTL_SECONDS)
        request.app.state.cache = cache
    return cache


def get_user_cache(
    user=Depends(get_current_user),
    cache: CacheService = Depends(get_cache_service),
) -> ScopedCache:
    """Cache view namespaced to the authenticated user."""
    return cache.scoped(str(user.id))
