"""Calendar sync error hierarchy.

Services raise these; routers translate them into ``{"error": ...}`` bodies.
"""


class CalendarSyncError(Exception):
    """Base exception for calendar integration failures."""


class AuthError(CalendarSyncError):
    """No valid session for the request."""


class IntegrationNotFoundError(CalendarSyncError):
    """No active Google Calendar integration for the user or channel."""


class TokenExchangeError(CalendarSyncError):
    """Google rejected the authorization code (expired, reused, redirect mismatch)."""


class TokenRefreshError(CalendarSyncError):
    """Google rejected the refresh token."""

    def __init__(self, message: str, *, invalid_grant: bool = False):
        super().__init__(message)
        self.invalid_grant = invalid_grant


class SyncTokenExpiredError(CalendarSyncError):
    """The stored sync token is no longer valid (410 Gone)."""


class ProviderApiError(CalendarSyncError):
    """Google Calendar API returned an error or could not be reached."""

    def __init__(self, message: str, *, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class WebhookValidationError(CalendarSyncError):
    """Push notification is missing required headers."""


class SyncInProgressError(CalendarSyncError):
    """Another sync currently holds the user's lease."""
