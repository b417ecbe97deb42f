"""
RankBot error taxonomy.

Each error carries the HTTP status and short label the API layer reports in
its ``{success: false, error, message}`` envelope. Only ``TransientError``
is ever retried, and only inside ``ResilientClient``.
"""

from __future__ import annotations


class RankBotError(Exception):
    """Base class for every error the service reports to callers."""

    status_code: int = 500
    error: str = "Internal server error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(RankBotError):
    """Malformed identifier, rank, or request shape. Never retried."""

    status_code = 400
    error = "Validation error"


class PermissionDeniedError(RankBotError):
    """Target rank is outside what the bot account may assign."""

    status_code = 403
    error = "Permission denied"


class SessionRejectedError(RankBotError):
    """The platform rejected the bot account's session credential."""

    status_code = 503
    error = "Session rejected"


class NotFoundError(RankBotError):
    """Unknown user, unknown role name, or user outside the group."""

    status_code = 404
    error = "Not found"


class NoActionToUndoError(RankBotError):
    """Raised when undo is requested with no live action recorded."""

    status_code = 400
    error = "No action to undo"


class RateLimitedError(RankBotError):
    """Too many requests, either from a caller or from the platform."""

    status_code = 429
    error = "Rate limited"

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TransientError(RankBotError):
    """A failure worth retrying: network error, timeout, or whitelisted status."""

    status_code = 503
    error = "Service unavailable"

    def __init__(
        self,
        message: str,
        status: int | None = None,
        connection_failure: bool = False,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.connection_failure = connection_failure
        self.retry_after = retry_after


class PlatformConnectionError(RankBotError, ConnectionError):
    """Transient failures persisted past the retry budget."""

    status_code = 503
    error = "Service unavailable"


class DirectoryIntegrityError(RankBotError):
    """A role refresh returned data that violates directory invariants."""

    status_code = 503
    error = "Role directory unavailable"


class PlatformError(RankBotError):
    """The platform answered with an error this service cannot classify."""

    status_code = 502
    error = "Bad gateway"


class AuthenticationRequiredError(RankBotError):
    """No API key accompanied a request to an authenticated endpoint."""

    status_code = 401
    error = "Authentication required"


class InvalidApiKeyError(RankBotError):
    status_code = 403
    error = "Invalid API key"
