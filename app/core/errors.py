"""Exception types shared by the server services and the sync client.

Server-side services raise the ``BudgetSyncError`` family; the API layer maps
each class to an HTTP status. The client raises the ``ApiError`` family after
classifying an HTTP response, so the sync engine can decide what is worth
retrying.
"""


class BudgetSyncError(Exception):
    """Base class for server-side domain errors."""

    status_code = 500

    def __init__(self, code: str, message: str | None = None) -> None:
        """Store a machine-readable code alongside the message."""
        super().__init__(message or code)
        self.code = code


class AuthError(BudgetSyncError):
    """Missing, invalid or expired credentials."""

    status_code = 401


class ForbiddenError(BudgetSyncError):
    """Authenticated, but not allowed to touch the requested budget."""

    status_code = 403


class NotFoundError(BudgetSyncError):
    """Referenced record does not exist."""

    status_code = 404


class ConflictError(BudgetSyncError):
    """Record exists already or has already been consumed."""

    status_code = 409


class InvalidPayloadError(BudgetSyncError):
    """Request is well-formed JSON but semantically unusable."""

    status_code = 400


class ApiError(Exception):
    """Base class for errors the client receives from the server."""

    retryable = False

    def __init__(self, message: str, status_code: int | None = None, code: str | None = None) -> None:
        """Keep the HTTP status and server error code for callers."""
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class UnauthorizedError(ApiError):
    """401 from the server; re-authentication is required."""


class AccessDeniedError(ApiError):
    """403 from the server; the user is not a member of the budget."""


class RequestRejectedError(ApiError):
    """4xx other than auth; the payload needs fixing before resubmission."""


class TransientError(ApiError):
    """Network failure, timeout or 5xx; safe to retry later."""

    retryable = True
