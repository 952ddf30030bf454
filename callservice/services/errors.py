"""
Domain error taxonomy for the call session service.

Services raise these; routers translate them into structured JSON responses.
Each error carries the HTTP status it maps to and a short type name used as
the ``error`` field of error bodies.
"""

from typing import Optional


class CallServiceError(Exception):
    """Base exception for call service errors."""

    error_type = "CallServiceError"
    status_code = 500

    def __init__(self, message: str = "", **context):
        super().__init__(message)
        self.message = message
        self.context = context


class InvalidInput(CallServiceError):
    """Missing or malformed request fields."""

    error_type = "InvalidInput"
    status_code = 400


class Unauthorized(CallServiceError):
    """Webhook signature or staff key rejected."""

    error_type = "Unauthorized"
    status_code = 401


class NotFound(CallServiceError):
    """Unknown call, user or center."""

    error_type = "NotFound"
    status_code = 404


class InvalidToken(NotFound):
    """Login token does not resolve to a user."""

    error_type = "InvalidToken"
    status_code = 400


class CenterUnassigned(CallServiceError):
    """User has no center and cannot place calls."""

    error_type = "CenterUnassigned"
    status_code = 400


class QuotaExceeded(CallServiceError):
    """Daily call limit reached. An expected outcome, not an HTTP error."""

    error_type = "QuotaExceeded"
    status_code = 200

    def __init__(self, message: str = "", calls_today: int = 0, **context):
        super().__init__(message, **context)
        self.calls_today = calls_today


class AlreadyEnded(CallServiceError):
    """Call is already in a terminal state."""

    error_type = "AlreadyEnded"
    status_code = 409


class ConversationConflict(CallServiceError):
    """Call already bound to a different conversation id, or the id to another call."""

    error_type = "ConversationConflict"
    status_code = 409


class RateLimited(CallServiceError):
    """Request budget exhausted for the caller."""

    error_type = "RateLimited"
    status_code = 429

    def __init__(self, message: str = "", retry_after: int = 0, **context):
        super().__init__(message, **context)
        self.retry_after = retry_after


class UpstreamFailure(CallServiceError):
    """Provider or storage unreachable or rejected the request."""

    error_type = "UpstreamFailure"
    status_code = 502

    def __init__(self, message: str = "", upstream_status: Optional[int] = None, **context):
        super().__init__(message, **context)
        self.upstream_status = upstream_status


class ProviderNotConfigured(CallServiceError):
    """Provider credentials are missing from the configuration."""

    error_type = "ProviderNotConfigured"
    status_code = 503


class CorrelationMiss(CallServiceError):
    """Webhook conversation id matched no call. Answered with HTTP 200."""

    error_type = "CorrelationMiss"
    status_code = 200


class StaffAccessDisabled(CallServiceError):
    """Staff routes called while ADMIN_API_KEY is unset."""

    error_type = "StaffAccessDisabled"
    status_code = 503
