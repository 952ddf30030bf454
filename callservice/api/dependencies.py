"""
Helpers shared by the API routers: error bodies, rate limit enforcement,
service lookup and the staff key guard.
"""

import hmac
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from fastapi import Header, Request
from fastapi.responses import JSONResponse

from callservice.config import settings
from callservice.models.api_models import ErrorResponse
from callservice.observability import record_rate_limited
from callservice.services.container import Services
from callservice.services.errors import CallServiceError, RateLimited, StaffAccessDisabled, Unauthorized
from callservice.services.rate_limiter import RateLimitConfig, get_client_ip

logger = structlog.get_logger()


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_correlation_id(request: Request) -> str:
    return request.headers.get("X-Call-ID", "unknown")


def client_ip(request: Request) -> str:
    peer = request.client.host if request.client else None
    return get_client_ip(request.headers, peer)


def create_error_response(
    error_type: str,
    message: str,
    correlation_id: str,
    status_code: int = 500,
    details: Optional[Dict[str, Any]] = None
) -> JSONResponse:
    """Create standardized error response."""
    error_response = ErrorResponse(
        error=error_type,
        message=message,
        correlation_id=correlation_id,
        timestamp=datetime.now(timezone.utc),
        details=details
    )
    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(mode="json", exclude_none=True)
    )


def error_response_for(error: CallServiceError, request: Request) -> JSONResponse:
    """Render a domain error in the standard error shape."""
    return create_error_response(
        error_type=error.error_type,
        message=error.message or error.error_type,
        correlation_id=get_correlation_id(request),
        status_code=error.status_code
    )


def client_failure(message: str, status_code: int, **extra) -> JSONResponse:
    """``{success: false, error}`` body used by the end-user call endpoints."""
    return JSONResponse(status_code=status_code, content={"success": False, "error": message, **extra})


def enforce_rate_limit(request: Request, bucket: str, config: RateLimitConfig) -> Optional[JSONResponse]:
    """
    Count the request against ``bucket`` for the caller's IP.

    Returns:
        A 429 response when the budget is exhausted, otherwise None
    """
    limiter = get_services(request).rate_limiter
    result = limiter.check(f"{bucket}:{client_ip(request)}", config)
    if result.allowed:
        return None

    error = RateLimited(
        f"Rate limit exceeded. Try again in {result.retry_after} seconds.",
        retry_after=result.retry_after
    )
    record_rate_limited(bucket)
    logger.warning("Rate limit exceeded", bucket=bucket, retry_after=error.retry_after)

    return JSONResponse(
        status_code=error.status_code,
        content={
            "error": "Too many requests",
            "message": error.message,
            "retryAfter": error.retry_after
        },
        headers={
            "Retry-After": str(result.retry_after),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": datetime.fromtimestamp(result.reset_time, tz=timezone.utc).isoformat()
        }
    )


async def require_admin_key(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")) -> None:
    """
    Guard for staff routes.

    Raises:
        StaffAccessDisabled: ADMIN_API_KEY is not configured
        Unauthorized: Header missing or wrong
    """
    if not settings.admin_api_key:
        raise StaffAccessDisabled("Staff API is disabled")

    if not x_admin_key or not hmac.compare_digest(
        x_admin_key.encode("utf-8"), settings.admin_api_key.encode("utf-8")
    ):
        logger.warning("Staff request with invalid admin key")
        raise Unauthorized("Invalid admin key")
