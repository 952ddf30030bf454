"""
Public token validation endpoint.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from callservice.api.dependencies import enforce_rate_limit, get_services
from callservice.observability import trace_function
from callservice.services.rate_limiter import RATE_LIMITS

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1", tags=["users"])


@router.get("/users/validate")
@trace_function("token_validation_endpoint")
async def validate_token(request: Request, token: Optional[str] = Query(None)) -> JSONResponse:
    """
    Validate a login token and report the caller's quota.

    Answers ``{"valid": false}`` with status 200 for missing, malformed and
    unknown tokens alike.
    """
    limited = enforce_rate_limit(request, "validate", RATE_LIMITS.TOKEN_VALIDATION)
    if limited is not None:
        return limited

    validation = await get_services(request).validator.validate(token)
    return JSONResponse(content=validation.to_response())
