"""
Provider session endpoint: hands the browser a signed realtime URL.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Query, Request

from callservice.api.dependencies import enforce_rate_limit, error_response_for, get_services
from callservice.clients.elevenlabs_client import ElevenLabsConfigError, ElevenLabsError
from callservice.models.api_models import ProviderSessionResponse
from callservice.observability import trace_function
from callservice.services.errors import CallServiceError, ProviderNotConfigured, UpstreamFailure
from callservice.services.rate_limiter import RATE_LIMITS

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1", tags=["provider"])


@router.get("/provider/session", response_model=ProviderSessionResponse)
@trace_function("provider_session_endpoint")
async def get_provider_session(request: Request, callId: Optional[str] = Query(None)):
    """
    Obtain a signed conversation URL from ElevenLabs.

    When ``callId`` is given and the provider fails, the call is marked failed.
    """
    limited = enforce_rate_limit(request, "provider-session", RATE_LIMITS.PUBLIC)
    if limited is not None:
        return limited

    services = get_services(request)
    client = services.elevenlabs

    if not client.is_configured:
        logger.error("ElevenLabs credentials not configured")
        return error_response_for(ProviderNotConfigured("Voice provider is not configured"), request)

    try:
        signed_url = await client.get_signed_url()
    except ElevenLabsConfigError as e:
        logger.error("ElevenLabs configuration error", error=str(e))
        return error_response_for(ProviderNotConfigured("Voice provider is not configured"), request)
    except ElevenLabsError as e:
        logger.error("ElevenLabs signed URL request failed", status_code=e.status_code, call_id=callId)
        if callId:
            await _fail_call(services, callId)
        return error_response_for(
            UpstreamFailure("Voice provider unavailable", upstream_status=e.status_code),
            request
        )

    return ProviderSessionResponse(signedUrl=signed_url, agentId=client.agent_id)


async def _fail_call(services, call_id: str) -> None:
    try:
        await services.lifecycle.mark_failed(call_id)
    except CallServiceError as e:
        logger.warning("Could not mark call failed after provider error", call_id=call_id, error_type=e.error_type)
