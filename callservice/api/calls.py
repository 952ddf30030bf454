"""
Call lifecycle API endpoints used by the end-user call page.
"""

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from callservice.api.dependencies import client_failure, enforce_rate_limit, get_services
from callservice.models.api_models import (
    AttachConversationRequest,
    AttachConversationResponse,
    CallEndRequest,
    CallEndResponse,
    CallStartRequest,
    CallStartResponse,
)
from callservice.observability import trace_function
from callservice.services.errors import (
    AlreadyEnded,
    CallServiceError,
    CenterUnassigned,
    ConversationConflict,
    InvalidInput,
    InvalidToken,
    NotFound,
    QuotaExceeded,
)
from callservice.services.rate_limiter import RATE_LIMITS

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1", tags=["calls"])

GENERIC_START_ERROR = "Could not start call"


@router.post("/calls/start", response_model=CallStartResponse)
@trace_function("call_start_endpoint")
async def start_call(body: CallStartRequest, request: Request):
    """
    Start a call for the owner of ``loginToken``.

    Quota exhaustion is an expected outcome and answers 200 with
    ``success: false`` and ``canStart: false``.
    """
    limited = enforce_rate_limit(request, "call-start", RATE_LIMITS.CALL_START)
    if limited is not None:
        return limited

    services = get_services(request)

    try:
        result = await services.lifecycle.start(body.loginToken)

    except QuotaExceeded as e:
        logger.info("Call start refused, daily limit reached", calls_today=e.calls_today)
        return JSONResponse(content={
            "success": False,
            "error": "Daily call limit reached",
            "canStart": False,
            "callsToday": e.calls_today
        })

    except (InvalidToken, CenterUnassigned) as e:
        # Same body for every rejected token so the endpoint reveals nothing
        logger.info("Call start refused", reason=e.error_type)
        return client_failure(GENERIC_START_ERROR, 400, canStart=False)

    except CallServiceError as e:
        logger.error("Call start failed", error_type=e.error_type, error=e.message)
        return client_failure(GENERIC_START_ERROR, 500, canStart=False)

    logger.info("Call started", call_id=result.call_id, user_id=result.user_id)

    return CallStartResponse(
        success=True,
        callId=result.call_id,
        canStart=True,
        callsToday=result.calls_today,
        userName=result.user_name
    )


@router.post("/calls/end", response_model=CallEndResponse)
@trace_function("call_end_endpoint")
async def end_call(body: CallEndRequest, request: Request):
    """End a started call; a second end answers 409 and changes nothing."""
    limited = enforce_rate_limit(request, "call-end", RATE_LIMITS.CALL_START)
    if limited is not None:
        return limited

    services = get_services(request)

    try:
        result = await services.lifecycle.end(body.callId, body.providerConversationId)

    except NotFound:
        return client_failure("Call not found", 404)

    except AlreadyEnded:
        return client_failure("Call already ended", 409)

    except CallServiceError as e:
        logger.error("Call end failed", call_id=body.callId, error_type=e.error_type, error=e.message)
        return client_failure("Could not end call", 500)

    return CallEndResponse(
        success=True,
        callId=result.call_id,
        duration=result.duration_seconds,
        endedAt=result.ended_at
    )


@router.post("/calls/{call_id}/fail")
@trace_function("call_fail_endpoint")
async def fail_call(call_id: str, request: Request):
    """Mark a call failed when the realtime session could not be set up."""
    limited = enforce_rate_limit(request, "call-end", RATE_LIMITS.CALL_START)
    if limited is not None:
        return limited

    services = get_services(request)

    try:
        await services.lifecycle.mark_failed(call_id)

    except NotFound:
        return client_failure("Call not found", 404)

    except AlreadyEnded:
        return client_failure("Call already ended", 409)

    except CallServiceError as e:
        logger.error("Marking call failed did not succeed", call_id=call_id, error_type=e.error_type)
        return client_failure("Could not update call", 500)

    return {"success": True, "callId": call_id}


@router.patch("/calls/{call_id}/conversation", response_model=AttachConversationResponse)
@trace_function("call_conversation_endpoint")
async def attach_conversation(call_id: str, body: AttachConversationRequest, request: Request):
    """Bind the provider conversation id to a call. Idempotent for the same id."""
    limited = enforce_rate_limit(request, "call-update", RATE_LIMITS.CALL_START)
    if limited is not None:
        return limited

    services = get_services(request)

    try:
        result = await services.correlator.attach(call_id, body.conversationId)

    except InvalidInput as e:
        return client_failure(e.message, 400)

    except NotFound:
        return client_failure("Call not found", 404)

    except ConversationConflict:
        return client_failure("Call already has a different conversation id", 409)

    except CallServiceError as e:
        logger.error("Conversation attach failed", call_id=call_id, error_type=e.error_type)
        return client_failure("Could not update call", 500)

    logger.info(
        "Conversation attached",
        call_id=call_id,
        already_attached=result.already_attached,
        replayed_webhook=result.replayed_webhook
    )

    return AttachConversationResponse(
        success=True,
        alreadyAttached=result.already_attached,
        replayedWebhook=result.replayed_webhook
    )
