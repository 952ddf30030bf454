"""
ElevenLabs post-call webhook endpoint.

Non-200 answers are reserved for signature (401) and payload (400) failures,
where a redelivery after a fix makes sense. Everything else answers 200 with
a ``success`` flag so the provider does not retry what it cannot fix.
"""

import time
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from callservice.api.dependencies import enforce_rate_limit, get_services
from callservice.config import settings
from callservice.observability import record_webhook_metrics, trace_function
from callservice.services.errors import CorrelationMiss, InvalidInput, UpstreamFailure
from callservice.services.rate_limiter import RATE_LIMITS
from callservice.services.webhook_payload import SignatureCheck, decode_webhook_body, parse_webhook_payload

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1", tags=["webhooks"])

WEBHOOK_PATH = "/webhooks/elevenlabs"


@router.post(WEBHOOK_PATH)
@trace_function("elevenlabs_webhook_endpoint")
async def receive_elevenlabs_webhook(request: Request) -> JSONResponse:
    """Store the transcript of a finished conversation against its call."""
    limited = enforce_rate_limit(request, "webhook", RATE_LIMITS.WEBHOOK)
    if limited is not None:
        return limited

    started = time.perf_counter()
    services = get_services(request)

    raw = await request.body()
    try:
        raw_body = raw.decode("utf-8")
    except UnicodeDecodeError:
        record_webhook_metrics("invalid", time.perf_counter() - started)
        return JSONResponse(status_code=400, content={"error": "Invalid body encoding"})

    check = services.verifier.check(raw_body, request.headers)
    if check is SignatureCheck.REJECTED:
        logger.warning("Webhook signature rejected", body_length=len(raw_body))
        record_webhook_metrics("rejected", time.perf_counter() - started)
        return JSONResponse(status_code=401, content={"error": "Invalid signature"})
    if check is SignatureCheck.UNVERIFIED:
        logger.warning("webhook_signature_unverified")

    try:
        event = parse_webhook_payload(decode_webhook_body(raw_body))
    except InvalidInput as e:
        record_webhook_metrics("invalid", time.perf_counter() - started)
        return JSONResponse(status_code=400, content={"error": e.message})

    logger.info(
        "Webhook received",
        conversation_id=event.conversation_id,
        shape=event.shape,
        event_type=event.event_type,
        verified=check is SignatureCheck.VERIFIED
    )

    try:
        result = await services.ingest.ingest(event)
    except UpstreamFailure as e:
        logger.error("Webhook processing failed", conversation_id=event.conversation_id, error=e.message)
        return JSONResponse(content={
            "success": False,
            "message": "Webhook could not be processed",
            "conversation_id": event.conversation_id
        })

    if not result.success:
        logger.warning(
            "Webhook correlation miss",
            error_type=CorrelationMiss.error_type,
            conversation_id=event.conversation_id,
            parked=result.parked,
            recent_calls=len(result.recent_calls)
        )

    content = result.to_response()
    content["verified"] = check is SignatureCheck.VERIFIED
    return JSONResponse(content=content)


@router.get(WEBHOOK_PATH)
async def webhook_status() -> JSONResponse:
    """Report endpoint status and which settings are present (booleans only)."""
    return JSONResponse(content={
        "status": "ok",
        "endpoint": f"/api/v1{WEBHOOK_PATH}",
        "description": "Receives post-call transcripts from ElevenLabs",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "configured": {
            "supabase_url": bool(settings.supabase_url),
            "service_role_key": bool(settings.supabase_service_role_key),
            "webhook_secret": bool(settings.webhook_shared_secret),
        }
    })
