"""
Post-call webhook ingestion.

Stores the provider transcript against the call bound to the webhook's
conversation id and completes the call if it is still ``started``.
Deliveries are idempotent: the transcript is upserted per call and the status
transition only applies to ``started`` calls.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from callservice.models.internal_models import CallStatus, PendingWebhook, Transcript
from callservice.observability import record_webhook_metrics
from callservice.services.errors import UpstreamFailure
from callservice.services.webhook_payload import WebhookEvent, extract_transcript_text, parse_webhook_payload
from callservice.utils.time_utils import isoformat, utc_now

logger = logging.getLogger(__name__)

RECENT_CALLS_ON_MISS = 5


@dataclass
class WebhookIngestResult:
    """Outcome of one webhook delivery."""

    success: bool
    conversation_id: str
    call_id: Optional[str] = None
    message: str = ""
    transitioned: bool = False
    parked: bool = False
    recent_calls: List[Dict[str, Any]] = field(default_factory=list)
    processing_time_ms: float = 0.0

    def to_response(self) -> Dict[str, Any]:
        if not self.success:
            return {
                "success": False,
                "message": self.message,
                "conversation_id": self.conversation_id,
                "recent_calls": self.recent_calls,
            }
        return {
            "success": True,
            "message": self.message,
            "call_id": self.call_id,
            "conversation_id": self.conversation_id,
            "transitioned": self.transitioned,
            "processing_time_ms": round(self.processing_time_ms, 2),
        }


class WebhookIngestService:
    """Correlates webhooks to calls and persists their transcripts."""

    def __init__(self, db, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    async def ingest(self, event: WebhookEvent, park_on_miss: bool = True) -> WebhookIngestResult:
        """
        Apply a parsed webhook.

        Args:
            event: Normalized webhook event
            park_on_miss: Keep the payload for replay when no call matches

        Returns:
            WebhookIngestResult, ``success=False`` on a correlation miss

        Raises:
            UpstreamFailure: Storage failed while applying the webhook
        """
        started = time.perf_counter()
        conversation_id = event.conversation_id

        try:
            call = await self.db.calls.get_call_by_conversation_id(conversation_id)
        except Exception as e:
            logger.error(f"Storage failure correlating conversation {conversation_id}: {e}")
            record_webhook_metrics("error", time.perf_counter() - started)
            raise UpstreamFailure("Could not look up call")

        if call is None:
            result = await self._handle_miss(event, park_on_miss)
            result.processing_time_ms = (time.perf_counter() - started) * 1000
            record_webhook_metrics("miss", time.perf_counter() - started)
            return result

        now = self.clock()
        transcript = Transcript(
            call_id=call.id,
            content=extract_transcript_text(event.transcript),
            metadata={
                "conversation_id": conversation_id,
                "agent_id": event.agent_id,
                "status": event.status,
                "type": event.event_type,
                "analysis": event.analysis,
                "received_at": isoformat(now),
            }
        )

        transitioned = False
        try:
            await self.db.retry_operation(lambda: self.db.transcripts.upsert_transcript(transcript))

            if call.status == CallStatus.STARTED:
                fields: Dict[str, Any] = {"status": CallStatus.COMPLETED, "ended_at": isoformat(now)}
                if event.duration_seconds is not None:
                    fields["duration_seconds"] = event.duration_seconds
                else:
                    fields["duration_seconds"] = max(0, int((now - call.started_at).total_seconds()))
                updated = await self.db.calls.update_call(call.id, fields, expected_status=CallStatus.STARTED)
                transitioned = updated is not None
        except Exception as e:
            logger.error(f"Storage failure applying webhook for call {call.id}: {e}")
            record_webhook_metrics("error", time.perf_counter() - started)
            raise UpstreamFailure("Could not store transcript")

        elapsed = time.perf_counter() - started
        record_webhook_metrics("processed", elapsed)
        logger.info(
            f"Webhook for conversation {conversation_id} applied to call {call.id} "
            f"(shape={event.shape}, transitioned={transitioned}, {len(transcript.content)} chars)"
        )

        return WebhookIngestResult(
            success=True,
            conversation_id=conversation_id,
            call_id=call.id,
            message="Transcript stored",
            transitioned=transitioned,
            processing_time_ms=elapsed * 1000
        )

    async def _handle_miss(self, event: WebhookEvent, park_on_miss: bool) -> WebhookIngestResult:
        conversation_id = event.conversation_id
        logger.warning(f"No call found for conversation {conversation_id}")

        parked = False
        if park_on_miss:
            try:
                await self.db.pending_webhooks.park(
                    PendingWebhook(conversation_id=conversation_id, payload=event.raw, received_at=self.clock())
                )
                parked = True
            except Exception as e:
                logger.error(f"Failed to park webhook for conversation {conversation_id}: {e}")

        recent: List[Dict[str, Any]] = []
        try:
            for call in await self.db.calls.list_recent_calls(RECENT_CALLS_ON_MISS):
                recent.append({
                    "id": call.id,
                    "status": call.status,
                    "started_at": isoformat(call.started_at),
                    "elevenlabs_conversation_id": call.elevenlabs_conversation_id,
                })
        except Exception as e:
            logger.warning(f"Failed to list recent calls for diagnostics: {e}")

        return WebhookIngestResult(
            success=False,
            conversation_id=conversation_id,
            message="Call not found",
            parked=parked,
            recent_calls=recent
        )

    async def replay_pending(self, conversation_id: str) -> bool:
        """
        Apply a webhook parked for ``conversation_id``, if any.

        Returns:
            True when a parked webhook was applied and removed
        """
        pending = await self.db.pending_webhooks.get(conversation_id)
        if pending is None:
            return False

        event = parse_webhook_payload(pending.payload)
        result = await self.ingest(event, park_on_miss=False)
        if not result.success:
            return False

        await self.db.pending_webhooks.delete(conversation_id)
        logger.info(f"Replayed parked webhook for conversation {conversation_id} onto call {result.call_id}")
        return True
