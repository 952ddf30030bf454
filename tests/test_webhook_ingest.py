"""
Tests for webhook signature verification, payload parsing and ingestion.
"""

import hashlib
import hmac
import json
from unittest.mock import AsyncMock

import pytest

from callservice.models.internal_models import CallStatus
from callservice.services.errors import InvalidInput, UpstreamFailure
from callservice.services.webhook_payload import (
    SignatureCheck,
    WebhookVerifier,
    decode_webhook_body,
    extract_signature,
    extract_transcript_text,
    parse_webhook_payload,
)

SECRET = "whsec_test_secret"
NOW = 1_700_000_000


def sign(body: str, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


def sign_timestamped(body: str, ts: int = NOW, secret: str = SECRET) -> str:
    digest = hmac.new(secret.encode(), f"{ts}.{body}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v0={digest}"


@pytest.fixture
def verifier():
    return WebhookVerifier(SECRET, tolerance_seconds=300, clock=lambda: NOW)


class TestWebhookVerifier:
    """Test cases for signature verification."""

    BODY = '{"conversation_id":"conv_1"}'

    def test_plain_hmac(self, verifier):
        assert verifier.verify(self.BODY, sign(self.BODY))

    def test_prefixed_hmac(self, verifier):
        assert verifier.verify(self.BODY, "sha256=" + sign(self.BODY))

    def test_uppercase_hex(self, verifier):
        assert verifier.verify(self.BODY, sign(self.BODY).upper())

    def test_timestamped_signature(self, verifier):
        assert verifier.verify(self.BODY, sign_timestamped(self.BODY))

    def test_timestamped_signature_outside_tolerance(self, verifier):
        assert not verifier.verify(self.BODY, sign_timestamped(self.BODY, ts=NOW - 301))

    def test_timestamped_signature_non_integer_timestamp(self, verifier):
        digest = sign(self.BODY)
        assert not verifier.verify(self.BODY, f"t=abc,v0={digest}")

    def test_shared_secret_as_is(self, verifier):
        assert verifier.verify(self.BODY, SECRET)

    def test_wrong_secret(self, verifier):
        assert not verifier.verify(self.BODY, sign(self.BODY, secret="other"))

    def test_tampered_body(self, verifier):
        assert not verifier.verify(self.BODY + " ", sign(self.BODY))

    def test_missing_signature(self, verifier):
        assert not verifier.verify(self.BODY, None)

    @pytest.mark.parametrize("header", [
        "elevenlabs-signature",
        "x-elevenlabs-signature",
        "x-signature",
        "x-webhook-signature",
    ])
    def test_accepted_header_names(self, verifier, header):
        headers = {header: sign(self.BODY)}
        assert extract_signature(headers) == sign(self.BODY)
        assert verifier.check(self.BODY, headers) is SignatureCheck.VERIFIED

    def test_rejected_when_secret_configured(self, verifier):
        assert verifier.check(self.BODY, {"x-signature": "nope"}) is SignatureCheck.REJECTED

    def test_unverified_without_secret(self):
        verifier = WebhookVerifier(None)
        assert verifier.check(self.BODY, {}) is SignatureCheck.UNVERIFIED


class TestParseWebhookPayload:
    """Test cases for the payload shape parser."""

    def test_flat_shape(self):
        event = parse_webhook_payload({
            "type": "post_call_transcription",
            "conversation_id": "conv_1",
            "agent_id": "agent_x",
            "status": "done",
            "transcript": "hello",
        })

        assert event.shape == "flat"
        assert event.conversation_id == "conv_1"
        assert event.agent_id == "agent_x"
        assert event.transcript == "hello"

    def test_envelope_shape(self):
        event = parse_webhook_payload({
            "type": "post_call_transcription",
            "event_timestamp": 1700000000,
            "data": {
                "conversation_id": "conv_2",
                "status": "done",
                "metadata": {"call_duration_secs": 184},
            },
        })

        assert event.shape == "envelope"
        assert event.conversation_id == "conv_2"
        assert event.event_type == "post_call_transcription"
        assert event.duration_seconds == 184

    def test_flat_takes_precedence(self):
        event = parse_webhook_payload({"conversation_id": "top", "data": {"conversation_id": "nested"}})
        assert event.shape == "flat"
        assert event.conversation_id == "top"

    @pytest.mark.parametrize("body", [
        {},
        {"conversation_id": ""},
        {"conversation_id": 42},
        {"data": {"agent_id": "x"}},
        {"data": "conv_1"},
        ["conv_1"],
    ])
    def test_no_conversation_id(self, body):
        with pytest.raises(InvalidInput):
            parse_webhook_payload(body)

    def test_invalid_json(self):
        with pytest.raises(InvalidInput):
            decode_webhook_body("{not json")


class TestExtractTranscriptText:
    def test_string_passes_through(self):
        assert extract_transcript_text("already text") == "already text"

    def test_turns(self):
        transcript = [
            {"role": "agent", "message": "Hola"},
            {"source": "user", "content": "Buenas"},
            {"text": "sin rol"},
        ]
        assert extract_transcript_text(transcript) == "agent: Hola\nuser: Buenas\nunknown: sin rol"

    def test_absent(self):
        assert extract_transcript_text(None) == ""

    def test_other_values_serialized(self):
        assert extract_transcript_text({"a": 1, "b": "ñ"}) == '{"a":1,"b":"ñ"}'


def flat_event(conversation_id="conv_1", transcript="user: hola", **extra):
    return parse_webhook_payload({"conversation_id": conversation_id, "transcript": transcript, **extra})


class TestWebhookIngestService:
    """Test cases for WebhookIngestService."""

    @pytest.mark.asyncio
    async def test_completes_started_call(self, db, ingest, user, clock):
        call = db.add_call(user, clock(), conversation_id="conv_1")

        result = await ingest.ingest(flat_event())

        assert result.success is True
        assert result.call_id == call.id
        assert result.transitioned is True
        stored = db.calls.rows[call.id]
        assert stored.status == CallStatus.COMPLETED
        assert stored.ended_at == clock()
        assert db.transcripts.rows[call.id].content == "user: hola"
        assert db.transcripts.rows[call.id].metadata["conversation_id"] == "conv_1"

    @pytest.mark.asyncio
    async def test_uses_provider_duration(self, db, ingest, user, clock):
        call = db.add_call(user, clock(), conversation_id="conv_1")

        await ingest.ingest(flat_event(metadata={"call_duration_secs": 212}))

        assert db.calls.rows[call.id].duration_seconds == 212

    @pytest.mark.asyncio
    async def test_terminal_call_is_left_untouched(self, db, ingest, user, clock):
        call = db.add_call(user, clock(), status=CallStatus.FAILED, conversation_id="conv_1")

        result = await ingest.ingest(flat_event())

        assert result.success is True
        assert result.transitioned is False
        assert db.calls.rows[call.id].status == CallStatus.FAILED
        assert db.transcripts.rows[call.id].content == "user: hola"

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, db, ingest, user, clock):
        call = db.add_call(user, clock(), conversation_id="conv_1")

        first = await ingest.ingest(flat_event())
        second = await ingest.ingest(flat_event())

        assert first.transitioned is True
        assert second.transitioned is False
        assert len(db.transcripts.rows) == 1
        assert db.calls.rows[call.id].status == CallStatus.COMPLETED
        assert len(db.calls.update_log) == 1

    @pytest.mark.asyncio
    async def test_miss_parks_and_reports_recent_calls(self, db, ingest, user, clock):
        for _ in range(7):
            db.add_call(user, clock())

        result = await ingest.ingest(flat_event("conv_unknown"))

        assert result.success is False
        assert result.parked is True
        assert len(result.recent_calls) == 5
        body = result.to_response()
        assert body["success"] is False
        assert body["conversation_id"] == "conv_unknown"
        assert db.transcripts.rows == {}
        assert db.pending_webhooks.rows["conv_unknown"].payload["conversation_id"] == "conv_unknown"

    @pytest.mark.asyncio
    async def test_lookup_failure_raises(self, db, ingest):
        db.calls.get_call_by_conversation_id = AsyncMock(side_effect=RuntimeError("down"))

        with pytest.raises(UpstreamFailure):
            await ingest.ingest(flat_event())

    @pytest.mark.asyncio
    async def test_replay_pending_without_parked_webhook(self, ingest):
        assert await ingest.replay_pending("conv_nothing") is False

    def test_success_response_shape(self):
        from callservice.services.webhook_ingest import WebhookIngestResult

        body = WebhookIngestResult(
            success=True, conversation_id="c", call_id="x", message="Transcript stored", processing_time_ms=1.234
        ).to_response()

        assert body["call_id"] == "x"
        assert body["processing_time_ms"] == 1.23
        assert json.dumps(body)
