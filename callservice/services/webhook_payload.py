"""
Parsing and authentication of ElevenLabs post-call webhooks.

Payload shapes seen across provider versions, tried in this order:

- ``flat``: ``{"type", "conversation_id", "agent_id", "status", "transcript", "analysis", ...}``
- ``envelope``: ``{"type", "event_timestamp", "data": {"conversation_id", "agent_id", ...}}``

Signature schemes accepted (header names vary, see ``SIGNATURE_HEADERS``):

- ``t=<unix ts>,v0=<hex>``: HMAC-SHA256 of ``"{ts}.{body}"``, timestamp within tolerance
- ``<hex>`` or ``sha256=<hex>``: HMAC-SHA256 of the body
- the shared secret itself
"""

import enum
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from callservice.services.errors import InvalidInput

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = (
    "elevenlabs-signature",
    "x-elevenlabs-signature",
    "x-signature",
    "x-webhook-signature",
)


class SignatureCheck(enum.Enum):
    VERIFIED = "verified"
    UNVERIFIED = "unverified"  # no secret configured, development only
    REJECTED = "rejected"


def extract_signature(headers) -> Optional[str]:
    """Return the first signature header present."""
    for name in SIGNATURE_HEADERS:
        value = headers.get(name)
        if value:
            return value.strip()
    return None


def _hmac_hex(secret: str, message: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def _parse_timestamped(signature: str) -> Optional[Dict[str, str]]:
    parts = {}
    for part in signature.split(","):
        key, sep, value = part.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    if "t" in parts and "v0" in parts:
        return parts
    return None


class WebhookVerifier:
    """Verifies webhook signatures against the shared secret."""

    def __init__(
        self,
        secret: Optional[str],
        tolerance_seconds: int = 300,
        clock: Callable[[], float] = time.time
    ):
        self.secret = (secret or "").strip()
        self.tolerance_seconds = tolerance_seconds
        self.clock = clock

    def verify(self, raw_body: str, signature: Optional[str]) -> bool:
        """True when ``signature`` authenticates ``raw_body`` under any accepted scheme."""
        if not signature:
            logger.warning("Webhook request carried no signature header")
            return False

        timestamped = _parse_timestamped(signature)
        if timestamped is not None:
            return self._verify_timestamped(raw_body, timestamped["t"], timestamped["v0"])

        # Shared secret sent as-is
        if hmac.compare_digest(signature.encode("utf-8"), self.secret.encode("utf-8")):
            return True

        provided = signature.lower()
        if provided.startswith("sha256="):
            provided = provided[len("sha256="):]
        expected = _hmac_hex(self.secret, raw_body)
        return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))

    def _verify_timestamped(self, raw_body: str, timestamp: str, provided: str) -> bool:
        try:
            ts = int(timestamp)
        except ValueError:
            logger.warning("Webhook signature timestamp is not an integer")
            return False

        if abs(self.clock() - ts) > self.tolerance_seconds:
            logger.warning(f"Webhook signature timestamp outside tolerance ({self.tolerance_seconds}s)")
            return False

        provided = provided.lower()
        if provided.startswith("0x"):
            provided = provided[2:]
        expected = _hmac_hex(self.secret, f"{timestamp}.{raw_body}")
        return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))

    def check(self, raw_body: str, headers) -> SignatureCheck:
        """Classify a request: verified, unverified (no secret) or rejected."""
        if not self.secret:
            logger.warning("WEBHOOK_SHARED_SECRET not configured, accepting unverified webhook")
            return SignatureCheck.UNVERIFIED

        if self.verify(raw_body, extract_signature(headers)):
            return SignatureCheck.VERIFIED
        return SignatureCheck.REJECTED


@dataclass
class WebhookEvent:
    """Normalized webhook, independent of the payload shape it arrived in."""

    shape: str
    conversation_id: str
    event_type: Optional[str] = None
    agent_id: Optional[str] = None
    status: Optional[str] = None
    transcript: Any = None
    analysis: Any = None
    duration_seconds: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def _conversation_id(obj: Any) -> Optional[str]:
    if not isinstance(obj, dict):
        return None
    value = obj.get("conversation_id")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _duration(obj: Dict[str, Any]) -> Optional[int]:
    metadata = obj.get("metadata")
    if not isinstance(metadata, dict):
        return None
    value = metadata.get("call_duration_secs")
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        return None
    return int(value)


def _event_from(shape: str, source: Dict[str, Any], conversation_id: str, event_type: Any, raw: Dict[str, Any]) -> WebhookEvent:
    return WebhookEvent(
        shape=shape,
        conversation_id=conversation_id,
        event_type=event_type if isinstance(event_type, str) else None,
        agent_id=source.get("agent_id"),
        status=source.get("status"),
        transcript=source.get("transcript"),
        analysis=source.get("analysis"),
        duration_seconds=_duration(source),
        raw=raw
    )


def _parse_flat(body: Dict[str, Any]) -> Optional[WebhookEvent]:
    conversation_id = _conversation_id(body)
    if conversation_id is None:
        return None
    return _event_from("flat", body, conversation_id, body.get("type"), body)


def _parse_envelope(body: Dict[str, Any]) -> Optional[WebhookEvent]:
    data = body.get("data")
    conversation_id = _conversation_id(data)
    if conversation_id is None:
        return None
    return _event_from("envelope", data, conversation_id, body.get("type"), body)


_SHAPE_PARSERS = (_parse_flat, _parse_envelope)


def parse_webhook_payload(body: Any) -> WebhookEvent:
    """
    Normalize a decoded webhook body.

    Raises:
        InvalidInput: If the body matches no known shape
    """
    if not isinstance(body, dict):
        raise InvalidInput("Webhook body must be a JSON object")

    for parser in _SHAPE_PARSERS:
        event = parser(body)
        if event is not None:
            return event

    logger.error(f"No conversation_id in webhook payload, keys: {sorted(body.keys())}")
    raise InvalidInput("conversation_id not provided")


def decode_webhook_body(raw_body: str) -> Any:
    """
    Decode the raw webhook body as JSON.

    Raises:
        InvalidInput: If the body is not valid JSON
    """
    try:
        return json.loads(raw_body)
    except (json.JSONDecodeError, ValueError) as e:
        logger.error(f"Webhook body is not valid JSON: {e}")
        raise InvalidInput("Invalid JSON")


def extract_transcript_text(transcript: Any) -> str:
    """
    Flatten a provider transcript to text.

    Strings pass through; a list of turns becomes ``"role: content"`` lines;
    any other value is serialized as compact JSON.
    """
    if not transcript:
        return ""

    if isinstance(transcript, str):
        return transcript

    if isinstance(transcript, list):
        lines: List[str] = []
        for item in transcript:
            if isinstance(item, dict):
                role = item.get("role") or item.get("source") or "unknown"
                content = item.get("message") or item.get("content") or item.get("text") or ""
            else:
                role, content = "unknown", item
            lines.append(f"{role}: {content}")
        return "\n".join(lines)

    return json.dumps(transcript, ensure_ascii=False, separators=(",", ":"))
