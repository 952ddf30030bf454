"""Wiring of the service objects held on ``app.state``."""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from callservice.clients.elevenlabs_client import ElevenLabsClient
from callservice.clients.supabase_client import DatabaseManager
from callservice.config import settings
from callservice.services.call_lifecycle import CallLifecycleManager
from callservice.services.correlator import ConversationCorrelator
from callservice.services.rate_limiter import RateLimiter, build_rate_limiter
from callservice.services.token_validator import TokenValidator
from callservice.services.webhook_ingest import WebhookIngestService
from callservice.services.webhook_payload import WebhookVerifier
from callservice.utils.time_utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class Services:
    db: object
    rate_limiter: RateLimiter
    validator: TokenValidator
    lifecycle: CallLifecycleManager
    correlator: ConversationCorrelator
    ingest: WebhookIngestService
    verifier: WebhookVerifier
    elevenlabs: ElevenLabsClient


def build_services(
    db=None,
    rate_limiter: Optional[RateLimiter] = None,
    elevenlabs: Optional[ElevenLabsClient] = None,
    verifier: Optional[WebhookVerifier] = None,
    clock: Callable[[], datetime] = utc_now,
    wall_clock: Callable[[], float] = time.time
) -> Services:
    """
    Build the service graph, defaulting every dependency from settings.

    Args:
        db: Database manager; a Supabase-backed one by default
        rate_limiter: Limiter; backend chosen by ``RATE_LIMIT_BACKEND`` by default
        elevenlabs: Provider client
        verifier: Webhook signature verifier
        clock: Aware UTC clock for call timestamps
        wall_clock: Epoch clock for signature tolerance
    """
    db = db if db is not None else DatabaseManager()
    rate_limiter = rate_limiter or build_rate_limiter(settings.rate_limit_backend, settings.redis_url)
    verifier = verifier or WebhookVerifier(
        settings.webhook_shared_secret,
        tolerance_seconds=settings.webhook_tolerance_seconds,
        clock=wall_clock
    )

    validator = TokenValidator(db, clock=clock)
    ingest = WebhookIngestService(db, clock=clock)
    correlator = ConversationCorrelator(db, ingest=ingest)
    lifecycle = CallLifecycleManager(db, validator, correlator=correlator, clock=clock)

    return Services(
        db=db,
        rate_limiter=rate_limiter,
        validator=validator,
        lifecycle=lifecycle,
        correlator=correlator,
        ingest=ingest,
        verifier=verifier,
        elevenlabs=elevenlabs or ElevenLabsClient()
    )
