"""Client modules for external service integrations."""

from callservice.clients.supabase_client import (
    SupabaseClient,
    CenterRepository,
    UserRepository,
    CallRepository,
    TranscriptRepository,
    PendingWebhookRepository,
    DatabaseManager
)

from callservice.clients.elevenlabs_client import (
    ElevenLabsClient,
    ElevenLabsError,
    ElevenLabsConfigError
)

__all__ = [
    "SupabaseClient",
    "CenterRepository",
    "UserRepository",
    "CallRepository",
    "TranscriptRepository",
    "PendingWebhookRepository",
    "DatabaseManager",
    "ElevenLabsClient",
    "ElevenLabsError",
    "ElevenLabsConfigError"
]
