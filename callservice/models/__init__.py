"""Data models for the call session service."""

from .api_models import (
    AttachConversationRequest,
    AttachConversationResponse,
    CallEndRequest,
    CallEndResponse,
    CallStartRequest,
    CallStartResponse,
    CenterCreateRequest,
    CenterUpdateRequest,
    ErrorResponse,
    HealthResponse,
    ProviderSessionResponse,
    ReconcileResponse,
    UserCreateRequest,
    UserUpdateRequest,
)
from .internal_models import (
    Call,
    CallStatus,
    Center,
    PendingWebhook,
    Transcript,
    User,
)

__all__ = [
    "AttachConversationRequest",
    "AttachConversationResponse",
    "CallEndRequest",
    "CallEndResponse",
    "CallStartRequest",
    "CallStartResponse",
    "CenterCreateRequest",
    "CenterUpdateRequest",
    "ErrorResponse",
    "HealthResponse",
    "ProviderSessionResponse",
    "ReconcileResponse",
    "UserCreateRequest",
    "UserUpdateRequest",
    "Call",
    "CallStatus",
    "Center",
    "PendingWebhook",
    "Transcript",
    "User",
]
