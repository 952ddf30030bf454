"""Pydantic models for API requests and responses."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class CallStartRequest(BaseModel):
    """Request model for the call start endpoint."""

    loginToken: str = Field(..., min_length=1, max_length=256, description="End-user login token")


class CallStartResponse(BaseModel):
    """Response model for the call start endpoint."""

    success: bool
    callId: Optional[str] = None
    canStart: bool
    callsToday: Optional[int] = None
    userName: Optional[str] = None
    error: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "success": True,
            "callId": "5b7c0c1e-8d0c-4c55-b1d6-9a1b2e3f4a5b",
            "canStart": True,
            "callsToday": 1,
            "userName": "Ana García"
        }
    })


class CallEndRequest(BaseModel):
    """Request model for the call end endpoint."""

    callId: str = Field(..., min_length=1, description="Call identifier returned by /calls/start")
    providerConversationId: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("providerConversationId", "elevenlabsConversationId"),
        description="Provider conversation id, captured as a last resort"
    )


class CallEndResponse(BaseModel):
    """Response model for the call end endpoint."""

    success: bool
    callId: str
    duration: int = Field(..., ge=0, description="Call duration in seconds")
    endedAt: datetime


class AttachConversationRequest(BaseModel):
    """Request model for binding a provider conversation to a call."""

    conversationId: str = Field(..., min_length=1, max_length=256)


class AttachConversationResponse(BaseModel):
    """Response model for the conversation attach endpoint."""

    success: bool
    alreadyAttached: bool = False
    replayedWebhook: bool = False


class ProviderSessionResponse(BaseModel):
    """Signed connection URL for the realtime provider session."""

    signedUrl: str
    agentId: str


class ReconcileResponse(BaseModel):
    """Result of a stale call sweep."""

    swept: int
    callIds: List[str]


class CenterCreateRequest(BaseModel):
    """Request model for creating a center."""

    name: str = Field(..., min_length=1, max_length=200)
    timezone: Optional[str] = Field(None, description="IANA zone name, e.g. Europe/Madrid")

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v):
        """Validate the IANA zone name."""
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f'Unknown timezone: {v}')
        return v


class CenterUpdateRequest(CenterCreateRequest):
    """Request model for updating a center; every field optional."""

    name: Optional[str] = Field(None, min_length=1, max_length=200)

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        """A center name may be changed but not cleared."""
        if v is None:
            raise ValueError('name cannot be null')
        return v


class UserCreateRequest(BaseModel):
    """Request model for creating an end-user."""

    fullName: str = Field(..., min_length=1, max_length=200)
    centerId: Optional[str] = None


class UserUpdateRequest(BaseModel):
    """Request model for updating an end-user."""

    fullName: Optional[str] = Field(None, min_length=1, max_length=200)
    centerId: Optional[str] = None

    @field_validator('fullName')
    @classmethod
    def validate_full_name(cls, v):
        if v is None:
            raise ValueError('fullName cannot be null')
        return v


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(..., description="Health check timestamp")
    version: str = Field(..., description="Service version")


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error: str = Field(..., description="Error type or category")
    message: str = Field(..., description="Human-readable error message")
    correlation_id: str = Field(..., description="Request correlation ID for tracing")
    timestamp: datetime = Field(..., description="Error timestamp")
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "error": "InvalidInput",
            "message": "callId is required",
            "correlation_id": "req_123456789",
            "timestamp": "2024-01-01T12:00:00Z"
        }
    })
