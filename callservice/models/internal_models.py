"""Internal data models for the call session service."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


class CallStatus:
    """Allowed values of ``calls.status``."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = frozenset({COMPLETED, FAILED})
    ALL = frozenset({STARTED, COMPLETED, FAILED})
    # Statuses counted against the daily quota
    QUOTA = (STARTED, COMPLETED)


@dataclass
class Center:
    """A care center; its timezone defines the users' calendar day."""

    id: str
    name: str
    timezone: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class User:
    """End-user who places calls, identified by an opaque login token."""

    id: str
    full_name: str
    login_token: str
    center_id: Optional[str] = None
    created_at: Optional[datetime] = None
    # Joined from centers when available
    center_timezone: Optional[str] = None


@dataclass
class Call:
    """One voice session."""

    id: str
    user_id: str
    center_id: Optional[str]
    started_at: datetime
    status: str = CallStatus.STARTED
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    elevenlabs_conversation_id: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate status invariants after initialization."""
        if self.status not in CallStatus.ALL:
            raise ValueError(f"Unknown call status: {self.status}")
        if self.status in CallStatus.TERMINAL and self.ended_at is None:
            raise ValueError(f"Call in status {self.status} must have ended_at")

    @property
    def is_terminal(self) -> bool:
        return self.status in CallStatus.TERMINAL


@dataclass
class Transcript:
    """Transcript of a call as delivered by the provider webhook."""

    call_id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class PendingWebhook:
    """Webhook that matched no call yet, parked for replay on attach."""

    conversation_id: str
    payload: Dict[str, Any]
    received_at: datetime
