"""
Shared fixtures: an in-memory stand-in for the Supabase repositories and a
controllable clock.
"""

import dataclasses
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from callservice.models.internal_models import Call, CallStatus, Center, PendingWebhook, Transcript, User
from callservice.services.call_lifecycle import CallLifecycleManager
from callservice.services.correlator import ConversationCorrelator
from callservice.services.token_validator import TokenValidator
from callservice.services.webhook_ingest import WebhookIngestService
from callservice.utils.time_utils import parse_timestamp

VALID_TOKEN = "tok_valid_0123456789"
OTHER_TOKEN = "tok_other_0123456789"


class FakeClock:
    """Aware UTC clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta) -> None:
        self.now = self.now + delta

    def epoch(self) -> float:
        return self.now.timestamp()


def _new_id() -> str:
    return str(uuid.uuid4())


def _coerce(fields: Dict[str, Any]) -> Dict[str, Any]:
    coerced = dict(fields)
    if "ended_at" in coerced:
        coerced["ended_at"] = parse_timestamp(coerced["ended_at"])
    return coerced


class FakeCenters:
    def __init__(self):
        self.rows: Dict[str, Center] = {}

    async def create_center(self, name, timezone=None):
        center = Center(id=_new_id(), name=name, timezone=timezone)
        self.rows[center.id] = center
        return center

    async def get_center(self, center_id):
        return self.rows.get(center_id)

    async def list_centers(self):
        return list(self.rows.values())

    async def update_center(self, center_id, fields):
        center = self.rows.get(center_id)
        if center is None:
            return None
        center = dataclasses.replace(center, **fields)
        self.rows[center_id] = center
        return center

    async def delete_center(self, center_id):
        return self.rows.pop(center_id, None) is not None


class FakeUsers:
    def __init__(self, centers: FakeCenters):
        self.centers = centers
        self.rows: Dict[str, User] = {}

    def _joined(self, user: User) -> User:
        center = self.centers.rows.get(user.center_id) if user.center_id else None
        return dataclasses.replace(user, center_timezone=center.timezone if center else None)

    async def create_user(self, full_name, center_id, login_token):
        user = User(id=_new_id(), full_name=full_name, login_token=login_token, center_id=center_id)
        self.rows[user.id] = user
        return self._joined(user)

    async def get_user_by_id(self, user_id):
        user = self.rows.get(user_id)
        return self._joined(user) if user else None

    async def get_user_by_login_token(self, login_token):
        for user in self.rows.values():
            if user.login_token == login_token:
                return self._joined(user)
        return None

    async def list_users(self, center_id=None):
        return [self._joined(u) for u in self.rows.values() if not center_id or u.center_id == center_id]

    async def update_user(self, user_id, fields):
        user = self.rows.get(user_id)
        if user is None:
            return None
        user = dataclasses.replace(user, **fields)
        self.rows[user_id] = user
        return self._joined(user)

    async def delete_user(self, user_id):
        return self.rows.pop(user_id, None) is not None


class FakeCalls:
    def __init__(self):
        self.rows: Dict[str, Call] = {}
        self.update_log: List[Dict[str, Any]] = []

    async def create_call(self, user_id, center_id, started_at):
        call = Call(id=_new_id(), user_id=user_id, center_id=center_id, started_at=started_at)
        self.rows[call.id] = call
        return call

    async def get_call(self, call_id):
        return self.rows.get(call_id)

    async def get_call_by_conversation_id(self, conversation_id):
        for call in self.rows.values():
            if call.elevenlabs_conversation_id == conversation_id:
                return call
        return None

    async def count_calls_since(self, user_id, statuses, since):
        return sum(
            1 for c in self.rows.values()
            if c.user_id == user_id and c.status in statuses and c.started_at >= since
        )

    async def update_call(self, call_id, fields, expected_status=None):
        call = self.rows.get(call_id)
        if call is None or (expected_status is not None and call.status != expected_status):
            return None
        call = dataclasses.replace(call, **_coerce(fields))
        self.rows[call_id] = call
        self.update_log.append({"call_id": call_id, **fields})
        return call

    async def set_conversation_id_if_unset(self, call_id, conversation_id):
        call = self.rows.get(call_id)
        if call is None or call.elevenlabs_conversation_id is not None:
            return None
        call = dataclasses.replace(call, elevenlabs_conversation_id=conversation_id)
        self.rows[call_id] = call
        return call

    async def list_recent_calls(self, limit=5):
        return sorted(self.rows.values(), key=lambda c: c.started_at, reverse=True)[:limit]

    async def list_calls(self, user_id=None, center_id=None, status=None, limit=100):
        calls = [
            c for c in self.rows.values()
            if (not user_id or c.user_id == user_id)
            and (not center_id or c.center_id == center_id)
            and (not status or c.status == status)
        ]
        return sorted(calls, key=lambda c: c.started_at, reverse=True)[:limit]

    async def list_started_before(self, cutoff):
        return [c for c in self.rows.values() if c.status == CallStatus.STARTED and c.started_at < cutoff]


class FakeTranscripts:
    def __init__(self):
        self.rows: Dict[str, Transcript] = {}
        self.writes = 0

    async def upsert_transcript(self, transcript):
        self.writes += 1
        self.rows[transcript.call_id] = transcript
        return transcript

    async def get_transcript_by_call_id(self, call_id):
        return self.rows.get(call_id)


class FakePendingWebhooks:
    def __init__(self):
        self.rows: Dict[str, PendingWebhook] = {}

    async def park(self, pending):
        self.rows[pending.conversation_id] = pending

    async def get(self, conversation_id):
        return self.rows.get(conversation_id)

    async def delete(self, conversation_id):
        self.rows.pop(conversation_id, None)


class FakeDatabase:
    """In-memory implementation of the ``DatabaseManager`` interface."""

    def __init__(self):
        self.centers = FakeCenters()
        self.users = FakeUsers(self.centers)
        self.calls = FakeCalls()
        self.transcripts = FakeTranscripts()
        self.pending_webhooks = FakePendingWebhooks()

    async def health_check(self) -> bool:
        return True

    async def retry_operation(self, operation, max_retries: int = 3, base_delay: float = 0.5):
        return await operation()

    def add_center(self, name="Centro Norte", timezone: Optional[str] = "Europe/Madrid") -> Center:
        center = Center(id=_new_id(), name=name, timezone=timezone)
        self.centers.rows[center.id] = center
        return center

    def add_user(self, token=VALID_TOKEN, center: Optional[Center] = None, full_name="Ana García") -> User:
        user = User(id=_new_id(), full_name=full_name, login_token=token, center_id=center.id if center else None)
        self.users.rows[user.id] = user
        return user

    def add_call(self, user: User, started_at: datetime, status=CallStatus.STARTED,
                 conversation_id: Optional[str] = None, ended_at: Optional[datetime] = None) -> Call:
        if status != CallStatus.STARTED and ended_at is None:
            ended_at = started_at
        call = Call(
            id=_new_id(),
            user_id=user.id,
            center_id=user.center_id,
            started_at=started_at,
            status=status,
            ended_at=ended_at,
            elevenlabs_conversation_id=conversation_id
        )
        self.calls.rows[call.id] = call
        return call


@pytest.fixture
def clock():
    # 10:00 in Madrid (CET, UTC+1)
    return FakeClock(datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def center(db):
    return db.add_center()


@pytest.fixture
def user(db, center):
    return db.add_user(center=center)


@pytest.fixture
def validator(db, clock):
    return TokenValidator(db, clock=clock, default_timezone="Europe/Madrid", daily_limit=2)


@pytest.fixture
def ingest(db, clock):
    return WebhookIngestService(db, clock=clock)


@pytest.fixture
def correlator(db, ingest):
    return ConversationCorrelator(db, ingest=ingest)


@pytest.fixture
def lifecycle(db, validator, correlator, clock):
    return CallLifecycleManager(db, validator, correlator=correlator, clock=clock, daily_limit=2)
