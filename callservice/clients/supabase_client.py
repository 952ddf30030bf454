"""Supabase client for database operations."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from postgrest.exceptions import APIError
from supabase import Client, ClientOptions, create_client

from ..config import settings
from ..models.internal_models import Call, CallStatus, Center, PendingWebhook, Transcript, User
from ..utils.time_utils import isoformat, mask_token, parse_timestamp

logger = logging.getLogger(__name__)

# Postgres "invalid_text_representation", raised for malformed uuid literals
INVALID_TEXT_REPRESENTATION = "22P02"


def _is_malformed_id(error: APIError) -> bool:
    return getattr(error, "code", None) == INVALID_TEXT_REPRESENTATION


def center_from_row(row: Dict[str, Any]) -> Center:
    return Center(
        id=str(row["id"]),
        name=row["name"],
        timezone=row.get("timezone"),
        created_at=parse_timestamp(row.get("created_at"))
    )


def user_from_row(row: Dict[str, Any]) -> User:
    center = row.get("centers") or {}
    return User(
        id=str(row["id"]),
        full_name=row["full_name"],
        login_token=row.get("login_token", ""),
        center_id=str(row["center_id"]) if row.get("center_id") else None,
        created_at=parse_timestamp(row.get("created_at")),
        center_timezone=center.get("timezone") if isinstance(center, dict) else None
    )


def call_from_row(row: Dict[str, Any]) -> Call:
    return Call(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        center_id=str(row["center_id"]) if row.get("center_id") else None,
        started_at=parse_timestamp(row["started_at"]),
        status=row["status"],
        ended_at=parse_timestamp(row.get("ended_at")),
        duration_seconds=row.get("duration_seconds"),
        elevenlabs_conversation_id=row.get("elevenlabs_conversation_id"),
        created_at=parse_timestamp(row.get("created_at"))
    )


def transcript_from_row(row: Dict[str, Any]) -> Transcript:
    return Transcript(
        id=str(row["id"]) if row.get("id") else None,
        call_id=str(row["call_id"]),
        content=row.get("content") or "",
        metadata=row.get("metadata") or {},
        created_at=parse_timestamp(row.get("created_at"))
    )


class SupabaseClient:
    """Client for Supabase database operations."""

    def __init__(self):
        """Initialize Supabase client with configuration."""
        self._client: Optional[Client] = None
        self._url = settings.supabase_url
        self._key = settings.supabase_service_role_key

    @property
    def client(self) -> Client:
        """Get or create Supabase client instance."""
        if self._client is None:
            options = ClientOptions(
                postgrest_client_timeout=settings.http_timeout_seconds,
                auto_refresh_token=False,
                persist_session=False
            )
            self._client = create_client(self._url, self._key, options=options)
        return self._client

    def table(self, name: str):
        return self.client.table(name)

    async def health_check(self) -> bool:
        """Check if database connection is healthy."""
        try:
            self.client.table("calls").select("id", count="exact").limit(0).execute()
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False


class CenterRepository:
    """Repository for center database operations."""

    def __init__(self, supabase_client: SupabaseClient):
        """Initialize repository with Supabase client."""
        self.client = supabase_client

    async def create_center(self, name: str, timezone: Optional[str]) -> Center:
        try:
            result = self.client.table("centers").insert({"name": name, "timezone": timezone}).execute()
            if not result.data:
                raise ValueError("Failed to create center")
            center = center_from_row(result.data[0])
            logger.info(f"Created center {center.id}")
            return center
        except APIError as e:
            logger.error(f"Database error creating center {name!r}: {e}")
            raise

    async def get_center(self, center_id: str) -> Optional[Center]:
        try:
            result = self.client.table("centers").select("*").eq("id", center_id).limit(1).execute()
            return center_from_row(result.data[0]) if result.data else None
        except APIError as e:
            if _is_malformed_id(e):
                return None
            logger.error(f"Database error retrieving center {center_id}: {e}")
            raise

    async def list_centers(self) -> List[Center]:
        try:
            result = self.client.table("centers").select("*").order("name").execute()
            return [center_from_row(row) for row in result.data]
        except APIError as e:
            logger.error(f"Database error listing centers: {e}")
            raise

    async def update_center(self, center_id: str, fields: Dict[str, Any]) -> Optional[Center]:
        try:
            result = self.client.table("centers").update(fields).eq("id", center_id).execute()
            return center_from_row(result.data[0]) if result.data else None
        except APIError as e:
            if _is_malformed_id(e):
                return None
            logger.error(f"Database error updating center {center_id}: {e}")
            raise

    async def delete_center(self, center_id: str) -> bool:
        try:
            result = self.client.table("centers").delete().eq("id", center_id).execute()
            success = len(result.data) > 0
            if success:
                logger.info(f"Deleted center {center_id}")
            else:
                logger.warning(f"Center {center_id} not found for deletion")
            return success
        except APIError as e:
            if _is_malformed_id(e):
                return False
            logger.error(f"Database error deleting center {center_id}: {e}")
            raise


class UserRepository:
    """Repository for end-user database operations."""

    USER_COLUMNS = "id, full_name, login_token, center_id, created_at, centers(timezone)"

    def __init__(self, supabase_client: SupabaseClient):
        """Initialize repository with Supabase client."""
        self.client = supabase_client

    async def create_user(self, full_name: str, center_id: Optional[str], login_token: str) -> User:
        try:
            result = self.client.table("users").insert({
                "full_name": full_name,
                "center_id": center_id,
                "login_token": login_token
            }).execute()
            if not result.data:
                raise ValueError("Failed to create user")
            user = user_from_row(result.data[0])
            logger.info(f"Created user {user.id} in center {center_id}")
            return user
        except APIError as e:
            logger.error(f"Database error creating user in center {center_id}: {e}")
            raise

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        try:
            result = (
                self.client.table("users")
                .select(self.USER_COLUMNS)
                .eq("id", user_id)
                .limit(1)
                .execute()
            )
            return user_from_row(result.data[0]) if result.data else None
        except APIError as e:
            if _is_malformed_id(e):
                return None
            logger.error(f"Database error retrieving user {user_id}: {e}")
            raise

    async def get_user_by_login_token(self, login_token: str) -> Optional[User]:
        """Retrieve the user owning a login token, with the center timezone joined."""
        try:
            result = (
                self.client.table("users")
                .select(self.USER_COLUMNS)
                .eq("login_token", login_token)
                .limit(1)
                .execute()
            )
            return user_from_row(result.data[0]) if result.data else None
        except APIError as e:
            logger.error(f"Database error retrieving user by token {mask_token(login_token)}: {e}")
            raise

    async def list_users(self, center_id: Optional[str] = None) -> List[User]:
        try:
            query = self.client.table("users").select(self.USER_COLUMNS)
            if center_id:
                query = query.eq("center_id", center_id)
            result = query.order("created_at", desc=True).execute()
            return [user_from_row(row) for row in result.data]
        except APIError as e:
            logger.error(f"Database error listing users: {e}")
            raise

    async def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]:
        try:
            result = self.client.table("users").update(fields).eq("id", user_id).execute()
            if not result.data:
                return None
            return await self.get_user_by_id(user_id)
        except APIError as e:
            if _is_malformed_id(e):
                return None
            logger.error(f"Database error updating user {user_id}: {e}")
            raise

    async def delete_user(self, user_id: str) -> bool:
        """Delete user by ID. Calls and transcripts cascade in the database."""
        try:
            result = self.client.table("users").delete().eq("id", user_id).execute()
            success = len(result.data) > 0
            if success:
                logger.info(f"Deleted user {user_id}")
            else:
                logger.warning(f"User {user_id} not found for deletion")
            return success
        except APIError as e:
            if _is_malformed_id(e):
                return False
            logger.error(f"Database error deleting user {user_id}: {e}")
            raise


class CallRepository:
    """Repository for call database operations."""

    def __init__(self, supabase_client: SupabaseClient):
        """Initialize repository with Supabase client."""
        self.client = supabase_client

    async def create_call(self, user_id: str, center_id: str, started_at: datetime) -> Call:
        """Insert a call row in status ``started``."""
        try:
            result = self.client.table("calls").insert({
                "user_id": user_id,
                "center_id": center_id,
                "started_at": isoformat(started_at),
                "status": CallStatus.STARTED
            }).execute()
            if not result.data:
                raise ValueError("Failed to create call")
            call = call_from_row(result.data[0])
            logger.info(f"Created call {call.id} for user {user_id}")
            return call
        except APIError as e:
            logger.error(f"Database error creating call for user {user_id}: {e}")
            raise

    async def get_call(self, call_id: str) -> Optional[Call]:
        try:
            result = self.client.table("calls").select("*").eq("id", call_id).limit(1).execute()
            return call_from_row(result.data[0]) if result.data else None
        except APIError as e:
            if _is_malformed_id(e):
                return None
            logger.error(f"Database error retrieving call {call_id}: {e}")
            raise

    async def get_call_by_conversation_id(self, conversation_id: str) -> Optional[Call]:
        try:
            result = (
                self.client.table("calls")
                .select("*")
                .eq("elevenlabs_conversation_id", conversation_id)
                .limit(1)
                .execute()
            )
            return call_from_row(result.data[0]) if result.data else None
        except APIError as e:
            logger.error(f"Database error retrieving call by conversation {conversation_id}: {e}")
            raise

    async def count_calls_since(self, user_id: str, statuses: Sequence[str], since: datetime) -> int:
        """Count a user's calls in ``statuses`` started at or after ``since``."""
        try:
            result = (
                self.client.table("calls")
                .select("id", count="exact")
                .eq("user_id", user_id)
                .in_("status", list(statuses))
                .gte("started_at", isoformat(since))
                .execute()
            )
            if result.count is not None:
                return result.count
            return len(result.data or [])
        except APIError as e:
            logger.error(f"Database error counting calls for user {user_id}: {e}")
            raise

    async def update_call(
        self,
        call_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None
    ) -> Optional[Call]:
        """
        Update a call, optionally only while it is still in ``expected_status``.

        Returns:
            The updated call, or None when no row matched
        """
        try:
            query = self.client.table("calls").update(fields).eq("id", call_id)
            if expected_status is not None:
                query = query.eq("status", expected_status)
            result = query.execute()
            return call_from_row(result.data[0]) if result.data else None
        except APIError as e:
            if _is_malformed_id(e):
                return None
            logger.error(f"Database error updating call {call_id}: {e}")
            raise

    async def set_conversation_id_if_unset(self, call_id: str, conversation_id: str) -> Optional[Call]:
        """
        Compare-and-set the conversation id: writes only while the column is NULL.

        Returns:
            The updated call, or None when the column was already set (or the call is unknown)
        """
        try:
            result = (
                self.client.table("calls")
                .update({"elevenlabs_conversation_id": conversation_id})
                .eq("id", call_id)
                .is_("elevenlabs_conversation_id", "null")
                .execute()
            )
            return call_from_row(result.data[0]) if result.data else None
        except APIError as e:
            if _is_malformed_id(e):
                return None
            logger.error(f"Database error attaching conversation {conversation_id} to call {call_id}: {e}")
            raise

    async def list_recent_calls(self, limit: int = 5) -> List[Call]:
        try:
            result = (
                self.client.table("calls")
                .select("*")
                .order("created_at", desc=True)
                .limit(limit)
                .execute()
            )
            return [call_from_row(row) for row in result.data]
        except APIError as e:
            logger.error(f"Database error listing recent calls: {e}")
            raise

    async def list_calls(
        self,
        user_id: Optional[str] = None,
        center_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100
    ) -> List[Call]:
        try:
            query = self.client.table("calls").select("*")
            if user_id:
                query = query.eq("user_id", user_id)
            if center_id:
                query = query.eq("center_id", center_id)
            if status:
                query = query.eq("status", status)
            result = query.order("started_at", desc=True).limit(limit).execute()
            return [call_from_row(row) for row in result.data]
        except APIError as e:
            logger.error(f"Database error listing calls: {e}")
            raise

    async def list_started_before(self, cutoff: datetime) -> List[Call]:
        """Calls still ``started`` whose start precedes ``cutoff``."""
        try:
            result = (
                self.client.table("calls")
                .select("*")
                .eq("status", CallStatus.STARTED)
                .lt("started_at", isoformat(cutoff))
                .execute()
            )
            return [call_from_row(row) for row in result.data]
        except APIError as e:
            logger.error(f"Database error listing stale calls: {e}")
            raise


class TranscriptRepository:
    """Repository for transcript database operations."""

    def __init__(self, supabase_client: SupabaseClient):
        """Initialize repository with Supabase client."""
        self.client = supabase_client

    async def upsert_transcript(self, transcript: Transcript) -> Transcript:
        """Insert or replace the transcript of a call (one per call)."""
        try:
            result = self.client.table("transcripts").upsert(
                {
                    "call_id": transcript.call_id,
                    "content": transcript.content,
                    "metadata": transcript.metadata
                },
                on_conflict="call_id"
            ).execute()
            if not result.data:
                raise ValueError("Failed to upsert transcript")
            logger.info(f"Upserted transcript for call {transcript.call_id}")
            return transcript_from_row(result.data[0])
        except APIError as e:
            logger.error(f"Database error upserting transcript for call {transcript.call_id}: {e}")
            raise

    async def get_transcript_by_call_id(self, call_id: str) -> Optional[Transcript]:
        try:
            result = self.client.table("transcripts").select("*").eq("call_id", call_id).limit(1).execute()
            return transcript_from_row(result.data[0]) if result.data else None
        except APIError as e:
            if _is_malformed_id(e):
                return None
            logger.error(f"Database error retrieving transcript for call {call_id}: {e}")
            raise


class PendingWebhookRepository:
    """Repository for webhooks parked after a correlation miss."""

    def __init__(self, supabase_client: SupabaseClient):
        """Initialize repository with Supabase client."""
        self.client = supabase_client

    async def park(self, pending: PendingWebhook) -> None:
        try:
            self.client.table("pending_webhooks").upsert(
                {
                    "conversation_id": pending.conversation_id,
                    "payload": pending.payload,
                    "received_at": isoformat(pending.received_at)
                },
                on_conflict="conversation_id"
            ).execute()
            logger.info(f"Parked webhook for conversation {pending.conversation_id}")
        except APIError as e:
            logger.error(f"Database error parking webhook for conversation {pending.conversation_id}: {e}")
            raise

    async def get(self, conversation_id: str) -> Optional[PendingWebhook]:
        try:
            result = (
                self.client.table("pending_webhooks")
                .select("*")
                .eq("conversation_id", conversation_id)
                .limit(1)
                .execute()
            )
            if not result.data:
                return None
            row = result.data[0]
            return PendingWebhook(
                conversation_id=row["conversation_id"],
                payload=row.get("payload") or {},
                received_at=parse_timestamp(row.get("received_at"))
            )
        except APIError as e:
            logger.error(f"Database error retrieving parked webhook {conversation_id}: {e}")
            raise

    async def delete(self, conversation_id: str) -> None:
        try:
            self.client.table("pending_webhooks").delete().eq("conversation_id", conversation_id).execute()
        except APIError as e:
            logger.error(f"Database error deleting parked webhook {conversation_id}: {e}")
            raise


class DatabaseManager:
    """High-level database manager that coordinates repositories."""

    def __init__(self):
        """Initialize database manager with client and repositories."""
        self.client = SupabaseClient()
        self.centers = CenterRepository(self.client)
        self.users = UserRepository(self.client)
        self.calls = CallRepository(self.client)
        self.transcripts = TranscriptRepository(self.client)
        self.pending_webhooks = PendingWebhookRepository(self.client)

    async def health_check(self) -> bool:
        """Check overall database health."""
        return await self.client.health_check()

    async def retry_operation(self, operation, max_retries: int = 3, base_delay: float = 0.5):
        """Retry database operations with exponential backoff."""
        last_exception = None

        for attempt in range(max_retries):
            try:
                return await operation()
            except Exception as e:
                last_exception = e
                if attempt < max_retries - 1:
                    delay = base_delay * (2 ** attempt)
                    logger.warning(f"Database operation failed (attempt {attempt + 1}/{max_retries}), retrying in {delay}s: {e}")
                    await asyncio.sleep(delay)
                else:
                    logger.error(f"Database operation failed after {max_retries} attempts: {e}")

        raise last_exception
