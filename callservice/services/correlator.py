"""
Binding of provider conversation ids to calls.

The id is set once per call with a compare-and-set on a null column. Setting
the same id again is a no-op; setting a different one is a conflict.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from postgrest.exceptions import APIError

from callservice.services.errors import CallServiceError, ConversationConflict, InvalidInput, NotFound, UpstreamFailure

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


@dataclass
class AttachResult:
    call_id: str
    conversation_id: str
    already_attached: bool = False
    replayed_webhook: bool = False


class ConversationCorrelator:
    """Attaches conversation ids to calls and replays webhooks that arrived first."""

    def __init__(self, db, ingest=None):
        """
        Args:
            db: Database manager exposing ``calls``
            ingest: Webhook ingest service used to replay parked webhooks
        """
        self.db = db
        self.ingest = ingest

    async def attach(self, call_id: str, conversation_id: str) -> AttachResult:
        """
        Bind ``conversation_id`` to ``call_id``.

        Raises:
            InvalidInput: Empty conversation id
            NotFound: Unknown call
            ConversationConflict: Call holds another id, or the id belongs to another call
            UpstreamFailure: Storage failed
        """
        conversation_id = (conversation_id or "").strip()
        if not conversation_id:
            raise InvalidInput("conversationId is required")

        try:
            already = await self._bind(call_id, conversation_id)
        except CallServiceError:
            raise
        except Exception as e:
            logger.error(f"Storage failure attaching conversation {conversation_id} to call {call_id}: {e}")
            raise UpstreamFailure("Could not update call")

        replayed = False
        if self.ingest is not None:
            try:
                replayed = await self.ingest.replay_pending(conversation_id)
            except Exception as e:
                logger.warning(f"Replay of parked webhook for conversation {conversation_id} failed: {e}")

        return AttachResult(
            call_id=call_id,
            conversation_id=conversation_id,
            already_attached=already,
            replayed_webhook=replayed
        )

    async def _bind(self, call_id: str, conversation_id: str) -> bool:
        call = await self.db.calls.get_call(call_id)
        if call is None:
            raise NotFound(f"Call {call_id} not found")

        if call.elevenlabs_conversation_id == conversation_id:
            return True
        if call.elevenlabs_conversation_id:
            self._conflict(call_id, conversation_id, call.elevenlabs_conversation_id)

        owner = await self.db.calls.get_call_by_conversation_id(conversation_id)
        if owner is not None and owner.id != call_id:
            logger.error(f"Conversation {conversation_id} already bound to call {owner.id}, refusing call {call_id}")
            raise ConversationConflict(f"Conversation {conversation_id} belongs to another call")

        try:
            updated = await self.db.calls.set_conversation_id_if_unset(call_id, conversation_id)
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise ConversationConflict(f"Conversation {conversation_id} belongs to another call")
            raise

        if updated is not None:
            logger.info(f"Attached conversation {conversation_id} to call {call_id}")
            return False

        # Lost the compare-and-set; see what the winner wrote
        current = await self.db.calls.get_call(call_id)
        current_id: Optional[str] = current.elevenlabs_conversation_id if current else None
        if current_id == conversation_id:
            return True
        self._conflict(call_id, conversation_id, current_id)

    @staticmethod
    def _conflict(call_id: str, requested: str, existing: Optional[str]):
        logger.error(f"Call {call_id} already bound to conversation {existing}, refusing {requested}")
        raise ConversationConflict(f"Call {call_id} already has a different conversation id")
