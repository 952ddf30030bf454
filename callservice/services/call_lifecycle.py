"""
Call lifecycle management.

A call is created ``started`` and moves exactly once to ``completed`` or
``failed``. Every terminal write is a conditional update on
``status = 'started'``, so concurrent writers (client "end", provider webhook,
stale sweep) cannot move a call out of a terminal state.
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from callservice.config import settings
from callservice.models.internal_models import Call, CallStatus
from callservice.observability import record_call_metrics
from callservice.services.errors import (
    AlreadyEnded,
    CallServiceError,
    CenterUnassigned,
    ConversationConflict,
    InvalidToken,
    NotFound,
    QuotaExceeded,
    UpstreamFailure,
)
from callservice.services.token_validator import TokenValidator
from callservice.utils.time_utils import isoformat, mask_token, utc_now

logger = logging.getLogger(__name__)


@dataclass
class CallStartResult:
    call_id: str
    user_id: str
    user_name: str
    calls_today: int


@dataclass
class CallEndResult:
    call_id: str
    duration_seconds: int
    ended_at: datetime


class CallLifecycleManager:
    """
    Creates, ends and fails call records.

    Quota check and insert for one user run under a per-user lock, closing the
    read-then-write window for concurrent starts within this process.
    """

    def __init__(
        self,
        db,
        validator: TokenValidator,
        correlator=None,
        clock: Callable[[], datetime] = utc_now,
        daily_limit: Optional[int] = None
    ):
        """
        Args:
            db: Database manager exposing ``calls`` and ``users`` repositories
            validator: Token validator used to re-resolve the caller and quota
            correlator: Conversation correlator for best-effort id capture on end
            clock: Source of the current aware UTC time
            daily_limit: Calls allowed per local day
        """
        self.db = db
        self.validator = validator
        self.correlator = correlator
        self.clock = clock
        self.daily_limit = daily_limit or settings.daily_call_limit
        self._user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    async def start(self, login_token: str) -> CallStartResult:
        """
        Start a call for the owner of ``login_token``.

        Raises:
            InvalidToken: Token does not resolve to a user
            CenterUnassigned: User has no center
            QuotaExceeded: Daily limit already reached
            UpstreamFailure: Storage failed
        """
        try:
            user = await self.validator.resolve_user(login_token)
            if user is None:
                logger.info(f"Call start rejected for unknown token {mask_token(login_token)}")
                raise InvalidToken("Could not start call")

            if not user.center_id:
                logger.warning(f"Call start rejected: user {user.id} has no center")
                raise CenterUnassigned("User is not assigned to a center")

            lock = self._lock_for(user.id)
            async with lock:
                calls_today = await self.validator.count_calls_today(user)
                if calls_today >= self.daily_limit:
                    logger.info(f"Daily limit reached for user {user.id}: {calls_today}/{self.daily_limit}")
                    raise QuotaExceeded(
                        f"Daily limit of {self.daily_limit} calls reached",
                        calls_today=calls_today
                    )

                call = await self.db.calls.create_call(user.id, user.center_id, self.clock())

        except CallServiceError:
            raise
        except Exception as e:
            logger.error(f"Storage failure starting call for token {mask_token(login_token)}: {e}")
            raise UpstreamFailure("Could not start call")

        record_call_metrics("started")
        logger.info(f"Call {call.id} started for user {user.id}")

        return CallStartResult(
            call_id=call.id,
            user_id=user.id,
            user_name=user.full_name,
            calls_today=calls_today + 1
        )

    async def _get_active_call(self, call_id: str) -> Call:
        call = await self.db.calls.get_call(call_id)
        if call is None:
            raise NotFound(f"Call {call_id} not found")
        if call.is_terminal:
            raise AlreadyEnded(f"Call {call_id} already {call.status}", status=call.status)
        return call

    async def end(self, call_id: str, conversation_id: Optional[str] = None) -> CallEndResult:
        """
        Mark a started call completed and record its clock-based duration.

        A second end on the same call raises AlreadyEnded and changes nothing.

        Args:
            call_id: Call to end
            conversation_id: Provider conversation id, attached if not yet set

        Raises:
            NotFound: Unknown call
            AlreadyEnded: Call already terminal
            UpstreamFailure: Storage failed
        """
        try:
            call = await self._get_active_call(call_id)

            ended_at = self.clock()
            duration_seconds = max(0, int((ended_at - call.started_at).total_seconds()))

            updated = await self.db.calls.update_call(
                call_id,
                {
                    "status": CallStatus.COMPLETED,
                    "ended_at": isoformat(ended_at),
                    "duration_seconds": duration_seconds
                },
                expected_status=CallStatus.STARTED
            )
            if updated is None:
                # Another writer reached a terminal state first
                raise AlreadyEnded(f"Call {call_id} already ended")

        except CallServiceError:
            raise
        except Exception as e:
            logger.error(f"Storage failure ending call {call_id}: {e}")
            raise UpstreamFailure("Could not end call")

        if conversation_id and self.correlator is not None:
            try:
                await self.correlator.attach(call_id, conversation_id)
            except ConversationConflict as e:
                logger.warning(f"Conversation id supplied on end of call {call_id} conflicts: {e}")
            except Exception as e:
                logger.warning(f"Failed to attach conversation {conversation_id} on end of call {call_id}: {e}")

        record_call_metrics("completed", duration_seconds=duration_seconds)
        logger.info(f"Call {call_id} completed, duration {duration_seconds}s")

        return CallEndResult(call_id=call_id, duration_seconds=duration_seconds, ended_at=ended_at)

    async def mark_failed(self, call_id: str) -> Call:
        """
        Mark a started call failed (provider setup failed after creation).

        Raises:
            NotFound: Unknown call
            AlreadyEnded: Call already terminal
            UpstreamFailure: Storage failed
        """
        try:
            await self._get_active_call(call_id)

            updated = await self.db.calls.update_call(
                call_id,
                {"status": CallStatus.FAILED, "ended_at": isoformat(self.clock())},
                expected_status=CallStatus.STARTED
            )
            if updated is None:
                raise AlreadyEnded(f"Call {call_id} already ended")

        except CallServiceError:
            raise
        except Exception as e:
            logger.error(f"Storage failure marking call {call_id} failed: {e}")
            raise UpstreamFailure("Could not update call")

        record_call_metrics("failed")
        logger.info(f"Call {call_id} marked failed")
        return updated

    async def reconcile_stale(self, older_than_minutes: Optional[int] = None) -> List[str]:
        """
        Fail calls left ``started`` longer than the threshold.

        Covers sessions where neither "end" nor the webhook ever arrived.

        Returns:
            Ids of the calls moved to ``failed``
        """
        minutes = older_than_minutes or settings.stale_call_minutes
        now = self.clock()
        cutoff = now - timedelta(minutes=minutes)

        try:
            stale = await self.db.calls.list_started_before(cutoff)
        except Exception as e:
            logger.error(f"Storage failure listing stale calls: {e}")
            raise UpstreamFailure("Could not list stale calls")

        swept = []
        for call in stale:
            try:
                updated = await self.db.calls.update_call(
                    call.id,
                    {"status": CallStatus.FAILED, "ended_at": isoformat(now)},
                    expected_status=CallStatus.STARTED
                )
            except Exception as e:
                logger.warning(f"Failed to sweep stale call {call.id}: {e}")
                continue
            if updated is not None:
                swept.append(call.id)
                record_call_metrics("failed")

        logger.info(f"Stale call sweep moved {len(swept)} of {len(stale)} calls older than {minutes} minutes to failed")
        return swept
