"""
Login token validation and daily quota computation.

A login token is an end-user's only credential. Every negative outcome of
validation (empty, malformed, unknown, storage failure) collapses to the same
``{"valid": false}`` answer so the endpoint is no oracle for token guessing.
"""

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from callservice.config import settings
from callservice.models.internal_models import CallStatus, User
from callservice.utils.time_utils import mask_token, resolve_timezone, start_of_local_day, utc_now

logger = logging.getLogger(__name__)

# token_urlsafe alphabet; anything else cannot be one of ours
_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_\-]{8,256}$")


@dataclass
class TokenValidation:
    """Result of validating a login token."""

    valid: bool
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    can_start: bool = False
    calls_today: int = 0

    def to_response(self) -> Dict[str, Any]:
        if not self.valid:
            return {"valid": False}
        return {
            "valid": True,
            "canStart": self.can_start,
            "callsToday": self.calls_today,
            "userName": self.user_name,
            "userId": self.user_id,
        }


INVALID = TokenValidation(valid=False)


def is_well_formed_token(token: Optional[str]) -> bool:
    return bool(token) and _TOKEN_PATTERN.match(token) is not None


def generate_login_token() -> str:
    """New opaque login token (32 random bytes, 43 url-safe characters)."""
    return secrets.token_urlsafe(32)


class TokenValidator:
    """Maps login tokens to users and computes their daily call usage."""

    def __init__(
        self,
        db,
        clock: Callable[[], datetime] = utc_now,
        default_timezone: Optional[str] = None,
        daily_limit: Optional[int] = None
    ):
        """
        Args:
            db: Database manager exposing ``users`` and ``calls`` repositories
            clock: Source of the current aware UTC time
            default_timezone: Zone used when a center has none
            daily_limit: Calls allowed per local day
        """
        self.db = db
        self.clock = clock
        self.default_timezone = default_timezone or settings.default_timezone
        self.daily_limit = daily_limit or settings.daily_call_limit

    async def resolve_user(self, token: Optional[str]) -> Optional[User]:
        """
        Look up the user owning ``token``.

        Returns:
            The user, or None for malformed and unknown tokens

        Raises:
            Exception: Storage errors propagate to the caller
        """
        if not is_well_formed_token(token):
            return None
        return await self.db.users.get_user_by_login_token(token)

    def start_of_today(self, user: User, now: Optional[datetime] = None) -> datetime:
        """UTC instant at which the user's current local day began."""
        zone = resolve_timezone(user.center_timezone, self.default_timezone)
        return start_of_local_day(now or self.clock(), zone)

    async def count_calls_today(self, user: User, now: Optional[datetime] = None) -> int:
        """Calls in ``started`` or ``completed`` since the user's local midnight."""
        since = self.start_of_today(user, now)
        return await self.db.calls.count_calls_since(user.id, CallStatus.QUOTA, since)

    async def validate(self, token: Optional[str]) -> TokenValidation:
        """
        Validate a login token and compute the caller's quota.

        Never raises; every failure is reported as an invalid token.

        Args:
            token: Opaque login token from the user's link

        Returns:
            TokenValidation
        """
        try:
            user = await self.resolve_user(token)
            if user is None:
                logger.info(f"Token validation failed for {mask_token(token)}")
                return INVALID

            calls_today = await self.count_calls_today(user)
        except Exception as e:
            logger.error(f"Token validation error for {mask_token(token)}: {e}")
            return INVALID

        can_start = calls_today < self.daily_limit
        logger.info(f"Validated token for user {user.id}: calls_today={calls_today}, can_start={can_start}")

        return TokenValidation(
            valid=True,
            user_id=user.id,
            user_name=user.full_name,
            can_start=can_start,
            calls_today=calls_today
        )
