"""
Group Order Registry

Process-wide entry point to group ordering: creates sessions, looks them up
by id or invite code, and retires them when their TTL elapses.

The registry's own tables (sessions by id, ids by invite code) are only
touched in synchronous code between awaits, so on a single event loop they
need no lock of their own, and creating or resolving one session never waits
on another session's lock.
"""

import asyncio
import logging
import re
from datetime import datetime, timedelta
from typing import Optional

from group_ordering.core.config import Settings, get_settings
from group_ordering.core.exceptions import InvalidRequest, NotFound
from group_ordering.services.group_order.invite_codes import InviteCodeAuthority
from group_ordering.services.group_order.session import (
    Clock,
    GroupOrderSession,
    GroupOrderSettings,
    utc_now,
)
from group_ordering.services.group_order.store import GroupOrderStore

logger = logging.getLogger(__name__)

REFERENCE_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class GroupOrderRegistry:
    """
    Creates, resolves and expires group order sessions.

    Attributes:
        settings: Application settings (TTL bounds, capacity cap, sweep policy)
        store: Optional snapshot persistence; None keeps everything in memory
        codes: Invite code generator / format checker
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[GroupOrderStore] = None,
        clock: Clock = utc_now,
        codes: Optional[InviteCodeAuthority] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.codes = codes or InviteCodeAuthority(
            length=self.settings.invite_code_length,
            max_attempts=self.settings.invite_code_max_attempts,
        )
        self._clock = clock
        self._sessions: dict[str, GroupOrderSession] = {}
        self._code_index: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    @property
    def active_count(self) -> int:
        return sum(1 for session in self._sessions.values() if not session.is_terminal)

    # =========================================================================
    # CREATION
    # =========================================================================

    def _validate_create(
        self,
        restaurant_id,
        table_id,
        ttl_minutes,
        settings: GroupOrderSettings,
    ) -> None:
        for field, value in (("restaurantId", restaurant_id), ("tableId", table_id)):
            if not isinstance(value, str) or not REFERENCE_PATTERN.match(value):
                raise InvalidRequest(f"{field} is not a valid identifier")

        if isinstance(ttl_minutes, bool) or not isinstance(ttl_minutes, int) or ttl_minutes <= 0:
            raise InvalidRequest("expirationMinutes must be a positive integer")
        if ttl_minutes > self.settings.max_expiration_minutes:
            raise InvalidRequest(
                f"expirationMinutes cannot exceed {self.settings.max_expiration_minutes}"
            )

        max_participants = settings.max_participants
        if (
            isinstance(max_participants, bool)
            or not isinstance(max_participants, int)
            or not 1 <= max_participants <= self.settings.max_participants_cap
        ):
            raise InvalidRequest(
                f"maxParticipants must be between 1 and {self.settings.max_participants_cap}"
            )

    def _code_in_use(self, code: str) -> bool:
        session_id = self._code_index.get(code)
        if session_id is None:
            return False
        session = self._sessions.get(session_id)
        if session is None or not session.can_resolve(self._clock()):
            # Stale entry: the code's session can no longer be reached by it
            del self._code_index[code]
            return False
        return True

    async def create(
        self,
        restaurant_id: str,
        table_id: str,
        ttl_minutes: Optional[int] = None,
        settings: Optional[GroupOrderSettings] = None,
    ) -> GroupOrderSession:
        """
        Create a session, open it, and give it an invite code.

        Raises:
            InvalidRequest: Malformed ids, TTL or capacity
            CodeGenerationFailed: No free invite code within the retry budget
        """
        if ttl_minutes is None:
            ttl_minutes = self.settings.default_expiration_minutes
        settings = settings or GroupOrderSettings(
            max_participants=self.settings.default_max_participants
        )
        self._validate_create(restaurant_id, table_id, ttl_minutes, settings)

        # Code allocation and index insert happen without suspending
        code = self.codes.generate(is_taken=self._code_in_use)
        now = self._clock()
        session = GroupOrderSession(
            restaurant_id=restaurant_id,
            table_id=table_id,
            invite_code=code,
            expires_at=now + timedelta(minutes=ttl_minutes),
            settings=settings,
            clock=self._clock,
            on_commit=self.store.save if self.store else None,
            warning_threshold=self.settings.spending_warning_threshold,
        )
        session.open()
        self._sessions[session.id] = session
        self._code_index[code] = session.id

        logger.info(
            f"Group order {session.id} created for restaurant {restaurant_id}, "
            f"table {table_id} (code={code}, ttl={ttl_minutes}m, "
            f"max={settings.max_participants})"
        )

        if self.store:
            await self.store.save(session.snapshot())
        return session

    # =========================================================================
    # LOOKUP
    # =========================================================================

    async def get(self, group_order_id: str) -> GroupOrderSession:
        """
        Look a session up by id, applying a due expiry first.

        Raises:
            NotFound: Unknown or purged id
        """
        session = self._sessions.get(group_order_id)
        if session is None:
            raise NotFound(f"Group order {group_order_id} not found")
        if await session.refresh():
            self._code_index.pop(session.invite_code, None)
        return session

    def resolve_invite_code(self, code) -> GroupOrderSession:
        """
        Find the joinable session behind an invite code.

        Expired, cancelled and finalized sessions never resolve, even though
        their code may still be in the index until the next sweep.

        Raises:
            NotFound: Malformed, unknown, or no longer joinable code
        """
        if not self.codes.validate(code):
            raise NotFound("Invalid invite code")

        normalized = self.codes.normalize(code)
        if not self._code_in_use(normalized):
            raise NotFound("Invite code not found or group order no longer open")
        return self._sessions[self._code_index[normalized]]

    def validate_join_code(self, code) -> tuple[bool, Optional[GroupOrderSession]]:
        try:
            return True, self.resolve_invite_code(code)
        except NotFound:
            return False, None

    # =========================================================================
    # EXPIRY
    # =========================================================================

    def _purge_due(self, session: GroupOrderSession, now: datetime) -> bool:
        if not session.is_terminal or session.checkout_in_progress:
            return False
        retention = timedelta(minutes=self.settings.terminal_retention_minutes)
        return session.closed_at is not None and now - session.closed_at >= retention

    async def sweep_expired(self) -> int:
        """
        Expire every session past its TTL; purge long-closed ones from memory.

        Idempotent. Purged sessions remain in the store.

        Returns:
            int: Number of sessions this sweep moved to expired
        """
        expired = 0
        for session in list(self._sessions.values()):
            if await session.refresh():
                expired += 1

        now = self._clock()
        for code, session_id in list(self._code_index.items()):
            session = self._sessions.get(session_id)
            if session is None or not session.can_resolve(now):
                del self._code_index[code]

        purged = [s.id for s in list(self._sessions.values()) if self._purge_due(s, now)]
        for session_id in purged:
            del self._sessions[session_id]

        if expired or purged:
            logger.info(f"Sweep: {expired} expired, {len(purged)} purged, {self.active_count} active")
        return expired

    async def run_sweeper(self, interval_seconds: Optional[float] = None) -> None:
        """Sweep forever; meant to run as a background task."""
        interval = interval_seconds or self.settings.sweep_interval_seconds
        logger.info(f"Expiry sweeper started (every {interval}s)")
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_expired()
            except Exception as e:
                logger.exception(f"Expiry sweep failed: {e}")
