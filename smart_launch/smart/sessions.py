"""
Session/Token Store

Holds the TokenResponse established by a launch, keyed by an opaque session
id carried in the browser's session cookie. A session owns its token
exclusively; refreshing replaces the token and logging out or expiry
destroys both.
"""

import asyncio
import secrets
import time
from collections import OrderedDict
from typing import Callable, Optional

from smart_launch.core.logging import get_logger
from smart_launch.smart.models import SMARTSession, TokenResponse

logger = get_logger(__name__)

SESSION_ID_BYTES = 32


class SessionStore:
    """In-memory browser session store with absolute expiry and bounded size"""

    def __init__(
        self,
        ttl_seconds: int = 8 * 60 * 60,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._sessions: "OrderedDict[str, SMARTSession]" = OrderedDict()
        self._lock = asyncio.Lock()

    def _is_expired(self, session: SMARTSession, now: float) -> bool:
        return now >= session.created_at + self.ttl_seconds

    async def create(
        self,
        iss: str,
        token: TokenResponse,
        token_endpoint: str,
        state_value: Optional[str] = None,
        user: Optional[str] = None,
    ) -> SMARTSession:
        now = self._clock()
        session = SMARTSession(
            session_id=secrets.token_urlsafe(SESSION_ID_BYTES),
            iss=iss,
            token=token,
            token_endpoint=token_endpoint,
            state_history=[state_value] if state_value else [],
            user=user,
            created_at=now,
            last_used_at=now,
        )

        async with self._lock:
            while len(self._sessions) >= self.max_entries:
                self._sessions.popitem(last=False)
                logger.warning("smart_session_evicted", capacity=self.max_entries)
            self._sessions[session.session_id] = session

        return session

    async def get(self, session_id: Optional[str]) -> Optional[SMARTSession]:
        if not session_id:
            return None

        now = self._clock()
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if self._is_expired(session, now):
                del self._sessions[session_id]
                logger.info("smart_session_expired", iss=session.iss)
                return None
            session.last_used_at = now
            return session

    async def replace_token(self, session_id: str, token: TokenResponse) -> Optional[SMARTSession]:
        """Supersede the session's token (after a refresh)"""
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            session.token = token
            session.last_used_at = self._clock()
            return session

    async def delete(self, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        async with self._lock:
            return self._sessions.pop(session_id, None) is not None

    async def cleanup_expired(self) -> int:
        """Remove expired sessions"""
        now = self._clock()
        async with self._lock:
            expired = [sid for sid, s in self._sessions.items() if self._is_expired(s, now)]
            for session_id in expired:
                del self._sessions[session_id]

        if expired:
            logger.info("smart_sessions_cleaned_up", count=len(expired))
        return len(expired)

    async def clear(self) -> None:
        async with self._lock:
            self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)
