"""
State Token Manager

Issues and validates the single-use `state` values that tie an EHR launch to
its OAuth callback. Validation is an atomic take: the first take marks the
entry consumed in the same step that reads it, so two concurrent callbacks
presenting the same state value can never both succeed.

Consumed and expired entries are kept as tombstones until `retention_seconds`
past their expiry, so a late callback is reported as expired whether or not
the state was already used.

Backends:
- InMemoryStateBackend: single-instance deployments (asyncio.Lock + OrderedDict)
- RedisStateBackend: multi-instance deployments (SET NX consumed marker)
"""

import asyncio
import base64
import hashlib
import json
import secrets
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import redis.asyncio as redis

from smart_launch.core.logging import fingerprint, get_logger
from smart_launch.smart.models import LaunchContext, StateStatus, StateToken, StateValidation

logger = get_logger(__name__)

# 32 random bytes -> 256 bits of entropy
STATE_TOKEN_BYTES = 32
PKCE_VERIFIER_BYTES = 64


def pkce_challenge(code_verifier: str) -> str:
    """S256 code challenge for a PKCE verifier (RFC 7636)"""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


@dataclass(frozen=True)
class StoredState:
    """A state token as the backend held it before a take"""

    token: StateToken
    consumed: bool = False


class StateBackend(Protocol):
    async def put(self, token: StateToken) -> None: ...

    async def take(self, value: str) -> Optional[StoredState]: ...

    async def purge_expired(self, now: float) -> int: ...

    async def count(self) -> int: ...

    async def close(self) -> None: ...


# ==============================================================================
# In-memory backend
# ==============================================================================


class InMemoryStateBackend:
    """
    State tokens held in process memory.

    All access goes through one asyncio.Lock. Capacity is bounded: when full,
    entries past retention are dropped first, then tombstones (consumed or
    expired) oldest first, and only then the oldest pending token is evicted.
    """

    def __init__(
        self,
        max_pending: int = 10000,
        retention_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.max_pending = max_pending
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, StoredState]" = OrderedDict()
        self._lock = asyncio.Lock()

    async def put(self, token: StateToken) -> None:
        async with self._lock:
            if len(self._entries) >= self.max_pending:
                self._make_room_locked(self._clock())
            self._entries[token.value] = StoredState(token)

    def _make_room_locked(self, now: float) -> None:
        self._purge_locked(now)
        tombstones = [
            value for value, entry in self._entries.items() if entry.consumed or entry.token.is_expired(now)
        ]
        for value in tombstones:
            if len(self._entries) < self.max_pending:
                return
            del self._entries[value]
        while len(self._entries) >= self.max_pending:
            evicted_value, evicted = self._entries.popitem(last=False)
            logger.warning(
                "state_token_evicted",
                state_fp=fingerprint(evicted_value),
                iss=evicted.token.launch_context.iss,
                capacity=self.max_pending,
            )

    async def take(self, value: str) -> Optional[StoredState]:
        async with self._lock:
            entry = self._entries.get(value)
            if entry is not None and not entry.consumed:
                self._entries[value] = StoredState(entry.token, consumed=True)
            return entry

    async def purge_expired(self, now: float) -> int:
        async with self._lock:
            return self._purge_locked(now)

    def _purge_locked(self, now: float) -> int:
        cutoff = now - self.retention_seconds
        stale = [value for value, entry in self._entries.items() if entry.token.expires_at <= cutoff]
        for value in stale:
            del self._entries[value]
        return len(stale)

    async def count(self) -> int:
        """Pending tokens: neither consumed nor expired"""
        now = self._clock()
        async with self._lock:
            return sum(
                1 for entry in self._entries.values() if not entry.consumed and not entry.token.is_expired(now)
            )

    async def close(self) -> None:
        async with self._lock:
            self._entries.clear()


# ==============================================================================
# Redis backend
# ==============================================================================


class RedisStateBackend:
    """
    State tokens shared through Redis.

    Keys outlive the token's expiry by `retention_seconds` so that a late
    callback is reported as expired rather than unknown. The take reads the
    token and then claims it with SET NX on a separate consumed-marker key;
    exactly one instance of the service wins that SET.
    """

    KEY_PREFIX = "smart_launch:state:"
    CONSUMED_PREFIX = "smart_launch:state-consumed:"

    def __init__(
        self,
        client: "redis.Redis",
        retention_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.retention_seconds = retention_seconds
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisStateBackend":
        client = redis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, **kwargs)

    def _key(self, value: str) -> str:
        return f"{self.KEY_PREFIX}{value}"

    def _consumed_key(self, value: str) -> str:
        return f"{self.CONSUMED_PREFIX}{value}"

    def _ttl_ms(self, token: StateToken) -> int:
        return max(1, int((token.expires_at - self._clock() + self.retention_seconds) * 1000))

    async def put(self, token: StateToken) -> None:
        await self.client.set(self._key(token.value), json.dumps(token.to_dict()), px=self._ttl_ms(token))

    async def take(self, value: str) -> Optional[StoredState]:
        raw = await self.client.get(self._key(value))
        if raw is None:
            return None
        token = StateToken.from_dict(json.loads(raw))
        claimed = await self.client.set(self._consumed_key(value), "1", nx=True, px=self._ttl_ms(token))
        return StoredState(token, consumed=not claimed)

    async def purge_expired(self, now: float) -> int:
        # Redis expires keys on its own
        return 0

    async def count(self) -> int:
        """Retained token keys, including tombstones"""
        count = 0
        async for _ in self.client.scan_iter(match=f"{self.KEY_PREFIX}*"):
            count += 1
        return count

    async def close(self) -> None:
        await self.client.close()


# ==============================================================================
# Manager
# ==============================================================================


class StateTokenManager:
    """
    Issue and consume state tokens.

    Usage:
        manager = StateTokenManager(InMemoryStateBackend(), ttl_seconds=600)
        token = await manager.issue(LaunchContext(iss, launch))
        ...
        result = await manager.validate_and_consume(state_from_callback)
        if result.is_valid:
            launch_context = result.launch_context
    """

    def __init__(
        self,
        backend: Optional[StateBackend] = None,
        ttl_seconds: int = 600,
        use_pkce: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend or InMemoryStateBackend(clock=clock)
        self.ttl_seconds = ttl_seconds
        self.use_pkce = use_pkce
        self._clock = clock

    async def issue(self, launch_context: LaunchContext) -> StateToken:
        now = self._clock()
        token = StateToken(
            value=secrets.token_urlsafe(STATE_TOKEN_BYTES),
            launch_context=launch_context,
            created_at=now,
            expires_at=now + self.ttl_seconds,
            code_verifier=secrets.token_urlsafe(PKCE_VERIFIER_BYTES) if self.use_pkce else None,
        )
        await self.backend.put(token)
        logger.debug("state_token_issued", state_fp=fingerprint(token.value), iss=launch_context.iss)
        return token

    async def validate_and_consume(self, value: Optional[str]) -> StateValidation:
        """
        Atomically look up and invalidate a state value.

        Returns VALID (with the token) exactly once per issued token. Tokens
        past their expiry return EXPIRED however often they were presented
        before; never-issued values and tokens consumed within their window
        return UNKNOWN.
        """
        if not value:
            return StateValidation(StateStatus.UNKNOWN)

        entry = await self.backend.take(value)
        if entry is None:
            logger.info("state_token_unknown", state_fp=fingerprint(value))
            return StateValidation(StateStatus.UNKNOWN)

        token = entry.token
        if token.is_expired(self._clock()):
            logger.info("state_token_expired", state_fp=fingerprint(value), iss=token.launch_context.iss)
            return StateValidation(StateStatus.EXPIRED)

        if entry.consumed:
            logger.warning("state_token_replayed", state_fp=fingerprint(value), iss=token.launch_context.iss)
            return StateValidation(StateStatus.UNKNOWN)

        logger.debug("state_token_consumed", state_fp=fingerprint(value), iss=token.launch_context.iss)
        return StateValidation(StateStatus.VALID, token)

    async def purge_expired(self) -> int:
        purged = await self.backend.purge_expired(self._clock())
        if purged:
            logger.info("state_tokens_purged", count=purged)
        return purged

    async def pending_count(self) -> int:
        return await self.backend.count()

    async def close(self) -> None:
        await self.backend.close()


__all__ = [
    "StateBackend",
    "StoredState",
    "InMemoryStateBackend",
    "RedisStateBackend",
    "StateTokenManager",
    "pkce_challenge",
]
