"""
Unit tests for the State Token Manager

Covers issuance, single-use consumption, expiry, concurrent validation,
capacity eviction and the Redis backend.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from smart_launch.smart.models import LaunchContext, StateStatus
from smart_launch.smart.state_tokens import (
    InMemoryStateBackend,
    RedisStateBackend,
    StateTokenManager,
    pkce_challenge,
)

CONTEXT = LaunchContext(iss="https://ehr.example/fhir", launch="abc123")


@pytest.fixture
def manager(clock):
    return StateTokenManager(InMemoryStateBackend(clock=clock), ttl_seconds=600, clock=clock)


class TestIssue:
    """Tests for StateTokenManager.issue."""

    @pytest.mark.asyncio
    async def test_issue_records_window_and_context(self, manager, clock):
        token = await manager.issue(CONTEXT)

        assert token.launch_context == CONTEXT
        assert token.created_at == clock.now
        assert token.expires_at == clock.now + 600
        assert await manager.pending_count() == 1

    @pytest.mark.asyncio
    async def test_values_are_long_and_unique(self, manager):
        values = {(await manager.issue(CONTEXT)).value for _ in range(50)}

        assert len(values) == 50
        # token_urlsafe(32) -> 43 characters, 256 bits
        assert all(len(v) >= 43 for v in values)

    @pytest.mark.asyncio
    async def test_pkce_verifier_generated(self, manager):
        token = await manager.issue(CONTEXT)
        assert token.code_verifier
        assert pkce_challenge(token.code_verifier) != token.code_verifier

    @pytest.mark.asyncio
    async def test_pkce_disabled(self, clock):
        manager = StateTokenManager(InMemoryStateBackend(clock=clock), use_pkce=False, clock=clock)
        token = await manager.issue(CONTEXT)
        assert token.code_verifier is None

    def test_token_repr_hides_value(self):
        manager = StateTokenManager()
        token = asyncio.run(manager.issue(CONTEXT))
        assert token.value not in repr(token)
        assert token.code_verifier not in repr(token)


class TestValidateAndConsume:
    """Tests for StateTokenManager.validate_and_consume."""

    @pytest.mark.asyncio
    async def test_valid_then_unknown(self, manager):
        token = await manager.issue(CONTEXT)

        first = await manager.validate_and_consume(token.value)
        second = await manager.validate_and_consume(token.value)

        assert first.status is StateStatus.VALID
        assert first.launch_context == CONTEXT
        assert second.status is StateStatus.UNKNOWN
        assert second.token is None

    @pytest.mark.asyncio
    async def test_never_issued_is_unknown(self, manager):
        result = await manager.validate_and_consume("not-a-real-state")
        assert result.status is StateStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_empty_value_is_unknown(self, manager):
        assert (await manager.validate_and_consume("")).status is StateStatus.UNKNOWN
        assert (await manager.validate_and_consume(None)).status is StateStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_expired_is_never_valid(self, manager, clock):
        token = await manager.issue(CONTEXT)
        clock.advance(601)

        result = await manager.validate_and_consume(token.value)

        assert result.status is StateStatus.EXPIRED
        assert result.token is None

    @pytest.mark.asyncio
    async def test_expiry_boundary(self, manager, clock):
        token = await manager.issue(CONTEXT)
        clock.advance(600)

        assert (await manager.validate_and_consume(token.value)).status is StateStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_just_before_expiry_is_valid(self, manager, clock):
        token = await manager.issue(CONTEXT)
        clock.advance(599)

        assert (await manager.validate_and_consume(token.value)).status is StateStatus.VALID

    @pytest.mark.asyncio
    async def test_consumed_then_expired_is_expired(self, manager, clock):
        token = await manager.issue(CONTEXT)
        assert (await manager.validate_and_consume(token.value)).status is StateStatus.VALID

        clock.advance(601)

        assert (await manager.validate_and_consume(token.value)).status is StateStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_expired_presented_twice_is_expired_twice(self, manager, clock):
        token = await manager.issue(CONTEXT)
        clock.advance(601)

        first = await manager.validate_and_consume(token.value)
        second = await manager.validate_and_consume(token.value)

        assert first.status is StateStatus.EXPIRED
        assert second.status is StateStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_replay_within_window_is_unknown(self, manager, clock):
        token = await manager.issue(CONTEXT)
        await manager.validate_and_consume(token.value)
        clock.advance(300)

        result = await manager.validate_and_consume(token.value)

        assert result.status is StateStatus.UNKNOWN
        assert result.token is None

    @pytest.mark.asyncio
    async def test_concurrent_validation_single_winner(self, manager):
        token = await manager.issue(CONTEXT)

        results = await asyncio.gather(*(manager.validate_and_consume(token.value) for _ in range(25)))

        statuses = [r.status for r in results]
        assert statuses.count(StateStatus.VALID) == 1
        assert statuses.count(StateStatus.UNKNOWN) == 24

    @pytest.mark.asyncio
    async def test_tokens_are_independent(self, manager):
        a = await manager.issue(CONTEXT)
        b = await manager.issue(LaunchContext(iss="https://other.example/fhir", launch="zzz"))

        assert (await manager.validate_and_consume(a.value)).status is StateStatus.VALID
        result = await manager.validate_and_consume(b.value)
        assert result.status is StateStatus.VALID
        assert result.launch_context.iss == "https://other.example/fhir"


class TestHygiene:
    """Tests for capacity bounds and the expiry sweep."""

    @pytest.mark.asyncio
    async def test_purge_keeps_tombstones_through_retention(self, clock):
        backend = InMemoryStateBackend(retention_seconds=300, clock=clock)
        manager = StateTokenManager(backend, ttl_seconds=600, clock=clock)
        old = await manager.issue(CONTEXT)
        clock.advance(400)
        fresh = await manager.issue(CONTEXT)
        clock.advance(250)

        assert await manager.purge_expired() == 0
        assert await manager.pending_count() == 1
        assert (await manager.validate_and_consume(old.value)).status is StateStatus.EXPIRED

        clock.advance(300)

        assert await manager.purge_expired() == 1
        assert (await manager.validate_and_consume(old.value)).status is StateStatus.UNKNOWN
        assert (await manager.validate_and_consume(fresh.value)).status is StateStatus.VALID

    @pytest.mark.asyncio
    async def test_consumed_tokens_not_pending(self, manager):
        token = await manager.issue(CONTEXT)
        await manager.validate_and_consume(token.value)

        assert await manager.pending_count() == 0

    @pytest.mark.asyncio
    async def test_capacity_drops_tombstones_before_pending(self, clock):
        manager = StateTokenManager(InMemoryStateBackend(max_pending=2, clock=clock), clock=clock)
        used = await manager.issue(CONTEXT)
        pending = await manager.issue(CONTEXT)
        await manager.validate_and_consume(used.value)

        newest = await manager.issue(CONTEXT)

        assert await manager.pending_count() == 2
        assert (await manager.validate_and_consume(used.value)).status is StateStatus.UNKNOWN
        assert (await manager.validate_and_consume(pending.value)).status is StateStatus.VALID
        assert (await manager.validate_and_consume(newest.value)).status is StateStatus.VALID

    @pytest.mark.asyncio
    async def test_capacity_evicts_oldest(self, clock):
        manager = StateTokenManager(InMemoryStateBackend(max_pending=3, clock=clock), clock=clock)
        tokens = [await manager.issue(CONTEXT) for _ in range(4)]

        assert await manager.pending_count() == 3
        assert (await manager.validate_and_consume(tokens[0].value)).status is StateStatus.UNKNOWN
        assert (await manager.validate_and_consume(tokens[3].value)).status is StateStatus.VALID

    @pytest.mark.asyncio
    async def test_capacity_drops_expired_before_pending(self, clock):
        manager = StateTokenManager(InMemoryStateBackend(max_pending=2, clock=clock), ttl_seconds=10, clock=clock)
        expired = await manager.issue(CONTEXT)
        clock.advance(5)
        pending = await manager.issue(CONTEXT)
        clock.advance(6)

        newest = await manager.issue(CONTEXT)

        assert await manager.pending_count() == 2
        assert (await manager.validate_and_consume(expired.value)).status is StateStatus.UNKNOWN
        assert (await manager.validate_and_consume(pending.value)).status is StateStatus.VALID
        assert (await manager.validate_and_consume(newest.value)).status is StateStatus.VALID


class TestRedisStateBackend:
    """Tests for RedisStateBackend with a mocked redis client."""

    def setup_method(self):
        self.redis = AsyncMock()
        self.store = {}

        async def _set(key, value, nx=False, px=None):
            if nx and key in self.store:
                return None
            self.store[key] = (value, px)
            return True

        async def _get(key):
            entry = self.store.get(key)
            return entry[0] if entry else None

        self.redis.set.side_effect = _set
        self.redis.get.side_effect = _get

    def key(self, token):
        return f"{RedisStateBackend.KEY_PREFIX}{token.value}"

    def consumed_key(self, token):
        return f"{RedisStateBackend.CONSUMED_PREFIX}{token.value}"

    @pytest.mark.asyncio
    async def test_issue_sets_key_with_retention_ttl(self, clock):
        backend = RedisStateBackend(self.redis, retention_seconds=300, clock=clock)
        manager = StateTokenManager(backend, ttl_seconds=600, clock=clock)

        token = await manager.issue(CONTEXT)

        raw, px = self.store[self.key(token)]
        assert px == 900 * 1000
        assert json.loads(raw)["iss"] == CONTEXT.iss

    @pytest.mark.asyncio
    async def test_consume_claims_with_set_nx(self, clock):
        manager = StateTokenManager(RedisStateBackend(self.redis, clock=clock), clock=clock)
        token = await manager.issue(CONTEXT)

        first = await manager.validate_and_consume(token.value)
        second = await manager.validate_and_consume(token.value)

        assert first.status is StateStatus.VALID
        assert first.token.code_verifier == token.code_verifier
        assert second.status is StateStatus.UNKNOWN
        # the token key stays behind as a tombstone
        assert self.key(token) in self.store
        marker, px = self.store[self.consumed_key(token)]
        assert marker == "1"
        assert px == 900 * 1000
        self.redis.set.assert_awaited_with(self.consumed_key(token), "1", nx=True, px=900 * 1000)
        self.redis.getdel.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_consume_single_winner(self, clock):
        manager = StateTokenManager(RedisStateBackend(self.redis, clock=clock), clock=clock)
        token = await manager.issue(CONTEXT)

        results = await asyncio.gather(*(manager.validate_and_consume(token.value) for _ in range(10)))

        statuses = [r.status for r in results]
        assert statuses.count(StateStatus.VALID) == 1
        assert statuses.count(StateStatus.UNKNOWN) == 9

    @pytest.mark.asyncio
    async def test_late_callback_reports_expired(self, clock):
        manager = StateTokenManager(RedisStateBackend(self.redis, clock=clock), ttl_seconds=600, clock=clock)
        token = await manager.issue(CONTEXT)
        clock.advance(700)

        result = await manager.validate_and_consume(token.value)

        assert result.status is StateStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_consumed_then_expired_is_expired(self, clock):
        manager = StateTokenManager(RedisStateBackend(self.redis, clock=clock), ttl_seconds=600, clock=clock)
        token = await manager.issue(CONTEXT)
        assert (await manager.validate_and_consume(token.value)).status is StateStatus.VALID
        clock.advance(601)

        first = await manager.validate_and_consume(token.value)
        second = await manager.validate_and_consume(token.value)

        assert first.status is StateStatus.EXPIRED
        assert second.status is StateStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_missing_key_is_unknown(self, clock):
        manager = StateTokenManager(RedisStateBackend(self.redis, clock=clock), clock=clock)

        result = await manager.validate_and_consume("never-issued")

        assert result.status is StateStatus.UNKNOWN
        self.redis.set.assert_not_awaited()
