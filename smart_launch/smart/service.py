"""
SMART launch service

Wires configuration, the shared HTTP client, the state token manager, the
authorization server client, the launch initiator, the callback handler and
the session store into one object owned by the FastAPI application.
"""

import asyncio
import time
from typing import Callable, Dict, Optional

import httpx

from smart_launch.core.config import CREDENTIAL_SOURCE_ENVIRONMENT, Settings
from smart_launch.core.errors import ConfigurationError, SessionNotFound, TokenExchangeFailed
from smart_launch.core.logging import fingerprint, get_logger
from smart_launch.smart.authorization import AuthorizationServerClient
from smart_launch.smart.callback import CallbackHandler
from smart_launch.smart.launch import LaunchInitiator
from smart_launch.smart.models import SMARTSession
from smart_launch.smart.sessions import SessionStore
from smart_launch.smart.state_tokens import InMemoryStateBackend, RedisStateBackend, StateBackend, StateTokenManager

logger = get_logger(__name__)


def build_state_backend(settings: Settings, clock: Callable[[], float] = time.time) -> StateBackend:
    backend = settings.STATE_BACKEND.lower()
    if backend == "memory":
        return InMemoryStateBackend(
            max_pending=settings.STATE_MAX_PENDING,
            retention_seconds=settings.STATE_RETENTION_SECONDS,
            clock=clock,
        )
    if backend == "redis":
        if not settings.REDIS_URL:
            raise ConfigurationError("STATE_BACKEND=redis requires REDIS_URL")
        return RedisStateBackend.from_url(
            settings.REDIS_URL, retention_seconds=settings.STATE_RETENTION_SECONDS, clock=clock
        )
    raise ConfigurationError(f"Unknown STATE_BACKEND: {settings.STATE_BACKEND}")


class SMARTLaunchService:
    """
    SMART on FHIR launch service

    Usage:
        service = SMARTLaunchService(settings)

        # GET /launch.html?iss=...&launch=...
        authorization_url = await service.handle_launch(iss, launch)

        # GET /callback?code=...&state=...
        session = await service.handle_callback(code, state)

        access_token = await service.get_access_token(session.session_id)
    """

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        state_backend: Optional[StateBackend] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self._clock = clock
        self._refresh_locks: Dict[str, asyncio.Lock] = {}
        client_id, client_secret, source = settings.resolve_client_credentials()
        self.client_id = client_id
        self.redirect_uri = settings.redirect_uri

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.HTTP_TIMEOUT_SECONDS),
            headers={"Accept": "application/json"},
        )

        self.states = StateTokenManager(
            backend=state_backend or build_state_backend(settings, clock=clock),
            ttl_seconds=settings.STATE_TTL_SECONDS,
            use_pkce=settings.SMART_USE_PKCE,
            clock=clock,
        )
        self.auth_client = AuthorizationServerClient(
            client_id=client_id,
            client_secret=client_secret,
            http_client=self.http_client,
            cache_ttl_seconds=settings.DISCOVERY_CACHE_TTL_SECONDS,
            stale_grace_seconds=settings.DISCOVERY_STALE_GRACE_SECONDS,
            cache_max_entries=settings.DISCOVERY_CACHE_MAX_ENTRIES,
            clock=clock,
        )
        self.sessions = SessionStore(
            ttl_seconds=settings.SESSION_TTL_SECONDS,
            max_entries=settings.SESSION_MAX_ENTRIES,
            clock=clock,
        )
        self.launcher = LaunchInitiator(
            states=self.states,
            auth_client=self.auth_client,
            client_id=client_id,
            redirect_uri=self.redirect_uri,
            scope=settings.SMART_SCOPE,
            allow_insecure_issuers=settings.allow_insecure_issuers,
        )
        self.callbacks = CallbackHandler(
            states=self.states,
            auth_client=self.auth_client,
            sessions=self.sessions,
            redirect_uri=self.redirect_uri,
        )

        logger.info(
            "smart_launch_service_initialized",
            client_id=client_id,
            credential_source=source,
            client_secret_fp=fingerprint(client_secret),
            redirect_uri=self.redirect_uri,
            scope=settings.SMART_SCOPE,
            state_backend=settings.STATE_BACKEND,
            pkce=settings.SMART_USE_PKCE,
        )
        if source != CREDENTIAL_SOURCE_ENVIRONMENT:
            logger.warning("smart_using_development_credentials", environment=settings.ENVIRONMENT)

    async def handle_launch(self, iss: Optional[str], launch: Optional[str]) -> str:
        return await self.launcher.handle_launch(iss, launch)

    async def handle_callback(
        self,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        current_session_id: Optional[str] = None,
    ) -> SMARTSession:
        return await self.callbacks.handle_callback(
            code,
            state,
            error=error,
            error_description=error_description,
            current_session_id=current_session_id,
        )

    async def get_session(self, session_id: Optional[str]) -> SMARTSession:
        session = await self.sessions.get(session_id)
        if session is None:
            raise SessionNotFound("no session for cookie")
        return session

    async def ensure_fresh(self, session_id: Optional[str]) -> SMARTSession:
        """
        Return the session, refreshing its token first if it has expired.

        Refresh is single-flight per session: concurrent callers wait on one
        lock and the ones that get it after a refresh see the new token.
        A session whose token expired without a refresh token, or whose
        refresh was rejected, is destroyed.
        """
        session = await self.get_session(session_id)
        if not session.token.is_expired(self._clock()):
            return session

        lock = self._refresh_locks.setdefault(session.session_id, asyncio.Lock())
        try:
            async with lock:
                return await self._refresh_locked(session.session_id)
        finally:
            if not lock.locked() and self._refresh_locks.get(session.session_id) is lock:
                del self._refresh_locks[session.session_id]

    async def _refresh_locked(self, session_id: str) -> SMARTSession:
        session = await self.get_session(session_id)
        if not session.token.is_expired(self._clock()):
            return session

        if not session.token.can_refresh:
            await self.sessions.delete(session.session_id)
            raise SessionNotFound("token expired and cannot be refreshed")

        try:
            new_token = await self.auth_client.refresh_token(session.token_endpoint, session.token)
        except TokenExchangeFailed as e:
            logger.warning("smart_token_refresh_failed", iss=session.iss, **e.log_fields())
            await self.sessions.delete(session.session_id)
            raise SessionNotFound("token refresh failed")

        refreshed = await self.sessions.replace_token(session.session_id, new_token)
        if refreshed is None:
            raise SessionNotFound("session ended during refresh")
        return refreshed

    async def get_access_token(self, session_id: Optional[str]) -> str:
        session = await self.ensure_fresh(session_id)
        return session.token.access_token

    async def logout(self, session_id: Optional[str]) -> bool:
        removed = await self.sessions.delete(session_id)
        if removed:
            logger.info("smart_session_logged_out")
        return removed

    async def sweep(self) -> int:
        """Periodic memory hygiene: expired state tokens and sessions"""
        purged = await self.states.purge_expired()
        purged += await self.sessions.cleanup_expired()
        return purged

    async def close(self) -> None:
        await self.states.close()
        await self.auth_client.close()
        if self._owns_http_client:
            await self.http_client.aclose()
