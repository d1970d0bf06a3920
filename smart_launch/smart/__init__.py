"""
SMART on FHIR launch core

Components:
- StateTokenManager: single-use anti-forgery state tokens
- AuthorizationServerClient: discovery, code exchange, token refresh
- LaunchInitiator: EHR launch -> authorization redirect
- CallbackHandler: callback -> validated state -> token -> session
- SessionStore: browser session to token mapping
- SMARTLaunchService: wiring used by the HTTP layer
"""

from .authorization import AuthorizationServerClient, build_authorization_url
from .callback import CallbackHandler, CallbackPhase
from .launch import LaunchInitiator, validate_issuer
from .models import (
    AuthorizationRequestParams,
    Discovered,
    DiscoveryResult,
    LaunchContext,
    Malformed,
    SMARTConfiguration,
    SMARTSession,
    StateStatus,
    StateToken,
    StateValidation,
    TokenResponse,
    Unreachable,
)
from .service import SMARTLaunchService
from .sessions import SessionStore
from .state_tokens import InMemoryStateBackend, RedisStateBackend, StateTokenManager

__all__ = [
    "AuthorizationRequestParams",
    "AuthorizationServerClient",
    "CallbackHandler",
    "CallbackPhase",
    "Discovered",
    "DiscoveryResult",
    "InMemoryStateBackend",
    "LaunchContext",
    "LaunchInitiator",
    "Malformed",
    "RedisStateBackend",
    "SMARTConfiguration",
    "SMARTLaunchService",
    "SMARTSession",
    "SessionStore",
    "StateStatus",
    "StateToken",
    "StateTokenManager",
    "StateValidation",
    "TokenResponse",
    "Unreachable",
    "build_authorization_url",
    "validate_issuer",
]
