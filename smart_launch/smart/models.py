"""
Data model for the SMART launch sequence.

LaunchContext -> StateToken -> (browser round trip) -> TokenResponse -> SMARTSession
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

# Keys of a token endpoint response that are mapped onto TokenResponse fields.
# Anything else (e.g. fhirContext, intent, tenant) is kept in TokenResponse.extra.
_TOKEN_FIELDS = {
    "access_token",
    "token_type",
    "expires_in",
    "scope",
    "refresh_token",
    "id_token",
    "patient",
    "encounter",
    "need_patient_banner",
    "smart_style_url",
}

# Consider a token expired this many seconds before the server would
TOKEN_EXPIRY_SKEW_SECONDS = 60


# ==============================================================================
# Launch and state
# ==============================================================================


@dataclass(frozen=True)
class LaunchContext:
    """EHR launch request: FHIR server base URL and opaque launch id"""

    iss: str
    launch: str


@dataclass(repr=False)
class StateToken:
    """Single-use anti-forgery token correlating a launch with its callback"""

    value: str
    launch_context: LaunchContext
    created_at: float
    expires_at: float
    # PKCE verifier sent with the code exchange; never leaves the server
    code_verifier: Optional[str] = field(default=None, repr=False)

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "iss": self.launch_context.iss,
            "launch": self.launch_context.launch,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "code_verifier": self.code_verifier,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateToken":
        return cls(
            value=data["value"],
            launch_context=LaunchContext(iss=data["iss"], launch=data["launch"]),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
            code_verifier=data.get("code_verifier"),
        )

    def __repr__(self) -> str:
        return f"StateToken(iss={self.launch_context.iss!r}, expires_at={self.expires_at})"


class StateStatus(str, Enum):
    """Outcome of validating a state value"""

    VALID = "valid"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


@dataclass
class StateValidation:
    status: StateStatus
    token: Optional[StateToken] = None

    @property
    def is_valid(self) -> bool:
        return self.status is StateStatus.VALID

    @property
    def launch_context(self) -> Optional[LaunchContext]:
        return self.token.launch_context if self.token else None


# ==============================================================================
# Discovery
# ==============================================================================


@dataclass
class SMARTConfiguration:
    """Endpoints advertised by a FHIR server's SMART configuration"""

    authorization_endpoint: str
    token_endpoint: str
    issuer: Optional[str] = None
    jwks_uri: Optional[str] = None
    registration_endpoint: Optional[str] = None
    management_endpoint: Optional[str] = None
    introspection_endpoint: Optional[str] = None
    revocation_endpoint: Optional[str] = None
    capabilities: List[str] = field(default_factory=list)
    scopes_supported: List[str] = field(default_factory=list)
    response_types_supported: List[str] = field(default_factory=list)
    code_challenge_methods_supported: List[str] = field(default_factory=list)
    grant_types_supported: List[str] = field(default_factory=list)
    token_endpoint_auth_methods_supported: List[str] = field(default_factory=list)
    source: str = "well-known"

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: str = "well-known") -> "SMARTConfiguration":
        def _list(key: str) -> List[str]:
            value = data.get(key) or []
            return [str(v) for v in value] if isinstance(value, list) else []

        return cls(
            authorization_endpoint=data.get("authorization_endpoint") or "",
            token_endpoint=data.get("token_endpoint") or "",
            issuer=data.get("issuer"),
            jwks_uri=data.get("jwks_uri"),
            registration_endpoint=data.get("registration_endpoint"),
            management_endpoint=data.get("management_endpoint"),
            introspection_endpoint=data.get("introspection_endpoint"),
            revocation_endpoint=data.get("revocation_endpoint"),
            capabilities=_list("capabilities"),
            scopes_supported=_list("scopes_supported"),
            response_types_supported=_list("response_types_supported"),
            code_challenge_methods_supported=_list("code_challenge_methods_supported"),
            grant_types_supported=_list("grant_types_supported"),
            token_endpoint_auth_methods_supported=_list("token_endpoint_auth_methods_supported"),
            source=source,
        )


@dataclass
class Discovered:
    configuration: SMARTConfiguration


@dataclass
class Malformed:
    reason: str


@dataclass
class Unreachable:
    cause: str


DiscoveryResult = Union[Discovered, Malformed, Unreachable]


# ==============================================================================
# Authorization request
# ==============================================================================


@dataclass
class AuthorizationRequestParams:
    """Query parameters of the SMART authorization request"""

    client_id: str
    redirect_uri: str
    scope: str
    state: str
    aud: str
    launch: str
    response_type: str = "code"
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None

    def to_query(self) -> Dict[str, str]:
        params = {
            "response_type": self.response_type,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "state": self.state,
            "aud": self.aud,
            "launch": self.launch,
        }
        if self.code_challenge:
            params["code_challenge"] = self.code_challenge
            params["code_challenge_method"] = self.code_challenge_method or "S256"
        return params


# ==============================================================================
# Tokens and sessions
# ==============================================================================


@dataclass
class TokenResponse:
    """Token endpoint response"""

    access_token: str = field(repr=False)
    token_type: str = "Bearer"
    expires_in: int = 3600
    scope: str = ""
    refresh_token: Optional[str] = field(default=None, repr=False)
    id_token: Optional[str] = field(default=None, repr=False)
    patient: Optional[str] = None  # Patient context from launch
    encounter: Optional[str] = None  # Encounter context from launch
    need_patient_banner: bool = False
    smart_style_url: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    # Internal tracking
    issued_at: float = field(default_factory=time.time)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], issued_at: Optional[float] = None) -> "TokenResponse":
        try:
            expires_in = int(data.get("expires_in") or 3600)
        except (TypeError, ValueError):
            expires_in = 3600

        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type") or "Bearer",
            expires_in=expires_in,
            scope=data.get("scope") or "",
            refresh_token=data.get("refresh_token"),
            id_token=data.get("id_token"),
            patient=data.get("patient"),
            encounter=data.get("encounter"),
            need_patient_banner=bool(data.get("need_patient_banner", False)),
            smart_style_url=data.get("smart_style_url"),
            extra={k: v for k, v in data.items() if k not in _TOKEN_FIELDS},
            issued_at=issued_at if issued_at is not None else time.time(),
        )

    @property
    def expires_at(self) -> float:
        return self.issued_at + self.expires_in

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = now if now is not None else time.time()
        return now >= self.expires_at - TOKEN_EXPIRY_SKEW_SECONDS

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)

    @property
    def granted_scopes(self) -> List[str]:
        return self.scope.split() if self.scope else []


@dataclass
class SMARTSession:
    """Browser session holding the token established by one launch"""

    session_id: str
    iss: str
    token: TokenResponse
    token_endpoint: str
    state_history: List[str] = field(default_factory=list, repr=False)
    user: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    last_used_at: float = field(default_factory=time.time)

    @property
    def patient_id(self) -> Optional[str]:
        return self.token.patient

    @property
    def encounter_id(self) -> Optional[str]:
        return self.token.encounter

    def summary(self) -> Dict[str, Any]:
        """Secret-free view for pages and the session API"""
        return {
            "iss": self.iss,
            "patient": self.token.patient,
            "encounter": self.token.encounter,
            "user": self.user,
            "scopes": self.token.granted_scopes,
            "token_type": self.token.token_type,
            "expires_at": self.token.expires_at,
            "refreshable": self.token.can_refresh,
            "need_patient_banner": self.token.need_patient_banner,
            "created_at": self.created_at,
        }
