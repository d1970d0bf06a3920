"""
Authorization Server Client

Talks to the EHR's FHIR and OAuth 2.0 endpoints:
- SMART configuration discovery (.well-known/smart-configuration, falling back
  to the CapabilityStatement at /metadata), cached per issuer with a TTL
- Authorization URL construction
- Authorization code exchange and token refresh using HTTP Basic client
  authentication (confidential-symmetric client)

Reference: http://hl7.org/fhir/smart-app-launch/
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import httpx

from smart_launch.core.errors import AuthorizationDenied, TokenExchangeFailed
from smart_launch.core.logging import fingerprint, get_logger
from smart_launch.smart.models import (
    AuthorizationRequestParams,
    Discovered,
    DiscoveryResult,
    Malformed,
    SMARTConfiguration,
    TokenResponse,
    Unreachable,
)

logger = get_logger(__name__)

WELL_KNOWN_PATH = "/.well-known/smart-configuration"
METADATA_PATH = "/metadata"

# CapabilityStatement extension carrying the OAuth endpoint URIs
OAUTH_URIS_EXTENSION = "http://fhir-registry.smarthealthit.org/StructureDefinition/oauth-uris"
# DSTU1-era servers publish one flat extension per endpoint
LEGACY_OAUTH_URIS_PREFIX = "http://fhir-registry.smartplatforms.org/Profile/oauth-uris#"


def is_absolute_url(value: Any, schemes: Tuple[str, ...] = ("https", "http")) -> bool:
    if not isinstance(value, str) or not value:
        return False
    try:
        parsed = urlparse(value)
    except ValueError:
        # e.g. an unbalanced IPv6 bracket in the host
        return False
    return parsed.scheme in schemes and bool(parsed.netloc)


def _value_uri(ext: Dict[str, Any]) -> str:
    value = ext.get("valueUri")
    return value if isinstance(value, str) else ""


def parse_capability_statement(data: Dict[str, Any]) -> Optional[SMARTConfiguration]:
    """Read OAuth endpoints from a FHIR CapabilityStatement (conformance)"""
    auth_endpoint = ""
    token_endpoint = ""
    extras: Dict[str, str] = {}

    rest_entries = data.get("rest") if isinstance(data.get("rest"), list) else []
    for rest in rest_entries:
        if not isinstance(rest, dict):
            continue
        security = rest.get("security")
        if not isinstance(security, dict) or not isinstance(security.get("extension"), list):
            continue
        for ext in security["extension"]:
            if not isinstance(ext, dict):
                continue
            url = ext.get("url")
            if not isinstance(url, str):
                continue
            if url == OAUTH_URIS_EXTENSION:
                sub_extensions = ext.get("extension")
                if not isinstance(sub_extensions, list):
                    continue
                for sub_ext in sub_extensions:
                    if not isinstance(sub_ext, dict):
                        continue
                    name = sub_ext.get("url")
                    if name == "authorize":
                        auth_endpoint = _value_uri(sub_ext)
                    elif name == "token":
                        token_endpoint = _value_uri(sub_ext)
                    elif name in ("register", "manage", "introspect", "revoke"):
                        extras[name] = _value_uri(sub_ext)
            elif url.startswith(LEGACY_OAUTH_URIS_PREFIX):
                name = url[len(LEGACY_OAUTH_URIS_PREFIX):]
                if name == "authorize":
                    auth_endpoint = _value_uri(ext)
                elif name == "token":
                    token_endpoint = _value_uri(ext)
                elif name == "register":
                    extras["register"] = _value_uri(ext)

    if not auth_endpoint and not token_endpoint:
        return None

    return SMARTConfiguration(
        authorization_endpoint=auth_endpoint,
        token_endpoint=token_endpoint,
        registration_endpoint=extras.get("register") or None,
        management_endpoint=extras.get("manage") or None,
        introspection_endpoint=extras.get("introspect") or None,
        revocation_endpoint=extras.get("revoke") or None,
        source="metadata",
    )


def check_configuration(configuration: SMARTConfiguration) -> Optional[str]:
    """Return a reason string if the configuration is unusable for a launch"""
    if not configuration.authorization_endpoint:
        return "missing authorization_endpoint"
    if not is_absolute_url(configuration.authorization_endpoint):
        return "authorization_endpoint is not an absolute URL"
    if not configuration.token_endpoint:
        return "missing token_endpoint"
    if not is_absolute_url(configuration.token_endpoint):
        return "token_endpoint is not an absolute URL"
    return None


# Optional token response members that must be strings when present
TOKEN_STRING_FIELDS = (
    "token_type",
    "scope",
    "refresh_token",
    "id_token",
    "patient",
    "encounter",
    "smart_style_url",
)


def token_response_problem(token_data: Any) -> Optional[str]:
    """Return a reason string if a token endpoint payload has the wrong shape"""
    if not isinstance(token_data, dict):
        return "is not a JSON object"
    access_token = token_data.get("access_token")
    if not access_token:
        return "has no access_token"
    if not isinstance(access_token, str):
        return "field access_token has the wrong type"
    for name in TOKEN_STRING_FIELDS:
        value = token_data.get(name)
        if value is not None and not isinstance(value, str):
            return f"field {name} has the wrong type"
    expires_in = token_data.get("expires_in")
    if expires_in is not None:
        numeric = isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool)
        if not numeric and not (isinstance(expires_in, str) and expires_in.isdigit()):
            return "field expires_in has the wrong type"
    return None


def build_authorization_url(authorization_endpoint: str, params: AuthorizationRequestParams) -> str:
    """Append the SMART parameters, keeping any query already on the endpoint"""
    parts = list(urlparse(authorization_endpoint))
    query = dict(parse_qsl(parts[4]))
    query.update(params.to_query())
    parts[4] = urlencode(query)
    return urlunparse(parts)


@dataclass
class _CacheEntry:
    configuration: SMARTConfiguration
    fetched_at: float


class AuthorizationServerClient:
    """
    SMART authorization server client

    Usage:
        client = AuthorizationServerClient(
            client_id="my-app",
            client_secret="secret",
            http_client=httpx.AsyncClient(timeout=10),
        )

        result = await client.discover("https://ehr.example/fhir")
        if isinstance(result, Discovered):
            token = await client.exchange_code(
                result.configuration.token_endpoint, code, redirect_uri
            )
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        cache_ttl_seconds: int = 3600,
        stale_grace_seconds: Optional[int] = None,
        cache_max_entries: int = 256,
        clock: Callable[[], float] = time.time,
    ):
        self.client_id = client_id
        self._client_secret = client_secret
        self.cache_ttl_seconds = cache_ttl_seconds
        self.stale_grace_seconds = stale_grace_seconds
        self.cache_max_entries = cache_max_entries
        self._clock = clock
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={"Accept": "application/json"},
        )

        self._cache: "OrderedDict[str, _CacheEntry]" = OrderedDict()
        self._lock = asyncio.Lock()

    @property
    def basic_auth(self) -> httpx.BasicAuth:
        """HTTP Basic credentials for the symmetric confidential-client flow"""
        return httpx.BasicAuth(self.client_id, self._client_secret)

    async def close(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    # =========================================================================
    # Discovery
    # =========================================================================

    async def discover(self, iss: str, force_refresh: bool = False) -> DiscoveryResult:
        """
        Discover the SMART configuration of a FHIR server.

        Fresh cache entries are returned without a network call. Past the TTL
        the document is refetched; if that fails, the stale entry is used only
        while inside the configured grace window.
        """
        now = self._clock()
        async with self._lock:
            entry = self._cache.get(iss)

        if entry and not force_refresh and now - entry.fetched_at < self.cache_ttl_seconds:
            return Discovered(entry.configuration)

        result = await self._fetch_configuration(iss)

        if isinstance(result, Discovered):
            async with self._lock:
                self._cache[iss] = _CacheEntry(result.configuration, self._clock())
                self._cache.move_to_end(iss)
                while len(self._cache) > self.cache_max_entries:
                    self._cache.popitem(last=False)
            return result

        if entry and self.stale_grace_seconds is not None:
            age = now - entry.fetched_at
            if age < self.cache_ttl_seconds + self.stale_grace_seconds:
                logger.warning(
                    "smart_discovery_using_stale_configuration",
                    iss=iss,
                    age_seconds=int(age),
                    failure=_describe(result),
                )
                return Discovered(entry.configuration)

        return result

    async def invalidate(self, iss: str) -> None:
        async with self._lock:
            self._cache.pop(iss, None)

    async def _fetch_configuration(self, iss: str) -> DiscoveryResult:
        base = iss.rstrip("/")
        failures = []
        unreachable = True

        well_known_url = f"{base}{WELL_KNOWN_PATH}"
        data, failure, reached = await self._get_json(well_known_url)
        unreachable = unreachable and not reached
        if data is not None:
            configuration = SMARTConfiguration.from_dict(data, source="well-known")
            reason = check_configuration(configuration)
            if reason is None:
                logger.info("smart_discovery_succeeded", iss=iss, source="well-known")
                return Discovered(configuration)
            failures.append(f"{WELL_KNOWN_PATH}: {reason}")
        else:
            failures.append(f"{WELL_KNOWN_PATH}: {failure}")

        metadata_url = f"{base}{METADATA_PATH}"
        data, failure, reached = await self._get_json(metadata_url)
        unreachable = unreachable and not reached
        if data is not None:
            configuration = parse_capability_statement(data)
            if configuration is None:
                failures.append(f"{METADATA_PATH}: no SMART oauth-uris extension")
            else:
                reason = check_configuration(configuration)
                if reason is None:
                    logger.info("smart_discovery_succeeded", iss=iss, source="metadata")
                    return Discovered(configuration)
                failures.append(f"{METADATA_PATH}: {reason}")
        else:
            failures.append(f"{METADATA_PATH}: {failure}")

        summary = "; ".join(failures)
        logger.warning("smart_discovery_failed", iss=iss, unreachable=unreachable, failures=summary)
        if unreachable:
            return Unreachable(summary)
        return Malformed(summary)

    async def _get_json(self, url: str) -> Tuple[Optional[Dict[str, Any]], Optional[str], bool]:
        """GET a JSON object. Returns (data, failure, server_reached)."""
        try:
            response = await self._http.get(url, headers={"Accept": "application/json"})
        except httpx.TimeoutException:
            return None, "timed out", False
        except httpx.HTTPError as e:
            return None, f"request failed ({type(e).__name__})", False

        if response.status_code != 200:
            return None, f"HTTP {response.status_code}", True

        try:
            data = response.json()
        except ValueError:
            return None, "response is not JSON", True

        if not isinstance(data, dict):
            return None, "response is not a JSON object", True
        return data, None, True

    # =========================================================================
    # Token endpoint
    # =========================================================================

    async def exchange_code(
        self,
        token_endpoint: str,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> TokenResponse:
        """
        Exchange an authorization code for tokens.

        Single attempt; authorization codes are single use.

        Raises:
            AuthorizationDenied: token endpoint answered 4xx
            TokenExchangeFailed: network failure, timeout, 5xx or bad payload
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier

        token_data = await self._post_token_request(token_endpoint, data, action="exchange")
        token = TokenResponse.from_dict(token_data, issued_at=self._clock())
        logger.info(
            "smart_token_exchanged",
            token_endpoint=token_endpoint,
            code_fp=fingerprint(code),
            scopes=token.granted_scopes,
            patient=token.patient,
            refreshable=token.can_refresh,
        )
        return token

    async def refresh_token(self, token_endpoint: str, token: TokenResponse) -> TokenResponse:
        """
        Obtain a new access token with a refresh token.

        The scope parameter is omitted so the same grant is requested. Values
        the server leaves out of the response (refresh token, patient,
        encounter) are carried over from the previous token.
        """
        if not token.refresh_token:
            raise TokenExchangeFailed("token has no refresh_token")

        data = {
            "grant_type": "refresh_token",
            "refresh_token": token.refresh_token,
        }
        token_data = await self._post_token_request(token_endpoint, data, action="refresh")
        new_token = TokenResponse.from_dict(token_data, issued_at=self._clock())

        if not new_token.refresh_token:
            new_token.refresh_token = token.refresh_token
        if not new_token.patient:
            new_token.patient = token.patient
        if not new_token.encounter:
            new_token.encounter = token.encounter
        if not new_token.scope:
            new_token.scope = token.scope

        logger.info("smart_token_refreshed", token_endpoint=token_endpoint, patient=new_token.patient)
        return new_token

    async def _post_token_request(self, token_endpoint: str, data: Dict[str, str], action: str) -> Dict[str, Any]:
        try:
            response = await self._http.post(
                token_endpoint,
                data=data,
                auth=self.basic_auth,
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException:
            logger.error("smart_token_request_timeout", action=action, token_endpoint=token_endpoint)
            raise TokenExchangeFailed(f"token {action} timed out")
        except httpx.HTTPError as e:
            logger.error(
                "smart_token_request_error",
                action=action,
                token_endpoint=token_endpoint,
                error_type=type(e).__name__,
            )
            raise TokenExchangeFailed(f"token {action} request failed ({type(e).__name__})")

        if not response.is_success:
            body = response.text[:500]
            logger.error(
                "smart_token_request_rejected",
                action=action,
                token_endpoint=token_endpoint,
                status_code=response.status_code,
                response=body,
            )
            error_cls = AuthorizationDenied if 400 <= response.status_code < 500 else TokenExchangeFailed
            raise error_cls(
                f"token {action} failed with HTTP {response.status_code}",
                upstream_status=response.status_code,
                upstream_body=body,
            )

        try:
            token_data = response.json()
        except ValueError:
            raise TokenExchangeFailed(
                f"token {action} response is not JSON",
                upstream_status=response.status_code,
            )

        problem = token_response_problem(token_data)
        if problem is not None:
            logger.error(
                "smart_token_response_invalid",
                action=action,
                token_endpoint=token_endpoint,
                problem=problem,
            )
            raise TokenExchangeFailed(
                f"token {action} response {problem}",
                upstream_status=response.status_code,
            )
        return token_data


def _describe(result: DiscoveryResult) -> str:
    if isinstance(result, Malformed):
        return f"malformed: {result.reason}"
    if isinstance(result, Unreachable):
        return f"unreachable: {result.cause}"
    return "ok"


__all__ = [
    "AuthorizationServerClient",
    "build_authorization_url",
    "check_configuration",
    "is_absolute_url",
    "parse_capability_statement",
    "token_response_problem",
]
