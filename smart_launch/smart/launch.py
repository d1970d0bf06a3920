"""
Launch Initiator

SMART EHR launch, step 1. The EHR opens the app with `iss` (the FHIR server
base URL) and `launch` (an opaque launch id). We discover the server's OAuth
endpoints, issue a state token for the launch and send the browser to the
authorization endpoint with the SMART parameters, including `aud` and
`launch`.
"""

from typing import Optional
from urllib.parse import urlparse

from smart_launch.core.errors import DiscoveryFailed, InvalidIssuer, MalformedLaunch
from smart_launch.core.logging import fingerprint, get_logger
from smart_launch.smart.authorization import AuthorizationServerClient, build_authorization_url
from smart_launch.smart.models import AuthorizationRequestParams, Discovered, LaunchContext, Malformed
from smart_launch.smart.state_tokens import StateTokenManager, pkce_challenge

logger = get_logger(__name__)


def validate_issuer(iss: Optional[str], allow_insecure: bool = False) -> str:
    """Return iss if it is an absolute HTTPS URL, else raise InvalidIssuer"""
    if not iss or not iss.strip():
        raise InvalidIssuer("missing iss")
    iss = iss.strip()

    try:
        parsed = urlparse(iss)
    except ValueError:
        raise InvalidIssuer("unparseable iss")

    allowed_schemes = ("https", "http") if allow_insecure else ("https",)
    if parsed.scheme not in allowed_schemes:
        raise InvalidIssuer(f"iss scheme {parsed.scheme or '(none)'!r} not allowed")
    if not parsed.netloc or not parsed.hostname:
        raise InvalidIssuer("iss has no host")
    if parsed.query or parsed.fragment:
        raise InvalidIssuer("iss must not carry a query or fragment")
    return iss


class LaunchInitiator:
    """Turns an EHR launch request into an authorization redirect"""

    def __init__(
        self,
        states: StateTokenManager,
        auth_client: AuthorizationServerClient,
        client_id: str,
        redirect_uri: str,
        scope: str,
        allow_insecure_issuers: bool = False,
    ):
        self.states = states
        self.auth_client = auth_client
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.scope = scope
        self.allow_insecure_issuers = allow_insecure_issuers

    async def handle_launch(self, iss: Optional[str], launch: Optional[str]) -> str:
        """
        Validate the launch, discover the authorization endpoint and return
        the URL to redirect the browser to.

        Discovery runs before the state token is issued, so a failed launch
        leaves nothing behind in the token table.

        Raises:
            InvalidIssuer: iss is not an absolute HTTPS URL
            MalformedLaunch: launch is missing
            DiscoveryFailed: endpoints could not be discovered
        """
        iss = validate_issuer(iss, allow_insecure=self.allow_insecure_issuers)
        if not launch or not launch.strip():
            raise MalformedLaunch("missing launch")

        context = LaunchContext(iss=iss, launch=launch)

        result = await self.auth_client.discover(iss)
        if not isinstance(result, Discovered):
            kind = "malformed" if isinstance(result, Malformed) else "unreachable"
            reason = result.reason if isinstance(result, Malformed) else result.cause
            logger.error("smart_launch_discovery_failed", iss=iss, kind=kind, reason=reason)
            raise DiscoveryFailed(f"{kind}: {reason}")

        token = await self.states.issue(context)

        params = AuthorizationRequestParams(
            client_id=self.client_id,
            redirect_uri=self.redirect_uri,
            scope=self.scope,
            state=token.value,
            aud=iss,
            launch=launch,
        )
        if token.code_verifier:
            params.code_challenge = pkce_challenge(token.code_verifier)
            params.code_challenge_method = "S256"

        authorization_url = build_authorization_url(result.configuration.authorization_endpoint, params)

        logger.info(
            "smart_launch_redirect",
            iss=iss,
            authorization_endpoint=result.configuration.authorization_endpoint,
            state_fp=fingerprint(token.value),
            pkce=bool(token.code_verifier),
        )
        return authorization_url
