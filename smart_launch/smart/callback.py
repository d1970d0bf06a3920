"""
Callback Handler

SMART EHR launch, step 2. The authorization server redirects the browser back
with `code` and `state`. Each callback runs once through:

    START -> VALIDATING_STATE -> EXCHANGING -> ESTABLISHED
       \\             \\               \\
        +-------------+---------------+--> REJECTED

State is validated (and consumed) before the code is exchanged; that check is
the CSRF and replay defense. Nothing is retried.
"""

from enum import Enum
from typing import Optional

import jwt

from smart_launch.core.errors import (
    AuthorizationDenied,
    InvalidState,
    MalformedCallback,
    SMARTLaunchError,
    TokenExchangeFailed,
)
from smart_launch.core.logging import fingerprint, get_logger
from smart_launch.smart.authorization import AuthorizationServerClient
from smart_launch.smart.models import Discovered, SMARTSession, TokenResponse
from smart_launch.smart.sessions import SessionStore
from smart_launch.smart.state_tokens import StateTokenManager

logger = get_logger(__name__)


class CallbackPhase(str, Enum):
    START = "start"
    VALIDATING_STATE = "validating_state"
    EXCHANGING = "exchanging"
    ESTABLISHED = "established"
    REJECTED = "rejected"


def user_from_id_token(id_token: Optional[str]) -> Optional[str]:
    """
    fhirUser (or sub) claim of an OpenID Connect id_token.

    The signature is not verified; the value is only displayed, never used for
    an access decision.
    """
    if not id_token:
        return None
    try:
        claims = jwt.decode(id_token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        logger.warning("smart_id_token_undecodable", error_type=type(e).__name__)
        return None
    return claims.get("fhirUser") or claims.get("sub")


class CallbackHandler:
    """Validates the callback state and exchanges the code for a session"""

    def __init__(
        self,
        states: StateTokenManager,
        auth_client: AuthorizationServerClient,
        sessions: SessionStore,
        redirect_uri: str,
    ):
        self.states = states
        self.auth_client = auth_client
        self.sessions = sessions
        self.redirect_uri = redirect_uri

    async def handle_callback(
        self,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        current_session_id: Optional[str] = None,
    ) -> SMARTSession:
        """
        Process one callback to completion or rejection.

        Args:
            code: Authorization code from the callback query
            state: State value from the callback query
            error: OAuth error code, when the server redirected back with an error
            error_description: OAuth error description
            current_session_id: Session already held by this browser, if any;
                it is destroyed once the new session is established

        Raises:
            MalformedCallback, InvalidState, AuthorizationDenied, TokenExchangeFailed
        """
        phase = CallbackPhase.START
        try:
            # START
            if not state or not state.strip():
                raise MalformedCallback("missing state")
            if not error and (not code or not code.strip()):
                raise MalformedCallback("missing code")

            # VALIDATING_STATE
            phase = self._transition(phase, CallbackPhase.VALIDATING_STATE, state)
            validation = await self.states.validate_and_consume(state)
            if not validation.is_valid:
                raise InvalidState(validation.status.value)
            token_state = validation.token
            iss = token_state.launch_context.iss

            if error:
                raise AuthorizationDenied(
                    f"authorization server returned error={error}",
                    upstream_body=error_description,
                )

            # EXCHANGING
            phase = self._transition(phase, CallbackPhase.EXCHANGING, state)
            result = await self.auth_client.discover(iss)
            if not isinstance(result, Discovered):
                raise TokenExchangeFailed(f"token endpoint discovery failed for {iss}")
            token_endpoint = result.configuration.token_endpoint

            token: TokenResponse = await self.auth_client.exchange_code(
                token_endpoint,
                code,
                self.redirect_uri,
                code_verifier=token_state.code_verifier,
            )

            # ESTABLISHED
            session = await self.sessions.create(
                iss=iss,
                token=token,
                token_endpoint=token_endpoint,
                state_value=state,
                user=user_from_id_token(token.id_token),
            )
            if current_session_id and current_session_id != session.session_id:
                await self.sessions.delete(current_session_id)

            self._transition(phase, CallbackPhase.ESTABLISHED, state)
            logger.info(
                "smart_session_established",
                iss=iss,
                patient=token.patient,
                encounter=token.encounter,
                scopes=token.granted_scopes,
            )
            return session

        except SMARTLaunchError as e:
            logger.warning(
                "smart_callback_rejected",
                phase=phase.value,
                state_fp=fingerprint(state),
                **e.log_fields(),
            )
            raise

    def _transition(self, current: CallbackPhase, target: CallbackPhase, state: Optional[str]) -> CallbackPhase:
        logger.debug("smart_callback_transition", source=current.value, target=target.value, state_fp=fingerprint(state))
        return target
