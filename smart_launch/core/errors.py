"""
Error taxonomy for the SMART launch sequence.

Every request-scoped failure is a SMARTLaunchError subclass carrying a
machine-readable code, an HTTP status and a user-facing message. The message
never includes secrets or raw tokens; `detail` is for logs only.
"""

from typing import Any, Dict, Optional

# User-facing messages. Expired/replayed launches get a "launch again" hint;
# upstream rejections say the authorization server refused.
MESSAGE_RESTART = "Your launch session has expired or was already used. Please launch the app again from your EHR."
MESSAGE_DENIED = "The EHR authorization server rejected the request."


class ConfigurationError(Exception):
    """Invalid or missing configuration. Fatal at startup."""


class SMARTLaunchError(Exception):
    """Base request-scoped error"""

    code = "SMARTLaunchError"
    status_code = 500
    user_message = "The SMART launch could not be completed."
    restart_hint = False

    def __init__(self, detail: Optional[str] = None, user_message: Optional[str] = None):
        super().__init__(detail or self.user_message)
        self.detail = detail
        if user_message:
            self.user_message = user_message

    def log_fields(self) -> Dict[str, Any]:
        return {"error_code": self.code, "status_code": self.status_code, "detail": self.detail}


class InvalidIssuer(SMARTLaunchError):
    """The iss parameter is not an absolute HTTPS URL"""

    code = "InvalidIssuer"
    status_code = 400
    user_message = "The EHR sent an invalid FHIR server address (iss)."


class MalformedLaunch(SMARTLaunchError):
    """The launch parameter is missing"""

    code = "MalformedLaunch"
    status_code = 400
    user_message = "The EHR launch request is missing its launch parameter."


class DiscoveryFailed(SMARTLaunchError):
    """SMART configuration could not be fetched or parsed"""

    code = "DiscoveryFailed"
    status_code = 502
    user_message = "Could not read the SMART configuration of the EHR's FHIR server."


class MalformedCallback(SMARTLaunchError):
    """Callback is missing code or state"""

    code = "MalformedCallback"
    status_code = 400
    user_message = "The authorization response is missing required parameters."


class InvalidState(SMARTLaunchError):
    """State token expired, unknown or already consumed"""

    code = "InvalidState"
    status_code = 400
    user_message = MESSAGE_RESTART
    restart_hint = True

    def __init__(self, reason: str, detail: Optional[str] = None):
        super().__init__(detail or f"state {reason}")
        self.reason = reason

    def log_fields(self) -> Dict[str, Any]:
        fields = super().log_fields()
        fields["reason"] = self.reason
        return fields


class TokenExchangeFailed(SMARTLaunchError):
    """Network or protocol failure while exchanging the authorization code"""

    code = "TokenExchangeFailed"
    status_code = 502
    user_message = "Could not obtain an access token from the EHR authorization server."

    def __init__(
        self,
        detail: Optional[str] = None,
        upstream_status: Optional[int] = None,
        upstream_body: Optional[str] = None,
    ):
        super().__init__(detail)
        self.upstream_status = upstream_status
        # Bodies from the token endpoint can be large; keep a bounded excerpt
        self.upstream_body = upstream_body[:500] if upstream_body else upstream_body

    def log_fields(self) -> Dict[str, Any]:
        fields = super().log_fields()
        fields["upstream_status"] = self.upstream_status
        fields["upstream_body"] = self.upstream_body
        return fields


class AuthorizationDenied(TokenExchangeFailed):
    """Upstream rejected the code or grant (4xx or OAuth error redirect)"""

    code = "AuthorizationDenied"
    status_code = 403
    user_message = MESSAGE_DENIED


class SessionNotFound(SMARTLaunchError):
    """No usable SMART session for this browser"""

    code = "SessionNotFound"
    status_code = 401
    user_message = "No active SMART session. Please launch the app from your EHR."
    restart_hint = True


__all__ = [
    "ConfigurationError",
    "SMARTLaunchError",
    "InvalidIssuer",
    "MalformedLaunch",
    "DiscoveryFailed",
    "MalformedCallback",
    "InvalidState",
    "TokenExchangeFailed",
    "AuthorizationDenied",
    "SessionNotFound",
]
