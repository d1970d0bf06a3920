"""
Pytest configuration and shared fixtures for the SMART launch test suite.
"""

import json
import os
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl

# Settings are read from the environment at import time; these defaults let the
# package import without a deployment environment. Only applied when unset.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("SMART_CLIENT_ID", "test-client")
os.environ.setdefault("SMART_CLIENT_SECRET", "test-secret")
os.environ.setdefault("APP_BASE_URL", "https://app.example")
os.environ.setdefault("STATE_SWEEP_INTERVAL_SECONDS", "0")

import httpx  # noqa: E402
import pytest  # noqa: E402

from smart_launch.core.config import Settings  # noqa: E402

ISS = "https://ehr.example/fhir"
AUTHORIZE_URL = "https://ehr.example/auth"
TOKEN_URL = "https://ehr.example/token"
CLIENT_ID = "test-client"
CLIENT_SECRET = "test-secret"
REDIRECT_URI = "https://app.example/callback"
SCOPE = "patient/Patient.read patient/Observation.read launch online_access openid profile"


class FakeClock:
    """Manually advanced replacement for time.time"""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeFHIRServer:
    """
    In-process FHIR + authorization server behind httpx.MockTransport.

    Attributes can be changed per test to simulate the server's behavior.
    """

    def __init__(self):
        self.well_known: Optional[Dict[str, Any]] = {
            "authorization_endpoint": AUTHORIZE_URL,
            "token_endpoint": TOKEN_URL,
            "capabilities": ["launch-ehr", "client-confidential-symmetric"],
            "code_challenge_methods_supported": ["S256"],
        }
        self.well_known_status = 200
        self.metadata: Optional[Dict[str, Any]] = None
        self.metadata_status = 200
        self.token_status = 200
        self.token_body: Dict[str, Any] = {
            "access_token": "access-123",
            "token_type": "Bearer",
            "expires_in": 3600,
            "scope": "patient/Patient.read launch openid",
            "refresh_token": "refresh-456",
            "patient": "pat-1",
            "encounter": "enc-1",
        }
        self.unreachable = False
        self.timeout = False
        self.requests: List[httpx.Request] = []

    def requests_to(self, path_suffix: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(path_suffix)]

    @property
    def token_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if str(r.url) == TOKEN_URL]

    @staticmethod
    def form(request: httpx.Request) -> Dict[str, str]:
        return dict(parse_qsl(request.content.decode()))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.timeout:
            raise httpx.ReadTimeout("timed out", request=request)
        if self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)

        path = request.url.path
        if path.endswith("/.well-known/smart-configuration"):
            if self.well_known is None:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(self.well_known_status, json=self.well_known)
        if path.endswith("/metadata"):
            if self.metadata is None:
                return httpx.Response(404)
            return httpx.Response(self.metadata_status, json=self.metadata)
        if str(request.url) == TOKEN_URL and request.method == "POST":
            return httpx.Response(
                self.token_status,
                content=json.dumps(self.token_body).encode(),
                headers={"Content-Type": "application/json"},
            )
        return httpx.Response(404)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_server():
    return FakeFHIRServer()


@pytest.fixture
def http_client(fake_server):
    return fake_server.client()


@pytest.fixture
def test_settings():
    """Settings for a configured test deployment"""
    return Settings(
        ENVIRONMENT="test",
        SMART_CLIENT_ID=CLIENT_ID,
        SMART_CLIENT_SECRET=CLIENT_SECRET,
        SMART_REDIRECT_URI=REDIRECT_URI,
        SMART_SCOPE=SCOPE,
        RATE_LIMIT_ENABLED=False,
        STATE_SWEEP_INTERVAL_SECONDS=0,
        STATIC_LIB_DIR="/nonexistent/lib",
        STATIC_RESOURCES_DIR="/nonexistent/resources",
    )
