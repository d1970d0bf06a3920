"""Unit tests for application settings and credential resolution."""

import pytest

from smart_launch.core.config import (
    CREDENTIAL_SOURCE_DEV_DEFAULT,
    CREDENTIAL_SOURCE_ENVIRONMENT,
    DEFAULT_SCOPE,
    DEV_CLIENT_ID,
    DEV_CLIENT_SECRET,
    Settings,
)
from smart_launch.core.errors import ConfigurationError


class TestClientCredentials:
    """Tests for Settings.resolve_client_credentials."""

    def test_configured_credentials(self):
        settings = Settings(ENVIRONMENT="production", SMART_CLIENT_ID="app", SMART_CLIENT_SECRET="s3cret")

        client_id, secret, source = settings.resolve_client_credentials()

        assert client_id == "app"
        assert secret == "s3cret"
        assert source == CREDENTIAL_SOURCE_ENVIRONMENT

    def test_missing_secret_is_fatal_in_production(self):
        settings = Settings(ENVIRONMENT="production", SMART_CLIENT_ID="app", SMART_CLIENT_SECRET=None)

        with pytest.raises(ConfigurationError) as exc_info:
            settings.resolve_client_credentials()

        assert "SMART_CLIENT_SECRET" in str(exc_info.value)
        assert "SMART_CLIENT_ID" not in str(exc_info.value)

    def test_missing_both_is_fatal_in_production(self):
        settings = Settings(ENVIRONMENT="production", SMART_CLIENT_ID=None, SMART_CLIENT_SECRET=None)

        with pytest.raises(ConfigurationError):
            settings.resolve_client_credentials()

    def test_development_defaults_are_marked(self):
        settings = Settings(ENVIRONMENT="development", SMART_CLIENT_ID=None, SMART_CLIENT_SECRET=None)

        client_id, secret, source = settings.resolve_client_credentials()

        assert client_id == DEV_CLIENT_ID
        assert secret == DEV_CLIENT_SECRET
        assert source == CREDENTIAL_SOURCE_DEV_DEFAULT

    def test_secret_not_exposed_in_repr(self):
        settings = Settings(SMART_CLIENT_ID="app", SMART_CLIENT_SECRET="very-secret-value")

        assert "very-secret-value" not in repr(settings)


class TestDerivedSettings:
    """Tests for derived configuration values."""

    def test_redirect_uri_derived_from_base_url(self):
        settings = Settings(APP_BASE_URL="https://app.example/", SMART_REDIRECT_URI=None)
        assert settings.redirect_uri == "https://app.example/callback"

    def test_explicit_redirect_uri_used_verbatim(self):
        settings = Settings(SMART_REDIRECT_URI="https://app.example/smart/callback?x=1")
        assert settings.redirect_uri == "https://app.example/smart/callback?x=1"

    def test_default_scope(self):
        settings = Settings(SMART_SCOPE=DEFAULT_SCOPE)
        assert "launch" in settings.scopes
        assert "patient/Patient.read" in settings.scopes

    def test_insecure_issuers_only_in_development(self):
        assert Settings(ENVIRONMENT="production", ALLOW_INSECURE_ISSUERS=True).allow_insecure_issuers is False
        assert Settings(ENVIRONMENT="development", ALLOW_INSECURE_ISSUERS=True).allow_insecure_issuers is True
