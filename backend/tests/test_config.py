import pytest
import uvicorn
from pydantic import ValidationError

from agora import main
from agora.config import Settings

REQUIRED = {
    "my_domain": "http://client.test",
    "my_public_domain": "https://api.test/",
    "client_addr": "http://client.test",
    "session_secret": "test-session-secret",
    "app_id": "test-app-id",
    "app_secret": "test-app-secret",
    "fb_login_path": "/auth/facebook",
    "fb_login_cb_path": "/auth/facebook/callback",
    "fb_login_fail_path": "/auth/facebook/failed",
    "fb_success_url": "http://client.test/welcome",
}


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **{**REQUIRED, **overrides})


class TestSettings:
    """Tests for configuration loading and validation."""

    def test_missing_required_values(self, monkeypatch):
        """Test that startup fails when a required variable is absent."""
        monkeypatch.delenv("SESSION_SECRET", raising=False)
        monkeypatch.delenv("APP_SECRET", raising=False)
        values = {k: v for k, v in REQUIRED.items() if k not in ("session_secret", "app_secret")}

        with pytest.raises(ValidationError) as exc_info:
            Settings(_env_file=None, **values)
        fields = {error["loc"][0] for error in exc_info.value.errors()}
        assert fields == {"session_secret", "app_secret"}

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("SESSION_LIFE", "60000")
        monkeypatch.setenv("NODE_ENV", "staging")
        settings = Settings(_env_file=None)
        assert settings.session_life == 60000
        assert settings.environment == "staging"

    def test_derived_values(self):
        settings = make_settings(session_life=90_500)
        assert settings.session_max_age == 90
        assert settings.fb_callback_url == "https://api.test/auth/facebook/callback"
        assert not settings.in_production

    def test_paths_must_be_absolute(self):
        with pytest.raises(ValidationError):
            make_settings(fb_login_path="auth/facebook")

    def test_trailing_slash_is_dropped(self):
        assert make_settings(graphql_path="/graphql/").graphql_path == "/graphql"

    def test_session_life_must_be_positive(self):
        with pytest.raises(ValidationError):
            make_settings(session_life=0)


class TestSecurityValidation:
    def test_short_secret_rejected_in_production(self):
        settings = make_settings(environment="production", session_secret="short")
        with pytest.raises(RuntimeError):
            settings.validate_security()

    def test_long_secret_accepted_in_production(self):
        make_settings(environment="production", session_secret="x" * 40).validate_security()

    def test_short_secret_allowed_in_development(self):
        make_settings(session_secret="short").validate_security()

    def test_same_site_none_requires_secure(self):
        settings = make_settings(session_same_site="none", session_cookie_secure=False)
        with pytest.raises(RuntimeError):
            settings.validate_security()

    def test_same_site_none_rejects_auto_secure(self):
        """Test that SameSite=none cannot rely on the request scheme for Secure."""
        settings = make_settings(session_same_site="none")
        with pytest.raises(RuntimeError):
            settings.validate_security()

    def test_same_site_none_with_forced_secure(self):
        make_settings(session_same_site="none", session_cookie_secure=True).validate_security()


class TestCookieSecureMode:
    @pytest.mark.parametrize("value", ["auto", "AUTO", ""])
    def test_auto_from_environment(self, monkeypatch, value):
        monkeypatch.setenv("SESSION_COOKIE_SECURE", value)
        assert Settings(_env_file=None).session_cookie_secure is None

    @pytest.mark.parametrize("value, expected", [("true", True), ("false", False)])
    def test_forced_from_environment(self, monkeypatch, value, expected):
        monkeypatch.setenv("SESSION_COOKIE_SECURE", value)
        assert Settings(_env_file=None).session_cookie_secure is expected

    def test_unknown_value_rejected(self, monkeypatch):
        monkeypatch.setenv("SESSION_COOKIE_SECURE", "sometimes")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)


class TestRun:
    """Tests for the uvicorn entry point."""

    def test_trusts_configured_proxy_only(self, monkeypatch, settings):
        calls = []
        monkeypatch.setattr(main, "get_settings", lambda: settings)
        monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append(kwargs))

        main.run()

        assert calls[0]["proxy_headers"] is True
        assert calls[0]["forwarded_allow_ips"] == "127.0.0.1"
        assert calls[0]["port"] == 4000

    def test_forwarded_allow_ips_from_environment(self, monkeypatch):
        monkeypatch.setenv("FORWARDED_ALLOW_IPS", "10.0.0.5")
        assert Settings(_env_file=None).forwarded_allow_ips == "10.0.0.5"
