import pytest
from pydantic import ValidationError

from timekeeper.config import SameSite, Settings, get_settings, reset_settings_cache

SECRET = "x" * 32


class TestSettingsValidation:
    def test_defaults_match_documented_values(self):
        settings = Settings(jwt_secret=SECRET)
        assert settings.access_token_ttl_minutes == 60
        assert settings.refresh_token_ttl_days == 7
        assert settings.max_concurrent_sessions == 3
        assert settings.account_lockout_threshold == 5
        assert settings.rate_limit_ip_max_requests == 15
        assert settings.rate_limit_ip_window_seconds == 900
        assert settings.rate_limit_user_max_requests == 20
        assert settings.rate_limit_user_window_seconds == 3600
        assert settings.redis_url is None
        assert settings.cookie_same_site is SameSite.LAX

    def test_missing_jwt_secret_is_rejected(self):
        with pytest.raises(ValidationError):
            Settings()

    def test_short_jwt_secret_is_rejected(self):
        with pytest.raises(ValidationError, match="at least 32"):
            Settings(jwt_secret="too-short")

    def test_same_site_is_case_insensitive(self):
        settings = Settings(jwt_secret=SECRET, cookie_same_site="Strict")
        assert settings.cookie_same_site is SameSite.STRICT

    def test_same_site_none_requires_secure_cookies(self):
        with pytest.raises(ValidationError, match="COOKIE_SECURE"):
            Settings(jwt_secret=SECRET, cookie_same_site="none")
        settings = Settings(jwt_secret=SECRET, cookie_same_site="none", cookie_secure=True)
        assert settings.cookie_same_site is SameSite.NONE

    def test_blank_redis_url_disables_cache(self):
        assert Settings(jwt_secret=SECRET, redis_url="  ").redis_url is None

    def test_pool_bounds_must_be_ordered(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, database_pool_min=5, database_pool_max=2)

    def test_mfa_key_defaults_to_signing_secret(self):
        assert Settings(jwt_secret=SECRET).mfa_key_material == SECRET
        assert (
            Settings(jwt_secret=SECRET, mfa_encryption_key="k" * 40).mfa_key_material == "k" * 40
        )


class TestSettingsFromEnv:
    def test_environment_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", SECRET)
        monkeypatch.setenv("MAX_CONCURRENT_SESSIONS", "5")
        monkeypatch.setenv("RATE_LIMIT_IP_MAX_REQUESTS", "30")
        monkeypatch.setenv("COOKIE_SECURE", "true")
        settings = Settings.from_env()
        assert settings.max_concurrent_sessions == 5
        assert settings.rate_limit_ip_max_requests == 30
        assert settings.cookie_secure is True

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", SECRET)
        reset_settings_cache()
        try:
            first = get_settings()
            assert get_settings() is first
            reset_settings_cache()
            assert get_settings() is not first
        finally:
            reset_settings_cache()
