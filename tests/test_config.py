"""Tests for Settings loading and validation."""

import pytest
from pydantic import ValidationError

from learnauth.config import Settings, get_settings, reset_settings_cache


class TestDefaults:
    def test_documented_defaults(self):
        settings = Settings(jwt_secret="s" * 40)

        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
        assert settings.session_ttl_minutes == 7 * 24 * 60
        assert settings.password_reset_ttl_minutes == 60
        assert settings.email_verification_ttl_minutes == 24 * 60
        assert settings.max_failed_login_attempts == 5
        assert settings.account_lock_minutes == 30
        assert settings.password_hash_cost == 12
        assert settings.log_raw_tokens is False


class TestJwtSecret:
    def test_missing_secret_is_generated(self):
        first = Settings()
        second = Settings()

        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret != second.jwt_secret

    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="too-short")


class TestValidation:
    @pytest.mark.parametrize(
        "field",
        ["access_token_ttl_minutes", "max_failed_login_attempts", "account_lock_minutes"],
    )
    def test_non_positive_rejected(self, field):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="s" * 40, **{field: 0})

    @pytest.mark.parametrize("cost", [3, 21])
    def test_hash_cost_out_of_range(self, cost):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="s" * 40, password_hash_cost=cost)


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "e" * 48)
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        monkeypatch.setenv("USE_MEMORY_STORE", "true")
        monkeypatch.setenv("ACCOUNT_LOCK_MINUTES", "45")

        settings = Settings.from_env()

        assert settings.jwt_secret == "e" * 48
        assert settings.access_token_ttl_minutes == 5
        assert settings.use_memory_store is True
        assert settings.account_lock_minutes == 45

    def test_dotenv_file_used_when_env_missing(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("MAX_FAILED_LOGIN_ATTEMPTS", raising=False)
        (tmp_path / ".env").write_text("MAX_FAILED_LOGIN_ATTEMPTS=7\n")

        assert Settings.from_env().max_failed_login_attempts == 7

    def test_get_settings_caches_until_reset(self, monkeypatch):
        reset_settings_cache()
        monkeypatch.setenv("SESSION_TTL_MINUTES", "10")
        first = get_settings()
        monkeypatch.setenv("SESSION_TTL_MINUTES", "20")

        assert get_settings() is first
        reset_settings_cache()
        assert get_settings().session_ttl_minutes == 20
