from datetime import timedelta

import pytest
from pydantic import ValidationError

from authbase.config import OnUnavailable, Settings
from authbase.service.runtime import (
    lockout_policy_from,
    revocation_config_from,
    token_config_from,
)

GOOD_SECRET = "s" * 40


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", GOOD_SECRET)
        monkeypatch.setenv("LOCKOUT_THRESHOLD", "3")
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "30")
        monkeypatch.setenv("REVOCATION_ON_UNAVAILABLE", " FAIL_CLOSED ")

        settings = Settings.from_env()

        assert settings.jwt_secret == GOOD_SECRET
        assert settings.lockout_threshold == 3
        assert settings.access_token_ttl_minutes == 30
        assert settings.revocation_on_unavailable == OnUnavailable.FAIL_CLOSED

    def test_defaults(self):
        settings = Settings(jwt_secret=GOOD_SECRET)

        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_days == 7
        assert settings.lockout_threshold == 5
        assert settings.lockout_minutes == 15
        assert settings.revocation_buffer_seconds == 300
        assert settings.revocation_on_unavailable == OnUnavailable.FAIL_OPEN
        assert settings.refresh_on_unavailable == OnUnavailable.FAIL_CLOSED
        assert settings.trust_forwarded_for is False

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=GOOD_SECRET, revocation_on_unavailable="sometimes")

    @pytest.mark.parametrize("field", ["lockout_threshold", "access_token_ttl_minutes"])
    def test_non_positive_values_rejected(self, field):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=GOOD_SECRET, **{field: 0})


class TestJwtSecret:
    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="too-short")

    def test_missing_secret_generates_ephemeral(self):
        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)

        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret != second.jwt_secret


class TestComponentConfig:
    def test_builders_carry_settings(self):
        settings = Settings(
            jwt_secret=GOOD_SECRET,
            jwt_issuer="issuer-x",
            access_token_ttl_minutes=5,
            lockout_threshold=3,
            lockout_minutes=2,
            redis_enabled=False,
            revocation_buffer_seconds=60,
        )

        token_config = token_config_from(settings)
        assert token_config.secret == GOOD_SECRET
        assert token_config.issuer == "issuer-x"
        assert token_config.ttl == timedelta(minutes=5)

        policy = lockout_policy_from(settings)
        assert policy.threshold == 3
        assert policy.duration == timedelta(minutes=2)

        revocation = revocation_config_from(settings)
        assert revocation.enabled is False
        assert revocation.buffer_seconds == 60
