"""Tests for Settings loading and validation."""

import base64

import pytest

from helpme_slack.config import Settings, clamp_ttl, decode_encryption_key

KEY_B64 = base64.b64encode(bytes(range(32))).decode()

ENV_VARS = [
    "ENCRYPTION_KEY", "HELPME_BASE_URL", "HELP_ME_BASE_URL", "CHATBOT_API_URL",
    "CHATBOT_API_KEY", "DATABASE_URL", "PORT", "APP_BASE_URL", "LINK_STATE_TTL_SECONDS",
    "LINK_STATE_TTL_MIN_SECONDS", "LINK_STATE_TTL_MAX_SECONDS", "DEFAULT_COURSE_ID",
    "LINKING_REQUIRED", "LINK_SHARED_SECRET", "HELPME_ORG_ID", "DEFAULT_ORG_ID",
    "DELIVERY_MODE", "SLACK_BOT_TOKEN", "SLACK_APP_TOKEN", "SLACK_SIGNING_SECRET",
    "LOG_LEVEL",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ENCRYPTION_KEY", KEY_B64)
    return monkeypatch


class TestHelpers:
    def test_clamp_ttl(self):
        assert clamp_ttl(5) == 60
        assert clamp_ttl(300) == 300
        assert clamp_ttl(10_000) == 600
        assert clamp_ttl(200, 100, 150) == 150

    def test_decode_key(self):
        assert decode_encryption_key(KEY_B64) == bytes(range(32))

    @pytest.mark.parametrize("raw", ["", "   ", "not base64!", base64.b64encode(b"short").decode()])
    def test_decode_key_rejects(self, raw):
        with pytest.raises(ValueError):
            decode_encryption_key(raw)


class TestFromEnv:
    def test_defaults(self, clean_env):
        settings = Settings.from_env()
        assert settings.encryption_key == bytes(range(32))
        assert settings.link_state_ttl == 600
        assert settings.linking_required is True
        assert settings.delivery_mode == "SOCKET"
        assert settings.default_course_id is None
        assert settings.callback_url == "http://localhost:3109/link/callback"

    def test_overrides(self, clean_env):
        clean_env.setenv("HELP_ME_BASE_URL", "https://helpme.example/")
        clean_env.setenv("APP_BASE_URL", "https://bot.example/")
        clean_env.setenv("LINK_STATE_TTL_SECONDS", "5")
        clean_env.setenv("DEFAULT_COURSE_ID", "304")
        clean_env.setenv("LINKING_REQUIRED", "false")
        clean_env.setenv("DELIVERY_MODE", "http")
        clean_env.setenv("DEFAULT_ORG_ID", "3")
        settings = Settings.from_env()
        assert settings.helpme_base_url == "https://helpme.example"
        assert settings.callback_url == "https://bot.example/link/callback"
        assert settings.link_state_ttl == 60
        assert settings.default_course_id == 304
        assert settings.linking_required is False
        assert settings.delivery_mode == "HTTP"
        assert settings.helpme_org_id == "3"

    def test_missing_key_is_fatal(self, clean_env):
        clean_env.delenv("ENCRYPTION_KEY")
        with pytest.raises(ValueError, match="ENCRYPTION_KEY"):
            Settings.from_env()

    def test_bad_delivery_mode(self, clean_env):
        clean_env.setenv("DELIVERY_MODE", "carrier-pigeon")
        with pytest.raises(ValueError, match="DELIVERY_MODE"):
            Settings.from_env()

    def test_bad_integer(self, clean_env):
        clean_env.setenv("DEFAULT_COURSE_ID", "cosc304")
        with pytest.raises(ValueError, match="DEFAULT_COURSE_ID"):
            Settings.from_env()

    def test_inverted_ttl_bounds(self, clean_env):
        clean_env.setenv("LINK_STATE_TTL_MIN_SECONDS", "500")
        clean_env.setenv("LINK_STATE_TTL_MAX_SECONDS", "100")
        with pytest.raises(ValueError, match="exceeds"):
            Settings.from_env()
