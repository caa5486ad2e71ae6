"""Configuration defaults, environment loading, and logging setup.

WHY: Every component (store, gateway, linking, Slack handlers, HTTP server)
needs a handful of deployment values: backend URLs, the service API key,
the encryption key, link-state TTL bounds, and Slack credentials. Keeping
them in one place makes them easy to find and override.

HOW: python-dotenv loads the .env file on import. Defaults are plain
module-level constants. Settings.from_env() reads the environment once and
returns an immutable Settings object that is passed down explicitly
(never read ad hoc from os.environ inside handlers).

RULES:
- Secrets (API key, encryption key, Slack tokens) are loaded from the
  environment, never hardcoded
- ENCRYPTION_KEY is required and must decode to 32 bytes (AES-256)
- Link-state TTL is always clamped to [LINK_STATE_TTL_MIN, LINK_STATE_TTL_MAX]
- configure_logging() is called once by the process entry point
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from dataclasses import dataclass, replace

from dotenv import load_dotenv

# Load .env from the working directory
load_dotenv()

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_HELPME_BASE_URL = "http://localhost:3000"
DEFAULT_CHATBOT_API_URL = "http://localhost:3003/chat"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./data/data.db"
DEFAULT_PORT = 3109

LINK_STATE_TTL_DEFAULT = 600
LINK_STATE_TTL_MIN = 60
LINK_STATE_TTL_MAX = 600

# Gateway timeouts (seconds)
DEFAULT_TIMEOUT_S = 10.0
HEAVY_TIMEOUT_S = 30.0

DELIVERY_MODES = frozenset({"SOCKET", "HTTP"})

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError("{} must be an integer, got {!r}".format(name, raw))


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError("{} must be a number, got {!r}".format(name, raw))


def clamp_ttl(ttl_seconds: int, minimum: int = LINK_STATE_TTL_MIN, maximum: int = LINK_STATE_TTL_MAX) -> int:
    """Clamp a requested link-state TTL into [minimum, maximum] seconds."""
    return max(minimum, min(maximum, int(ttl_seconds)))


def decode_encryption_key(raw: str) -> bytes:
    """Decode and validate the base64 AES-256 key.

    RULES:
    - Raises ValueError if the key is missing, not base64, or not 32 bytes
    """
    raw = (raw or "").strip()
    if not raw:
        raise ValueError(
            "Encryption key not configured. "
            "Add ENCRYPTION_KEY (base64, 32 bytes) to the .env file."
        )
    try:
        key = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        raise ValueError("ENCRYPTION_KEY is not valid base64")
    if len(key) != 32:
        raise ValueError(
            "ENCRYPTION_KEY must decode to 32 bytes, got {}".format(len(key))
        )
    return key


@dataclass(frozen=True)
class Settings:
    """Immutable process configuration.

    WHY: The store, gateway and handlers all need configuration, and tests
    need to build variants cheaply. A frozen dataclass passed down from the
    entry point replaces scattered os.getenv() calls.

    HOW: from_env() reads every variable once; tests construct Settings
    directly or use with_overrides().

    RULES:
    - encryption_key holds the decoded 32 raw bytes
    - link_state_ttl is already clamped to the configured bounds
    - slack_bot_token empty means "do not start the Slack app"
    """

    encryption_key: bytes
    helpme_base_url: str = DEFAULT_HELPME_BASE_URL
    chatbot_api_url: str = DEFAULT_CHATBOT_API_URL
    chatbot_api_key: str = ""
    database_url: str = DEFAULT_DATABASE_URL
    port: int = DEFAULT_PORT
    app_base_url: str = "http://localhost:{}".format(DEFAULT_PORT)
    link_state_ttl: int = LINK_STATE_TTL_DEFAULT
    link_state_ttl_min: int = LINK_STATE_TTL_MIN
    link_state_ttl_max: int = LINK_STATE_TTL_MAX
    default_course_id: int | None = None
    linking_required: bool = True
    link_shared_secret: str = ""
    helpme_org_id: str = ""
    delivery_mode: str = "SOCKET"
    slack_bot_token: str = ""
    slack_app_token: str = ""
    slack_signing_secret: str = ""
    timeout_s: float = DEFAULT_TIMEOUT_S
    heavy_timeout_s: float = HEAVY_TIMEOUT_S
    log_level: str = "INFO"

    @property
    def callback_url(self) -> str:
        return "{}/link/callback".format(self.app_base_url.rstrip("/"))

    def with_overrides(self, **changes) -> Settings:
        return replace(self, **changes)

    @classmethod
    def from_env(cls) -> Settings:
        """Build Settings from os.environ (populated by python-dotenv).

        RULES:
        - Raises ValueError for a missing/invalid ENCRYPTION_KEY
        - Raises ValueError for an unknown DELIVERY_MODE
        - HELP_ME_BASE_URL is accepted as an alias of HELPME_BASE_URL
        """
        ttl_min = _env_int("LINK_STATE_TTL_MIN_SECONDS", LINK_STATE_TTL_MIN)
        ttl_max = _env_int("LINK_STATE_TTL_MAX_SECONDS", LINK_STATE_TTL_MAX)
        if ttl_min > ttl_max:
            raise ValueError(
                "LINK_STATE_TTL_MIN_SECONDS ({}) exceeds LINK_STATE_TTL_MAX_SECONDS ({})".format(
                    ttl_min, ttl_max
                )
            )
        ttl = clamp_ttl(
            _env_int("LINK_STATE_TTL_SECONDS", LINK_STATE_TTL_DEFAULT), ttl_min, ttl_max
        )

        port = _env_int("PORT", DEFAULT_PORT)
        mode = os.getenv("DELIVERY_MODE", "SOCKET").strip().upper()
        if mode not in DELIVERY_MODES:
            raise ValueError(
                "DELIVERY_MODE must be one of {}, got {!r}".format(
                    ", ".join(sorted(DELIVERY_MODES)), mode
                )
            )

        helpme_base_url = (
            os.getenv("HELPME_BASE_URL")
            or os.getenv("HELP_ME_BASE_URL")
            or DEFAULT_HELPME_BASE_URL
        )

        return cls(
            encryption_key=decode_encryption_key(os.getenv("ENCRYPTION_KEY", "")),
            helpme_base_url=helpme_base_url.rstrip("/"),
            chatbot_api_url=os.getenv("CHATBOT_API_URL", DEFAULT_CHATBOT_API_URL).rstrip("/"),
            chatbot_api_key=os.getenv("CHATBOT_API_KEY", ""),
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            port=port,
            app_base_url=os.getenv("APP_BASE_URL", "http://localhost:{}".format(port)).rstrip("/"),
            link_state_ttl=ttl,
            link_state_ttl_min=ttl_min,
            link_state_ttl_max=ttl_max,
            default_course_id=_env_int("DEFAULT_COURSE_ID", None),
            linking_required=_env_bool("LINKING_REQUIRED", True),
            link_shared_secret=os.getenv("LINK_SHARED_SECRET", ""),
            helpme_org_id=os.getenv("HELPME_ORG_ID") or os.getenv("DEFAULT_ORG_ID", ""),
            delivery_mode=mode,
            slack_bot_token=os.getenv("SLACK_BOT_TOKEN", ""),
            slack_app_token=os.getenv("SLACK_APP_TOKEN", ""),
            slack_signing_secret=os.getenv("SLACK_SIGNING_SECRET", ""),
            timeout_s=_env_float("CHATBOT_TIMEOUT_S", DEFAULT_TIMEOUT_S),
            heavy_timeout_s=_env_float("CHATBOT_HEAVY_TIMEOUT_S", HEAVY_TIMEOUT_S),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
