"""Async HTTP gateway to the HelpMe auth and chatbot services.

WHY: Every backend call needs the same things: the static service key, the
caller's own chat token, a timeout, and a translation of HTTP failures into
errors the command handlers can explain to a user. Keeping all of that in
one class means no handler ever touches httpx directly.

HOW: HelpMeClient wraps httpx.AsyncClient and is used as an async context
manager. call() is the generic authenticated request; the typed methods
(exchange_code, ask, ask_with_file, course settings, list_models) build on
it and normalise responses into the dataclasses in api.models.

RULES:
- Use as: async with HelpMeClient(...) as client: ...
- HMS-API-KEY (service key) is sent on every request
- HMS-API-TOKEN (user chat token) is sent whenever a token is supplied
- Default timeout is 10s; file analysis uses the 30s heavy timeout
- No retries here: one call, one HTTP request
- Non-2xx, network failures and unreadable payloads all raise a
  HelpMeAPIError subclass; nothing else escapes
- Tokens are never logged
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, TypeVar

import httpx

from helpme_slack.api.models import (
    AskResponse,
    CourseSettings,
    ExchangeResult,
    ModelInfo,
)
from helpme_slack.config import (
    DEFAULT_CHATBOT_API_URL,
    DEFAULT_HELPME_BASE_URL,
    DEFAULT_TIMEOUT_S,
    HEAVY_TIMEOUT_S,
    Settings,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SERVICE_KEY_HEADER = "HMS-API-KEY"
USER_TOKEN_HEADER = "HMS-API-TOKEN"
EXCHANGE_PATH = "/api/v1/auth/slack/exchange"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class HelpMeAPIError(Exception):
    """Raised when a HelpMe backend call fails.

    WHY: Handlers need to tell "re-link", "quota" and "try later" apart
    without knowing HTTP status codes.

    HOW: Subclasses map to the failure classes; the base carries the
    status code (0 for network failures), the backend's message, and the
    quota reset time when one was given.

    RULES:
    - message is the backend's JSON error/message field, else the body text
    - reset_at is epoch seconds or None
    """

    def __init__(self, status_code: int, message: str, reset_at: float | None = None) -> None:
        self.status_code = status_code
        self.message = message
        self.reset_at = reset_at
        super().__init__(f"HelpMe API error {status_code}: {message}")


class BackendUnauthorized(HelpMeAPIError):
    """401/403: the stored token was rejected; the user must re-link."""


class BackendQuotaExceeded(HelpMeAPIError):
    """429: the user's question quota is exhausted until reset_at."""


class BackendRejected(HelpMeAPIError):
    """Any other 4xx: the backend understood the request and refused it."""


class BackendNotFound(BackendRejected):
    """404: course or resource unknown, or not visible to this user."""


class BackendValidationError(BackendRejected):
    """400/422: the request body failed validation."""


class BackendUnavailable(HelpMeAPIError):
    """5xx, timeout, connection failure or an unreadable payload."""


def parse_reset_at(value: Any) -> float | None:
    """Normalise a resetAt value into epoch seconds.

    Accepts epoch seconds, epoch milliseconds (anything above 1e12) and
    ISO-8601 strings. Unparseable values give None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.timestamp()
    if isinstance(value, (int, float)):
        value = float(value)
        return value / 1000.0 if value > 1e12 else value
    return None


def error_from_response(resp: httpx.Response) -> HelpMeAPIError:
    """Build the HelpMeAPIError subclass matching a non-2xx response."""
    body: Any = None
    try:
        body = resp.json()
    except ValueError:
        pass

    message = ""
    reset_at = None
    if isinstance(body, dict):
        message = str(body.get("error") or body.get("message") or "")
        reset_at = parse_reset_at(body.get("resetAt"))
    if not message:
        message = resp.text.strip() or resp.reason_phrase or "Unknown error"

    status = resp.status_code
    if status in (401, 403):
        return BackendUnauthorized(status, message)
    if status == 429:
        return BackendQuotaExceeded(status, message, reset_at)
    if status == 404:
        return BackendNotFound(status, message)
    if status in (400, 422):
        return BackendValidationError(status, message)
    if 400 <= status < 500:
        return BackendRejected(status, message)
    return BackendUnavailable(status, message)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class HelpMeClient:
    """Async client for the HelpMe auth and chatbot APIs.

    WHY: One authenticated, time-limited path to the backend for every
    command handler and the link callback.

    HOW: Wraps httpx.AsyncClient. The service key is a default header;
    the user token is added per call. Tests pass an httpx.MockTransport
    through ``transport``.

    RULES:
    - Use as: async with HelpMeClient.from_settings(settings) as client: ...
    - chatbot_api_url is the base for call(); exchange_code uses auth_base_url
    """

    def __init__(
        self,
        api_key: str = "",
        chatbot_api_url: str = DEFAULT_CHATBOT_API_URL,
        auth_base_url: str = DEFAULT_HELPME_BASE_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        heavy_timeout_s: float = HEAVY_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._chatbot_api_url = chatbot_api_url.rstrip("/")
        self._auth_base_url = auth_base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._heavy_timeout_s = heavy_timeout_s
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> HelpMeClient:
        return cls(
            api_key=settings.chatbot_api_key,
            chatbot_api_url=settings.chatbot_api_url,
            auth_base_url=settings.helpme_base_url,
            timeout_s=settings.timeout_s,
            heavy_timeout_s=settings.heavy_timeout_s,
            transport=transport,
        )

    async def __aenter__(self) -> HelpMeClient:
        self._client = httpx.AsyncClient(
            headers={SERVICE_KEY_HEADER: self._api_key},
            timeout=httpx.Timeout(self._timeout_s),
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._client:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(
                "HelpMeClient must be used as an async context manager: "
                "async with HelpMeClient(...) as client: ..."
            )
        return self._client

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        url: str,
        user_token: str | None,
        json_body: Any = None,
        timeout: float | None = None,
        data: dict | None = None,
        files: dict | None = None,
    ) -> Any:
        client = self._ensure_client()
        headers = {USER_TOKEN_HEADER: user_token} if user_token else {}

        try:
            resp = await client.request(
                method,
                url,
                headers=headers,
                json=json_body,
                data=data,
                files=files,
                timeout=timeout if timeout is not None else self._timeout_s,
            )
        except httpx.TimeoutException:
            logger.warning("HelpMe %s %s timed out", method, url)
            raise BackendUnavailable(0, "The HelpMe service did not respond in time")
        except httpx.HTTPError as exc:
            logger.warning("HelpMe %s %s failed: %s", method, url, exc.__class__.__name__)
            raise BackendUnavailable(0, f"Could not reach the HelpMe service ({exc.__class__.__name__})")

        if not resp.is_success:
            error = error_from_response(resp)
            logger.warning(
                "HelpMe %s %s -> %d %s", method, url, resp.status_code, error.__class__.__name__
            )
            raise error

        logger.debug("HelpMe %s %s -> %d", method, url, resp.status_code)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            raise BackendUnavailable(resp.status_code, "HelpMe returned a response that is not JSON")

    async def call(
        self,
        method: str,
        path: str,
        user_token: str | None,
        json: Any = None,  # noqa: A002
        timeout: float | None = None,
    ) -> Any:
        """Make an authenticated JSON request to the chatbot API.

        RULES:
        - path is relative to chatbot_api_url (leading slash optional)
        - Returns the decoded JSON body, or None for an empty 2xx body
        - Raises a HelpMeAPIError subclass on any failure
        """
        url = f"{self._chatbot_api_url}/{path.lstrip('/')}"
        return await self._send(method, url, user_token, json_body=json, timeout=timeout)

    @staticmethod
    def _parse(factory: Callable[[Any], T], payload: Any, what: str) -> T:
        try:
            return factory(payload)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.warning("Malformed %s payload from HelpMe: %s", what, exc)
            raise BackendUnavailable(200, f"HelpMe returned an unexpected {what} response")

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    async def exchange_code(self, code: str) -> ExchangeResult:
        """Exchange a one-time auth code for identity, chat token and courses."""
        payload = await self._send(
            "POST", f"{self._auth_base_url}{EXCHANGE_PATH}", None, json_body={"code": code}
        )
        return self._parse(ExchangeResult.from_dict, payload, "exchange")

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    async def ask(
        self,
        course_id: int,
        question: str,
        user_token: str | None,
        history: list[dict] | None = None,
    ) -> AskResponse:
        """POST /chatbot/{course_id}/ask with body {question, history}."""
        payload = await self.call(
            "POST",
            f"chatbot/{course_id}/ask",
            user_token,
            json={"question": question, "history": history or []},
        )
        return self._parse(AskResponse.from_dict, payload, "ask")

    async def ask_with_file(
        self,
        course_id: int,
        question: str,
        user_token: str | None,
        filename: str,
        content: bytes,
        content_type: str = "application/octet-stream",
        history: list[dict] | None = None,
    ) -> AskResponse:
        """Ask a question about an uploaded file (multipart, heavy timeout)."""
        url = f"{self._chatbot_api_url}/chatbot/{course_id}/ask"
        payload = await self._send(
            "POST",
            url,
            user_token,
            data={"question": question, "history": json.dumps(history or [])},
            files={"file": (filename, content, content_type)},
            timeout=self._heavy_timeout_s,
        )
        return self._parse(AskResponse.from_dict, payload, "ask")

    # ------------------------------------------------------------------
    # Course settings and models
    # ------------------------------------------------------------------

    async def get_course_settings(self, course_id: int, user_token: str | None) -> CourseSettings:
        payload = await self.call("GET", f"course-setting/{course_id}", user_token)
        return self._parse(CourseSettings.from_dict, payload, "course settings")

    async def update_course_settings(
        self, course_id: int, user_token: str | None, changes: dict[str, Any]
    ) -> CourseSettings:
        payload = await self.call("PATCH", f"course-setting/{course_id}", user_token, json=changes)
        if not isinstance(payload, dict) or not payload:
            return await self.get_course_settings(course_id, user_token)
        return self._parse(CourseSettings.from_dict, payload, "course settings")

    async def reset_course_settings(self, course_id: int, user_token: str | None) -> CourseSettings:
        payload = await self.call("PATCH", f"course-setting/{course_id}/reset", user_token)
        if not isinstance(payload, dict) or not payload:
            return await self.get_course_settings(course_id, user_token)
        return self._parse(CourseSettings.from_dict, payload, "course settings")

    async def list_models(self, user_token: str | None) -> list[ModelInfo]:
        payload = await self.call("GET", "chatbot/models", user_token)
        return self._parse(ModelInfo.list_from_payload, payload, "models")
