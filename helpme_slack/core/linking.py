"""Account-linking state machine.

WHY: A Slack user proves who they are on HelpMe by signing in there. The
bot has to correlate the browser round trip with the Slack identity that
started it, and must never let a correlation token be used twice or after
it expires.

HOW: issue() writes a random, short-lived LinkState and returns the HelpMe
authorize URL. On callback, complete() consumes the state (atomic delete in
the store), exchanges the one-time code with HelpMe, and persists the
resulting identity, chat token and course list.

    ISSUED --consume (before expires_at)--> CONSUMED
    ISSUED --clock passes expires_at------> EXPIRED

RULES:
- State ids come from secrets.token_urlsafe(32)
- TTL is clamped to the configured [min, max] bounds
- consume() returns the state at most once; expired and unknown look the same
- The exchange is retried only for "code not yet recognised" responses
  (404, 409, 425), three attempts in total, backing off 0.5s then 1s
- State ids are only ever logged truncated; tokens never
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from urllib.parse import urlencode

from helpme_slack.api.client import HelpMeAPIError, HelpMeClient
from helpme_slack.api.models import Course, ExchangeResult
from helpme_slack.config import Settings, clamp_ttl
from helpme_slack.core.errors import StateExpiredOrConsumed
from helpme_slack.store import CredentialStore, LinkState, UserLink

logger = logging.getLogger(__name__)

AUTHORIZE_PATH = "/api/v1/auth/slack/start"

EXCHANGE_RETRY_STATUSES = frozenset({404, 409, 425})
EXCHANGE_MAX_ATTEMPTS = 3
EXCHANGE_BACKOFF_S = (0.5, 1.0)


def short_state(state_id: str) -> str:
    """Truncate a state id for log lines."""
    return f"{state_id[:6]}..."


@dataclass(frozen=True)
class IssuedLink:
    state_id: str
    authorize_url: str
    expires_at: float


@dataclass(frozen=True)
class CompletedLink:
    """Result of a successful callback: the consumed state and the stored link."""

    state: LinkState
    link: UserLink
    courses: tuple[Course, ...]


class LinkingService:
    """Drives LinkState issue, consume and completion.

    HOW: Holds the store, settings and a factory for HelpMeClient. The
    clock and sleep function are injectable so tests can move time and
    skip backoff delays.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        client_factory: Callable[[], HelpMeClient],
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._settings = settings
        self._client_factory = client_factory
        self._clock = clock
        self._sleep = sleep

    def authorize_url(self, state_id: str) -> str:
        params = {"state": state_id, "redirect_uri": self._settings.callback_url}
        if self._settings.helpme_org_id:
            params["oid"] = self._settings.helpme_org_id
        return f"{self._settings.helpme_base_url.rstrip('/')}{AUTHORIZE_PATH}?{urlencode(params)}"

    async def issue(
        self,
        team_id: str,
        user_id: str,
        channel_id: str | None = None,
        ttl_seconds: int | None = None,
    ) -> IssuedLink:
        """Create a single-use link state and return where to send the user."""
        ttl = clamp_ttl(
            ttl_seconds if ttl_seconds is not None else self._settings.link_state_ttl,
            self._settings.link_state_ttl_min,
            self._settings.link_state_ttl_max,
        )
        state_id = secrets.token_urlsafe(32)
        expires_at = self._clock() + ttl
        await self._store.create_link_state(
            state_id,
            team_id,
            user_id,
            expires_at,
            channel_id=channel_id,
            redirect_uri=self._settings.callback_url,
        )
        logger.info(
            "Issued link state %s for team=%s user=%s (ttl=%ds)",
            short_state(state_id), team_id, user_id, ttl,
        )
        return IssuedLink(state_id, self.authorize_url(state_id), expires_at)

    async def consume(self, state_id: str) -> LinkState | None:
        """Return the state exactly once while it is valid, else None."""
        if not state_id:
            return None
        return await self._store.consume_link_state(state_id)

    async def exchange(self, client: HelpMeClient, code: str) -> ExchangeResult:
        """Exchange the auth code, retrying while HelpMe has not seen it yet."""
        attempt = 1
        while True:
            try:
                return await client.exchange_code(code)
            except HelpMeAPIError as exc:
                retryable = exc.status_code in EXCHANGE_RETRY_STATUSES
                if not retryable or attempt >= EXCHANGE_MAX_ATTEMPTS:
                    raise
                delay = EXCHANGE_BACKOFF_S[attempt - 1]
                logger.info(
                    "Exchange attempt %d got %d, retrying in %.1fs",
                    attempt, exc.status_code, delay,
                )
                await self._sleep(delay)
                attempt += 1

    async def complete(self, state_id: str, code: str) -> CompletedLink:
        """Consume the state, exchange the code, persist the link.

        RULES:
        - Raises StateExpiredOrConsumed if the state is not consumable;
          nothing is written in that case
        - Backend failures propagate as HelpMeAPIError; the state stays
          consumed, so the user starts again with /link
        - On success the course cache is replaced when courses were returned
        """
        state = await self.consume(state_id)
        if state is None:
            logger.info("Rejected link callback for state %s", short_state(state_id or ""))
            raise StateExpiredOrConsumed("This link has expired or was already used.")

        async with self._client_factory() as client:
            result = await self.exchange(client, code)

        link = await self._store.save_link(
            state.team_id,
            state.user_id,
            backend_user_id=result.user_id,
            backend_email=result.email,
            backend_display_name=result.name,
            organization_id=result.organization_id,
            chat_token=result.chat_token,
        )
        courses = tuple(result.courses)
        if courses:
            await self._store.save_courses(state.team_id, state.user_id, list(courses))

        logger.info(
            "Linked team=%s user=%s to HelpMe user %s (%d courses, token length %d)",
            state.team_id, state.user_id, result.user_id, len(courses), len(result.chat_token),
        )
        return CompletedLink(state=state, link=link, courses=courses)

    async def purge_expired(self) -> int:
        removed = await self._store.purge_expired_link_states()
        if removed:
            logger.info("Purged %d expired link states", removed)
        return removed
