"""Shared test fixtures for the helpme_slack test suite.

WHY: Most tests need the same scaffolding: settings with a known key, a
temporary SQLite database, a controllable clock, and a way to fake the
HelpMe backend without a network.

HOW: Fixtures provide Settings and a FakeClock. Helpers open a
CredentialStore inside a single asyncio.run() (the async engine must live
and die on one event loop) and build an AppContext whose HelpMe client
uses httpx.MockTransport.

RULES:
- No test touches the network; backend calls go through MockTransport
- Every test gets its own database file under tmp_path
- Backoff sleeps are replaced with no-ops
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import pytest

from helpme_slack.config import Settings
from helpme_slack.context import AppContext
from helpme_slack.store import CredentialStore, TokenCipher

TEST_KEY = bytes(range(32))
START_TIME = 1_790_000_000.0

TEAM = "T001"
USER = "U001"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        encryption_key=TEST_KEY,
        helpme_base_url="https://helpme.test",
        chatbot_api_url="https://chat.test/chat",
        chatbot_api_key="service-key",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'data' / 'test.db'}",
        app_base_url="https://bot.test",
        link_shared_secret="s3cret",
    )


def run_with_store(
    settings: Settings,
    clock: Callable[[], float],
    body: Callable[[CredentialStore], Awaitable[Any]],
) -> Any:
    """Open a store, run body(store) and close it, all on one event loop."""

    async def main() -> Any:
        store = await CredentialStore.open(
            settings.database_url, TokenCipher(settings.encryption_key), clock=clock
        )
        try:
            return await body(store)
        finally:
            await store.close()

    return asyncio.run(main())


def make_context(
    store: CredentialStore,
    settings: Settings,
    clock: Callable[[], float],
    handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
) -> AppContext:
    transport = httpx.MockTransport(handler) if handler is not None else None
    return AppContext(settings, store, transport=transport, clock=clock, sleep=no_sleep)


class BackendRecorder:
    """MockTransport handler that records requests and replays canned responses.

    routes maps (method, path) to a response, or to a list of responses
    consumed in order.
    """

    def __init__(self, routes: Dict[tuple, Any]) -> None:
        self.routes = {k: (list(v) if isinstance(v, list) else v) for k, v in routes.items()}
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(599, json={"error": f"no route for {key}"})
        response = self.routes[key]
        if isinstance(response, list):
            response = response.pop(0)
        # Fresh copy so one canned response can serve repeated calls
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)

    def json_bodies(self) -> List[Any]:
        return [json.loads(r.content) if r.content else None for r in self.requests]


def unreachable(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected backend call: {request.method} {request.url}")
