"""Process-wide dependencies shared by the HTTP server and the Slack app.

WHY: Handlers need the settings, the open store, a way to build a backend
client, and the linking service. Passing one explicit object avoids module
globals and lets tests build a context around a temporary database and an
httpx.MockTransport.

HOW: AppContext is created once in the FastAPI lifespan (or by a test),
placed on app.state.context, and injected into every Bolt handler through
a global middleware as context["helpme"].

RULES:
- Exactly one CredentialStore per process
- new_client() returns an unentered HelpMeClient; use it with async with
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from helpme_slack.api.client import HelpMeClient
from helpme_slack.config import Settings
from helpme_slack.core.linking import LinkingService
from helpme_slack.store import CredentialStore


@dataclass
class AppContext:
    settings: Settings
    store: CredentialStore
    transport: httpx.AsyncBaseTransport | None = None
    clock: Callable[[], float] = time.time
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    # Slack AsyncWebClient, set once the Bolt app exists; used for DMs from the callback
    slack_client: Any = None
    linking: LinkingService = field(init=False)

    def __post_init__(self) -> None:
        self.linking = LinkingService(
            self.store,
            self.settings,
            self.new_client,
            clock=self.clock,
            sleep=self.sleep,
        )

    def new_client(self) -> HelpMeClient:
        return HelpMeClient.from_settings(self.settings, transport=self.transport)
