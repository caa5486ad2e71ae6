"""Slack Bolt app factory: handler registration and delivery modes.

WHY: The command handlers need to be registered on one Bolt app that can
receive Slack traffic either over Socket Mode (no public URL) or as HTTP
requests forwarded by the FastAPI server.

HOW: create_bolt_app() builds an AsyncApp around an AsyncWebClient with
slack-sdk's rate-limit retry handler, injects the AppContext into every
request through a global middleware, and registers the handlers from
commands.py. start_socket_mode() connects the Socket Mode handler;
HTTP delivery is wired in server.app with AsyncSlackRequestHandler.

RULES:
- All handlers are registered before returning
- Request signature verification is enabled only for HTTP delivery
  (Socket Mode traffic is authenticated by the app-level token)
- Socket Mode requires SLACK_BOT_TOKEN and SLACK_APP_TOKEN
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_bolt.async_app import AsyncApp
from slack_sdk.http_retry.builtin_async_handlers import AsyncRateLimitErrorRetryHandler
from slack_sdk.web.async_client import AsyncWebClient

from helpme_slack.context import AppContext
from helpme_slack.slack.commands import (
    handle_about_me,
    handle_ask,
    handle_courses,
    handle_default_course,
    handle_feedback,
    handle_history,
    handle_link,
    handle_models,
    handle_settings,
    handle_thread,
    handle_unlink,
    handle_upload_file,
    handle_upload_submit,
)
from helpme_slack.slack.messages import (
    ACTION_FEEDBACK_DOWN,
    ACTION_FEEDBACK_UP,
    ACTION_LINK_OPEN,
    UPLOAD_MODAL_CALLBACK_ID,
)

logger = logging.getLogger(__name__)

# Slash command -> handler
COMMANDS = {
    "/ask": handle_ask,
    "/link": handle_link,
    "/unlink": handle_unlink,
    "/courses": handle_courses,
    "/default-course": handle_default_course,
    "/chatbot-history": handle_history,
    "/chatbot-settings": handle_settings,
    "/chatbot-models": handle_models,
    "/chatbot-thread": handle_thread,
    "/upload-file": handle_upload_file,
    "/about-me": handle_about_me,
}

RATE_LIMIT_RETRIES = 3


async def handle_link_button(ack: Any) -> None:
    """Acknowledge the "Link account" URL button.

    Slack sends a block action for URL buttons too; the browser already
    opened the link, so there is nothing else to do.
    """
    await ack()


def _context_middleware(ctx: AppContext) -> Callable:
    async def inject_context(context: Any, next: Callable) -> None:  # noqa: A002
        context["helpme"] = ctx
        await next()

    return inject_context


def create_bolt_app(ctx: AppContext, client: AsyncWebClient | None = None) -> AsyncApp:
    """Create the Bolt app with every command, action and view registered.

    RULES:
    - client defaults to an AsyncWebClient for settings.slack_bot_token
    - ctx.slack_client is set so the HTTP callback can DM users
    """
    settings = ctx.settings
    if client is None:
        client = AsyncWebClient(
            token=settings.slack_bot_token,
            retry_handlers=[AsyncRateLimitErrorRetryHandler(max_retry_count=RATE_LIMIT_RETRIES)],
        )

    app = AsyncApp(
        client=client,
        signing_secret=settings.slack_signing_secret or None,
        request_verification_enabled=settings.delivery_mode == "HTTP",
    )
    app.use(_context_middleware(ctx))

    for name, handler in COMMANDS.items():
        app.command(name)(handler)

    app.action(ACTION_FEEDBACK_UP)(handle_feedback)
    app.action(ACTION_FEEDBACK_DOWN)(handle_feedback)
    app.action(ACTION_LINK_OPEN)(handle_link_button)
    app.view(UPLOAD_MODAL_CALLBACK_ID)(handle_upload_submit)

    ctx.slack_client = client
    logger.info("Slack app ready with %d commands (%s delivery)", len(COMMANDS), settings.delivery_mode)
    return app


async def start_socket_mode(app: AsyncApp, app_token: str) -> AsyncSocketModeHandler:
    """Connect to Slack over Socket Mode without blocking the event loop."""
    if not app_token:
        raise ValueError("SLACK_APP_TOKEN is required for DELIVERY_MODE=SOCKET")
    handler = AsyncSocketModeHandler(app, app_token)
    await handler.connect_async()
    logger.info("Connected to Slack in Socket Mode")
    return handler
