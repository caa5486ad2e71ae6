"""FastAPI application: link callback, health check and Slack HTTP delivery.

WHY: The linking flow ends with a browser redirect back to the bot, Slack
can deliver events over HTTP, and deployments need a liveness probe. All
three share the process-wide store opened here.

HOW: create_app() builds the FastAPI app. Its lifespan opens the
CredentialStore (failure is fatal), builds the AppContext, starts the Bolt
app when a bot token is configured (Socket Mode or HTTP), and purges
expired link states every 5 minutes.

Endpoints:
    GET  /healthz          -> {"ok": true}
    GET  /link/callback    -> consume state, exchange code, HTML result page
    POST /link/callback    -> legacy direct token injection (shared secret)
    POST /slack/events     -> Slack HTTP delivery (DELIVERY_MODE=HTTP)

RULES:
- Store initialisation errors propagate so the server refuses to start
- The shared-secret comparison is constant-time; an unset secret disables
  the legacy endpoint
- Callback pages never echo tokens or full state ids
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import time
from contextlib import asynccontextmanager
from html import escape
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse
from slack_bolt.adapter.fastapi.async_handler import AsyncSlackRequestHandler

from helpme_slack import __version__
from helpme_slack.api.client import BackendUnavailable, HelpMeAPIError
from helpme_slack.config import Settings, configure_logging
from helpme_slack.context import AppContext
from helpme_slack.core.errors import StateExpiredOrConsumed
from helpme_slack.core.linking import short_state
from helpme_slack.server.models import ErrorBody, LegacyLinkPayload, OkResponse
from helpme_slack.slack.bot import create_bolt_app, start_socket_mode
from helpme_slack.slack.commands import notify_linked
from helpme_slack.store import CredentialStore, TokenCipher

logger = logging.getLogger(__name__)

PURGE_INTERVAL_S = 300
LINK_SECRET_HEADER = "X-HelpMe-Link-Secret"

router = APIRouter()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


async def _periodic_purge(ctx: AppContext, interval_s: float = PURGE_INTERVAL_S) -> None:
    """Delete expired link states every 5 minutes."""
    while True:
        await asyncio.sleep(interval_s)
        try:
            await ctx.linking.purge_expired()
        except Exception:
            logger.exception("Link state purge failed")


def create_app(
    settings: Optional[Settings] = None,
    transport=None,  # noqa: ANN001
    clock=time.time,  # noqa: ANN001
    sleep=asyncio.sleep,  # noqa: ANN001
    slack_client=None,  # noqa: ANN001
) -> FastAPI:
    """Build the FastAPI app.

    RULES:
    - settings defaults to Settings.from_env(), read at startup
    - transport/clock/sleep/slack_client are test seams passed to AppContext
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings
        if cfg is None:
            cfg = Settings.from_env()
            configure_logging(cfg.log_level)
        store = await CredentialStore.open(
            cfg.database_url, TokenCipher(cfg.encryption_key), clock=clock
        )
        ctx = AppContext(
            cfg, store, transport=transport, clock=clock, sleep=sleep, slack_client=slack_client
        )
        app.state.context = ctx
        app.state.slack_handler = None

        socket_handler = None
        if cfg.slack_bot_token:
            bolt_app = create_bolt_app(ctx, client=slack_client)
            if cfg.delivery_mode == "HTTP":
                app.state.slack_handler = AsyncSlackRequestHandler(bolt_app)
            else:
                socket_handler = await start_socket_mode(bolt_app, cfg.slack_app_token)
        else:
            logger.warning("SLACK_BOT_TOKEN not set; Slack app disabled, HTTP endpoints only")

        purge_task = asyncio.create_task(_periodic_purge(ctx))
        try:
            yield
        finally:
            purge_task.cancel()
            try:
                await purge_task
            except asyncio.CancelledError:
                pass
            if socket_handler is not None:
                await socket_handler.close_async()
            await store.close()

    app = FastAPI(
        lifespan=lifespan,
        title="HelpMe Slack Bot",
        description=(
            "Slack front end for the HelpMe course chatbot: account-link "
            "callback, health check, and Slack event delivery."
        ),
        version=__version__,
    )
    app.include_router(router)
    return app


def _context(request: Request) -> AppContext:
    return request.app.state.context


# ---------------------------------------------------------------------------
# Endpoints: Health
# ---------------------------------------------------------------------------


@router.get(
    "/healthz",
    response_model=OkResponse,
    tags=["health"],
    summary="Health check",
    description="Liveness check for load balancers and orchestrators.",
)
async def healthz() -> OkResponse:
    return OkResponse(ok=True)


# ---------------------------------------------------------------------------
# Endpoints: Account linking
# ---------------------------------------------------------------------------

_PAGE = """<!doctype html>
<html lang="en">
<head><meta charset="utf-8"><title>{title}</title>
<style>body{{font-family:system-ui,sans-serif;max-width:32rem;margin:4rem auto;padding:0 1rem;color:#222}}
h1{{font-size:1.4rem}}</style></head>
<body><h1>{title}</h1><p>{message}</p></body>
</html>
"""


def _page(status_code: int, title: str, message: str) -> HTMLResponse:
    return HTMLResponse(
        _PAGE.format(title=escape(title), message=escape(message)),
        status_code=status_code,
    )


@router.get(
    "/link/callback",
    response_class=HTMLResponse,
    tags=["linking"],
    summary="Complete account linking",
    description=(
        "Redirect target after HelpMe sign-in. Consumes the single-use state, "
        "exchanges the code for a chat token, and stores the link."
    ),
)
async def link_callback(
    request: Request, state: str = "", code: str = "", error: str = ""
) -> HTMLResponse:
    ctx = _context(request)
    if error:
        logger.info("Link callback reported error %r for state %s", error, short_state(state))
        return _page(400, "Linking cancelled", "HelpMe sign-in did not finish. Run /link in Slack to try again.")
    if not state or not code:
        return _page(400, "Invalid link", "This link is missing information. Run /link in Slack to get a new one.")

    try:
        completed = await ctx.linking.complete(state, code)
    except StateExpiredOrConsumed:
        return _page(
            400,
            "Link expired",
            "This link has expired or was already used. Run /link in Slack to get a new one.",
        )
    except BackendUnavailable:
        logger.warning("HelpMe unavailable during code exchange for state %s", short_state(state))
        return _page(
            502,
            "HelpMe unavailable",
            "HelpMe could not be reached. Run /link in Slack to try again in a few minutes.",
        )
    except HelpMeAPIError as exc:
        logger.warning("Code exchange rejected (%d) for state %s", exc.status_code, short_state(state))
        return _page(
            400,
            "Linking failed",
            "HelpMe did not accept this sign-in. Run /link in Slack to try again.",
        )

    await notify_linked(ctx, completed)
    who = completed.link.backend_display_name or completed.link.backend_email
    return _page(
        200,
        "Account linked",
        f"Your Slack account is now linked to HelpMe as {who}. You can close this window.",
    )


@router.post(
    "/link/callback",
    response_model=OkResponse,
    tags=["linking"],
    summary="Store a chat token directly (legacy)",
    description=(
        f"Legacy token injection. Requires the {LINK_SECRET_HEADER} header to match "
        "LINK_SHARED_SECRET. Disabled when the secret is not configured."
    ),
    responses={
        400: {"model": ErrorBody, "description": "Body is not valid"},
        401: {"model": ErrorBody, "description": "Missing or wrong shared secret"},
    },
)
async def legacy_link(request: Request):
    ctx = _context(request)
    secret = ctx.settings.link_shared_secret
    provided = request.headers.get(LINK_SECRET_HEADER, "")
    if not secret or not hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8")):
        logger.warning("Unauthorized legacy link callback")
        return JSONResponse(status_code=401, content={"error": "UNAUTHORIZED"})

    try:
        payload = LegacyLinkPayload.model_validate(await request.json())
    except ValueError:
        logger.warning("Invalid legacy link payload")
        return JSONResponse(status_code=400, content={"error": "INVALID"})

    await ctx.store.save_token(payload.teamId, payload.userId, payload.helpmeUserToken)
    logger.info(
        "Legacy link saved for team=%s user=%s (token length %d)",
        payload.teamId, payload.userId, len(payload.helpmeUserToken),
    )
    return OkResponse(ok=True)


# ---------------------------------------------------------------------------
# Endpoints: Slack
# ---------------------------------------------------------------------------


@router.post(
    "/slack/events",
    tags=["slack"],
    summary="Slack HTTP delivery",
    description="Slash commands, interactions and events when DELIVERY_MODE=HTTP.",
)
async def slack_events(request: Request):
    handler = getattr(request.app.state, "slack_handler", None)
    if handler is None:
        raise HTTPException(status_code=404, detail="Slack HTTP delivery is not enabled")
    return await handler.handle(request)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

app = create_app()


def run_server() -> None:
    """Entry point for the helpme-slack console script."""
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)
