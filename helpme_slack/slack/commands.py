"""Slash-command, action and modal handlers.

WHY: This is the glue between Slack and the bot's core: each handler reads
the Slack payload, resolves the caller's identity and course through the
store, calls HelpMe through the gateway, and replies.

HOW: Handlers are plain async functions registered in bot.py. Bolt passes
arguments by name (ack, command, respond, client, context, body, view,
action). The AppContext arrives as context["helpme"], injected by a global
middleware. Each command acks first, then runs its body through _run(),
which turns domain and backend errors into an ephemeral explanation.

RULES:
- ack() FIRST, always (Slack's 3 second limit)
- Replies are ephemeral respond() calls unless a command says otherwise
- Identity is (team_id, user_id); nothing is read across teams
- Unlinked users get a "run /link" message before any backend call
- Expected failures are logged at info, unexpected ones with
  logger.exception, and both are reported to the user
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Dict, List, Optional, Tuple

import httpx
from slack_sdk.errors import SlackApiError

from helpme_slack.api.client import HelpMeAPIError
from helpme_slack.context import AppContext
from helpme_slack.core.courses import (
    parse_ask_text,
    parse_settings_args,
    resolve_course,
    settings_patch,
)
from helpme_slack.core.errors import (
    FileUnavailable,
    HelpMeSlackError,
    InvalidInput,
    NotLinked,
    Unauthorized,
)
from helpme_slack.core.linking import CompletedLink
from helpme_slack.core.signing import sign_metadata, verify_metadata
from helpme_slack.slack.messages import (
    ACTION_FEEDBACK_UP,
    ACTION_FILE,
    ACTION_QUESTION,
    BLOCK_FILE,
    BLOCK_QUESTION,
    GENERIC_ERROR,
    POST_MAX_CHARS,
    UPLOAD_MIMETYPES,
    already_linked_text,
    build_answer_blocks,
    build_link_prompt,
    build_upload_modal,
    chunk_text,
    course_label,
    error_message,
    feedback_thanks_text,
    format_about_me,
    format_answer,
    format_courses,
    format_history,
    format_models,
    format_settings,
    link_success_text,
)
from helpme_slack.store import UserLink

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10
THREAD_FETCH_LIMIT = 50
THREAD_HISTORY_MESSAGES = 10


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _ctx(context: Any) -> AppContext:
    return context["helpme"]


async def _run(name: str, ctx: AppContext, respond: Any, work: Awaitable[None]) -> None:
    """Await a handler body and report any failure to the user."""
    try:
        await work
    except (HelpMeSlackError, HelpMeAPIError) as exc:
        logger.info("%s failed: %s", name, exc.__class__.__name__)
        await respond(text=error_message(exc, ctx.clock()), response_type="ephemeral")
    except Exception:
        logger.exception("Unexpected error in %s", name)
        await respond(text=GENERIC_ERROR, response_type="ephemeral")


async def user_token(ctx: AppContext, team_id: str, user_id: str) -> Optional[str]:
    """Return the caller's chat token.

    RULES:
    - Raises NotLinked when there is no usable token and linking is required
    - Returns None when linking is optional; calls then use the service key only
    """
    link = await ctx.store.get_link(team_id, user_id)
    if link is not None and link.chat_token:
        return link.chat_token
    if ctx.settings.linking_required:
        raise NotLinked()
    return None


async def require_link(ctx: AppContext, team_id: str, user_id: str) -> UserLink:
    link = await ctx.store.get_link(team_id, user_id)
    if link is None:
        raise NotLinked()
    return link


async def resolve_course_id(
    ctx: AppContext, team_id: str, user_id: str, course_arg: Optional[str]
) -> Tuple[int, str]:
    """Pick the course for a command: explicit argument, then defaults.

    RULES:
    - An explicit argument is resolved against the cached course list;
      a bare number is accepted as an id even when it is not cached
    - Without an argument: the user's default, then DEFAULT_COURSE_ID
    - Raises InvalidInput when nothing applies
    """
    cache = await ctx.store.get_courses(team_id, user_id)
    courses = cache.courses if cache else ()

    if course_arg:
        course = resolve_course(courses, course_arg)
        if course is not None:
            return course.id, course.name
        if course_arg.strip().isdigit():
            course_id = int(course_arg.strip())
            return course_id, course_label(course_id, courses)
        raise InvalidInput(
            f'Course "{course_arg}" is not one of your courses (or matches more than one). '
            "See `/courses`."
        )

    course_id = await ctx.store.get_default_course(team_id, user_id)
    if course_id is None:
        course_id = ctx.settings.default_course_id
    if course_id is None:
        raise InvalidInput(
            "No default course set. Use `/default-course <id|name>` or add `--course=ID`."
        )
    return course_id, course_label(course_id, courses)


async def _post_chunks(client: Any, channel: str, text: str, thread_ts: Optional[str] = None) -> None:
    for chunk in chunk_text(text, POST_MAX_CHARS):
        await client.chat_postMessage(channel=channel, thread_ts=thread_ts, text=chunk)


# ---------------------------------------------------------------------------
# /ask
# ---------------------------------------------------------------------------


async def handle_ask(ack: Any, command: Dict[str, Any], respond: Any, client: Any, context: Any) -> None:
    await ack()
    ctx = _ctx(context)
    await _run("/ask", ctx, respond, _ask(ctx, command, respond))


async def _ask(ctx: AppContext, command: Dict[str, Any], respond: Any) -> None:
    team_id, user_id = command["team_id"], command["user_id"]
    question, course_arg = parse_ask_text(command.get("text", ""))
    if not question:
        raise InvalidInput("Please include a question. Usage: `/ask <question> [--course=ID]`")

    token = await user_token(ctx, team_id, user_id)
    course_id, label = await resolve_course_id(ctx, team_id, user_id, course_arg)
    logger.info("/ask team=%s user=%s course=%s (%d chars)", team_id, user_id, course_id, len(question))

    async with ctx.new_client() as api:
        answer = await api.ask(course_id, question, token, history=[])

    _, question_id = await ctx.store.record_question(
        team_id,
        user_id,
        course_id,
        question,
        answer.answer,
        external_ref_id=answer.question_id,
        is_previous_question=answer.is_previous_question,
    )

    text = format_answer(question, answer, label)
    await respond(
        text=chunk_text(text, POST_MAX_CHARS)[0],
        blocks=build_answer_blocks(text, question_id),
        response_type="ephemeral",
    )


# ---------------------------------------------------------------------------
# /link, /unlink, /about-me
# ---------------------------------------------------------------------------


async def handle_link(ack: Any, command: Dict[str, Any], respond: Any, client: Any, context: Any) -> None:
    await ack()
    ctx = _ctx(context)
    await _run("/link", ctx, respond, _link(ctx, command, respond))


async def _link(ctx: AppContext, command: Dict[str, Any], respond: Any) -> None:
    team_id, user_id = command["team_id"], command["user_id"]
    token = (command.get("text") or "").strip()

    if token:
        # Legacy direct link: the user pastes a token issued by HelpMe
        if len(token.split()) != 1:
            raise InvalidInput("Usage: `/link` to sign in, or `/link <token>` with a HelpMe token.")
        await ctx.store.save_token(team_id, user_id, token)
        logger.info("Stored pasted token for team=%s user=%s (length %d)", team_id, user_id, len(token))
        await respond(
            text="✅ Token saved. Your Slack account is linked to HelpMe. Try `/ask <question>`.",
            response_type="ephemeral",
        )
        return

    link = await ctx.store.get_link(team_id, user_id)
    if link is not None and link.chat_token:
        await respond(text=already_linked_text(link), response_type="ephemeral")
        return

    issued = await ctx.linking.issue(team_id, user_id, channel_id=command.get("channel_id"))
    await respond(
        text=f"Link your HelpMe account: {issued.authorize_url}",
        blocks=build_link_prompt(issued.authorize_url, issued.expires_at, ctx.clock()),
        response_type="ephemeral",
    )


async def handle_unlink(ack: Any, command: Dict[str, Any], respond: Any, client: Any, context: Any) -> None:
    await ack()
    ctx = _ctx(context)
    await _run("/unlink", ctx, respond, _unlink(ctx, command, respond))


async def _unlink(ctx: AppContext, command: Dict[str, Any], respond: Any) -> None:
    team_id, user_id = command["team_id"], command["user_id"]
    removed = await ctx.store.delete_link(team_id, user_id)
    if removed:
        logger.info("Unlinked team=%s user=%s", team_id, user_id)
        text = "✅ Your HelpMe account has been unlinked. Run `/link` to connect again."
    else:
        text = "You weren't linked to a HelpMe account. Run `/link` to connect one."
    await respond(text=text, response_type="ephemeral")


async def handle_about_me(ack: Any, command: Dict[str, Any], respond: Any, client: Any, context: Any) -> None:
    await ack()
    ctx = _ctx(context)
    await _run("/about-me", ctx, respond, _about_me(ctx, command, respond))


async def _about_me(ctx: AppContext, command: Dict[str, Any], respond: Any) -> None:
    team_id, user_id = command["team_id"], command["user_id"]
    link = await require_link(ctx, team_id, user_id)
    cache = await ctx.store.get_courses(team_id, user_id)
    default_course = await ctx.store.get_default_course(team_id, user_id)
    await respond(text=format_about_me(link, cache, default_course), response_type="ephemeral")


# ---------------------------------------------------------------------------
# /courses, /default-course
# ---------------------------------------------------------------------------


async def handle_courses(ack: Any, command: Dict[str, Any], respond: Any, client: Any, context: Any) -> None:
    await ack()
    ctx = _ctx(context)
    await _run("/courses", ctx, respond, _courses(ctx, command, respond))


async def _courses(ctx: AppContext, command: Dict[str, Any], respond: Any) -> None:
    team_id, user_id = command["team_id"], command["user_id"]
    await require_link(ctx, team_id, user_id)
    cache = await ctx.store.get_courses(team_id, user_id)
    default_course = await ctx.store.get_default_course(team_id, user_id)
    await respond(text=format_courses(cache, default_course), response_type="ephemeral")


async def handle_default_course(ack: Any, command: Dict[str, Any], respond: Any, client: Any, context: Any) -> None:
    await ack()
    ctx = _ctx(context)
    await _run("/default-course", ctx, respond, _default_course(ctx, command, respond))


async def _default_course(ctx: AppContext, command: Dict[str, Any], respond: Any) -> None:
    team_id, user_id = command["team_id"], command["user_id"]
    text = (command.get("text") or "").strip().strip('"')
    cache = await ctx.store.get_courses(team_id, user_id)
    courses = cache.courses if cache else ()

    if not text:
        current = await ctx.store.get_default_course(team_id, user_id)
        if current is None:
            reply = "You have no default course. Usage: `/default-course <id|name>`"
        else:
            reply = f"Your default course is *{course_label(current, courses)}* (ID {current})."
        await respond(text=reply, response_type="ephemeral")
        return

    if not courses:
        raise InvalidInput("No courses found. Run `/link` to connect your account first.")

    course = resolve_course(courses, text)
    if course is None:
        names = ", ".join(c.name for c in courses)
        raise InvalidInput(f'Course "{text}" not found or ambiguous. Your courses: {names}')

    await ctx.store.set_default_course(team_id, user_id, course.id)
    logger.info("Default course for team=%s user=%s set to %s", team_id, user_id, course.id)
    await respond(
        text=f"✅ Default course set to *{course.name}* (ID {course.id}).",
        response_type="ephemeral",
    )


# ---------------------------------------------------------------------------
# /chatbot-history, /chatbot-settings, /chatbot-models
# ---------------------------------------------------------------------------


async def handle_history(ack: Any, command: Dict[str, Any], respond: Any, client: Any, context: Any) -> None:
    await ack()
    ctx = _ctx(context)
    await _run("/chatbot-history", ctx, respond, _history(ctx, command, respond))


async def _history(ctx: AppContext, command: Dict[str, Any], respond: Any) -> None:
    team_id, user_id = command["team_id"], command["user_id"]
    await require_link(ctx, team_id, user_id)
    interactions = await ctx.store.list_interactions(team_id, user_id, limit=HISTORY_LIMIT)
    cache = await ctx.store.get_courses(team_id, user_id)
    text = format_history(interactions, cache.courses if cache else ())
    await respond(text=chunk_text(text, POST_MAX_CHARS)[0], response_type="ephemeral")


async def handle_settings(ack: Any, command: Dict[str, Any], respond: Any, client: Any, context: Any) -> None:
    await ack()
    ctx = _ctx(context)
    await _run("/chatbot-settings", ctx, respond, _settings(ctx, command, respond))


async def _settings(ctx: AppContext, command: Dict[str, Any], respond: Any) -> None:
    team_id, user_id = command["team_id"], command["user_id"]
    parsed = parse_settings_args(command.get("text", ""))
    patch = settings_patch(parsed.changes) if parsed.action == "set" else {}

    token = await user_token(ctx, team_id, user_id)
    course_id, label = await resolve_course_id(ctx, team_id, user_id, parsed.course)

    async with ctx.new_client() as api:
        if parsed.action == "set":
            settings = await api.update_course_settings(course_id, token, patch)
            heading = "Updated chatbot settings"
        elif parsed.action == "reset":
            settings = await api.reset_course_settings(course_id, token)
            heading = "Chatbot settings reset"
        else:
            settings = await api.get_course_settings(course_id, token)
            heading = "Chatbot settings"

    if parsed.action != "show":
        logger.info(
            "Course %s settings %s by team=%s user=%s", course_id, parsed.action, team_id, user_id
        )
    await respond(text=format_settings(label, settings, heading), response_type="ephemeral")


async def handle_models(ack: Any, command: Dict[str, Any], respond: Any, client: Any, context: Any) -> None:
    await ack()
    ctx = _ctx(context)
    await _run("/chatbot-models", ctx, respond, _models(ctx, command, respond))


async def _models(ctx: AppContext, command: Dict[str, Any], respond: Any) -> None:
    token = await user_token(ctx, command["team_id"], command["user_id"])
    async with ctx.new_client() as api:
        models = await api.list_models(token)
    await respond(text=format_models(models), response_type="ephemeral")


# ---------------------------------------------------------------------------
# /chatbot-thread
# ---------------------------------------------------------------------------


async def thread_history(client: Any, channel: str, thread_ts: str) -> List[Dict[str, str]]:
    """Recent thread messages as chatbot history, oldest first.

    Bot messages become "assistant" turns. Slash-command echoes are
    skipped. A thread that cannot be read gives an empty history.
    """
    try:
        resp = await client.conversations_replies(channel=channel, ts=thread_ts, limit=THREAD_FETCH_LIMIT)
    except SlackApiError as exc:
        logger.warning("Could not read thread %s in %s: %s", thread_ts, channel, exc.response.get("error"))
        return []

    history = []
    for msg in resp.get("messages") or []:
        text = msg.get("text") or ""
        if not text or text.startswith("/chatbot-thread"):
            continue
        role = "assistant" if msg.get("bot_id") else "user"
        history.append({"role": role, "content": text})
    return history[-THREAD_HISTORY_MESSAGES:]


async def handle_thread(ack: Any, command: Dict[str, Any], respond: Any, client: Any, context: Any) -> None:
    await ack()
    ctx = _ctx(context)
    await _run("/chatbot-thread", ctx, respond, _thread(ctx, command, respond, client))


async def _thread(ctx: AppContext, command: Dict[str, Any], respond: Any, client: Any) -> None:
    team_id, user_id = command["team_id"], command["user_id"]
    channel = command.get("channel_id", "")
    question, course_arg = parse_ask_text(command.get("text", ""))
    if not question:
        raise InvalidInput("Please include a question. Usage: `/chatbot-thread <question>`")

    token = await user_token(ctx, team_id, user_id)
    course_id, label = await resolve_course_id(ctx, team_id, user_id, course_arg)

    thread_ts = command.get("thread_ts")
    history = await thread_history(client, channel, thread_ts) if thread_ts else []

    async with ctx.new_client() as api:
        answer = await api.ask(course_id, question, token, history=history)

    await ctx.store.record_question(
        team_id,
        user_id,
        course_id,
        question,
        answer.answer,
        external_ref_id=answer.question_id,
        is_previous_question=answer.is_previous_question,
    )

    text = format_answer(question, answer, label)
    try:
        if not thread_ts:
            root = await client.chat_postMessage(
                channel=channel, text=f"🧵 <@{user_id}> asked: {question}"
            )
            thread_ts = root["ts"]
        await _post_chunks(client, channel, text, thread_ts=thread_ts)
    except SlackApiError as exc:
        logger.warning(
            "Could not post in channel %s (%s), replying ephemerally",
            channel, exc.response.get("error"),
        )
        await respond(text=chunk_text(text, POST_MAX_CHARS)[0], response_type="ephemeral")


# ---------------------------------------------------------------------------
# /upload-file and its modal
# ---------------------------------------------------------------------------


async def handle_upload_file(ack: Any, command: Dict[str, Any], respond: Any, client: Any, context: Any) -> None:
    await ack()
    ctx = _ctx(context)
    await _run("/upload-file", ctx, respond, _open_upload_modal(ctx, command, client))


async def _open_upload_modal(ctx: AppContext, command: Dict[str, Any], client: Any) -> None:
    team_id, user_id = command["team_id"], command["user_id"]
    await user_token(ctx, team_id, user_id)
    course_id, label = await resolve_course_id(
        ctx, team_id, user_id, (command.get("text") or "").strip() or None
    )
    metadata = sign_metadata(
        {
            "team": team_id,
            "user": user_id,
            "channel": command.get("channel_id") or None,
            "course": course_id,
        },
        ctx.settings.encryption_key,
        now=ctx.clock(),
    )
    await client.views_open(trigger_id=command["trigger_id"], view=build_upload_modal(metadata, label))


def _upload_form(view: Dict[str, Any]) -> Tuple[str, Optional[Dict[str, Any]]]:
    values = view.get("state", {}).get("values", {})
    question = (values.get(BLOCK_QUESTION, {}).get(ACTION_QUESTION, {}).get("value") or "").strip()
    files = values.get(BLOCK_FILE, {}).get(ACTION_FILE, {}).get("files") or []
    return question, (files[0] if files else None)


async def handle_upload_submit(ack: Any, body: Dict[str, Any], view: Dict[str, Any], client: Any, context: Any) -> None:
    """Validate the upload modal, close it, then ask about the file.

    RULES:
    - private_metadata must verify and belong to the submitting user,
      otherwise the modal stays open with an error
    - Field errors are returned through ack(response_action="errors")
    - The answer is posted ephemerally in the original channel, or as a
      DM when that is not possible
    """
    ctx = _ctx(context)
    question, file_obj = _upload_form(view)
    submitter = body.get("user", {}).get("id", "")

    errors: Dict[str, str] = {}
    meta: Dict[str, Any] = {}
    try:
        meta = verify_metadata(
            view.get("private_metadata", ""), ctx.settings.encryption_key, now=ctx.clock()
        )
        if meta.get("user") != submitter:
            raise Unauthorized("This form belongs to someone else.")
    except Unauthorized as exc:
        logger.warning("Rejected upload modal from user=%s: %s", submitter, exc)
        errors[BLOCK_QUESTION] = str(exc)

    if not question:
        errors.setdefault(BLOCK_QUESTION, "Please enter a question.")
    if file_obj is None:
        errors[BLOCK_FILE] = "Please attach a file."
    elif file_obj.get("mimetype") not in UPLOAD_MIMETYPES:
        errors[BLOCK_FILE] = "Supported file types: PNG, JPEG, GIF, PDF."

    if errors:
        await ack(response_action="errors", errors=errors)
        return
    await ack()

    team_id, user_id = meta["team"], meta["user"]
    channel = meta.get("channel")

    async def reply(text: str, blocks: Optional[List[Dict[str, Any]]] = None) -> None:
        await _reply_private(client, channel, user_id, text, blocks)

    try:
        await _ask_about_file(ctx, client, team_id, user_id, int(meta["course"]), question, file_obj, reply)
    except (HelpMeSlackError, HelpMeAPIError) as exc:
        logger.info("upload failed for team=%s user=%s: %s", team_id, user_id, exc.__class__.__name__)
        await reply(error_message(exc, ctx.clock()))
    except Exception:
        logger.exception("Unexpected error processing upload for team=%s user=%s", team_id, user_id)
        await reply(GENERIC_ERROR)


async def _ask_about_file(
    ctx: AppContext,
    client: Any,
    team_id: str,
    user_id: str,
    course_id: int,
    question: str,
    file_obj: Dict[str, Any],
    reply: Any,
) -> None:
    token = await user_token(ctx, team_id, user_id)
    filename = file_obj.get("name") or "upload"
    content = await download_slack_file(ctx, client, file_obj)

    async with ctx.new_client() as api:
        answer = await api.ask_with_file(
            course_id,
            question,
            token,
            filename=filename,
            content=content,
            content_type=file_obj.get("mimetype") or "application/octet-stream",
        )

    _, question_id = await ctx.store.record_question(
        team_id,
        user_id,
        course_id,
        question,
        answer.answer,
        external_ref_id=answer.question_id,
        is_previous_question=answer.is_previous_question,
    )
    cache = await ctx.store.get_courses(team_id, user_id)
    label = course_label(course_id, cache.courses if cache else ())
    text = format_answer(f"{question} (file: {filename})", answer, label)
    await reply(text, build_answer_blocks(text, question_id))


async def download_slack_file(ctx: AppContext, client: Any, file_obj: Dict[str, Any]) -> bytes:
    """Fetch a private Slack file with the bot token."""
    url = file_obj.get("url_private_download") or file_obj.get("url_private")
    if not url:
        raise FileUnavailable("Slack did not provide a download link for that file.")

    bot_token = getattr(client, "token", None) or ctx.settings.slack_bot_token
    try:
        async with httpx.AsyncClient(
            timeout=ctx.settings.heavy_timeout_s,
            follow_redirects=True,
            transport=ctx.transport,
        ) as http:
            resp = await http.get(url, headers={"Authorization": f"Bearer {bot_token}"})
            resp.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Slack file download failed: %s", exc.__class__.__name__)
        raise FileUnavailable("Could not download the file from Slack. Please try again.")
    return resp.content


async def _reply_private(
    client: Any,
    channel: Optional[str],
    user_id: str,
    text: str,
    blocks: Optional[List[Dict[str, Any]]] = None,
) -> None:
    """Ephemeral message in the channel, falling back to a DM."""
    fallback = chunk_text(text, POST_MAX_CHARS)[0]
    if channel:
        try:
            await client.chat_postEphemeral(channel=channel, user=user_id, text=fallback, blocks=blocks)
            return
        except SlackApiError as exc:
            logger.info("Ephemeral post to %s failed (%s), sending DM", channel, exc.response.get("error"))
    await client.chat_postMessage(channel=user_id, text=fallback, blocks=blocks)


# ---------------------------------------------------------------------------
# Answer feedback buttons
# ---------------------------------------------------------------------------


async def handle_feedback(ack: Any, body: Dict[str, Any], action: Dict[str, Any], respond: Any, context: Any) -> None:
    await ack()
    ctx = _ctx(context)
    await _run("feedback", ctx, respond, _feedback(ctx, body, action, respond))


async def _feedback(ctx: AppContext, body: Dict[str, Any], action: Dict[str, Any], respond: Any) -> None:
    user = body.get("user", {})
    team_id = (body.get("team") or {}).get("id") or user.get("team_id", "")
    user_id = user.get("id", "")
    score = 1 if action.get("action_id") == ACTION_FEEDBACK_UP else -1

    try:
        question_id = int(action.get("value", ""))
    except (TypeError, ValueError):
        raise InvalidInput("That feedback button is no longer valid.")

    updated = await ctx.store.set_question_score(team_id, user_id, question_id, score)
    if not updated:
        raise InvalidInput("That answer could not be found.")
    logger.info("Feedback %+d on question %s from team=%s user=%s", score, question_id, team_id, user_id)
    await respond(text=feedback_thanks_text(score), response_type="ephemeral", replace_original=False)


# ---------------------------------------------------------------------------
# Link completion notice (called from the HTTP callback)
# ---------------------------------------------------------------------------


async def notify_linked(ctx: AppContext, completed: CompletedLink) -> None:
    """Best-effort DM telling the user the link worked."""
    if ctx.slack_client is None:
        return
    text = link_success_text(completed.link, len(completed.courses))
    try:
        await ctx.slack_client.chat_postMessage(channel=completed.state.user_id, text=text)
    except SlackApiError as exc:
        logger.warning(
            "Could not notify user=%s about the new link: %s",
            completed.state.user_id, exc.response.get("error"),
        )
    except Exception:
        logger.exception("Could not reach Slack to notify user=%s about the new link", completed.state.user_id)
