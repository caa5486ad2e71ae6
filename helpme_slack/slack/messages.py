"""Message text, Block Kit builders, and error wording for the Slack bot.

WHY: Every command answers with some mix of plain mrkdwn text, a few
blocks, and (when something fails) an explanation of what to do next.
Centralising the wording keeps commands.py about flow, not prose, and
gives the error mapping a single home.

HOW: Pure functions that take already-normalised data (store records, api
dataclasses) and return str or list[dict] blocks. error_message() maps
every domain and backend error to a message with a next action.

RULES:
- Slack mrkdwn: *bold*, _italic_, <url|label>
- Section text is capped at 3000 characters by Slack, chat.postMessage
  text at roughly 4000; long answers are split
- action_id / callback_id values must match the registrations in bot.py
- Never include tokens in any message
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from helpme_slack.api.client import (
    BackendNotFound,
    BackendQuotaExceeded,
    BackendRejected,
    BackendUnauthorized,
    BackendUnavailable,
    BackendValidationError,
    HelpMeAPIError,
)
from helpme_slack.api.models import AskResponse, CourseSettings, ModelInfo
from helpme_slack.core.errors import (
    FileUnavailable,
    InvalidInput,
    NotLinked,
    StateExpiredOrConsumed,
    Unauthorized,
)
from helpme_slack.store import CourseCache, InteractionRecord, UserLink

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Action / view IDs, must match registrations in bot.py
ACTION_FEEDBACK_UP = "helpme_feedback_up"
ACTION_FEEDBACK_DOWN = "helpme_feedback_down"
ACTION_LINK_OPEN = "helpme_link_open"
UPLOAD_MODAL_CALLBACK_ID = "helpme_upload_file"

BLOCK_QUESTION = "question_block"
ACTION_QUESTION = "question_input"
BLOCK_FILE = "file_block"
ACTION_FILE = "file_input"

UPLOAD_FILETYPES = ["png", "jpg", "jpeg", "gif", "pdf"]
UPLOAD_MIMETYPES = frozenset(
    {"image/png", "image/jpeg", "image/jpg", "image/gif", "application/pdf"}
)

SECTION_MAX_CHARS = 3000
POST_MAX_CHARS = 3500

HISTORY_QUESTION_CHARS = 100
HISTORY_ANSWER_CHARS = 150
PROMPT_PREVIEW_CHARS = 200

GENERIC_ERROR = "❌ Something went wrong on our side. Please try again, and contact an administrator if it keeps happening."


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------


def chunk_text(text: str, limit: int = POST_MAX_CHARS) -> List[str]:
    """Split text into pieces of at most `limit` chars, preferring line breaks."""
    text = text or ""
    if len(text) <= limit:
        return [text]
    chunks = []
    while len(text) > limit:
        cut = text.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(text[:cut])
        text = text[cut:].lstrip("\n")
    if text:
        chunks.append(text)
    return chunks


def _truncate(text: str, limit: int) -> str:
    text = text or ""
    return text if len(text) <= limit else text[:limit] + "..."


def _utc(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def format_relative(seconds: float) -> str:
    """Human duration like "2h 5m", "12m", or "under a minute"."""
    seconds = int(max(0, seconds))
    if seconds < 60:
        return "under a minute"
    hours, rem = divmod(seconds, 3600)
    minutes = rem // 60
    if hours >= 24:
        days, hours = divmod(hours, 24)
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def format_reset_time(reset_at: float, now: float) -> str:
    """Describe when a quota resets, e.g. "in 1h 0m (2026-10-16 15:00 UTC)".

    Uses Slack's <!date> token so clients render it in the viewer's own
    timezone; the UTC text is the fallback.
    """
    fallback = _utc(reset_at).strftime("%Y-%m-%d %H:%M UTC")
    relative = format_relative(reset_at - now)
    slack_date = f"<!date^{int(reset_at)}^{{date_short_pretty}} at {{time}}|{fallback}>"
    return f"in {relative} ({slack_date})"


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def error_message(exc: BaseException, now: float) -> str:
    """Map an error to a user-facing message that says what to do next."""
    if isinstance(exc, NotLinked):
        return "🔗 You haven't linked your HelpMe account yet. Run `/link` to connect it."
    if isinstance(exc, (InvalidInput, FileUnavailable)):
        return f"❌ {exc}"
    if isinstance(exc, StateExpiredOrConsumed):
        return "⌛ That link has expired or was already used. Run `/link` to get a new one."
    if isinstance(exc, Unauthorized):
        return f"❌ {str(exc).rstrip('.')}. Run `/upload-file` again to open a fresh form."
    if isinstance(exc, BackendUnauthorized):
        return (
            "🔒 HelpMe no longer accepts your saved login. "
            "Run `/unlink` and then `/link` to connect again."
        )
    if isinstance(exc, BackendQuotaExceeded):
        if exc.reset_at is not None:
            return (
                "⏳ You've reached your question limit. "
                f"It resets {format_reset_time(exc.reset_at, now)}."
            )
        return "⏳ You've reached your question limit. Please try again later."
    if isinstance(exc, BackendNotFound):
        return (
            "❌ HelpMe couldn't find that course, or you don't have access to it. "
            "Check `/courses` or set another one with `/default-course`."
        )
    if isinstance(exc, BackendValidationError):
        return (
            f"❌ HelpMe couldn't accept that request: {exc.message.rstrip('.')}. "
            "Check the values and try again."
        )
    if isinstance(exc, BackendRejected):
        return (
            f"❌ HelpMe refused the request: {exc.message}. "
            "If this keeps happening, contact an administrator."
        )
    if isinstance(exc, BackendUnavailable):
        return "⚠️ HelpMe isn't responding right now. Please try again in a few minutes."
    if isinstance(exc, HelpMeAPIError):
        return f"❌ HelpMe error: {exc.message.rstrip('.')}. Please try again in a moment."
    return GENERIC_ERROR


# ---------------------------------------------------------------------------
# Linking
# ---------------------------------------------------------------------------


def build_link_prompt(authorize_url: str, expires_at: float, now: float) -> List[Dict[str, Any]]:
    minutes = max(1, int(round((expires_at - now) / 60)))
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    "*Link your HelpMe account*\n"
                    "Sign in to HelpMe to connect it to your Slack account. "
                    f"This link works once and expires in {minutes} min."
                ),
            },
            "accessory": {
                "type": "button",
                "text": {"type": "plain_text", "text": "Link account"},
                "url": authorize_url,
                "style": "primary",
                "action_id": ACTION_LINK_OPEN,
            },
        }
    ]


def already_linked_text(link: UserLink) -> str:
    who = link.backend_display_name or link.backend_email or "your HelpMe account"
    return f"✅ You're already linked as *{who}*. Run `/unlink` first if you want to link another account."


def link_success_text(link: UserLink, course_count: int) -> str:
    who = link.backend_display_name or link.backend_email
    return (
        f"✅ Your Slack account is now linked to HelpMe as *{who}* "
        f"({course_count} course{'s' if course_count != 1 else ''} found). "
        "Try `/ask <question>`."
    )


# ---------------------------------------------------------------------------
# Answers and feedback
# ---------------------------------------------------------------------------


def format_sources(response: AskResponse) -> str:
    if not response.source_documents:
        return ""
    lines = ["*Sources:*"]
    for doc in response.source_documents:
        page = f" (p. {doc.page})" if doc.page is not None else ""
        name = f"<{doc.url}|{doc.name}>" if doc.url else doc.name
        lines.append(f"• {name}{page}")
    return "\n".join(lines)


def format_answer(question: str, response: AskResponse, course_label: str) -> str:
    parts = [
        f"*Q ({course_label}):* {question}",
        "",
        response.answer,
    ]
    sources = format_sources(response)
    if sources:
        parts.extend(["", sources])
    if response.is_previous_question:
        parts.extend(["", "_This answer was matched to a previously asked question._"])
    return "\n".join(parts)


def build_answer_blocks(text: str, question_id: Optional[int]) -> List[Dict[str, Any]]:
    blocks: List[Dict[str, Any]] = [
        {"type": "section", "text": {"type": "mrkdwn", "text": chunk}}
        for chunk in chunk_text(text, SECTION_MAX_CHARS)
    ]
    if question_id is not None:
        blocks.append(
            {
                "type": "actions",
                "block_id": "helpme_feedback",
                "elements": [
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "👍 Helpful"},
                        "action_id": ACTION_FEEDBACK_UP,
                        "value": str(question_id),
                    },
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "👎 Not helpful"},
                        "action_id": ACTION_FEEDBACK_DOWN,
                        "value": str(question_id),
                    },
                ],
            }
        )
    return blocks


def feedback_thanks_text(score: int) -> str:
    if score > 0:
        return "👍 Thanks! Glad that helped."
    return "👎 Thanks for the feedback. It helps improve the answers."


# ---------------------------------------------------------------------------
# Courses, history, identity
# ---------------------------------------------------------------------------


def course_label(course_id: int, courses: Sequence[Any]) -> str:
    for course in courses:
        if course.id == course_id:
            return course.name
    return f"course {course_id}"


def format_courses(cache: Optional[CourseCache], default_course_id: Optional[int]) -> str:
    if cache is None or not cache.courses:
        return "You don't have any cached courses. Run `/unlink` and `/link` to refresh them."
    lines = ["*Your courses:*"]
    for course in cache.courses:
        marker = " ⭐ _default_" if course.id == default_course_id else ""
        lines.append(f"• {course.name} (ID {course.id}){marker}")
    fetched = _utc(cache.fetched_at).strftime("%Y-%m-%d %H:%M UTC")
    lines.append("")
    lines.append(f"_Fetched {fetched}. Re-link to refresh._")
    return "\n".join(lines)


def format_history(interactions: Sequence[InteractionRecord], courses: Sequence[Any]) -> str:
    if not interactions:
        return "📭 No chatbot history yet. Ask something with `/ask <question>`."

    lines = [f"📚 *Your last {len(interactions)} chatbot interactions*", ""]
    for interaction in interactions:
        when = _utc(interaction.created_at).strftime("%Y-%m-%d %H:%M UTC")
        lines.append(f"*{when}* ({course_label(interaction.course_id, courses)})")
        for question in interaction.questions:
            lines.append(f"• *Q:* {_truncate(question.question_text, HISTORY_QUESTION_CHARS)}")
            if question.response_text:
                lines.append(f"  *A:* {_truncate(question.response_text, HISTORY_ANSWER_CHARS)}")
            if question.user_score:
                lines.append("  " + ("👍" if question.user_score > 0 else "👎"))
        lines.append("")
    return "\n".join(lines).rstrip()


def format_about_me(
    link: UserLink, cache: Optional[CourseCache], default_course_id: Optional[int]
) -> str:
    lines = [
        f"*Name:* {link.backend_display_name or '_unknown_'}",
        f"*Email:* {link.backend_email or '_unknown_'}",
    ]
    if link.organization_id is not None:
        lines.append(f"*Organization:* {link.organization_id}")
    linked = _utc(link.updated_at).strftime("%Y-%m-%d %H:%M UTC")
    lines.append(f"*Linked:* {linked}")

    courses = cache.courses if cache else ()
    if courses:
        lines.append("*Courses:*")
        for course in courses:
            marker = " ⭐" if course.id == default_course_id else ""
            lines.append(f"• {course.name} (ID {course.id}){marker}")
    else:
        lines.append("*Courses:* _none cached_")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Settings and models
# ---------------------------------------------------------------------------


def _or_default(value: Any) -> str:
    return "Default" if value is None else str(value)


def format_settings(course_label_text: str, settings: CourseSettings, heading: str = "Chatbot settings") -> str:
    lines = [
        f"⚙️ *{heading} for {course_label_text}*",
        "",
        f"*Model:* {_or_default(settings.model_name)}",
        f"*Temperature:* {_or_default(settings.temperature)}",
        f"*Top K:* {_or_default(settings.top_k)}",
        f"*Similarity threshold:* {_or_default(settings.similarity_threshold)}",
    ]
    if settings.prompt:
        lines.append(f"*Prompt:* {_truncate(settings.prompt, PROMPT_PREVIEW_CHARS)}")
    lines.append("")
    lines.append("_Change with_ `/chatbot-settings [course] set key=value` _or_ `/chatbot-settings [course] reset`")
    return "\n".join(lines)


def format_models(models: Sequence[ModelInfo]) -> str:
    if not models:
        return "🤖 No models are available right now."
    lines = ["🤖 *Available AI models*", ""]
    for model in models:
        desc = f": {model.description}" if model.description else ""
        lines.append(f"• *{model.key}*{desc}")
    lines.append("")
    lines.append("_Pick one for a course with_ `/chatbot-settings [course] set model=<name>`")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Upload modal
# ---------------------------------------------------------------------------


def build_upload_modal(private_metadata: str, course_label_text: str) -> Dict[str, Any]:
    """Modal with a question input and a single-file input."""
    return {
        "type": "modal",
        "callback_id": UPLOAD_MODAL_CALLBACK_ID,
        "private_metadata": private_metadata,
        "title": {"type": "plain_text", "text": "Ask about a file"},
        "submit": {"type": "plain_text", "text": "Ask"},
        "close": {"type": "plain_text", "text": "Cancel"},
        "blocks": [
            {
                "type": "context",
                "elements": [
                    {"type": "mrkdwn", "text": f"Course: *{course_label_text}*"}
                ],
            },
            {
                "type": "input",
                "block_id": BLOCK_QUESTION,
                "label": {"type": "plain_text", "text": "Your question"},
                "element": {
                    "type": "plain_text_input",
                    "action_id": ACTION_QUESTION,
                    "multiline": True,
                    "placeholder": {"type": "plain_text", "text": "What would you like to know about this file?"},
                },
            },
            {
                "type": "input",
                "block_id": BLOCK_FILE,
                "label": {"type": "plain_text", "text": "File"},
                "element": {
                    "type": "file_input",
                    "action_id": ACTION_FILE,
                    "filetypes": UPLOAD_FILETYPES,
                    "max_files": 1,
                },
            },
        ],
    }
