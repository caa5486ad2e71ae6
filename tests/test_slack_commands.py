"""Tests for the Slack command, action and modal handlers.

WHY: The handlers are where linking, course resolution, the gateway and
the store meet. These tests drive them the way Bolt does (keyword
arguments, an ack that must be awaited first) and check what the user
sees and what reaches the backend.

HOW: ack/respond/client are AsyncMocks. The AppContext is passed as
context={"helpme": ctx}, the same key the Bolt middleware uses. Backend
traffic goes through BackendRecorder on an httpx.MockTransport.

RULES:
- Every handler must ack exactly once
- An unlinked user never causes a backend request
"""

from __future__ import annotations

import inspect
import json
from unittest.mock import AsyncMock

import httpx

from conftest import TEAM, USER, BackendRecorder, make_context, run_with_store
from helpme_slack.api.client import USER_TOKEN_HEADER
from helpme_slack.core.signing import sign_metadata
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
    handle_upload_submit,
)
from helpme_slack.slack.messages import (
    ACTION_FEEDBACK_DOWN,
    ACTION_FILE,
    ACTION_QUESTION,
    BLOCK_FILE,
    BLOCK_QUESTION,
)
from helpme_slack.store import Course

ASK = ("POST", "/chat/chatbot/304/ask")


def _command(text: str = "", **extra) -> dict:
    command = {
        "team_id": TEAM,
        "user_id": USER,
        "channel_id": "C1",
        "text": text,
        "trigger_id": "trigger-1",
    }
    command.update(extra)
    return command


async def _link_user(store, token="user-token", default_course=304):
    await store.save_link(
        TEAM,
        USER,
        backend_user_id=42,
        backend_email="ada@example.edu",
        backend_display_name="Ada",
        chat_token=token,
    )
    await store.save_courses(TEAM, USER, [Course(304, "COSC 304"), Course(200, "COSC 200")])
    if default_course is not None:
        await store.set_default_course(TEAM, USER, default_course)


class Harness:
    """Runs one handler call against a fresh store and records the outcome."""

    def __init__(self, settings, clock, routes=None):
        self.settings = settings
        self.clock = clock
        self.recorder = BackendRecorder(routes or {})
        self.ack = AsyncMock()
        self.respond = AsyncMock()
        self.client = AsyncMock()
        self.client.token = "xoxb-test"

    def run(self, handler, setup=None, check=None, **kwargs):
        async def body(store):
            ctx = make_context(store, self.settings, self.clock, self.recorder)
            if setup is not None:
                await setup(store)
            available = dict(ack=self.ack, respond=self.respond, client=self.client,
                             context={"helpme": ctx}, **kwargs)
            # Bolt passes only the arguments a listener names
            wanted = inspect.signature(handler).parameters
            await handler(**{k: v for k, v in available.items() if k in wanted})
            if check is not None:
                return await check(store)
            return None

        return run_with_store(self.settings, self.clock, body)

    @property
    def reply(self) -> str:
        return self.respond.await_args.kwargs["text"]


# ---------------------------------------------------------------------------
# /ask
# ---------------------------------------------------------------------------


class TestAsk:
    def test_unlinked_user_is_told_to_link(self, settings, clock):
        h = Harness(settings, clock, {ASK: httpx.Response(200, json={"answer": "x"})})
        h.run(handle_ask, command=_command("What is a stack?"))

        h.ack.assert_awaited_once()
        assert "`/link`" in h.reply
        assert h.recorder.requests == []

    def test_linked_user_gets_answer(self, settings, clock):
        h = Harness(settings, clock, {
            ASK: httpx.Response(200, json={"answer": "A stack is a LIFO structure.", "questionId": "ext-1"}),
        })

        async def check(store):
            return await store.list_interactions(TEAM, USER)

        interactions = h.run(handle_ask, setup=_link_user, check=check, command=_command("What is a stack?"))

        request = h.recorder.requests[0]
        assert json.loads(request.content) == {"question": "What is a stack?", "history": []}
        assert request.headers[USER_TOKEN_HEADER] == "user-token"
        assert "A stack is a LIFO structure." in h.reply
        assert "COSC 304" in h.reply
        assert interactions[0].questions[0].external_ref_id == "ext-1"
        blocks = h.respond.await_args.kwargs["blocks"]
        assert blocks[-1]["type"] == "actions"

    def test_quota_error_shows_reset_time(self, settings, clock):
        reset_at = clock() + 2 * 3600
        h = Harness(settings, clock, {
            ASK: httpx.Response(429, json={"error": "Too many questions", "resetAt": reset_at}),
        })
        h.run(handle_ask, setup=_link_user, command=_command("What is a stack?"))

        assert "question limit" in h.reply
        assert "in 2h 0m" in h.reply
        assert "429" not in h.reply

    def test_course_flag_overrides_default(self, settings, clock):
        h = Harness(settings, clock, {
            ("POST", "/chat/chatbot/200/ask"): httpx.Response(200, json={"answer": "ok"}),
        })
        h.run(handle_ask, setup=_link_user, command=_command("Define recursion --course=cosc200"))
        assert json.loads(h.recorder.requests[0].content)["question"] == "Define recursion"

    def test_no_course_available(self, settings, clock):
        async def setup(store):
            await _link_user(store, default_course=None)

        h = Harness(settings, clock)
        h.run(handle_ask, setup=setup, command=_command("What is a stack?"))
        assert "No default course" in h.reply
        assert h.recorder.requests == []

    def test_workspace_default_course(self, settings, clock):
        settings = settings.with_overrides(default_course_id=304)

        async def setup(store):
            await _link_user(store, default_course=None)

        h = Harness(settings, clock, {ASK: httpx.Response(200, json={"answer": "ok"})})
        h.run(handle_ask, setup=setup, command=_command("q"))
        assert len(h.recorder.requests) == 1

    def test_linking_optional_uses_service_key_only(self, settings, clock):
        settings = settings.with_overrides(linking_required=False, default_course_id=304)
        h = Harness(settings, clock, {ASK: httpx.Response(200, json={"answer": "ok"})})
        h.run(handle_ask, command=_command("q"))
        assert USER_TOKEN_HEADER not in h.recorder.requests[0].headers

    def test_empty_question(self, settings, clock):
        h = Harness(settings, clock)
        h.run(handle_ask, setup=_link_user, command=_command("   "))
        assert "include a question" in h.reply

    def test_backend_down(self, settings, clock):
        h = Harness(settings, clock, {ASK: httpx.Response(503, text="down")})
        h.run(handle_ask, setup=_link_user, command=_command("q"))
        assert "isn't responding" in h.reply


# ---------------------------------------------------------------------------
# /link, /unlink
# ---------------------------------------------------------------------------


class TestLinkCommands:
    def test_link_issues_url(self, settings, clock):
        h = Harness(settings, clock)
        h.run(handle_link, command=_command())

        kwargs = h.respond.await_args.kwargs
        assert kwargs["response_type"] == "ephemeral"
        assert kwargs["blocks"][0]["accessory"]["url"].startswith(
            "https://helpme.test/api/v1/auth/slack/start?state="
        )

    def test_link_when_already_linked(self, settings, clock):
        h = Harness(settings, clock)
        h.run(handle_link, setup=_link_user, command=_command())
        assert "already linked" in h.reply

    def test_link_with_pasted_token(self, settings, clock):
        async def check(store):
            return await store.get_link(TEAM, USER)

        h = Harness(settings, clock)
        link = h.run(handle_link, check=check, command=_command("pasted-token"))
        assert link.chat_token == "pasted-token"
        assert "Token saved" in h.reply
        assert "pasted-token" not in h.reply

    def test_unlink(self, settings, clock):
        async def check(store):
            return await store.get_link(TEAM, USER)

        h = Harness(settings, clock)
        assert h.run(handle_unlink, setup=_link_user, check=check, command=_command()) is None
        assert "unlinked" in h.reply

    def test_unlink_when_not_linked(self, settings, clock):
        h = Harness(settings, clock)
        h.run(handle_unlink, command=_command())
        assert "weren't linked" in h.reply


# ---------------------------------------------------------------------------
# /courses, /default-course, /chatbot-settings
# ---------------------------------------------------------------------------


class TestCourseCommands:
    def test_courses_lists_cache(self, settings, clock):
        h = Harness(settings, clock)
        h.run(handle_courses, setup=_link_user, command=_command())
        assert "COSC 304 (ID 304) ⭐" in h.reply
        assert "COSC 200 (ID 200)" in h.reply

    def test_courses_requires_link(self, settings, clock):
        h = Harness(settings, clock)
        h.run(handle_courses, command=_command())
        assert "`/link`" in h.reply

    def test_set_default_course_by_name(self, settings, clock):
        async def check(store):
            return await store.get_default_course(TEAM, USER)

        h = Harness(settings, clock)
        assert h.run(handle_default_course, setup=_link_user, check=check, command=_command("cosc200")) == 200
        assert "COSC 200" in h.reply

    def test_ambiguous_default_course_is_rejected(self, settings, clock):
        async def check(store):
            return await store.get_default_course(TEAM, USER)

        h = Harness(settings, clock)
        assert h.run(handle_default_course, setup=_link_user, check=check, command=_command("cosc")) == 304
        assert "not found or ambiguous" in h.reply

    def test_settings_set(self, settings, clock):
        h = Harness(settings, clock, {
            ("PATCH", "/chat/course-setting/304"): httpx.Response(
                200, json={"modelName": "gpt-4o", "temperature": 0.2, "topK": 4}
            ),
        })
        h.run(handle_settings, setup=_link_user, command=_command("set temperature=0.2"))
        assert json.loads(h.recorder.requests[0].content) == {"temperature": 0.2}
        assert "*Temperature:* 0.2" in h.reply
        assert "Updated chatbot settings for COSC 304" in h.reply

    def test_settings_bad_key_makes_no_call(self, settings, clock):
        h = Harness(settings, clock)
        h.run(handle_settings, setup=_link_user, command=_command("set colour=blue"))
        assert "Unknown setting" in h.reply
        assert h.recorder.requests == []


# ---------------------------------------------------------------------------
# /chatbot-thread
# ---------------------------------------------------------------------------


class TestThread:
    def test_new_thread_is_started(self, settings, clock):
        h = Harness(settings, clock, {ASK: httpx.Response(200, json={"answer": "Threads!"})})
        h.client.chat_postMessage.return_value = {"ok": True, "ts": "111.222"}
        h.run(handle_thread, setup=_link_user, command=_command("Explain threads"))

        calls = h.client.chat_postMessage.await_args_list
        assert calls[0].kwargs["text"].endswith("asked: Explain threads")
        assert calls[1].kwargs["thread_ts"] == "111.222"
        assert "Threads!" in calls[1].kwargs["text"]

    def test_existing_thread_becomes_history(self, settings, clock):
        h = Harness(settings, clock, {ASK: httpx.Response(200, json={"answer": "ok"})})
        h.client.conversations_replies.return_value = {
            "messages": [
                {"text": "What is a heap?", "user": "U2"},
                {"text": "A heap is a tree.", "bot_id": "B1"},
                {"text": "/chatbot-thread and a stack?", "user": USER},
            ]
        }
        h.run(handle_thread, setup=_link_user, command=_command("and a stack?", thread_ts="100.1"))

        assert json.loads(h.recorder.requests[0].content)["history"] == [
            {"role": "user", "content": "What is a heap?"},
            {"role": "assistant", "content": "A heap is a tree."},
        ]


# ---------------------------------------------------------------------------
# /chatbot-history, /chatbot-models, /about-me
# ---------------------------------------------------------------------------


class TestInfoCommands:
    def test_history_lists_recorded_questions(self, settings, clock):
        async def setup(store):
            await _link_user(store)
            await store.record_question(TEAM, USER, 304, "What is a stack?", "LIFO.")

        h = Harness(settings, clock)
        h.run(handle_history, setup=setup, command=_command())

        h.ack.assert_awaited_once()
        assert "What is a stack?" in h.reply
        assert "COSC 304" in h.reply
        assert h.recorder.requests == []

    def test_history_empty(self, settings, clock):
        h = Harness(settings, clock)
        h.run(handle_history, setup=_link_user, command=_command())
        assert "No chatbot history yet" in h.reply

    def test_history_needs_link(self, settings, clock):
        h = Harness(settings, clock)
        h.run(handle_history, command=_command())
        h.ack.assert_awaited_once()
        assert "`/link`" in h.reply

    def test_models(self, settings, clock):
        h = Harness(settings, clock, {
            ("GET", "/chat/chatbot/models"): httpx.Response(200, json={"gpt-4o": "OpenAI GPT-4o"}),
        })
        h.run(handle_models, setup=_link_user, command=_command())

        assert h.recorder.requests[0].headers[USER_TOKEN_HEADER] == "user-token"
        assert "*gpt-4o*: OpenAI GPT-4o" in h.reply

    def test_models_needs_link(self, settings, clock):
        h = Harness(settings, clock)
        h.run(handle_models, command=_command())
        assert "`/link`" in h.reply
        assert h.recorder.requests == []

    def test_about_me(self, settings, clock):
        h = Harness(settings, clock)
        h.run(handle_about_me, setup=_link_user, command=_command())

        assert "*Name:* Ada" in h.reply
        assert "ada@example.edu" in h.reply
        assert "COSC 304 (ID 304) ⭐" in h.reply
        assert "user-token" not in h.reply

    def test_about_me_unlinked(self, settings, clock):
        h = Harness(settings, clock)
        h.run(handle_about_me, command=_command())
        assert "`/link`" in h.reply


# ---------------------------------------------------------------------------
# Feedback buttons
# ---------------------------------------------------------------------------


class TestFeedback:
    def test_feedback_is_recorded(self, settings, clock):
        question = {}

        async def setup(store):
            _, question["id"] = await store.record_question(TEAM, USER, 304, "q", "a")

        async def check(store):
            return (await store.list_interactions(TEAM, USER))[0].questions[0].user_score

        h = Harness(settings, clock)

        async def handler(ack, respond, context, body):
            action = {"action_id": ACTION_FEEDBACK_DOWN, "value": str(question["id"])}
            await handle_feedback(ack=ack, body=body, action=action, respond=respond, context=context)

        score = h.run(handler, setup=setup, check=check,
                      body={"user": {"id": USER, "team_id": TEAM}, "team": {"id": TEAM}})
        assert score == -1
        assert h.respond.await_args.kwargs["replace_original"] is False

    def test_bad_button_value(self, settings, clock):
        h = Harness(settings, clock)
        h.run(handle_feedback, body={"user": {"id": USER}, "team": {"id": TEAM}},
              action={"action_id": ACTION_FEEDBACK_DOWN, "value": "abc"})
        assert "no longer valid" in h.reply


# ---------------------------------------------------------------------------
# Upload modal submission
# ---------------------------------------------------------------------------


def _upload_view(settings, clock, user=USER, mimetype="image/png", question="What is this?"):
    metadata = sign_metadata(
        {"team": TEAM, "user": user, "channel": "C1", "course": 304},
        settings.encryption_key,
        now=clock(),
    )
    return {
        "private_metadata": metadata,
        "state": {
            "values": {
                BLOCK_QUESTION: {ACTION_QUESTION: {"value": question}},
                BLOCK_FILE: {
                    ACTION_FILE: {
                        "files": [{
                            "name": "diagram.png",
                            "mimetype": mimetype,
                            "url_private_download": "https://files.slack.test/diagram.png",
                        }]
                    }
                },
            }
        },
    }


def _submit(h, view):
    async def handler(ack, respond, client, context):
        await handle_upload_submit(ack=ack, body={"user": {"id": USER}}, view=view,
                                   client=client, context=context)

    return handler


class TestUploadSubmit:
    def test_unsupported_type_keeps_modal_open(self, settings, clock):
        h = Harness(settings, clock)
        h.run(_submit(h, _upload_view(settings, clock, mimetype="text/plain")), setup=_link_user)

        kwargs = h.ack.await_args.kwargs
        assert kwargs["response_action"] == "errors"
        assert BLOCK_FILE in kwargs["errors"]
        assert h.recorder.requests == []

    def test_foreign_metadata_is_rejected(self, settings, clock):
        h = Harness(settings, clock)
        h.run(_submit(h, _upload_view(settings, clock, user="U_SOMEONE_ELSE")), setup=_link_user)
        assert BLOCK_QUESTION in h.ack.await_args.kwargs["errors"]

    def test_file_question_is_answered(self, settings, clock):
        h = Harness(settings, clock, {
            ("GET", "/diagram.png"): httpx.Response(200, content=b"\x89PNG"),
            ASK: httpx.Response(200, json={"answer": "It is a class diagram."}),
        })
        h.run(_submit(h, _upload_view(settings, clock)), setup=_link_user)

        h.ack.assert_awaited_once_with()
        download, ask = h.recorder.requests
        assert download.headers["Authorization"] == "Bearer xoxb-test"
        assert b'filename="diagram.png"' in ask.content
        posted = h.client.chat_postEphemeral.await_args.kwargs
        assert posted["channel"] == "C1"
        assert posted["user"] == USER
        assert "It is a class diagram." in posted["text"]
