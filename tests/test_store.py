"""Tests for the CredentialStore.

WHY: The store owns every durable invariant: one link row per
(team, user), tokens encrypted at rest and returned verbatim, link states
consumable exactly once, and a one-time migration of the legacy table.

HOW: Each test opens a fresh SQLite file under tmp_path and runs its body
on a single event loop via run_with_store().

RULES:
- Time moves only through FakeClock
- Raw rows are inspected with plain SQL where encryption must be proven
"""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import text

from conftest import TEAM, USER, run_with_store
from helpme_slack.api.models import Course as ApiCourse
from helpme_slack.store import Course


def _db_path(settings) -> Path:
    return Path(settings.database_url.split("///", 1)[1])


async def _save(store, team=TEAM, user=USER, token="tok-123", email="ada@example.edu"):
    return await store.save_link(
        team,
        user,
        backend_user_id=42,
        backend_email=email,
        backend_display_name="Ada",
        organization_id=7,
        chat_token=token,
    )


# ---------------------------------------------------------------------------
# User links
# ---------------------------------------------------------------------------


class TestUserLinks:
    def test_round_trip_returns_token_verbatim(self, settings, clock):
        token = "tok-äö-" + "x" * 300

        async def body(store):
            await _save(store, token=token)
            return await store.get_link(TEAM, USER)

        link = run_with_store(settings, clock, body)
        assert link.chat_token == token
        assert link.backend_user_id == 42
        assert link.backend_email == "ada@example.edu"
        assert link.organization_id == 7

    def test_resave_overwrites_single_row(self, settings, clock):
        async def body(store):
            await _save(store, token="first")
            clock.advance(10)
            await _save(store, token="second", email="new@example.edu")
            async with store._engine.connect() as conn:
                count = (await conn.execute(text("SELECT COUNT(*) FROM user_links"))).scalar_one()
            return count, await store.get_link(TEAM, USER)

        count, link = run_with_store(settings, clock, body)
        assert count == 1
        assert link.chat_token == "second"
        assert link.backend_email == "new@example.edu"
        assert link.updated_at > link.created_at

    def test_token_is_not_stored_in_plaintext(self, settings, clock):
        async def body(store):
            await _save(store, token="super-secret-token")

        run_with_store(settings, clock, body)
        with sqlite3.connect(_db_path(settings)) as conn:
            (stored,) = conn.execute("SELECT chat_token_enc FROM user_links").fetchone()
        assert "super-secret-token" not in stored

    def test_teams_are_isolated(self, settings, clock):
        async def body(store):
            await _save(store, team="T_A", token="token-a")
            return await store.get_link("T_B", USER), await store.get_link("T_A", USER)

        other, mine = run_with_store(settings, clock, body)
        assert other is None
        assert mine.chat_token == "token-a"

    def test_delete_is_idempotent(self, settings, clock):
        async def body(store):
            await _save(store)
            await store.save_courses(TEAM, USER, [Course(1, "COSC 304")])
            first = await store.delete_link(TEAM, USER)
            second = await store.delete_link(TEAM, USER)
            return first, second, await store.get_link(TEAM, USER), await store.get_courses(TEAM, USER)

        first, second, link, courses = run_with_store(settings, clock, body)
        assert first is True
        assert second is False
        assert link is None
        assert courses is None

    def test_save_token_keeps_identity(self, settings, clock):
        async def body(store):
            await _save(store, token="old")
            await store.save_token(TEAM, USER, "pasted")
            return await store.get_link(TEAM, USER)

        link = run_with_store(settings, clock, body)
        assert link.chat_token == "pasted"
        assert link.backend_user_id == 42
        assert link.backend_display_name == "Ada"

    def test_save_token_creates_minimal_link(self, settings, clock):
        async def body(store):
            return await store.save_token(TEAM, USER, "pasted")

        link = run_with_store(settings, clock, body)
        assert link.chat_token == "pasted"
        assert link.backend_user_id is None
        assert link.backend_email == ""

    def test_undecryptable_token_reads_as_missing(self, settings, clock):
        async def body(store):
            await _save(store)
            async with store._engine.begin() as conn:
                await conn.execute(text("UPDATE user_links SET chat_token_enc = 'bm90LWEtdG9rZW4='"))
            return await store.get_link(TEAM, USER)

        link = run_with_store(settings, clock, body)
        assert link is not None
        assert link.chat_token is None

    def test_save_raises_when_row_cannot_be_read_back(self, settings, clock):
        async def body(store):
            store.get_link = AsyncMock(return_value=None)
            with pytest.raises(RuntimeError, match="missing right after it was written"):
                await _save(store)
            with pytest.raises(RuntimeError):
                await store.save_token(TEAM, USER, "tok")

        run_with_store(settings, clock, body)


# ---------------------------------------------------------------------------
# Link states
# ---------------------------------------------------------------------------


class TestLinkStates:
    def test_consume_once(self, settings, clock):
        async def body(store):
            await store.create_link_state("s1", TEAM, USER, clock() + 600, channel_id="C1")
            return await store.consume_link_state("s1"), await store.consume_link_state("s1")

        first, second = run_with_store(settings, clock, body)
        assert first.team_id == TEAM
        assert first.user_id == USER
        assert first.channel_id == "C1"
        assert second is None

    def test_expired_state_is_rejected_and_removed(self, settings, clock):
        async def body(store):
            await store.create_link_state("s1", TEAM, USER, clock() + 60)
            clock.advance(61)
            result = await store.consume_link_state("s1")
            async with store._engine.connect() as conn:
                left = (await conn.execute(text("SELECT COUNT(*) FROM link_states"))).scalar_one()
            return result, left

        result, left = run_with_store(settings, clock, body)
        assert result is None
        assert left == 0

    def test_unknown_state(self, settings, clock):
        async def body(store):
            return await store.consume_link_state("never-issued")

        assert run_with_store(settings, clock, body) is None

    def test_concurrent_consumers_get_one_row(self, settings, clock):
        async def body(store):
            await store.create_link_state("s1", TEAM, USER, clock() + 600)
            return await asyncio.gather(*(store.consume_link_state("s1") for _ in range(8)))

        results = run_with_store(settings, clock, body)
        assert sum(1 for r in results if r is not None) == 1

    def test_purge_expired(self, settings, clock):
        async def body(store):
            await store.create_link_state("old", TEAM, USER, clock() + 60)
            await store.create_link_state("new", TEAM, USER, clock() + 600)
            clock.advance(120)
            removed = await store.purge_expired_link_states()
            return removed, await store.consume_link_state("new")

        removed, fresh = run_with_store(settings, clock, body)
        assert removed == 1
        assert fresh is not None


# ---------------------------------------------------------------------------
# Courses and preferences
# ---------------------------------------------------------------------------


class TestCoursesAndPrefs:
    def test_course_cache_round_trip(self, settings, clock):
        async def body(store):
            await store.save_courses(TEAM, USER, [Course(1, "COSC 304"), Course(2, "COSC 200")])
            clock.advance(5)
            await store.save_courses(TEAM, USER, [Course(3, "MATH 100")])
            return await store.get_courses(TEAM, USER)

        cache = run_with_store(settings, clock, body)
        assert cache.courses == (Course(3, "MATH 100"),)
        assert cache.fetched_at == clock()

    def test_cache_holds_gateway_courses(self, settings, clock):
        async def body(store):
            await store.save_courses(TEAM, USER, [ApiCourse.from_dict({"id": "7", "name": "Algorithms"})])
            return await store.get_courses(TEAM, USER)

        assert Course is ApiCourse
        cache = run_with_store(settings, clock, body)
        assert cache.courses == (Course(7, "Algorithms"),)

    def test_default_course(self, settings, clock):
        async def body(store):
            before = await store.get_default_course(TEAM, USER)
            await store.set_default_course(TEAM, USER, 304)
            await store.set_default_course(TEAM, USER, 200)
            return before, await store.get_default_course(TEAM, USER)

        before, after = run_with_store(settings, clock, body)
        assert before is None
        assert after == 200


# ---------------------------------------------------------------------------
# Interaction log
# ---------------------------------------------------------------------------


class TestInteractions:
    def test_record_and_list_newest_first(self, settings, clock):
        async def body(store):
            first, _ = await store.record_question(TEAM, USER, 304, "q1", "a1", external_ref_id="ext-1")
            await store.record_question(TEAM, USER, 304, "q1b", "a1b", interaction_id=first)
            clock.advance(60)
            await store.record_question(TEAM, USER, 200, "q2", "a2")
            await store.record_question("T_OTHER", USER, 200, "other", "x")
            return await store.list_interactions(TEAM, USER, limit=10)

        interactions = run_with_store(settings, clock, body)
        assert [i.course_id for i in interactions] == [200, 304]
        assert [q.question_text for q in interactions[1].questions] == ["q1", "q1b"]
        assert interactions[1].questions[0].external_ref_id == "ext-1"

    def test_score_only_for_owner(self, settings, clock):
        async def body(store):
            _, qid = await store.record_question(TEAM, USER, 304, "q", "a")
            stranger = await store.set_question_score(TEAM, "U_OTHER", qid, 1)
            owner = await store.set_question_score(TEAM, USER, qid, -1)
            missing = await store.set_question_score(TEAM, USER, qid + 100, 1)
            interactions = await store.list_interactions(TEAM, USER)
            return stranger, owner, missing, interactions[0].questions[0].user_score

        stranger, owner, missing, score = run_with_store(settings, clock, body)
        assert stranger is False
        assert owner is True
        assert missing is False
        assert score == -1


# ---------------------------------------------------------------------------
# Legacy schema migration
# ---------------------------------------------------------------------------


class TestLegacyMigration:
    def test_encrypted_legacy_rows_are_migrated(self, settings, clock):
        from helpme_slack.store import TokenCipher

        path = _db_path(settings)
        path.parent.mkdir(parents=True, exist_ok=True)
        encrypted = TokenCipher(settings.encryption_key).encrypt("legacy-token")
        with sqlite3.connect(path) as conn:
            conn.execute(
                "CREATE TABLE links (team_id TEXT, user_id TEXT, helpme_user_token_enc TEXT, "
                "PRIMARY KEY (team_id, user_id))"
            )
            conn.execute("INSERT INTO links VALUES (?, ?, ?)", (TEAM, USER, encrypted))

        async def body(store):
            return await store.get_link(TEAM, USER)

        link = run_with_store(settings, clock, body)
        assert link.chat_token == "legacy-token"
        assert link.backend_user_id is None

        with sqlite3.connect(path) as conn:
            tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        assert "links" not in tables

    def test_richer_row_wins_over_legacy(self, settings, clock):
        async def seed(store):
            await _save(store, token="rich")

        run_with_store(settings, clock, seed)
        with sqlite3.connect(_db_path(settings)) as conn:
            conn.execute("CREATE TABLE links (team_id TEXT, user_id TEXT, helpme_user_chat_token TEXT)")
            conn.execute("INSERT INTO links VALUES (?, ?, ?)", (TEAM, USER, "plain-legacy"))

        async def body(store):
            return await store.get_link(TEAM, USER)

        link = run_with_store(settings, clock, body)
        assert link.chat_token == "rich"
        assert link.backend_user_id == 42
