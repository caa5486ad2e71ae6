"""Durable credential store: link states, user links, courses, preferences.

WHY: Linking state, backend tokens, the course cache, default-course
preferences and the question log must survive restarts and be shared by
the Slack handlers and the HTTP callback. This is the only module that
touches durable state.

HOW: SQLAlchemy 2.0 async engine (aiosqlite by default). Each public
method runs in its own short transaction. Upserts use the dialect's
INSERT ... ON CONFLICT DO UPDATE so concurrent writers to one
(team_id, user_id) row resolve as last-writer-wins without duplicates.
Link states are consumed with a single DELETE ... RETURNING statement,
so two concurrent consumers can never both receive the same row.

RULES:
- Every per-user read/write is keyed by (team_id, user_id)
- save_link/save_token are upserts; delete_link on a missing row is a no-op
- Chat tokens are encrypted with TokenCipher before they reach the database
- Callers receive frozen record dataclasses, never ORM rows
- open() creates the schema and migrates the legacy single-token table;
  failures propagate (the process must not serve without a store)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sqlalchemy import delete, event, inspect, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from helpme_slack.api.models import Course
from helpme_slack.store.crypto import TokenCipher, TokenDecryptionError
from helpme_slack.store.models import (
    Base,
    InteractionRow,
    LinkStateRow,
    QuestionRow,
    UserCoursesRow,
    UserLinkRow,
    UserPrefsRow,
)

logger = logging.getLogger(__name__)

_LEGACY_LINKS_TABLE = "links"


# ---------------------------------------------------------------------------
# Records handed to callers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LinkState:
    state_id: str
    team_id: str
    user_id: str
    channel_id: str | None
    redirect_uri: str | None
    created_at: float
    expires_at: float


@dataclass(frozen=True)
class UserLink:
    team_id: str
    user_id: str
    backend_user_id: int | None
    backend_email: str
    backend_display_name: str
    organization_id: int | None
    chat_token: str | None
    created_at: float
    updated_at: float


@dataclass(frozen=True)
class CourseCache:
    team_id: str
    user_id: str
    courses: tuple[Course, ...]
    fetched_at: float


@dataclass(frozen=True)
class QuestionRecord:
    id: int
    question_text: str
    response_text: str
    external_ref_id: str
    suggested: bool
    is_previous_question: bool
    user_score: int | None
    created_at: float


@dataclass(frozen=True)
class InteractionRecord:
    id: int
    course_id: int
    team_id: str
    user_id: str
    created_at: float
    questions: tuple[QuestionRecord, ...] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class CredentialStore:
    """Async, keyed-by-(team, user) storage for the bot's durable state.

    Use CredentialStore.open() once at process start and close() on
    shutdown. The instance is safe to share between concurrent tasks.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        cipher: TokenCipher,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._engine = engine
        self._cipher = cipher
        self._clock = clock

    @classmethod
    async def open(
        cls,
        database_url: str,
        cipher: TokenCipher,
        clock: Callable[[], float] = time.time,
    ) -> CredentialStore:
        """Create the engine, ensure the schema, and migrate legacy rows."""
        url = make_url(database_url)
        if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

        engine = create_async_engine(database_url)
        if url.get_backend_name() == "sqlite":
            event.listen(engine.sync_engine, "connect", _sqlite_pragmas)

        store = cls(engine, cipher, clock)
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
                migrated = await conn.run_sync(store._migrate_legacy_links)
        except Exception:
            await engine.dispose()
            raise

        if migrated:
            logger.info("Migrated %d legacy link rows into user_links", migrated)
        logger.info("Credential store ready (%s)", url.render_as_string(hide_password=True))
        return store

    async def close(self) -> None:
        await self._engine.dispose()

    def _insert(self, table: Any):
        if self._engine.dialect.name == "postgresql":
            return pg_insert(table)
        return sqlite_insert(table)

    # ------------------------------------------------------------------
    # Link states
    # ------------------------------------------------------------------

    async def create_link_state(
        self,
        state_id: str,
        team_id: str,
        user_id: str,
        expires_at: float,
        channel_id: str | None = None,
        redirect_uri: str | None = None,
    ) -> LinkState:
        now = self._clock()
        async with self._engine.begin() as conn:
            await conn.execute(
                self._insert(LinkStateRow).values(
                    state_id=state_id,
                    team_id=team_id,
                    user_id=user_id,
                    channel_id=channel_id,
                    redirect_uri=redirect_uri,
                    created_at=now,
                    expires_at=expires_at,
                )
            )
        return LinkState(state_id, team_id, user_id, channel_id, redirect_uri, now, expires_at)

    async def consume_link_state(self, state_id: str) -> LinkState | None:
        """Atomically delete a link state and return it if still valid.

        RULES:
        - One DELETE ... RETURNING statement: at most one caller gets the row
        - Expired rows are deleted too, and reported as None
        - Unknown, consumed and expired states all return None
        """
        stmt = (
            delete(LinkStateRow)
            .where(LinkStateRow.state_id == state_id)
            .returning(
                LinkStateRow.state_id,
                LinkStateRow.team_id,
                LinkStateRow.user_id,
                LinkStateRow.channel_id,
                LinkStateRow.redirect_uri,
                LinkStateRow.created_at,
                LinkStateRow.expires_at,
            )
        )
        async with self._engine.begin() as conn:
            row = (await conn.execute(stmt)).first()

        if row is None:
            return None
        state = LinkState(*row)
        if self._clock() > state.expires_at:
            return None
        return state

    async def purge_expired_link_states(self) -> int:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                delete(LinkStateRow).where(LinkStateRow.expires_at < self._clock())
            )
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # User links
    # ------------------------------------------------------------------

    async def save_link(
        self,
        team_id: str,
        user_id: str,
        *,
        backend_user_id: int | None,
        backend_email: str,
        backend_display_name: str,
        organization_id: int | None = None,
        chat_token: str | None = None,
    ) -> UserLink:
        """Create or overwrite the link for (team_id, user_id)."""
        now = self._clock()
        token_enc = self._cipher.encrypt(chat_token) if chat_token else None
        values = {
            "backend_user_id": backend_user_id,
            "backend_email": backend_email,
            "backend_display_name": backend_display_name,
            "organization_id": organization_id,
            "chat_token_enc": token_enc,
            "updated_at": now,
        }
        stmt = self._insert(UserLinkRow).values(
            team_id=team_id, user_id=user_id, created_at=now, **values
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserLinkRow.team_id, UserLinkRow.user_id],
            set_=values,
        )
        async with self._engine.begin() as conn:
            await conn.execute(stmt)

        return await self._require_link(team_id, user_id)

    async def save_token(self, team_id: str, user_id: str, chat_token: str) -> UserLink:
        """Store only a chat token, keeping any identity already on file.

        Used by the legacy token-injection paths (POST /link/callback and
        /link <token>), which know nothing about the HelpMe identity.
        """
        now = self._clock()
        token_enc = self._cipher.encrypt(chat_token)
        stmt = self._insert(UserLinkRow).values(
            team_id=team_id,
            user_id=user_id,
            backend_user_id=None,
            backend_email="",
            backend_display_name="",
            organization_id=None,
            chat_token_enc=token_enc,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserLinkRow.team_id, UserLinkRow.user_id],
            set_={"chat_token_enc": token_enc, "updated_at": now},
        )
        async with self._engine.begin() as conn:
            await conn.execute(stmt)

        return await self._require_link(team_id, user_id)

    async def get_link(self, team_id: str, user_id: str) -> UserLink | None:
        async with self._engine.connect() as conn:
            row = (
                await conn.execute(
                    select(UserLinkRow.__table__).where(
                        UserLinkRow.team_id == team_id,
                        UserLinkRow.user_id == user_id,
                    )
                )
            ).mappings().first()

        if row is None:
            return None

        chat_token = None
        if row["chat_token_enc"]:
            try:
                chat_token = self._cipher.decrypt(row["chat_token_enc"])
            except TokenDecryptionError:
                # Key rotated or row corrupted; the user has to re-link
                logger.warning(
                    "Could not decrypt chat token for team=%s user=%s", team_id, user_id
                )

        return UserLink(
            team_id=row["team_id"],
            user_id=row["user_id"],
            backend_user_id=row["backend_user_id"],
            backend_email=row["backend_email"] or "",
            backend_display_name=row["backend_display_name"] or "",
            organization_id=row["organization_id"],
            chat_token=chat_token,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def _require_link(self, team_id: str, user_id: str) -> UserLink:
        link = await self.get_link(team_id, user_id)
        if link is None:
            raise RuntimeError(
                "Link for team={} user={} missing right after it was written".format(team_id, user_id)
            )
        return link

    async def delete_link(self, team_id: str, user_id: str) -> bool:
        """Remove a user's link and course cache. Returns True if a link existed."""
        async with self._engine.begin() as conn:
            result = await conn.execute(
                delete(UserLinkRow).where(
                    UserLinkRow.team_id == team_id, UserLinkRow.user_id == user_id
                )
            )
            await conn.execute(
                delete(UserCoursesRow).where(
                    UserCoursesRow.team_id == team_id, UserCoursesRow.user_id == user_id
                )
            )
        return bool(result.rowcount)

    # ------------------------------------------------------------------
    # Course cache and preferences
    # ------------------------------------------------------------------

    async def save_courses(self, team_id: str, user_id: str, courses: list[Course]) -> CourseCache:
        now = self._clock()
        payload = [{"id": c.id, "name": c.name} for c in courses]
        stmt = self._insert(UserCoursesRow).values(
            team_id=team_id, user_id=user_id, courses=payload, fetched_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserCoursesRow.team_id, UserCoursesRow.user_id],
            set_={"courses": payload, "fetched_at": now},
        )
        async with self._engine.begin() as conn:
            await conn.execute(stmt)
        return CourseCache(team_id, user_id, tuple(courses), now)

    async def get_courses(self, team_id: str, user_id: str) -> CourseCache | None:
        async with self._engine.connect() as conn:
            row = (
                await conn.execute(
                    select(UserCoursesRow.courses, UserCoursesRow.fetched_at).where(
                        UserCoursesRow.team_id == team_id,
                        UserCoursesRow.user_id == user_id,
                    )
                )
            ).first()
        if row is None:
            return None
        courses = tuple(Course(id=int(c["id"]), name=str(c["name"])) for c in row.courses or [])
        return CourseCache(team_id, user_id, courses, row.fetched_at)

    async def set_default_course(self, team_id: str, user_id: str, course_id: int | None) -> None:
        now = self._clock()
        stmt = self._insert(UserPrefsRow).values(
            team_id=team_id,
            user_id=user_id,
            default_course_id=course_id,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserPrefsRow.team_id, UserPrefsRow.user_id],
            set_={"default_course_id": course_id, "updated_at": now},
        )
        async with self._engine.begin() as conn:
            await conn.execute(stmt)

    async def get_default_course(self, team_id: str, user_id: str) -> int | None:
        async with self._engine.connect() as conn:
            return (
                await conn.execute(
                    select(UserPrefsRow.default_course_id).where(
                        UserPrefsRow.team_id == team_id,
                        UserPrefsRow.user_id == user_id,
                    )
                )
            ).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Interaction log
    # ------------------------------------------------------------------

    async def record_question(
        self,
        team_id: str,
        user_id: str,
        course_id: int,
        question_text: str,
        response_text: str,
        external_ref_id: str = "",
        is_previous_question: bool = False,
        suggested: bool = False,
        interaction_id: int | None = None,
    ) -> tuple[int, int]:
        """Append a question (and a new interaction if none is given).

        Returns (interaction_id, question_id).
        """
        now = self._clock()
        async with self._engine.begin() as conn:
            if interaction_id is None:
                result = await conn.execute(
                    InteractionRow.__table__.insert().values(
                        course_id=course_id, team_id=team_id, user_id=user_id, created_at=now
                    )
                )
                interaction_id = result.inserted_primary_key[0]

            result = await conn.execute(
                QuestionRow.__table__.insert().values(
                    interaction_id=interaction_id,
                    question_text=question_text,
                    response_text=response_text,
                    external_ref_id=external_ref_id or "",
                    suggested=suggested,
                    is_previous_question=is_previous_question,
                    user_score=None,
                    created_at=now,
                    updated_at=now,
                )
            )
            question_id = result.inserted_primary_key[0]
        return interaction_id, question_id

    async def list_interactions(
        self, team_id: str, user_id: str, limit: int | None = None
    ) -> list[InteractionRecord]:
        """Return a user's interactions newest-first, each with its questions."""
        query = (
            select(InteractionRow.__table__)
            .where(InteractionRow.team_id == team_id, InteractionRow.user_id == user_id)
            .order_by(InteractionRow.created_at.desc(), InteractionRow.id.desc())
        )
        if limit is not None:
            query = query.limit(limit)

        async with self._engine.connect() as conn:
            interactions = (await conn.execute(query)).mappings().all()
            ids = [i["id"] for i in interactions]
            questions: dict[int, list[QuestionRecord]] = {i: [] for i in ids}
            if ids:
                rows = (
                    await conn.execute(
                        select(QuestionRow.__table__)
                        .where(QuestionRow.interaction_id.in_(ids))
                        .order_by(QuestionRow.id)
                    )
                ).mappings().all()
                for q in rows:
                    questions[q["interaction_id"]].append(
                        QuestionRecord(
                            id=q["id"],
                            question_text=q["question_text"],
                            response_text=q["response_text"],
                            external_ref_id=q["external_ref_id"],
                            suggested=bool(q["suggested"]),
                            is_previous_question=bool(q["is_previous_question"]),
                            user_score=q["user_score"],
                            created_at=q["created_at"],
                        )
                    )

        return [
            InteractionRecord(
                id=i["id"],
                course_id=i["course_id"],
                team_id=i["team_id"],
                user_id=i["user_id"],
                created_at=i["created_at"],
                questions=tuple(questions[i["id"]]),
            )
            for i in interactions
        ]

    async def set_question_score(
        self, team_id: str, user_id: str, question_id: int, score: int
    ) -> bool:
        """Set user_score on a question owned by (team_id, user_id).

        Returns False when the question does not exist or belongs to
        someone else.
        """
        owned = (
            select(InteractionRow.id)
            .where(InteractionRow.team_id == team_id, InteractionRow.user_id == user_id)
            .scalar_subquery()
        )
        stmt = (
            update(QuestionRow)
            .where(QuestionRow.id == question_id, QuestionRow.interaction_id.in_(owned))
            .values(user_score=score, updated_at=self._clock())
        )
        async with self._engine.begin() as conn:
            result = await conn.execute(stmt)
        return bool(result.rowcount)

    # ------------------------------------------------------------------
    # Legacy schema migration
    # ------------------------------------------------------------------

    def _migrate_legacy_links(self, sync_conn) -> int:  # noqa: ANN001
        """Copy rows from the old single-token `links` table, then drop it.

        Two legacy layouts exist: helpme_user_token_enc (already AES-GCM,
        same payload format) and helpme_user_chat_token (plaintext).
        Rows are only copied where no user_links row exists yet.
        """
        inspector = inspect(sync_conn)
        if not inspector.has_table(_LEGACY_LINKS_TABLE):
            return 0

        columns = {c["name"] for c in inspector.get_columns(_LEGACY_LINKS_TABLE)}
        if "helpme_user_token_enc" in columns:
            token_col, encrypted = "helpme_user_token_enc", True
        elif "helpme_user_chat_token" in columns:
            token_col, encrypted = "helpme_user_chat_token", False
        else:
            logger.warning("Legacy links table has no token column; dropping it")
            sync_conn.execute(text("DROP TABLE {}".format(_LEGACY_LINKS_TABLE)))
            return 0

        rows = sync_conn.execute(
            text("SELECT team_id, user_id, {} AS token FROM {}".format(token_col, _LEGACY_LINKS_TABLE))
        ).all()

        now = self._clock()
        migrated = 0
        for row in rows:
            if not row.token:
                continue
            token_enc = row.token if encrypted else self._cipher.encrypt(row.token)
            stmt = self._insert(UserLinkRow).values(
                team_id=row.team_id,
                user_id=row.user_id,
                backend_user_id=None,
                backend_email="",
                backend_display_name="",
                organization_id=None,
                chat_token_enc=token_enc,
                created_at=now,
                updated_at=now,
            ).on_conflict_do_nothing(index_elements=[UserLinkRow.team_id, UserLinkRow.user_id])
            result = sync_conn.execute(stmt)
            migrated += result.rowcount or 0

        sync_conn.execute(text("DROP TABLE {}".format(_LEGACY_LINKS_TABLE)))
        return migrated


def _sqlite_pragmas(dbapi_conn, _record) -> None:  # noqa: ANN001
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()
