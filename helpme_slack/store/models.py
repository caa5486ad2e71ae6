"""SQLAlchemy ORM tables for the credential store.

Uses SQLAlchemy 2.0 declarative style with Mapped[] annotations. Timestamps
are epoch seconds (float). Every per-user table is keyed by the composite
(team_id, user_id) so a lookup can never cross workspaces.

These rows never leave the store module; callers receive the frozen
records defined in store.store instead.
"""

from __future__ import annotations

from typing import Any, List, Optional

from sqlalchemy import JSON, Boolean, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class LinkStateRow(Base):
    """Pending account-link attempt. Deleted when consumed."""

    __tablename__ = "link_states"

    state_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    team_id: Mapped[str] = mapped_column(String(64))
    user_id: Mapped[str] = mapped_column(String(64))
    channel_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    redirect_uri: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[float] = mapped_column(Float)
    expires_at: Mapped[float] = mapped_column(Float, index=True)


class UserLinkRow(Base):
    """Slack identity bound to a HelpMe identity.

    chat_token_enc holds the AES-GCM payload, never the plaintext token.
    """

    __tablename__ = "user_links"

    team_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    backend_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    backend_email: Mapped[str] = mapped_column(String(320), default="")
    backend_display_name: Mapped[str] = mapped_column(String(256), default="")
    organization_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    chat_token_enc: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[float] = mapped_column(Float)
    updated_at: Mapped[float] = mapped_column(Float)


class UserCoursesRow(Base):
    __tablename__ = "user_courses"

    team_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # [{"id": int, "name": str}, ...] in backend order
    courses: Mapped[List[Any]] = mapped_column(JSON)
    fetched_at: Mapped[float] = mapped_column(Float)


class UserPrefsRow(Base):
    __tablename__ = "user_prefs"

    team_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    default_course_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[float] = mapped_column(Float)
    updated_at: Mapped[float] = mapped_column(Float)


class InteractionRow(Base):
    __tablename__ = "chatbot_interactions"
    __table_args__ = (Index("ix_interactions_user", "team_id", "user_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[int] = mapped_column(Integer)
    team_id: Mapped[str] = mapped_column(String(64))
    user_id: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[float] = mapped_column(Float)


class QuestionRow(Base):
    __tablename__ = "chatbot_questions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    interaction_id: Mapped[int] = mapped_column(
        ForeignKey("chatbot_interactions.id", ondelete="CASCADE"), index=True
    )
    question_text: Mapped[str] = mapped_column(Text)
    response_text: Mapped[str] = mapped_column(Text)
    external_ref_id: Mapped[str] = mapped_column(String(128), default="")
    suggested: Mapped[bool] = mapped_column(Boolean, default=False)
    is_previous_question: Mapped[bool] = mapped_column(Boolean, default=False)
    user_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[float] = mapped_column(Float)
    updated_at: Mapped[float] = mapped_column(Float)
