"""
Database Models (SQLAlchemy ORM)

Tables:
- users
- quiz_sessions
- questions

Notes:
- A session owns zero or exactly ten question rows once generation settles;
  (session_id, question_no) is unique so a lost insert race fails loudly.
- JSONB for the attempt snapshot written at submission.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    UUID as SAUUID,
)
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""
    pass


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class DifficultyEnum(str, enum.Enum):
    EASY = "Easy"
    MEDIUM = "Medium"
    HARD = "Hard"


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------

class User(Base):
    """A quiz taker. The subject column tracks the most recently started subject."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        SAUUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    email: Mapped[Optional[str]] = mapped_column(Text, nullable=True, index=True)
    phone: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    subject: Mapped[str] = mapped_column(Text, CheckConstraint("subject <> ''"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    sessions: Mapped[List["QuizSession"]] = relationship(back_populates="user", passive_deletes=True)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<User id={self.id} phone={self.phone!r} subject={self.subject!r}>"


# ---------------------------------------------------------------------------
# QuizSession
# ---------------------------------------------------------------------------

class QuizSession(Base):
    """
    One user's attempt at one subject. Holds the upstream skill id and token,
    lifecycle flags, and the attempt snapshot once submitted.
    """
    __tablename__ = "quiz_sessions"
    __table_args__ = (
        Index("ix_quiz_sessions_user_subject_created", "user_id", "subject", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        SAUUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        SAUUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    subject: Mapped[str] = mapped_column(Text, CheckConstraint("subject <> ''"), nullable=False)
    variant: Mapped[str] = mapped_column(Text, nullable=False, default="base")

    # Upstream identity
    certified_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    certified_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    certified_token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Lifecycle flags
    quiz_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    quiz_analysis_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    started_quiz: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attempted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    order_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    quiz_attempt_object: Mapped[Optional[list]] = mapped_column(JSONB, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    user: Mapped["User"] = relationship(back_populates="sessions")

    def __repr__(self) -> str:  # pragma: no cover
        return f"<QuizSession id={self.id} subject={self.subject!r} skill={self.certified_user_id}>"


# ---------------------------------------------------------------------------
# QuestionRecord
# ---------------------------------------------------------------------------

class QuestionRecord(Base):
    """One sequenced question of a session. Only answer/answered change after insert."""
    __tablename__ = "questions"
    __table_args__ = (
        UniqueConstraint("session_id", "question_no", name="uq_questions_session_question_no"),
        CheckConstraint("question_no >= 1", name="ck_questions_question_no_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        SAUUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    session_id: Mapped[uuid.UUID] = mapped_column(
        SAUUID(as_uuid=True), ForeignKey("quiz_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        SAUUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    question_no: Mapped[int] = mapped_column(Integer, nullable=False)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    correct_answer: Mapped[str] = mapped_column(Text, nullable=False, default="")
    answer: Mapped[str] = mapped_column(Text, nullable=False, default="")
    answered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    difficulty: Mapped[str] = mapped_column(Text, nullable=False, default=DifficultyEnum.EASY.value)
    scenario: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    code_snippet_image_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    quiz_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<QuestionRecord id={self.id} session_id={self.session_id} no={self.question_no}>"
