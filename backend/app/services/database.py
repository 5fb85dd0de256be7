"""
Database Service (Repository Pattern)

Implements:
- UserRepository
- QuizSessionRepository
- QuestionRepository   (guarded canonical-set insert)

Repositories only flush; the calling service owns commit/rollback.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.util import identity_key

from app.models.db import QuestionRecord, QuizSession, User
from app.services.question_extractor import QuestionDraft

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _omit_none(d: Dict[str, Any]) -> Dict[str, Any]:
    """Return a shallow copy without keys whose value is None."""
    return {k: v for k, v in (d or {}).items() if v is not None}


# =============================================================================
# UserRepository
# =============================================================================

class UserRepository:
    """DB operations for User."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, user_id: uuid.UUID) -> Optional[User]:
        return await self.session.get(User, user_id)

    async def get_latest_by_phone_subject(self, phone: str, subject: str) -> Optional[User]:
        result = await self.session.execute(
            select(User)
            .where(User.phone == phone, User.subject == subject)
            .order_by(User.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def get_latest_by_email(self, email: str) -> Optional[User]:
        result = await self.session.execute(
            select(User).where(User.email == email).order_by(User.created_at.desc()).limit(1)
        )
        return result.scalars().first()

    async def get_or_create(self, *, name: str, email: str, phone: str, subject: str) -> User:
        """
        Same email + subject -> reuse.
        Same email, other subject -> move that user to the new subject.
        Otherwise insert.
        """
        result = await self.session.execute(
            select(User)
            .where(User.email == email, User.subject == subject)
            .order_by(User.created_at.desc())
            .limit(1)
        )
        user = result.scalars().first()
        if user:
            return user

        user = await self.get_latest_by_email(email)
        if user:
            user.subject = subject
            user.phone = phone or user.phone
            user.name = name or user.name
            await self.session.flush()
            logger.info("users.subject_switched", user_id=str(user.id), subject=subject)
            return user

        user = User(name=name, email=email, phone=phone, subject=subject)
        self.session.add(user)
        await self.session.flush()
        logger.info("users.created", user_id=str(user.id), subject=subject)
        return user


# =============================================================================
# QuizSessionRepository
# =============================================================================

class QuizSessionRepository:
    """DB operations for QuizSession."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # --- Reads ---

    async def get_by_id(self, session_id: uuid.UUID) -> Optional[QuizSession]:
        return await self.session.get(QuizSession, session_id)

    async def get_owned(self, session_id: uuid.UUID, *, user_id: uuid.UUID, subject: str) -> Optional[QuizSession]:
        """Return the session only if it belongs to (user, subject)."""
        result = await self.session.execute(
            select(QuizSession).where(
                QuizSession.id == session_id,
                QuizSession.user_id == user_id,
                QuizSession.subject == subject,
            )
        )
        return result.scalars().first()

    async def get_latest(self, user_id: uuid.UUID, subject: Optional[str] = None) -> Optional[QuizSession]:
        stmt = select(QuizSession).where(QuizSession.user_id == user_id)
        if subject is not None:
            stmt = stmt.where(QuizSession.subject == subject)
        result = await self.session.execute(stmt.order_by(QuizSession.created_at.desc()).limit(1))
        return result.scalars().first()

    # --- Writes ---

    async def create(
        self,
        *,
        user_id: uuid.UUID,
        subject: str,
        variant: str,
        certified_user_id: int,
        certified_token: Optional[str] = None,
        certified_token_expires_at: Optional[datetime] = None,
        paid: bool = False,
    ) -> QuizSession:
        obj = QuizSession(
            user_id=user_id,
            subject=subject,
            variant=variant,
            certified_user_id=certified_user_id,
            certified_token=certified_token,
            certified_token_expires_at=certified_token_expires_at,
            paid=paid,
        )
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def update_fields(self, session_id: uuid.UUID, **values: Any) -> bool:
        """Set the given columns (None values are skipped). Returns False if no row matched."""
        values = _omit_none(values)
        if not values:
            return True
        res = await self.session.execute(
            update(QuizSession)
            .where(QuizSession.id == session_id)
            .values(**values, updated_at=func.now())
            .execution_options(synchronize_session="fetch")
        )
        matched = (res.rowcount or 0) > 0
        # Keep an instance loaded in this session in step with the row.
        key = identity_key(QuizSession, session_id)
        if matched and key in self.session.identity_map:
            await self.session.refresh(self.session.identity_map[key])
        return matched

    async def set_token(self, session_id: uuid.UUID, token: str, expires_at: Optional[datetime] = None) -> bool:
        return await self.update_fields(
            session_id, certified_token=token, certified_token_expires_at=expires_at
        )


# =============================================================================
# QuestionRepository
# =============================================================================

class QuestionRepository:
    """DB operations for QuestionRecord."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, question_id: uuid.UUID) -> Optional[QuestionRecord]:
        return await self.session.get(QuestionRecord, question_id)

    async def get_for_session(self, session_id: uuid.UUID) -> List[QuestionRecord]:
        result = await self.session.execute(
            select(QuestionRecord)
            .where(QuestionRecord.session_id == session_id)
            .order_by(QuestionRecord.question_no)
        )
        return list(result.scalars().all())

    async def count_for_session(self, session_id: uuid.UUID) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(QuestionRecord).where(QuestionRecord.session_id == session_id)
        )
        return int(result.scalar_one())

    async def get_by_number(self, session_id: uuid.UUID, question_no: int) -> Optional[QuestionRecord]:
        result = await self.session.execute(
            select(QuestionRecord).where(
                QuestionRecord.session_id == session_id,
                QuestionRecord.question_no == question_no,
            )
        )
        return result.scalars().first()

    async def insert_canonical_set(
        self,
        *,
        session_id: uuid.UUID,
        user_id: uuid.UUID,
        drafts: Sequence[QuestionDraft],
        total: int,
    ) -> bool:
        """
        Persist the full question set of a session at most once.

        Returns True when this call wrote the set, False when a complete set was
        already there (checked first, or detected through the
        (session_id, question_no) unique constraint when another writer won the
        race). A stale partial set is replaced inside the same savepoint.
        """
        if len(drafts) != total:
            raise ValueError(f"expected {total} drafts, got {len(drafts)}")

        existing = await self.count_for_session(session_id)
        if existing >= total:
            logger.info("questions.insert.skipped", session_id=str(session_id), existing=existing)
            return False

        rows = [
            QuestionRecord(
                session_id=session_id,
                user_id=user_id,
                question_no=d.question_no,
                question=d.question,
                correct_answer=d.correct_answer,
                answer="",
                answered=False,
                difficulty=d.difficulty,
                scenario=d.scenario,
                code_snippet_image_link=d.code_snippet_image_link,
                quiz_id=d.quiz_id,
            )
            for d in drafts
        ]

        try:
            async with self.session.begin_nested():
                if existing:
                    logger.warning("questions.partial_set.replaced", session_id=str(session_id), existing=existing)
                    await self.session.execute(
                        delete(QuestionRecord).where(QuestionRecord.session_id == session_id)
                    )
                self.session.add_all(rows)
        except IntegrityError:
            logger.info("questions.insert.duplicate", session_id=str(session_id))
            return False

        logger.info("questions.insert.ok", session_id=str(session_id), count=len(rows))
        return True

    async def save_answer(self, *, question_id: uuid.UUID, session_id: uuid.UUID, answer: str) -> bool:
        """Overwrite the answer of a question scoped to its session. False if no row matched."""
        res = await self.session.execute(
            update(QuestionRecord)
            .where(QuestionRecord.id == question_id, QuestionRecord.session_id == session_id)
            .values(answer=answer, answered=True, updated_at=func.now())
            .execution_options(synchronize_session="fetch")
        )
        return (res.rowcount or 0) > 0
