# backend/app/services/answer_sequencer.py
"""
Answer progression: store an answer and hand back the next question.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, settings
from app.services.database import QuestionRepository, QuizSessionRepository
from app.services.question_extractor import scenario_positions

logger = structlog.get_logger(__name__)


class QuestionNotFoundError(LookupError):
    """Question id unknown, or not part of the session it claims to belong to."""


@dataclass(frozen=True)
class AnswerProgress:
    status: str
    current_question_no: int
    total_questions: int
    question: str = ""
    question_id: Optional[uuid.UUID] = None
    question_no: Optional[int] = None
    scenario: Optional[str] = None
    code_snippet_image_link: Optional[str] = None
    has_code_image: Optional[bool] = None


class AnswerSequencer:
    def __init__(self, db: AsyncSession, cfg: Optional[Settings] = None) -> None:
        self.db = db
        self.cfg = cfg or settings
        self.questions = QuestionRepository(db)
        self.sessions = QuizSessionRepository(db)

    async def save_answer(self, question_id: uuid.UUID, answer: str) -> AnswerProgress:
        record = await self.questions.get_by_id(question_id)
        if record is None:
            raise QuestionNotFoundError(f"question {question_id} not found")

        session_id = record.session_id
        current_no = record.question_no
        saved = await self.questions.save_answer(question_id=question_id, session_id=session_id, answer=answer)
        if not saved:
            raise QuestionNotFoundError(f"question {question_id} does not belong to session {session_id}")

        quiz_session = await self.sessions.get_by_id(session_id)
        variant = self.cfg.variant(quiz_session.variant if quiz_session else self.cfg.default_variant)
        total = self.cfg.generation.total_questions

        nxt = await self.questions.get_by_number(session_id, current_no + 1)
        if nxt is None:
            await self.sessions.update_fields(session_id, attempted=True, quiz_completed=True)
            await self.db.commit()
            logger.info("answers.complete", session_id=str(session_id), question_no=current_no)
            return AnswerProgress(status="complete", current_question_no=current_no, total_questions=total)

        if quiz_session is not None and not quiz_session.attempted:
            await self.sessions.update_fields(session_id, attempted=True)
        await self.db.commit()

        scenario = ""
        if nxt.question_no in scenario_positions(variant):
            scenario = nxt.scenario or ""

        progress = AnswerProgress(
            status="pending",
            question=nxt.question,
            question_id=nxt.id,
            question_no=nxt.question_no,
            current_question_no=current_no,
            total_questions=total,
            scenario=scenario,
        )
        if variant.expose_code_image:
            link = nxt.code_snippet_image_link or ""
            progress = replace(progress, code_snippet_image_link=link, has_code_image=bool(link))
        logger.debug("answers.saved", session_id=str(session_id), question_no=current_no, next_no=nxt.question_no)
        return progress
