# backend/app/services/submission.py
"""
Quiz submission pipeline.

continue (fatal) -> score the stored answers -> save_user_response ->
claim_certificate -> create_v2_test (optional) -> analysis -> mark the session.

Only `continue` aborts the submission. Every later call is recorded as a step
result and the pipeline moves on.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import ScoringConfig, Settings, settings
from app.models.api import SubmitQuizResponse, UpstreamStepOut
from app.models.db import QuestionRecord, QuizSession, User
from app.models.upstream import UpstreamCallResult
from app.services.certified_api import CertifiedApiClient, FatalUpstreamError
from app.services.database import QuestionRepository, QuizSessionRepository, UserRepository

logger = structlog.get_logger(__name__)

_OPTION_RE = re.compile(r"^([A-D])\) (.*)$", re.MULTILINE)


class SubmissionError(RuntimeError):
    """The submission could not run (upstream refused to continue the attempt)."""


class SessionNotFoundError(LookupError):
    pass


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------

def parse_options(text: str) -> Dict[str, str]:
    """Map lower-case option keys to option text from a rendered question."""
    return {m.group(1).lower(): m.group(2).strip() for m in _OPTION_RE.finditer(text or "")}


def build_attempts(questions: Sequence[QuestionRecord]) -> List[Dict[str, Any]]:
    attempts: List[Dict[str, Any]] = []
    for q in questions:
        options = parse_options(q.question)
        answer = (q.answer or "").strip().lower()
        correct = (q.correct_answer or "").strip().lower()
        try:
            quiz_id: Any = int(q.quiz_id)
        except (TypeError, ValueError):
            quiz_id = q.quiz_id
        attempts.append({
            "quiz_id": quiz_id,
            "user_answer": options.get(answer, "No answer"),
            "is_correct": 1 if answer and answer == correct else 0,
        })
    return attempts


def compute_score(attempts: Sequence[Dict[str, Any]]) -> Tuple[int, int]:
    """(score 0..100, correct count)."""
    if not attempts:
        return 0, 0
    correct = sum(1 for a in attempts if a["is_correct"])
    return round(100 * correct / len(attempts)), correct


def score_band(score: int, scoring: ScoringConfig) -> str:
    for band in scoring.bands:
        if band.min_score <= score <= band.max_score:
            return band.label
    return scoring.default_label


def _elapsed_seconds(started: Optional[datetime]) -> int:
    if started is None:
        return 0
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    return max(0, round((datetime.now(timezone.utc) - started).total_seconds()))


def _step(result: UpstreamCallResult) -> UpstreamStepOut:
    return UpstreamStepOut(success=result.success, message=result.message)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class QuizSubmissionService:
    def __init__(self, db: AsyncSession, certified: CertifiedApiClient, cfg: Optional[Settings] = None) -> None:
        self.db = db
        self.certified = certified
        self.cfg = cfg or settings
        self.users = UserRepository(db)
        self.sessions = QuizSessionRepository(db)
        self.questions = QuestionRepository(db)

    async def _locate(
        self, *, email: Optional[str], phone: Optional[str], subject: Optional[str]
    ) -> Tuple[User, QuizSession]:
        user: Optional[User] = None
        if email:
            user = await self.users.get_latest_by_email(email)
        elif phone and subject:
            user = await self.users.get_latest_by_phone_subject(phone, subject)
        if user is None:
            raise SessionNotFoundError("user not found")

        quiz_session = await self.sessions.get_latest(user.id, subject or user.subject)
        if quiz_session is None:
            raise SessionNotFoundError(f"no quiz session for user {user.id}")
        return user, quiz_session

    async def submit(
        self,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        subject: Optional[str] = None,
        skip_create_v2_test: bool = False,
    ) -> SubmitQuizResponse:
        user, quiz_session = await self._locate(email=email, phone=phone, subject=subject)
        return await self._run(user, quiz_session, skip_create_v2_test=skip_create_v2_test)

    async def auto_submit(self, *, phone: str, subject: str, skip_create_v2_test: bool = False) -> SubmitQuizResponse:
        user, quiz_session = await self._locate(email=None, phone=phone, subject=subject)
        logger.info("submission.auto", session_id=str(quiz_session.id))
        return await self._run(user, quiz_session, skip_create_v2_test=skip_create_v2_test)

    async def _run(self, user: User, quiz_session: QuizSession, *, skip_create_v2_test: bool) -> SubmitQuizResponse:
        session_id: uuid.UUID = quiz_session.id
        skill_id = quiz_session.certified_user_id
        log = logger.bind(session_id=str(session_id), skill_id=skill_id)

        try:
            token = await self.certified.continue_quiz(
                skill_id, email=user.email or "", phone=user.phone, name=user.name
            )
        except FatalUpstreamError as e:
            log.warning("submission.continue.failed", error=str(e))
            raise SubmissionError(f"Continue API failed: {e}") from e

        await self.sessions.set_token(session_id, token)
        await self.db.commit()

        questions = await self.questions.get_for_session(session_id)
        attempts = build_attempts(questions)
        score, correct = compute_score(attempts)
        elapsed = _elapsed_seconds(quiz_session.created_at)

        steps: Dict[str, UpstreamStepOut] = {}
        steps["save_user_response"] = _step(
            await self.certified.save_user_response(skill_id, attempts, elapsed, score)
        )
        steps["claim_certificate"] = _step(await self.certified.claim_certificate(skill_id, token))

        order_id: Optional[str] = None
        if skip_create_v2_test:
            steps["create_v2_test"] = UpstreamStepOut(success=False, message="skipped")
        else:
            order = await self.certified.create_v2_test(skill_id, token)
            steps["create_v2_test"] = _step(order)
            if order.success and isinstance(order.data, dict) and order.data.get("id") is not None:
                order_id = str(order.data["id"])

        analysis = await self.certified.analysis(skill_id, token)
        steps["analysis"] = _step(analysis)

        await self.sessions.update_fields(
            session_id,
            quiz_completed=True,
            quiz_analysis_generated=analysis.success,
            quiz_attempt_object=attempts,
            order_id=order_id,
        )
        await self.db.commit()

        log.info(
            "submission.done",
            score=score,
            correct=correct,
            total=len(attempts),
            completion_time_s=elapsed,
            failed_steps=[k for k, v in steps.items() if not v.success],
        )
        return SubmitQuizResponse(
            session_id=session_id,
            score=score,
            correct_answers=correct,
            total_questions=len(attempts),
            score_band=score_band(score, self.cfg.scoring),
            completion_time_seconds=elapsed,
            order_id=order_id,
            analysis=analysis.data if analysis.success else None,
            steps=steps,
        )
