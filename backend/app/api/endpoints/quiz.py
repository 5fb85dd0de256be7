# backend/app/api/endpoints/quiz.py
"""
API Endpoints for the certified quiz flow

Flow:
- /quiz/start: resolve (user, subject) to a session. Returns the first question
  when the ten-question set is persisted, otherwise a `generating` session
  while a background poller fills it in. Clients call /quiz/start again (or
  poll /quiz/status/{session_id}) to observe progress.
- /quiz/answer: store an answer and return the next question.
- /quiz/submit, /quiz/auto-submit: score the attempt and run the upstream
  submission pipeline.
"""

from __future__ import annotations

import uuid
from collections import Counter
from typing import Any, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.dependencies import (
    get_certified_client,
    get_db_session,
    get_poll_registry,
    get_redis_client,
    get_session_factory,
)
from app.core.config import settings
from app.models.api import (
    AutoSubmitRequest,
    CertifiedSkillOut,
    QuestionOut,
    QuestionTypes,
    QuizStatusResponse,
    QuizSummary,
    SaveAnswerRequest,
    SaveAnswerResponse,
    SessionOut,
    StartQuizRequest,
    StartQuizResponse,
    SubmitQuizRequest,
    SubmitQuizResponse,
    UserOut,
)
from app.models.db import QuestionRecord, QuizSession, User
from app.services.answer_sequencer import AnswerSequencer, QuestionNotFoundError
from app.services.certified_api import CertifiedApiClient
from app.services.poll_registry import GenerationPollRegistry
from app.services.reconciliation import (
    GenerationState,
    ResolveFatalUpstream,
    ResolveNotFound,
    ResolveReady,
    SessionReconciler,
    UserIdentity,
    describe_generation,
)
from app.services.redis_cache import CacheRepository
from app.services.submission import QuizSubmissionService, SessionNotFoundError, SubmissionError

router = APIRouter()
logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Response builders
# ---------------------------------------------------------------------------

def _question_types(questions: List[QuestionRecord]) -> QuestionTypes:
    counts = Counter((q.difficulty or "").lower() for q in questions)
    return QuestionTypes(easy=counts["easy"], medium=counts["medium"], hard=counts["hard"])


def _first_question(questions: List[QuestionRecord], quiz_session: QuizSession) -> Optional[QuestionOut]:
    if not questions:
        return None
    q = questions[0]
    out = QuestionOut(question_id=q.id, question_no=q.question_no, question=q.question)
    if settings.variant(quiz_session.variant).expose_code_image:
        link = q.code_snippet_image_link or ""
        out.code_snippet_image_link = link
        out.has_code_image = bool(link)
    return out


def _start_response(
    user: User,
    quiz_session: QuizSession,
    state: GenerationState,
    questions: List[QuestionRecord],
) -> StartQuizResponse:
    total = settings.generation.total_questions
    generated = len(questions) == total
    return StartQuizResponse(
        user=UserOut.model_validate(user),
        certified_skill=CertifiedSkillOut(
            id=quiz_session.certified_user_id,
            subject=quiz_session.subject,
            variant=quiz_session.variant,
            paid=bool(quiz_session.paid),
        ),
        session=SessionOut(
            id=quiz_session.id,
            subject=quiz_session.subject,
            created_at=quiz_session.created_at,
            started_quiz=bool(quiz_session.started_quiz),
            attempted=bool(quiz_session.attempted),
            quiz_completed=bool(quiz_session.quiz_completed),
            quiz_analysis_generated=bool(quiz_session.quiz_analysis_generated),
            generation_state=state.value,
        ),
        quiz=QuizSummary(
            total_questions=total,
            questions_generated=generated,
            question_types=_question_types(questions),
        ),
        first_question=_first_question(questions, quiz_session) if generated else None,
        question_added=generated,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/quiz/start",
    response_model=StartQuizResponse,
    summary="Start or resume a quiz session",
)
async def start_quiz(
    request: StartQuizRequest,
    db_session: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    redis_client: Any = Depends(get_redis_client),
    certified: CertifiedApiClient = Depends(get_certified_client),
    registry: GenerationPollRegistry = Depends(get_poll_registry),
):
    """
    Resolves the caller to a session and reports whether its questions are ready.

    Never waits for generation: at most one generate call happens on the request
    path, after which a background poller takes over.
    """
    structlog.contextvars.bind_contextvars(subject=request.subject)
    logger.info("quiz.start", has_email=bool(request.email), session_id=str(request.session_id or ""))

    reconciler = SessionReconciler(
        db=db_session,
        certified=certified,
        registry=registry,
        session_factory=session_factory,
        cache=CacheRepository(redis_client) if redis_client is not None else None,
    )
    result = await reconciler.resolve_session(
        UserIdentity(phone=request.phone, name=request.name, email=request.email),
        request.subject,
        session_id=request.session_id,
    )

    if isinstance(result, ResolveNotFound):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.reason)
    if isinstance(result, ResolveFatalUpstream):
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Certified API '{result.operation}' failed: {result.message}",
        )
    if isinstance(result, ResolveReady):
        return _start_response(result.user, result.session, GenerationState.READY, result.questions)
    return _start_response(result.user, result.session, GenerationState.GENERATING, [])


@router.post(
    "/quiz/answer",
    response_model=SaveAnswerResponse,
    response_model_exclude_none=True,
    summary="Save an answer and fetch the next question",
)
async def save_answer(
    request: SaveAnswerRequest,
    db_session: AsyncSession = Depends(get_db_session),
):
    sequencer = AnswerSequencer(db_session)
    try:
        progress = await sequencer.save_answer(request.question_id, request.answer)
    except QuestionNotFoundError as e:
        logger.info("quiz.answer.not_found", question_id=str(request.question_id))
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return SaveAnswerResponse(
        status=progress.status,
        question=progress.question,
        question_id=progress.question_id,
        question_no=progress.question_no,
        current_question_no=progress.current_question_no,
        total_questions=progress.total_questions,
        scenario=progress.scenario,
        code_snippet_image_link=progress.code_snippet_image_link,
        has_code_image=progress.has_code_image,
    )


@router.get(
    "/quiz/status/{session_id}",
    response_model=QuizStatusResponse,
    summary="Generation status of a session",
)
async def get_quiz_status(
    session_id: uuid.UUID,
    db_session: AsyncSession = Depends(get_db_session),
    redis_client: Any = Depends(get_redis_client),
    registry: GenerationPollRegistry = Depends(get_poll_registry),
):
    described = await describe_generation(db_session, registry, session_id)
    if described is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Quiz session not found.")

    last_poll = None
    if redis_client is not None:
        last_poll = await CacheRepository(redis_client).get_poll_status(session_id)

    total = settings.generation.total_questions
    return QuizStatusResponse(
        session_id=session_id,
        state=described.state.value,
        question_count=described.question_count,
        total_questions=total,
        questions_generated=described.question_count == total,
        poller_active=described.poller_active,
        last_poll=last_poll,
    )


async def _run_submission(coro_factory) -> SubmitQuizResponse:
    try:
        return await coro_factory()
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except SubmissionError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.post(
    "/quiz/submit",
    response_model=SubmitQuizResponse,
    summary="Submit the quiz and claim the certificate",
)
async def submit_quiz(
    request: SubmitQuizRequest,
    db_session: AsyncSession = Depends(get_db_session),
    certified: CertifiedApiClient = Depends(get_certified_client),
):
    service = QuizSubmissionService(db_session, certified)
    return await _run_submission(
        lambda: service.submit(
            email=request.email,
            phone=request.phone,
            subject=request.subject,
            skip_create_v2_test=request.skip_create_v2_test,
        )
    )


@router.post(
    "/quiz/auto-submit",
    response_model=SubmitQuizResponse,
    summary="Submit the latest session for a phone and subject",
)
async def auto_submit_quiz(
    request: AutoSubmitRequest,
    db_session: AsyncSession = Depends(get_db_session),
    certified: CertifiedApiClient = Depends(get_certified_client),
):
    service = QuizSubmissionService(db_session, certified)
    return await _run_submission(
        lambda: service.auto_submit(
            phone=request.phone,
            subject=request.subject,
            skip_create_v2_test=request.skip_create_v2_test,
        )
    )
