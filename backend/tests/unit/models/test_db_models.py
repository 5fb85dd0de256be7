# backend/tests/unit/models/test_db_models.py

import uuid
from datetime import datetime

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.db import QuestionRecord, QuizSession, User

pytestmark = pytest.mark.asyncio


async def _user(db: AsyncSession, **overrides) -> User:
    data = {"name": "Ada", "email": "ada@example.com", "phone": "9111", "subject": "Python"}
    data.update(overrides)
    user = User(**data)
    db.add(user)
    await db.commit()
    return user


async def test_user_defaults(sqlite_db_session: AsyncSession):
    user = await _user(sqlite_db_session)
    await sqlite_db_session.refresh(user)

    assert isinstance(user.id, uuid.UUID)
    assert isinstance(user.created_at, datetime)
    assert isinstance(user.updated_at, datetime)


async def test_user_subject_cannot_be_empty(sqlite_db_session: AsyncSession):
    sqlite_db_session.add(User(name="Ada", phone="9111", subject=""))
    with pytest.raises(IntegrityError):
        await sqlite_db_session.commit()
    await sqlite_db_session.rollback()


async def test_session_flags_default_false(sqlite_db_session: AsyncSession):
    user = await _user(sqlite_db_session)
    quiz_session = QuizSession(user_id=user.id, subject="Python", certified_user_id=1)
    sqlite_db_session.add(quiz_session)
    await sqlite_db_session.commit()
    await sqlite_db_session.refresh(quiz_session)

    assert quiz_session.variant == "base"
    assert not any(
        [
            quiz_session.quiz_completed,
            quiz_session.quiz_analysis_generated,
            quiz_session.started_quiz,
            quiz_session.attempted,
            quiz_session.paid,
        ]
    )
    assert quiz_session.quiz_attempt_object is None


async def test_attempt_object_stores_json(sqlite_db_session: AsyncSession):
    user = await _user(sqlite_db_session)
    attempts = [{"quiz_id": 1, "user_answer": "A", "is_correct": 1}]
    quiz_session = QuizSession(user_id=user.id, subject="Python", certified_user_id=1, quiz_attempt_object=attempts)
    sqlite_db_session.add(quiz_session)
    await sqlite_db_session.commit()
    await sqlite_db_session.refresh(quiz_session)

    assert quiz_session.quiz_attempt_object == attempts


async def test_question_number_unique_per_session(sqlite_db_session: AsyncSession):
    user = await _user(sqlite_db_session)
    quiz_session = QuizSession(user_id=user.id, subject="Python", certified_user_id=1)
    sqlite_db_session.add(quiz_session)
    await sqlite_db_session.commit()

    for _ in range(2):
        sqlite_db_session.add(
            QuestionRecord(session_id=quiz_session.id, user_id=user.id, question_no=1, question="Q1")
        )
    with pytest.raises(IntegrityError):
        await sqlite_db_session.commit()
    await sqlite_db_session.rollback()


async def test_question_number_must_be_positive(sqlite_db_session: AsyncSession):
    user = await _user(sqlite_db_session)
    quiz_session = QuizSession(user_id=user.id, subject="Python", certified_user_id=1)
    sqlite_db_session.add(quiz_session)
    await sqlite_db_session.commit()

    sqlite_db_session.add(QuestionRecord(session_id=quiz_session.id, user_id=user.id, question_no=0, question="Q"))
    with pytest.raises(IntegrityError):
        await sqlite_db_session.commit()
    await sqlite_db_session.rollback()
