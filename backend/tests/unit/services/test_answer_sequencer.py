# backend/tests/unit/services/test_answer_sequencer.py

import uuid

import pytest

from app.services.answer_sequencer import AnswerSequencer, QuestionNotFoundError
from app.services.database import QuestionRepository, QuizSessionRepository
from tests.helpers.builders import make_cyber_payload, make_payload, seed_questions, seed_user_session

pytestmark = pytest.mark.asyncio


async def _question(db, session_id, no):
    return await QuestionRepository(db).get_by_number(session_id, no)


async def test_answer_returns_next_question(sqlite_db_session):
    _, quiz_session = await seed_user_session(sqlite_db_session)
    await seed_questions(sqlite_db_session, quiz_session)
    q1 = await _question(sqlite_db_session, quiz_session.id, 1)
    q2 = await _question(sqlite_db_session, quiz_session.id, 2)

    progress = await AnswerSequencer(sqlite_db_session).save_answer(q1.id, "a")

    assert progress.status == "pending"
    assert progress.question_id == q2.id
    assert progress.question_no == 2
    assert progress.current_question_no == 1
    assert progress.total_questions == 10
    assert progress.question == q2.question
    assert progress.scenario == ""
    assert progress.code_snippet_image_link is None
    assert progress.has_code_image is None

    fresh = await QuizSessionRepository(sqlite_db_session).get_by_id(quiz_session.id)
    await sqlite_db_session.refresh(fresh)
    assert fresh.attempted is True
    assert fresh.quiz_completed is False


async def test_ninth_answer_returns_tenth_question(sqlite_db_session):
    _, quiz_session = await seed_user_session(sqlite_db_session)
    await seed_questions(sqlite_db_session, quiz_session)
    q9 = await _question(sqlite_db_session, quiz_session.id, 9)

    progress = await AnswerSequencer(sqlite_db_session).save_answer(q9.id, "c")

    assert progress.status == "pending"
    assert progress.question_no == 10


async def test_last_answer_completes_the_quiz(sqlite_db_session):
    _, quiz_session = await seed_user_session(sqlite_db_session)
    await seed_questions(sqlite_db_session, quiz_session)
    q10 = await _question(sqlite_db_session, quiz_session.id, 10)

    progress = await AnswerSequencer(sqlite_db_session).save_answer(q10.id, "b")

    assert progress.status == "complete"
    assert progress.current_question_no == 10
    assert progress.question == ""
    assert progress.question_id is None

    fresh = await QuizSessionRepository(sqlite_db_session).get_by_id(quiz_session.id)
    await sqlite_db_session.refresh(fresh)
    assert fresh.quiz_completed is True


async def test_scenario_is_returned_at_first_medium_position(sqlite_db_session):
    _, quiz_session = await seed_user_session(sqlite_db_session)
    payload = make_payload(overrides={7: {"scenario_title": "Incident", "text_context": "A server fell over."}})
    await seed_questions(sqlite_db_session, quiz_session, payload)
    q5 = await _question(sqlite_db_session, quiz_session.id, 5)

    progress = await AnswerSequencer(sqlite_db_session).save_answer(q5.id, "a")

    assert progress.question_no == 6
    assert progress.scenario == "Incident\nA server fell over."


async def test_reanswer_overwrites_previous_answer(sqlite_db_session):
    _, quiz_session = await seed_user_session(sqlite_db_session)
    await seed_questions(sqlite_db_session, quiz_session)
    q3 = await _question(sqlite_db_session, quiz_session.id, 3)
    seq = AnswerSequencer(sqlite_db_session)

    await seq.save_answer(q3.id, "a")
    await seq.save_answer(q3.id, "d")

    await sqlite_db_session.refresh(q3)
    assert q3.answer == "d"
    assert q3.answered is True


async def test_unknown_question_is_not_found(sqlite_db_session):
    with pytest.raises(QuestionNotFoundError):
        await AnswerSequencer(sqlite_db_session).save_answer(uuid.uuid4(), "a")


async def test_cyber_session_exposes_code_image(sqlite_db_session):
    _, quiz_session = await seed_user_session(sqlite_db_session, subject="Cybersecurity")
    payload = make_cyber_payload(overrides={12: {"codee_image": "https://img/12.png"}})
    await seed_questions(sqlite_db_session, quiz_session, payload)
    seq = AnswerSequencer(sqlite_db_session)

    q5 = await _question(sqlite_db_session, quiz_session.id, 5)
    with_image = await seq.save_answer(q5.id, "a")
    assert with_image.question_no == 6
    assert with_image.code_snippet_image_link == "https://img/12.png"
    assert with_image.has_code_image is True

    q6 = await _question(sqlite_db_session, quiz_session.id, 6)
    without_image = await seq.save_answer(q6.id, "a")
    assert without_image.code_snippet_image_link == ""
    assert without_image.has_code_image is False


async def test_scenario_is_returned_at_first_hard_position(sqlite_db_session):
    _, quiz_session = await seed_user_session(sqlite_db_session)
    payload = make_payload(overrides={10: {"scenario_title": "Outage", "text_context": "Checkout is down."}})
    await seed_questions(sqlite_db_session, quiz_session, payload)
    q8 = await _question(sqlite_db_session, quiz_session.id, 8)

    progress = await AnswerSequencer(sqlite_db_session).save_answer(q8.id, "a")

    assert progress.question_no == 9
    assert progress.scenario == "Outage\nCheckout is down."


async def test_cyber_scenario_is_returned_at_first_hard_position(sqlite_db_session):
    _, quiz_session = await seed_user_session(sqlite_db_session, subject="Cybersecurity")
    payload = make_cyber_payload(overrides={18: {"scenario_title": "Phishing", "text_context": "A fake invoice."}})
    await seed_questions(sqlite_db_session, quiz_session, payload)
    q7 = await _question(sqlite_db_session, quiz_session.id, 7)

    progress = await AnswerSequencer(sqlite_db_session).save_answer(q7.id, "a")

    assert progress.question_no == 8
    assert progress.scenario == "Phishing\nA fake invoice."


async def test_scenario_position_without_scenario_returns_empty_string(sqlite_db_session):
    _, quiz_session = await seed_user_session(sqlite_db_session)
    await seed_questions(sqlite_db_session, quiz_session)
    seq = AnswerSequencer(sqlite_db_session)

    q5 = await _question(sqlite_db_session, quiz_session.id, 5)
    at_medium = await seq.save_answer(q5.id, "a")
    q8 = await _question(sqlite_db_session, quiz_session.id, 8)
    at_hard = await seq.save_answer(q8.id, "a")

    assert (at_medium.question_no, at_medium.scenario) == (6, "")
    assert (at_hard.question_no, at_hard.scenario) == (9, "")
