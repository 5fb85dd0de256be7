# backend/tests/unit/api/endpoints/test_quiz.py

import uuid

import pytest

from app.main import API_PREFIX
from app.models.db import QuestionRecord
from app.models.upstream import UpstreamCallResult
from app.services.certified_api import FatalUpstreamError, RetryableUpstreamError
from app.services.database import QuestionRepository
from tests.fixtures.redis_fixtures import seed_poll_status
from tests.helpers.builders import make_cyber_payload, make_payload, seed_questions, seed_user_session

api = API_PREFIX.rstrip("/")
pytestmark = pytest.mark.asyncio

START = {"phone": "919999000111", "subject": "JavaScript", "name": "Ada", "email": "ada@example.com"}


async def _post_start(client, **overrides):
    return await client.post(f"{api}/quiz/start", json={**START, **overrides})


# ---------------------------------------------------------------------------
# POST /quiz/start
# ---------------------------------------------------------------------------

async def test_start_ready_returns_first_question(client, fake_certified):
    fake_certified.generate_script = [make_payload()]

    resp = await _post_start(client)

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["question_added"] is True
    assert body["session"]["generation_state"] == "ready"
    assert body["session"]["started_quiz"] is True
    assert body["certified_skill"] == {"id": 5001, "subject": "JavaScript", "variant": "base", "paid": False}
    assert body["quiz"] == {
        "total_questions": 10,
        "questions_generated": True,
        "question_types": {"easy": 5, "medium": 3, "hard": 2},
    }
    first = body["first_question"]
    assert first["question_no"] == 1
    assert first["question"].startswith("*Question 1 / 10*")
    assert first["has_code_image"] is False
    assert body["user"]["email"] == "ada@example.com"


async def test_start_generating_then_ready_on_retry(client, fake_certified, poll_registry, fast_generation):
    fast_generation(timeout_s=2.0, interval_s=0.01)
    fake_certified.generate_script = [
        RetryableUpstreamError("not ready", operation="generate"),
        make_payload(),
    ]

    first = await _post_start(client)
    assert first.status_code == 200, first.text
    body = first.json()
    assert body["question_added"] is False
    assert body["first_question"] is None
    assert body["session"]["generation_state"] == "generating"
    assert body["quiz"]["questions_generated"] is False

    session_id = uuid.UUID(body["session"]["id"])
    await poll_registry.wait(session_id)

    again = await _post_start(client, session_id=str(session_id))
    assert again.status_code == 200
    assert again.json()["session"]["id"] == str(session_id)
    assert again.json()["question_added"] is True
    assert fake_certified.count("create_entry") == 1


async def test_start_unknown_user_without_email_is_404(client):
    resp = await client.post(f"{api}/quiz/start", json={"phone": "000", "subject": "Go"})
    assert resp.status_code == 404


async def test_start_with_partial_set_reports_generating(client, sqlite_db_session, poll_registry, fast_generation):
    fast_generation(timeout_s=0.2, interval_s=0.01)
    user, quiz_session = await seed_user_session(sqlite_db_session)
    sqlite_db_session.add_all([
        QuestionRecord(session_id=quiz_session.id, user_id=user.id, question_no=n, question=f"Q{n}")
        for n in range(1, 6)
    ])
    await sqlite_db_session.commit()

    resp = await _post_start(client)

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["session"]["id"] == str(quiz_session.id)
    assert body["session"]["generation_state"] == "generating"
    assert body["question_added"] is False
    assert body["quiz"]["questions_generated"] is False
    assert body["first_question"] is None
    await poll_registry.wait(quiz_session.id)


async def test_start_create_entry_failure_is_502(client, fake_certified):
    fake_certified.create_entry_error = FatalUpstreamError("HTTP 500", operation="create_entry")
    resp = await _post_start(client)
    assert resp.status_code == 502
    assert "create_entry" in resp.json()["detail"]


async def test_start_requires_subject(client):
    resp = await client.post(f"{api}/quiz/start", json={"phone": "919999000111"})
    assert resp.status_code == 422


async def test_start_cyber_exposes_code_image_link(client, fake_certified):
    fake_certified.generate_script = [make_cyber_payload(overrides={1: {"codee_image": "https://img/1.png"}})]

    resp = await _post_start(client, subject="Cybersecurity")

    body = resp.json()
    assert body["certified_skill"]["variant"] == "cybersecurity"
    assert body["quiz"]["question_types"] == {"easy": 4, "medium": 3, "hard": 3}
    assert body["first_question"]["code_snippet_imageLink"] == "https://img/1.png"
    assert body["first_question"]["has_code_image"] is True


# ---------------------------------------------------------------------------
# POST /quiz/answer
# ---------------------------------------------------------------------------

async def test_answer_returns_next_question(client, sqlite_db_session):
    _, quiz_session = await seed_user_session(sqlite_db_session)
    await seed_questions(sqlite_db_session, quiz_session)
    q1 = await QuestionRepository(sqlite_db_session).get_by_number(quiz_session.id, 1)

    resp = await client.post(f"{api}/quiz/answer", json={"question_id": str(q1.id), "answer": "a"})

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["status"] == "pending"
    assert body["question_no"] == 2
    assert body["current_question_no"] == 1
    assert body["total_questions"] == 10
    assert body["scenario"] == ""
    assert "code_snippet_imageLink" not in body
    assert "has_code_image" not in body


async def test_answer_last_question_completes(client, sqlite_db_session):
    _, quiz_session = await seed_user_session(sqlite_db_session)
    await seed_questions(sqlite_db_session, quiz_session)
    q10 = await QuestionRepository(sqlite_db_session).get_by_number(quiz_session.id, 10)

    resp = await client.post(f"{api}/quiz/answer", json={"question_id": str(q10.id), "answer": "d"})

    body = resp.json()
    assert body["status"] == "complete"
    assert "question_id" not in body
    assert "question_no" not in body


async def test_answer_unknown_question_is_404(client):
    resp = await client.post(f"{api}/quiz/answer", json={"question_id": str(uuid.uuid4()), "answer": "a"})
    assert resp.status_code == 404


async def test_answer_must_be_one_letter(client):
    resp = await client.post(f"{api}/quiz/answer", json={"question_id": str(uuid.uuid4()), "answer": "ab"})
    assert resp.status_code == 422


# ---------------------------------------------------------------------------
# GET /quiz/status/{session_id}
# ---------------------------------------------------------------------------

async def test_status_reports_counts_and_last_poll(client, sqlite_db_session, fake_redis):
    _, quiz_session = await seed_user_session(sqlite_db_session)
    seed_poll_status(fake_redis, quiz_session.id, {"state": "timed_out", "attempt": 30})

    resp = await client.get(f"{api}/quiz/status/{quiz_session.id}")

    assert resp.status_code == 200
    body = resp.json()
    assert body["state"] == "session_no_questions"
    assert body["question_count"] == 0
    assert body["questions_generated"] is False
    assert body["poller_active"] is False
    assert body["last_poll"]["state"] == "timed_out"
    assert body["last_poll"]["attempt"] == 30


async def test_status_ready_session(client, sqlite_db_session):
    _, quiz_session = await seed_user_session(sqlite_db_session)
    await seed_questions(sqlite_db_session, quiz_session)

    body = (await client.get(f"{api}/quiz/status/{quiz_session.id}")).json()

    assert body["state"] == "ready"
    assert body["questions_generated"] is True
    assert body["last_poll"] is None


async def test_status_unknown_session_is_404(client):
    assert (await client.get(f"{api}/quiz/status/{uuid.uuid4()}")).status_code == 404


# ---------------------------------------------------------------------------
# POST /quiz/submit, /quiz/auto-submit
# ---------------------------------------------------------------------------

async def test_submit_by_email(client, sqlite_db_session, fake_certified):
    _, quiz_session = await seed_user_session(sqlite_db_session)
    await seed_questions(sqlite_db_session, quiz_session)
    fake_certified.soft_results["create_v2_test"] = UpstreamCallResult(success=True, data={"id": 9})

    resp = await client.post(f"{api}/quiz/submit", json={"email": "ada@example.com"})

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["session_id"] == str(quiz_session.id)
    assert body["score"] == 0
    assert body["score_band"] == "true_low"
    assert body["order_id"] == "9"
    assert set(body["steps"]) == {"save_user_response", "claim_certificate", "create_v2_test", "analysis"}


async def test_submit_unknown_user_is_404(client):
    resp = await client.post(f"{api}/quiz/submit", json={"email": "nobody@example.com"})
    assert resp.status_code == 404


async def test_submit_continue_failure_is_502(client, sqlite_db_session, fake_certified):
    await seed_user_session(sqlite_db_session)
    fake_certified.continue_error = FatalUpstreamError("HTTP 401", operation="continue")

    resp = await client.post(f"{api}/quiz/submit", json={"email": "ada@example.com"})

    assert resp.status_code == 502
    assert "Continue API failed" in resp.json()["detail"]


async def test_submit_requires_identity(client):
    assert (await client.post(f"{api}/quiz/submit", json={"phone": "9111"})).status_code == 422


async def test_auto_submit_skips_order(client, sqlite_db_session, fake_certified):
    user, _ = await seed_user_session(sqlite_db_session)

    resp = await client.post(
        f"{api}/quiz/auto-submit",
        json={"phone": user.phone, "subject": user.subject, "skip_create_v2_test": True},
    )

    assert resp.status_code == 200, resp.text
    assert resp.json()["steps"]["create_v2_test"] == {"success": False, "message": "skipped"}
    assert fake_certified.count("create_v2_test") == 0
