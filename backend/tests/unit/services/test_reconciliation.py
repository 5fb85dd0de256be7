# backend/tests/unit/services/test_reconciliation.py

import asyncio
import json
import uuid

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.core.config import settings
from app.models.db import QuestionRecord, QuizSession
from app.services.certified_api import FatalUpstreamError, RetryableUpstreamError
from app.services.database import QuestionRepository
from app.services.reconciliation import (
    GenerationState,
    KeyedLocks,
    ResolveFatalUpstream,
    ResolveGenerating,
    ResolveNotFound,
    ResolveReady,
    SessionReconciler,
    UserIdentity,
    describe_generation,
    poll_until_ready,
)
from app.services.redis_cache import CacheRepository
from tests.helpers.builders import make_payload, seed_questions, seed_user_session

pytestmark = pytest.mark.asyncio

IDENTITY = UserIdentity(phone="919999000111", name="Ada", email="ada@example.com")
SUBJECT = "JavaScript"


def _reconciler(db, fake_certified, poll_registry, session_factory, cache=None, locks=None):
    return SessionReconciler(
        db=db,
        certified=fake_certified,
        registry=poll_registry,
        session_factory=session_factory,
        cache=cache,
        locks=locks or KeyedLocks(),
    )


async def _counts(session_factory):
    async with session_factory() as db:
        sessions = (await db.execute(select(func.count()).select_from(QuizSession))).scalar_one()
        questions = (await db.execute(select(func.count()).select_from(QuestionRecord))).scalar_one()
    return sessions, questions


class _FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.now += seconds


# ---------------------------------------------------------------------------
# resolve_session
# ---------------------------------------------------------------------------

async def test_unknown_phone_without_email_is_not_found(
    sqlite_db_session, session_factory, fake_certified, poll_registry
):
    """Without name/email a user must already exist for (phone, subject)."""
    rec = _reconciler(sqlite_db_session, fake_certified, poll_registry, session_factory)
    result = await rec.resolve_session(UserIdentity(phone="000"), SUBJECT)
    assert isinstance(result, ResolveNotFound)
    assert fake_certified.count("create_entry") == 0


async def test_new_user_ready_on_first_generate(
    sqlite_db_session, session_factory, fake_certified, poll_registry
):
    fake_certified.is_paid = True
    fake_certified.generate_script = [make_payload()]
    rec = _reconciler(sqlite_db_session, fake_certified, poll_registry, session_factory)

    result = await rec.resolve_session(IDENTITY, SUBJECT)

    assert isinstance(result, ResolveReady)
    assert [q.question_no for q in result.questions] == list(range(1, 11))
    assert result.session.started_quiz is True
    assert result.session.paid is True
    assert result.session.variant == "base"
    assert len(result.session.certified_token) == 20
    assert poll_registry.active_count == 0
    assert await _counts(session_factory) == (1, 10)


async def test_cyber_subject_gets_cyber_variant(
    sqlite_db_session, session_factory, fake_certified, poll_registry
):
    fake_certified.generate_script = [RetryableUpstreamError("later", operation="generate")]
    rec = _reconciler(sqlite_db_session, fake_certified, poll_registry, session_factory)
    result = await rec.resolve_session(IDENTITY, "Cybersecurity Fundamentals")
    assert result.session.variant == "cybersecurity"


async def test_create_entry_failure_is_fatal_and_creates_no_session(
    sqlite_db_session, session_factory, fake_certified, poll_registry
):
    fake_certified.create_entry_error = FatalUpstreamError("HTTP 500", operation="create_entry")
    rec = _reconciler(sqlite_db_session, fake_certified, poll_registry, session_factory)

    result = await rec.resolve_session(IDENTITY, SUBJECT)

    assert isinstance(result, ResolveFatalUpstream)
    assert result.operation == "create_entry"
    assert (await _counts(session_factory))[0] == 0


async def test_not_ready_hands_off_to_poller(
    sqlite_db_session, session_factory, fake_certified, poll_registry, fake_redis, fast_generation
):
    """Generating is returned immediately; the poller persists the set later."""
    fast_generation(timeout_s=2.0, interval_s=0.01)
    fake_certified.generate_script = [
        RetryableUpstreamError("not ready", operation="generate"),   # request path
        make_payload(hard=[]),                                        # poll 1: insufficient
        make_payload(),                                               # poll 2: complete
    ]
    cache = CacheRepository(fake_redis)
    rec = _reconciler(sqlite_db_session, fake_certified, poll_registry, session_factory, cache=cache)

    result = await rec.resolve_session(IDENTITY, SUBJECT)
    assert isinstance(result, ResolveGenerating)
    assert result.partial_count == 0
    assert result.poller_started is True

    await poll_registry.wait(result.session.id)

    assert await _counts(session_factory) == (1, 10)
    status = await cache.get_poll_status(result.session.id)
    assert status.state == "ready"
    assert status.attempt == 2
    assert await fake_redis.get(f"quiz_generation_lease:{result.session.id}") is None


async def test_second_resolve_reuses_session_and_running_poller(
    sqlite_db_session, session_factory, fake_certified, poll_registry, fast_generation
):
    fast_generation(timeout_s=5.0, interval_s=0.01)
    rec = _reconciler(sqlite_db_session, fake_certified, poll_registry, session_factory)

    first = await rec.resolve_session(IDENTITY, SUBJECT)
    second = await rec.resolve_session(IDENTITY, SUBJECT)

    assert isinstance(first, ResolveGenerating) and first.poller_started
    assert isinstance(second, ResolveGenerating) and not second.poller_started
    assert second.session.id == first.session.id
    assert poll_registry.active_count == 1
    assert fake_certified.count("create_entry") == 1


async def test_lease_held_elsewhere_skips_local_poller(
    sqlite_db_session, session_factory, fake_certified, poll_registry, fake_redis
):
    user, quiz_session = await seed_user_session(sqlite_db_session, phone=IDENTITY.phone, subject=SUBJECT)
    await fake_redis.set(f"quiz_generation_lease:{quiz_session.id}", "other-process")
    rec = _reconciler(
        sqlite_db_session, fake_certified, poll_registry, session_factory, cache=CacheRepository(fake_redis)
    )

    result = await rec.resolve_session(UserIdentity(phone=IDENTITY.phone), SUBJECT)

    assert isinstance(result, ResolveGenerating)
    assert result.session.id == quiz_session.id
    assert result.poller_started is False


async def test_store_error_on_request_path_still_hands_off_to_poller(
    sqlite_db_session, session_factory, fake_certified, poll_registry, fast_generation, monkeypatch
):
    """A failed insert during the synchronous attempt degrades to generating."""
    fast_generation(timeout_s=0.2, interval_s=0.01)
    fake_certified.generate_script = [make_payload()]

    async def _locked(self, **kwargs):
        raise OperationalError("INSERT INTO questions", {}, Exception("database is locked"))

    monkeypatch.setattr(QuestionRepository, "insert_canonical_set", _locked)
    rec = _reconciler(sqlite_db_session, fake_certified, poll_registry, session_factory)

    result = await rec.resolve_session(IDENTITY, SUBJECT)

    assert isinstance(result, ResolveGenerating)
    assert result.poller_started is True
    assert result.partial_count == 0
    assert result.session.variant == "base"
    assert result.user.email == IDENTITY.email
    assert poll_registry.is_active(result.session.id)

    await poll_registry.wait(result.session.id)
    assert await _counts(session_factory) == (1, 0)


async def test_partial_set_is_never_reported_ready(
    sqlite_db_session, session_factory, fake_certified, poll_registry, fast_generation
):
    fast_generation(timeout_s=0.2, interval_s=0.01)
    user, quiz_session = await seed_user_session(sqlite_db_session, phone=IDENTITY.phone, subject=SUBJECT)
    sqlite_db_session.add_all([
        QuestionRecord(session_id=quiz_session.id, user_id=user.id, question_no=n, question=f"Q{n}")
        for n in range(1, 6)
    ])
    await sqlite_db_session.commit()
    rec = _reconciler(sqlite_db_session, fake_certified, poll_registry, session_factory)

    result = await rec.resolve_session(UserIdentity(phone=IDENTITY.phone), SUBJECT)

    assert isinstance(result, ResolveGenerating)
    assert result.partial_count == 5
    assert result.session.started_quiz is False
    assert fake_certified.count("generate") >= 1
    await poll_registry.wait(quiz_session.id)
    assert poll_registry.active_count == 0


async def test_existing_complete_session_is_ready_without_upstream_calls(
    sqlite_db_session, session_factory, fake_certified, poll_registry
):
    _, quiz_session = await seed_user_session(sqlite_db_session, phone=IDENTITY.phone, subject=SUBJECT)
    await seed_questions(sqlite_db_session, quiz_session)
    rec = _reconciler(sqlite_db_session, fake_certified, poll_registry, session_factory)

    result = await rec.resolve_session(UserIdentity(phone=IDENTITY.phone), SUBJECT)

    assert isinstance(result, ResolveReady)
    assert result.session.id == quiz_session.id
    assert fake_certified.calls == []


async def test_session_id_hint_must_be_owned(
    sqlite_db_session, session_factory, fake_certified, poll_registry
):
    user, own = await seed_user_session(sqlite_db_session, phone=IDENTITY.phone, subject=SUBJECT)
    await seed_questions(sqlite_db_session, own)
    _, foreign = await seed_user_session(
        sqlite_db_session, phone="911", subject=SUBJECT, email="bob@example.com", name="Bob"
    )
    rec = _reconciler(sqlite_db_session, fake_certified, poll_registry, session_factory)

    owned = await rec.resolve_session(UserIdentity(phone=IDENTITY.phone), SUBJECT, session_id=own.id)
    hijack = await rec.resolve_session(UserIdentity(phone=IDENTITY.phone), SUBJECT, session_id=foreign.id)

    assert owned.session.id == own.id
    assert hijack.session.id == own.id


async def test_concurrent_resolves_create_one_session_and_one_set(
    session_factory, fake_certified, poll_registry
):
    """Two simultaneous resolves for the same caller end with 1 session and 10 questions."""
    fake_certified.default_generate = make_payload()
    locks = KeyedLocks()

    async def _resolve():
        async with session_factory() as db:
            rec = _reconciler(db, fake_certified, poll_registry, session_factory, locks=locks)
            return await rec.resolve_session(IDENTITY, SUBJECT)

    a, b = await asyncio.gather(_resolve(), _resolve())

    assert isinstance(a, ResolveReady) and isinstance(b, ResolveReady)
    assert a.session.id == b.session.id
    assert fake_certified.count("create_entry") == 1
    assert await _counts(session_factory) == (1, 10)


# ---------------------------------------------------------------------------
# Poller
# ---------------------------------------------------------------------------

async def test_poller_times_out_after_configured_window(
    sqlite_db_session, session_factory, fake_certified
):
    """90 s window at a 3 s interval gives 30 attempts, then gives up."""
    _, quiz_session = await seed_user_session(sqlite_db_session)
    clock = _FakeClock()

    ok = await poll_until_ready(
        quiz_session=quiz_session,
        variant=settings.variant("base"),
        session_factory=session_factory,
        certified=fake_certified,
        cfg=settings,
        sleep=clock.sleep,
        clock=clock,
    )

    assert ok is False
    assert fake_certified.count("generate") == 30
    assert clock.now == pytest.approx(settings.generation.poll_timeout_s)
    assert (await _counts(session_factory))[1] == 0


async def test_poller_stops_when_set_already_complete(
    sqlite_db_session, session_factory, fake_certified, fake_redis
):
    """Another writer finished first: no generate call, lease released."""
    _, quiz_session = await seed_user_session(sqlite_db_session)
    await seed_questions(sqlite_db_session, quiz_session)
    cache = CacheRepository(fake_redis)
    await cache.acquire_generation_lease(quiz_session.id, "me", 60)

    ok = await poll_until_ready(
        quiz_session=quiz_session,
        variant=settings.variant("base"),
        session_factory=session_factory,
        certified=fake_certified,
        cfg=settings,
        cache=cache,
        lease_owner="me",
    )

    assert ok is True
    assert fake_certified.count("generate") == 0
    assert await fake_redis.get(f"quiz_generation_lease:{quiz_session.id}") is None


async def test_poller_survives_upstream_errors(sqlite_db_session, session_factory, fake_certified, fake_redis):
    _, quiz_session = await seed_user_session(sqlite_db_session)
    fake_certified.generate_script = [
        RetryableUpstreamError("HTTP 502", operation="generate"),
        RetryableUpstreamError("HTTP 502", operation="generate"),
        make_payload(),
    ]
    clock = _FakeClock()
    cache = CacheRepository(fake_redis)

    ok = await poll_until_ready(
        quiz_session=quiz_session,
        variant=settings.variant("base"),
        session_factory=session_factory,
        certified=fake_certified,
        cfg=settings,
        cache=cache,
        sleep=clock.sleep,
        clock=clock,
    )

    assert ok is True
    assert clock.now == pytest.approx(2 * settings.generation.poll_interval_s)
    raw = json.loads(await fake_redis.get(f"quiz_generation_status:{quiz_session.id}"))
    assert raw["attempt"] == 3
    assert raw["last_error"] is None
    async with session_factory() as db:
        assert await QuestionRepository(db).count_for_session(quiz_session.id) == 10


# ---------------------------------------------------------------------------
# describe_generation
# ---------------------------------------------------------------------------

async def test_describe_generation_states(sqlite_db_session, poll_registry):
    _, quiz_session = await seed_user_session(sqlite_db_session)

    described = await describe_generation(sqlite_db_session, poll_registry, quiz_session.id)
    assert described.state is GenerationState.SESSION_NO_QUESTIONS
    assert described.question_count == 0

    await seed_questions(sqlite_db_session, quiz_session)
    described = await describe_generation(sqlite_db_session, poll_registry, quiz_session.id)
    assert described.state is GenerationState.READY

    assert await describe_generation(sqlite_db_session, poll_registry, uuid.uuid4()) is None
