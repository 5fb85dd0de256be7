# backend/app/services/reconciliation.py
"""
Session Reconciliation

Resolves a (user, subject) pair to a quiz session and drives its question set
towards READY:

    NO_SESSION -> SESSION_NO_QUESTIONS -> GENERATING -> READY

`SessionReconciler.resolve_session` never blocks on generation latency. It
makes one best-effort generate/extract/insert attempt on the request path;
if the set is still incomplete it hands the session to a background poller
(one per session, see `GenerationPollRegistry`) and returns `ResolveGenerating`.

The poller loops until the set is persisted or the configured timeout passes.
Upstream and database errors inside the loop are logged and retried; the next
resolve call restarts polling after a timeout.
"""

from __future__ import annotations

import asyncio
import enum
import secrets
import time
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Hashable, List, Optional, Union

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import QuizVariantConfig, Settings, settings
from app.models.db import QuestionRecord, QuizSession, User
from app.services.certified_api import CertifiedApiClient, FatalUpstreamError, RetryableUpstreamError
from app.services.database import QuestionRepository, QuizSessionRepository, UserRepository
from app.services.poll_registry import GenerationPollRegistry
from app.services.question_extractor import ExtractionInsufficient, extract_questions
from app.services.redis_cache import CacheRepository

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# States and results
# ---------------------------------------------------------------------------

class GenerationState(str, enum.Enum):
    NO_SESSION = "no_session"
    SESSION_NO_QUESTIONS = "session_no_questions"
    GENERATING = "generating"
    READY = "ready"


@dataclass(frozen=True)
class UserIdentity:
    phone: str
    name: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class ResolveReady:
    user: User
    session: QuizSession
    questions: List[QuestionRecord]


@dataclass(frozen=True)
class ResolveGenerating:
    user: User
    session: QuizSession
    partial_count: int
    poller_started: bool


@dataclass(frozen=True)
class ResolveNotFound:
    reason: str


@dataclass(frozen=True)
class ResolveFatalUpstream:
    message: str
    operation: str


ResolveResult = Union[ResolveReady, ResolveGenerating, ResolveNotFound, ResolveFatalUpstream]


@dataclass(frozen=True)
class GenerationAttempt:
    ready: bool
    drafts: int = 0
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Keyed locks
# ---------------------------------------------------------------------------

class KeyedLocks:
    """asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._refs: Dict[Hashable, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._refs[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] <= 0:
                self._refs.pop(key, None)
                self._locks.pop(key, None)


_resolve_locks = KeyedLocks()


# ---------------------------------------------------------------------------
# One generation attempt (shared by request path and poller)
# ---------------------------------------------------------------------------

async def generate_once(
    db: AsyncSession,
    certified: CertifiedApiClient,
    quiz_session: QuizSession,
    variant: QuizVariantConfig,
) -> GenerationAttempt:
    """Call the generator, extract, and persist the set if complete."""
    try:
        payload = await certified.generate(quiz_session.certified_user_id)
    except RetryableUpstreamError as e:
        logger.info("generation.upstream_error", session_id=str(quiz_session.id), error=str(e))
        return GenerationAttempt(ready=False, error=str(e))

    result = extract_questions(payload, variant)
    if isinstance(result, ExtractionInsufficient):
        logger.debug(
            "generation.insufficient",
            session_id=str(quiz_session.id),
            available=result.available,
            missing=result.missing,
        )
        return GenerationAttempt(ready=False, drafts=result.available)

    repo = QuestionRepository(db)
    await repo.insert_canonical_set(
        session_id=quiz_session.id,
        user_id=quiz_session.user_id,
        drafts=result.drafts,
        total=len(result.drafts),
    )
    await db.commit()
    return GenerationAttempt(ready=True, drafts=len(result.drafts))


# ---------------------------------------------------------------------------
# Background poller
# ---------------------------------------------------------------------------

async def poll_until_ready(
    *,
    quiz_session: QuizSession,
    variant: QuizVariantConfig,
    session_factory: async_sessionmaker[AsyncSession],
    certified: CertifiedApiClient,
    cfg: Settings,
    cache: Optional[CacheRepository] = None,
    lease_owner: Optional[str] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """
    Poll the generator until the session owns a full question set or the
    timeout elapses. Returns True when the set is persisted.
    """
    gen = cfg.generation
    total = gen.total_questions
    session_id = quiz_session.id
    log = logger.bind(session_id=str(session_id))
    deadline = clock() + gen.poll_timeout_s
    attempt = 0
    ready = False

    try:
        while True:
            attempt += 1
            outcome: GenerationAttempt
            try:
                async with session_factory() as db:
                    existing = await QuestionRepository(db).count_for_session(session_id)
                    if existing >= total:
                        outcome = GenerationAttempt(ready=True, drafts=existing)
                    else:
                        outcome = await generate_once(db, certified, quiz_session, variant)
            except SQLAlchemyError as e:
                log.error("poller.attempt.db_error", attempt=attempt, error=str(e), exc_info=True)
                outcome = GenerationAttempt(ready=False, error=str(e))

            log.debug("poller.attempt", attempt=attempt, ready=outcome.ready, drafts=outcome.drafts)
            if cache is not None:
                await cache.update_poll_status_atomically(
                    session_id,
                    {
                        "state": GenerationState.READY.value if outcome.ready else GenerationState.GENERATING.value,
                        "attempt": attempt,
                        "drafts": outcome.drafts,
                        "last_error": outcome.error,
                    },
                    ttl_seconds=gen.status_ttl_s,
                )

            if outcome.ready:
                ready = True
                log.info("poller.finished", attempts=attempt)
                return True

            remaining = deadline - clock()
            if remaining <= 0:
                break
            await sleep(min(gen.poll_interval_s, remaining))
            if clock() >= deadline:
                break

        log.warning("poller.timeout", attempts=attempt, timeout_s=gen.poll_timeout_s)
        if cache is not None:
            await cache.update_poll_status_atomically(
                session_id,
                {"state": "timed_out", "attempt": attempt},
                ttl_seconds=gen.status_ttl_s,
            )
        return False
    finally:
        if cache is not None and lease_owner is not None:
            await cache.release_generation_lease(session_id, lease_owner)
        if not ready:
            log.debug("poller.exit", attempts=attempt)


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------

class SessionReconciler:
    """Request-scoped entry point for start/resume."""

    def __init__(
        self,
        *,
        db: AsyncSession,
        certified: CertifiedApiClient,
        registry: GenerationPollRegistry,
        session_factory: async_sessionmaker[AsyncSession],
        cache: Optional[CacheRepository] = None,
        cfg: Optional[Settings] = None,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self.db = db
        self.certified = certified
        self.registry = registry
        self.session_factory = session_factory
        self.cache = cache
        self.cfg = cfg or settings
        self.locks = locks or _resolve_locks

    @property
    def total(self) -> int:
        return self.cfg.generation.total_questions

    async def resolve_session(
        self,
        identity: UserIdentity,
        subject: str,
        session_id: Optional[uuid.UUID] = None,
    ) -> ResolveResult:
        async with self.locks.hold((identity.phone, subject)):
            user = await self._resolve_user(identity, subject)
            if user is None:
                return ResolveNotFound(reason="No user found for this phone and subject")
            await self.db.commit()

            quiz_session = await self._find_session(user, subject, session_id)
            if quiz_session is None:
                try:
                    quiz_session = await self._create_session(user, subject)
                except FatalUpstreamError as e:
                    logger.warning("resolve.create_entry.failed", subject=subject, error=str(e))
                    return ResolveFatalUpstream(message=str(e), operation=e.operation)

            return await self._reconcile_questions(user, quiz_session)

    # -----------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------

    async def _resolve_user(self, identity: UserIdentity, subject: str) -> Optional[User]:
        users = UserRepository(self.db)
        if identity.email:
            return await users.get_or_create(
                name=identity.name or "",
                email=identity.email,
                phone=identity.phone,
                subject=subject,
            )
        return await users.get_latest_by_phone_subject(identity.phone, subject)

    async def _find_session(
        self, user: User, subject: str, session_id: Optional[uuid.UUID]
    ) -> Optional[QuizSession]:
        sessions = QuizSessionRepository(self.db)
        if session_id is not None:
            owned = await sessions.get_owned(session_id, user_id=user.id, subject=subject)
            if owned is not None:
                return owned
            logger.info("resolve.session_id.ignored", session_id=str(session_id), user_id=str(user.id))
        return await sessions.get_latest(user.id, subject)

    async def _create_session(self, user: User, subject: str) -> QuizSession:
        entry = await self.certified.create_entry(subject)
        variant_name = self.cfg.variant_name_for(subject)
        quiz_session = await QuizSessionRepository(self.db).create(
            user_id=user.id,
            subject=subject,
            variant=variant_name,
            certified_user_id=entry.skill_id,
            certified_token=secrets.token_urlsafe(15),
            certified_token_expires_at=datetime.now(timezone.utc) + timedelta(seconds=self.cfg.generation.token_ttl_s),
            paid=entry.is_paid,
        )
        await self.db.commit()
        logger.info(
            "resolve.session.created",
            session_id=str(quiz_session.id),
            skill_id=entry.skill_id,
            variant=variant_name,
        )
        return quiz_session

    async def _reconcile_questions(self, user: User, quiz_session: QuizSession) -> ResolveResult:
        questions = QuestionRepository(self.db)
        count = await questions.count_for_session(quiz_session.id)
        variant = self.cfg.variant(quiz_session.variant)

        if count < self.total:
            try:
                attempt = await generate_once(self.db, self.certified, quiz_session, variant)
            except SQLAlchemyError as e:
                # Rollback expires loaded state; reload before handing off to the poller.
                logger.warning(
                    "generation.sync_attempt.db_error",
                    session_id=str(quiz_session.id),
                    error=str(e),
                    exc_info=True,
                )
                session_id = quiz_session.id
                await self.db.rollback()
                quiz_session = await QuizSessionRepository(self.db).get_by_id(session_id)
                await self.db.refresh(user)
            else:
                if attempt.ready:
                    count = await questions.count_for_session(quiz_session.id)

        if count >= self.total:
            await self._mark_started(quiz_session)
            logger.info("resolve.ready", session_id=str(quiz_session.id))
            return ResolveReady(
                user=user,
                session=quiz_session,
                questions=await questions.get_for_session(quiz_session.id),
            )

        started = await self._launch_poller(quiz_session, variant)
        logger.info(
            "resolve.generating",
            session_id=str(quiz_session.id),
            partial_count=count,
            poller_started=started,
        )
        return ResolveGenerating(user=user, session=quiz_session, partial_count=count, poller_started=started)

    async def _mark_started(self, quiz_session: QuizSession) -> None:
        if quiz_session.started_quiz:
            return
        await QuizSessionRepository(self.db).update_fields(quiz_session.id, started_quiz=True)
        await self.db.commit()

    async def _launch_poller(self, quiz_session: QuizSession, variant: QuizVariantConfig) -> bool:
        if self.registry.is_active(quiz_session.id):
            return False

        lease_owner: Optional[str] = None
        if self.cache is not None:
            lease_owner = uuid.uuid4().hex
            acquired = await self.cache.acquire_generation_lease(
                quiz_session.id, lease_owner, self.cfg.generation.lease_ttl_s
            )
            if not acquired:
                logger.info("poller.lease_held_elsewhere", session_id=str(quiz_session.id))
                return False

        started = self.registry.ensure(
            quiz_session.id,
            lambda: poll_until_ready(
                quiz_session=quiz_session,
                variant=variant,
                session_factory=self.session_factory,
                certified=self.certified,
                cfg=self.cfg,
                cache=self.cache,
                lease_owner=lease_owner,
            ),
        )
        if not started and lease_owner is not None:
            await self.cache.release_generation_lease(quiz_session.id, lease_owner)
        return started


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GenerationStatus:
    session: QuizSession
    state: GenerationState
    question_count: int
    poller_active: bool


async def describe_generation(
    db: AsyncSession,
    registry: GenerationPollRegistry,
    session_id: uuid.UUID,
    cfg: Optional[Settings] = None,
) -> Optional[GenerationStatus]:
    cfg = cfg or settings
    quiz_session = await QuizSessionRepository(db).get_by_id(session_id)
    if quiz_session is None:
        return None
    count = await QuestionRepository(db).count_for_session(session_id)
    active = registry.is_active(session_id)
    if count >= cfg.generation.total_questions:
        state = GenerationState.READY
    elif active:
        state = GenerationState.GENERATING
    else:
        state = GenerationState.SESSION_NO_QUESTIONS
    return GenerationStatus(session=quiz_session, state=state, question_count=count, poller_active=active)
