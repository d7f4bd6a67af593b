"""Shared test fixtures for all test groups.

The relational store is an in-memory SQLite database (aiosqlite, one shared
connection); its partial unique indexes and ON CONFLICT DO NOTHING behave like
the production Postgres ones. Redis is fakeredis, the log is InMemoryEventLog,
and every retry budget waits zero seconds.
"""

import uuid
from datetime import UTC, date, datetime, time
from typing import Any

import pytest
from fakeredis import aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from fulfillment.core.config import Settings
from fulfillment.core.exceptions import TutorMatchingError
from fulfillment.db.base import Base
from fulfillment.db.models import Allocation, TutoringSession
from fulfillment.events.emitter import IdempotentEmitter
from fulfillment.events.envelope import EventEnvelope, EventType
from fulfillment.events.log import InMemoryEventLog
from fulfillment.ledger.dead_letter import DeadLetterSink


class FakeTutorMatcher:
    """TutorMatcher test double.

    Scenarios:
      - "assign": always returns ``tutor_id``
      - "timeout": every call raises TutorMatchingError (collaborator down)
      - "flaky": the first ``failures`` calls raise, then returns ``tutor_id``
      - "empty": returns an empty tutor id
    """

    def __init__(self, scenario: str = "assign", tutor_id: str = "tutor-001", failures: int = 0):
        self.scenario = scenario
        self.tutor_id = tutor_id
        self.failures = failures
        self.calls: list[dict[str, Any]] = []

    async def select_tutor(self, student_id: str, course_id: str, criteria: dict[str, Any]) -> str:
        self.calls.append({"student_id": student_id, "course_id": course_id, "criteria": criteria})
        if self.scenario == "timeout":
            raise TutorMatchingError("Tutor matching timed out after 5.0s")
        if self.scenario == "flaky" and len(self.calls) <= self.failures:
            raise TutorMatchingError("Tutor matching returned HTTP 503")
        if self.scenario == "empty":
            return ""
        return self.tutor_id


@pytest.fixture
def settings() -> Settings:
    """Default thresholds and budgets, zero backoff."""
    return Settings(
        _env_file=None,
        retry_initial_delay_seconds=0,
        retry_max_delay_seconds=0,
        allocator_initial_delay_seconds=0,
        allocator_max_delay_seconds=0,
        cache_retry_delay_seconds=0,
        tutor_matcher_timeout_seconds=1.0,
        outbox_grace_seconds=0,
    )


@pytest.fixture
async def engine():
    """In-memory SQLite engine with all tables created."""
    import fulfillment.db.models  # noqa: F401

    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def redis_client():
    """Create a fake Redis client for testing."""
    client = aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def event_log() -> InMemoryEventLog:
    return InMemoryEventLog()


@pytest.fixture
def emitter(session_factory, event_log, settings) -> IdempotentEmitter:
    return IdempotentEmitter(session_factory, event_log, settings)


@pytest.fixture
def dead_letters(session_factory) -> DeadLetterSink:
    return DeadLetterSink(session_factory)


@pytest.fixture
def matcher() -> FakeTutorMatcher:
    return FakeTutorMatcher()


@pytest.fixture
def matcher_factory():
    """Build a FakeTutorMatcher for a given scenario."""
    return FakeTutorMatcher


@pytest.fixture
def make_envelope():
    """Build an EventEnvelope from a camelCase payload dict."""

    def _make(
        event_type: EventType | str,
        payload: dict[str, Any],
        correlation_id: str = "corr-001",
        event_id: str | None = None,
        source: str = "payment-service",
    ) -> EventEnvelope:
        return EventEnvelope(
            event_id=event_id or str(uuid.uuid4()),
            correlation_id=correlation_id,
            type=str(event_type),
            source=source,
            emitted_at=datetime.now(UTC),
            payload=payload,
        )

    return _make


@pytest.fixture
def seed_allocation(session_factory):
    """Insert an allocation (and optionally sessions) directly."""

    async def _seed(
        tier: int = 10,
        status: str = "approved",
        student_id: str = "student-001",
        course_id: str = "course-001",
        start_date: date | None = None,
        sessions: list[tuple[date, str]] | None = None,
        slot: time = time(16, 0),
        metadata: dict[str, Any] | None = None,
    ) -> Allocation:
        allocation = Allocation(
            id=uuid.uuid4(),
            student_id=student_id,
            course_id=course_id,
            tutor_id="tutor-001",
            correlation_id=f"corr-{student_id}-{course_id}",
            status=status,
            metadata_={
                "sessionCount": tier,
                "startDate": start_date.isoformat() if start_date else None,
                "timeSlot": slot.strftime("%H:%M"),
                **(metadata or {}),
            },
        )
        async with session_factory() as session:
            async with session.begin():
                session.add(allocation)
                await session.flush()
                for session_date, session_status in sessions or []:
                    session.add(
                        TutoringSession(
                            allocation_id=allocation.id,
                            student_id=student_id,
                            tutor_id="tutor-001",
                            scheduled_date=session_date,
                            scheduled_time=slot,
                            status=session_status,
                        )
                    )
        return allocation

    return _seed
