"""Session scheduler: keeps a rolling window of upcoming sessions per allocation.

Both triggers, a TrainerAllocated event and the periodic top-up tick, call the
same ``ensure_window``. It locks the allocation row, counts upcoming
``scheduled`` sessions and, when fewer than the low-water mark remain, adds
sessions up to the high-water mark without exceeding the purchased tier. Each
insert is guarded by the (allocation, date, time) constraint, so re-running is
a no-op for slots that already exist.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, date, datetime

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.config import Settings, get_settings
from fulfillment.core.exceptions import AllocationNotFoundError
from fulfillment.db.conflict import insert_or_ignore
from fulfillment.db.models import OPEN_ALLOCATION_STATUSES, Allocation, TutoringSession
from fulfillment.domain.results import Duplicate
from fulfillment.domain.schedule import plan_window
from fulfillment.events.emitter import IdempotentEmitter
from fulfillment.events.envelope import (
    EventEnvelope,
    EventType,
    SessionsGeneratedPayload,
    TrainerAllocatedPayload,
    derive_event_id,
    new_envelope,
)
from fulfillment.ledger.processed_events import has_processed, mark_processed

logger = structlog.get_logger(__name__)

SOURCE = "session-scheduler"


@dataclass
class WindowResult:
    allocation_id: uuid.UUID
    upcoming_before: int = 0
    created: list[uuid.UUID] = field(default_factory=list)
    skipped_reason: str | None = None

    @property
    def upcoming_after(self) -> int:
        return self.upcoming_before + len(self.created)


@dataclass
class TopUpSummary:
    allocations: int = 0
    sessions_created: int = 0
    failed: list[uuid.UUID] = field(default_factory=list)
    interrupted: bool = False


class SessionScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        emitter: IdempotentEmitter,
        settings: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._emitter = emitter
        self._settings = settings or get_settings()
        self._stop_requested = False

    def request_stop(self) -> None:
        """Make a running top-up sweep return after the allocation in hand."""
        self._stop_requested = True

    async def handle(self, envelope: EventEnvelope) -> WindowResult | Duplicate:
        """TrainerAllocated trigger."""
        payload = envelope.payload_as(TrainerAllocatedPayload)
        return await self.ensure_window(payload.allocation_id, trigger=envelope)

    async def ensure_window(
        self,
        allocation_id: uuid.UUID,
        now: datetime | None = None,
        trigger: EventEnvelope | None = None,
    ) -> WindowResult | Duplicate:
        """Top up the allocation's window of upcoming sessions.

        Args:
            allocation_id: Allocation to top up
            now: Injectable current time for testing
            trigger: The event that caused this run; recorded in the ledger in
                the same transaction as the session inserts

        Raises:
            AllocationNotFoundError: the allocation does not exist
        """
        today = (now or datetime.now(UTC)).date()
        outgoing: EventEnvelope | None = None
        staged = False

        async with self._session_factory() as session:
            async with session.begin():
                if trigger is not None and await has_processed(
                    session, trigger.correlation_id, trigger.type, trigger.event_id
                ):
                    logger.info("trainer_allocated_duplicate_skipped", allocation_id=str(allocation_id))
                    return Duplicate(trigger.event_id)

                allocation = (
                    await session.execute(select(Allocation).where(Allocation.id == allocation_id).with_for_update())
                ).scalar_one_or_none()
                if allocation is None:
                    raise AllocationNotFoundError(allocation_id)

                result = WindowResult(allocation_id=allocation_id)
                if allocation.status not in OPEN_ALLOCATION_STATUSES:
                    result.skipped_reason = f"allocation_{allocation.status}"
                else:
                    await self._fill_window(session, allocation, today, result)

                if trigger is not None:
                    await mark_processed(session, trigger, SOURCE)

                if result.created:
                    outgoing = self._sessions_generated(allocation, result, trigger)
                    staged = await self._emitter.stage(session, outgoing)

        if outgoing is not None:
            if staged:
                await self._emitter.publish(outgoing)
            else:
                await self._emitter.flush(outgoing.event_id)

        logger.info(
            "session_window_ensured",
            allocation_id=str(allocation_id),
            upcoming_before=result.upcoming_before,
            created=len(result.created),
            skipped_reason=result.skipped_reason,
            trigger="event" if trigger is not None else "timer",
        )
        return result

    async def top_up_all(self, now: datetime | None = None) -> TopUpSummary:
        """Timer trigger: ensure the window of every approved or active allocation.

        One allocation failing does not stop the sweep; it is retried on the
        next tick. A stop request ends the sweep between allocations.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(Allocation.id).where(Allocation.status.in_(OPEN_ALLOCATION_STATUSES)).order_by(Allocation.created_at)
            )
            allocation_ids = list(result.scalars().all())

        summary = TopUpSummary(allocations=len(allocation_ids))
        for index, allocation_id in enumerate(allocation_ids):
            if self._stop_requested:
                summary.interrupted = True
                logger.info(
                    "session_top_up_interrupted",
                    processed=index,
                    remaining=len(allocation_ids) - index,
                )
                break
            try:
                window = await self.ensure_window(allocation_id, now=now)
            except Exception as exc:
                summary.failed.append(allocation_id)
                logger.error(
                    "session_top_up_failed",
                    allocation_id=str(allocation_id),
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=True,
                )
                continue
            summary.sessions_created += len(window.created)

        logger.info(
            "session_top_up_complete",
            allocations=summary.allocations,
            sessions_created=summary.sessions_created,
            failed=len(summary.failed),
            interrupted=summary.interrupted,
        )
        return summary

    async def _fill_window(self, session: AsyncSession, allocation: Allocation, today: date, result: WindowResult) -> None:
        upcoming, consumed, last_scheduled = await self._session_counts(session, allocation.id, today)
        result.upcoming_before = upcoming

        metadata = dict(allocation.metadata_ or {})
        metadata.setdefault("sessionCount", self._settings.default_tier)
        plan = plan_window(
            metadata,
            upcoming=upcoming,
            consumed=consumed,
            last_scheduled=last_scheduled,
            today=today,
            low_water=self._settings.window_low_water,
            high_water=self._settings.window_high_water,
            default_time_slot=self._settings.default_time_slot,
        )

        for session_date in plan.dates:
            new_id = await insert_or_ignore(
                session,
                TutoringSession.__table__,
                {
                    "id": uuid.uuid4(),
                    "allocation_id": allocation.id,
                    "student_id": allocation.student_id,
                    "tutor_id": allocation.tutor_id,
                    "scheduled_date": session_date,
                    "scheduled_time": plan.slot,
                    "status": "scheduled",
                },
                TutoringSession.id,
            )
            if new_id is not None:
                result.created.append(new_id)

        if result.created and allocation.status == "approved":
            allocation.status = "active"

        if upcoming + len(result.created) < self._settings.window_low_water:
            logger.info(
                "session_window_below_low_water",
                allocation_id=str(allocation.id),
                upcoming=upcoming + len(result.created),
                consumed=consumed + len(result.created),
                tier=metadata["sessionCount"],
            )

    async def _session_counts(
        self, session: AsyncSession, allocation_id: uuid.UUID, today: date
    ) -> tuple[int, int, date | None]:
        """(upcoming scheduled, scheduled + completed, latest session date of any status)."""
        upcoming = await session.scalar(
            select(func.count())
            .select_from(TutoringSession)
            .where(
                TutoringSession.allocation_id == allocation_id,
                TutoringSession.status == "scheduled",
                TutoringSession.scheduled_date >= today,
            )
        )
        consumed = await session.scalar(
            select(func.count())
            .select_from(TutoringSession)
            .where(
                TutoringSession.allocation_id == allocation_id,
                TutoringSession.status.in_(("scheduled", "completed")),
            )
        )
        last_scheduled = await session.scalar(
            select(func.max(TutoringSession.scheduled_date)).where(TutoringSession.allocation_id == allocation_id)
        )
        return upcoming or 0, consumed or 0, last_scheduled

    def _sessions_generated(
        self, allocation: Allocation, result: WindowResult, trigger: EventEnvelope | None
    ) -> EventEnvelope:
        correlation_id = trigger.correlation_id if trigger is not None else allocation.correlation_id
        session_ids = sorted(str(s) for s in result.created)
        return new_envelope(
            EventType.SESSIONS_GENERATED,
            SessionsGeneratedPayload(
                allocation_id=allocation.id,
                session_ids=result.created,
                student_id=allocation.student_id,
                course_id=allocation.course_id,
                tutor_id=allocation.tutor_id,
            ),
            correlation_id=correlation_id,
            source=SOURCE,
            event_id=derive_event_id(correlation_id, EventType.SESSIONS_GENERATED, str(allocation.id), *session_ids),
        )
