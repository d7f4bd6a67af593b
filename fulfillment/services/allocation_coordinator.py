"""Allocation coordinator: PurchaseCreated -> tutor allocation -> TrainerAllocated.

The matching collaborator is called outside any transaction, with an explicit
timeout. The allocation insert is guarded by the one-open-allocation-per-
(student, course) index: when two coordinators race on the same purchase, the
loser's insert is a no-op and it reports the winner's allocation.
"""

import asyncio
import uuid
from datetime import UTC, date, datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.config import Settings, get_settings
from fulfillment.core.exceptions import TutorMatchingError
from fulfillment.db.conflict import insert_or_ignore
from fulfillment.db.models import OPEN_ALLOCATION_STATUSES, Allocation, Purchase
from fulfillment.domain.results import AlreadyExists, Created, Duplicate
from fulfillment.domain.schedule import parse_start_date
from fulfillment.events.emitter import IdempotentEmitter
from fulfillment.events.envelope import (
    EventEnvelope,
    EventType,
    PurchaseCreatedPayload,
    TrainerAllocatedPayload,
    derive_event_id,
    new_envelope,
)
from fulfillment.integrations.tutor_matching import TutorMatcher
from fulfillment.ledger.processed_events import has_processed, mark_processed

logger = structlog.get_logger(__name__)

SOURCE = "allocation-coordinator"

DEFAULT_PREFERRED_TIME_SLOT = "4:00 PM"


def matching_criteria(metadata: dict[str, Any], today: date | None = None) -> dict[str, Any]:
    """Preferences forwarded to the matching collaborator."""
    schedule = metadata.get("schedule") if isinstance(metadata.get("schedule"), dict) else {}
    preferred_date = (
        schedule.get("startDate")
        or metadata.get("startDate")
        or metadata.get("date")
        or metadata.get("preferredDate")
        or (today or datetime.now(UTC).date()).isoformat()
    )
    criteria = {
        "preferredTimeSlot": metadata.get("timeSlot")
        or metadata.get("preferredTimeSlot")
        or schedule.get("timeSlot")
        or DEFAULT_PREFERRED_TIME_SLOT,
        "preferredDate": preferred_date,
    }
    for key in ("classTypeId", "scheduleMode", "daysOfWeek", "language"):
        if metadata.get(key) is not None:
            criteria[key] = metadata[key]
    return criteria


def allocation_metadata(purchase: PurchaseCreatedPayload, metadata: dict[str, Any], criteria: dict[str, Any]) -> dict[str, Any]:
    """Scheduling hints stored on the allocation and read by the session scheduler."""
    stored = {
        "purchaseId": str(purchase.purchase_id),
        "sessionCount": purchase.tier,
        "startDate": criteria["preferredDate"],
        "timeSlot": criteria["preferredTimeSlot"],
    }
    if metadata.get("daysOfWeek"):
        stored["daysOfWeek"] = metadata["daysOfWeek"]
    if metadata.get("expiryDate"):
        stored["endDate"] = metadata["expiryDate"]
    return stored


async def find_open_allocation(session: AsyncSession, student_id: str, course_id: str) -> Allocation | None:
    result = await session.execute(
        select(Allocation).where(
            Allocation.student_id == student_id,
            Allocation.course_id == course_id,
            Allocation.status.in_(OPEN_ALLOCATION_STATUSES),
        )
    )
    return result.scalar_one_or_none()


async def insert_allocation(session: AsyncSession, values: dict[str, Any]) -> Created | AlreadyExists:
    """Insert an approved allocation, or return the open one already held for (student, course)."""
    new_id = await insert_or_ignore(session, Allocation.__table__, values, Allocation.id)
    if new_id is not None:
        return Created(new_id)

    existing = await find_open_allocation(session, values["student_id"], values["course_id"])
    if existing is None:
        # Conflict on a row that is no longer open; nothing to converge on yet
        raise TutorMatchingError(
            f"Allocation insert for {values['student_id']}/{values['course_id']} conflicted without an open allocation"
        )
    return AlreadyExists(existing.id)


class AllocationCoordinator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        emitter: IdempotentEmitter,
        matcher: TutorMatcher,
        settings: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._emitter = emitter
        self._matcher = matcher
        self._settings = settings or get_settings()

    async def handle(self, envelope: EventEnvelope) -> Created | AlreadyExists | Duplicate:
        payload = envelope.payload_as(PurchaseCreatedPayload)
        allocated_event_id = derive_event_id(envelope.correlation_id, EventType.TRAINER_ALLOCATED)

        async with self._session_factory() as session:
            if await has_processed(session, envelope.correlation_id, envelope.type, envelope.event_id):
                await self._emitter.flush(allocated_event_id)
                logger.info("purchase_created_duplicate_skipped", purchase_id=str(payload.purchase_id))
                return Duplicate(envelope.event_id)

            existing = await find_open_allocation(session, payload.student_id, payload.course_id)
            purchase_metadata = await self._purchase_metadata(session, payload.purchase_id)
            existing_tutor = existing.tutor_id if existing is not None else None

        metadata = {**purchase_metadata, **payload.metadata}
        criteria = matching_criteria(metadata)

        if existing_tutor is not None:
            tutor_id = existing_tutor
            logger.info("allocation_reused_without_matching", tutor_id=tutor_id, student_id=payload.student_id)
        else:
            tutor_id = await self._select_tutor(payload.student_id, payload.course_id, criteria)

        async with self._session_factory() as session:
            async with session.begin():
                result = await insert_allocation(
                    session,
                    {
                        "id": uuid.uuid4(),
                        "student_id": payload.student_id,
                        "course_id": payload.course_id,
                        "tutor_id": tutor_id,
                        "purchase_id": payload.purchase_id,
                        "correlation_id": envelope.correlation_id,
                        "status": "approved",
                        "metadata": allocation_metadata(payload, metadata, criteria),
                    },
                )
                allocation = await session.get(Allocation, result.id)
                await mark_processed(session, envelope, SOURCE)

                outgoing = new_envelope(
                    EventType.TRAINER_ALLOCATED,
                    TrainerAllocatedPayload(
                        allocation_id=allocation.id,
                        student_id=allocation.student_id,
                        course_id=allocation.course_id,
                        tutor_id=allocation.tutor_id,
                        session_count=int(allocation.metadata_.get("sessionCount") or payload.tier),
                        start_date=parse_start_date(allocation.metadata_.get("startDate")),
                    ),
                    correlation_id=envelope.correlation_id,
                    source=SOURCE,
                    event_id=allocated_event_id,
                )
                staged = await self._emitter.stage(session, outgoing)

        if staged:
            await self._emitter.publish(outgoing)
        else:
            await self._emitter.flush(outgoing.event_id)

        logger.info(
            "tutor_allocated",
            allocation_id=str(result.id),
            outcome=type(result).__name__,
            tutor_id=allocation.tutor_id,
            student_id=payload.student_id,
            course_id=payload.course_id,
        )
        return result

    async def _select_tutor(self, student_id: str, course_id: str, criteria: dict[str, Any]) -> str:
        timeout = self._settings.tutor_matcher_timeout_seconds
        try:
            tutor_id = await asyncio.wait_for(self._matcher.select_tutor(student_id, course_id, criteria), timeout)
        except TimeoutError as exc:
            raise TutorMatchingError(f"Tutor matching timed out after {timeout}s") from exc
        if not tutor_id:
            raise TutorMatchingError(f"Tutor matching returned no tutor for {student_id}/{course_id}")
        return tutor_id

    async def _purchase_metadata(self, session: AsyncSession, purchase_id: uuid.UUID) -> dict[str, Any]:
        result = await session.execute(select(Purchase.metadata_).where(Purchase.id == purchase_id))
        return result.scalar_one_or_none() or {}
