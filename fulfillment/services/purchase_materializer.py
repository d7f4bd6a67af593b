"""Purchase materializer: PurchaseConfirmed -> purchase row -> PurchaseCreated.

One transaction covers the ledger check, the purchase insert (guarded by the
one-active-purchase-per-(student, course) index), the ledger mark and staging
of PurchaseCreated. The event is published after commit.
"""

from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.config import Settings, get_settings
from fulfillment.db.conflict import insert_or_ignore
from fulfillment.db.models import Payment, Purchase
from fulfillment.domain.results import AlreadyExists, Created, Duplicate
from fulfillment.events.emitter import IdempotentEmitter
from fulfillment.events.envelope import (
    EventEnvelope,
    EventType,
    PurchaseConfirmedPayload,
    PurchaseCreatedPayload,
    derive_event_id,
    new_envelope,
)
from fulfillment.ledger.processed_events import has_processed, mark_processed

logger = structlog.get_logger(__name__)

SOURCE = "purchase-materializer"


def resolve_tier(payload: PurchaseConfirmedPayload, default_tier: int) -> int:
    """Session count bought: explicit tier, else metadata purchaseTier/sessionCount, else the default."""
    for candidate in (payload.tier, payload.metadata.get("purchaseTier"), payload.metadata.get("sessionCount")):
        try:
            value = int(candidate)
        except (TypeError, ValueError):
            continue
        if value > 0:
            return value
    return default_tier


def merge_purchase_metadata(
    payment_metadata: dict[str, Any] | None,
    event_metadata: dict[str, Any],
    course_id: str,
    tier: int,
) -> dict[str, Any]:
    """Payment record first, event metadata overrides; schedule hints are lifted to the top level."""
    merged = {**(payment_metadata or {}), **event_metadata}
    schedule = merged.get("schedule") if isinstance(merged.get("schedule"), dict) else {}

    merged["courseId"] = course_id
    merged["purchaseTier"] = tier
    merged["sessionCount"] = tier
    if not merged.get("startDate") and schedule.get("startDate"):
        merged["startDate"] = schedule["startDate"]
    if not merged.get("timeSlot") and schedule.get("timeSlot"):
        merged["timeSlot"] = schedule["timeSlot"]
    if not merged.get("daysOfWeek") and schedule.get("daysOfWeek"):
        merged["daysOfWeek"] = schedule["daysOfWeek"]
    return merged


async def insert_purchase(session: AsyncSession, values: dict[str, Any]) -> Created | AlreadyExists:
    """Insert an active purchase, or return the existing active one for the same (student, course)."""
    new_id = await insert_or_ignore(session, Purchase.__table__, values, Purchase.id)
    if new_id is not None:
        return Created(new_id)

    result = await session.execute(
        select(Purchase.id).where(
            Purchase.student_id == values["student_id"],
            Purchase.course_id == values["course_id"],
            Purchase.is_active.is_(True),
        )
    )
    return AlreadyExists(result.scalar_one())


class PurchaseMaterializer:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        emitter: IdempotentEmitter,
        settings: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._emitter = emitter
        self._settings = settings or get_settings()

    async def handle(self, envelope: EventEnvelope) -> Created | AlreadyExists | Duplicate:
        payload = envelope.payload_as(PurchaseConfirmedPayload)
        created_event_id = derive_event_id(envelope.correlation_id, EventType.PURCHASE_CREATED)

        async with self._session_factory() as session:
            async with session.begin():
                if await has_processed(session, envelope.correlation_id, envelope.type, envelope.event_id):
                    duplicate = True
                else:
                    duplicate = False
                    result, outgoing, staged = await self._materialize(session, envelope, payload, created_event_id)

        if duplicate:
            # A previous attempt committed; make sure its event reached the log
            await self._emitter.flush(created_event_id)
            logger.info("purchase_confirmed_duplicate_skipped", payment_id=payload.payment_id)
            return Duplicate(envelope.event_id)

        if staged:
            await self._emitter.publish(outgoing)
        else:
            await self._emitter.flush(outgoing.event_id)

        logger.info(
            "purchase_materialized",
            purchase_id=str(result.id),
            outcome=type(result).__name__,
            student_id=payload.student_id,
            course_id=payload.course_id,
        )
        return result

    async def _materialize(
        self,
        session: AsyncSession,
        envelope: EventEnvelope,
        payload: PurchaseConfirmedPayload,
        created_event_id: str,
    ) -> tuple[Created | AlreadyExists, EventEnvelope, bool]:
        tier = resolve_tier(payload, self._settings.default_tier)
        payment_metadata = await self._payment_metadata(session, payload)
        metadata = merge_purchase_metadata(payment_metadata, payload.metadata, payload.course_id, tier)

        result = await insert_purchase(
            session,
            {
                "student_id": payload.student_id,
                "course_id": payload.course_id,
                "payment_id": payload.payment_id,
                "correlation_id": envelope.correlation_id,
                "tier": tier,
                "metadata": metadata,
                "is_active": True,
            },
        )

        if isinstance(result, AlreadyExists):
            # Describe the purchase that actually exists
            purchase = await session.get(Purchase, result.id)
            tier, metadata = purchase.tier, purchase.metadata_
            logger.info("purchase_already_exists", purchase_id=str(result.id), student_id=payload.student_id)

        await mark_processed(session, envelope, SOURCE)

        outgoing = new_envelope(
            EventType.PURCHASE_CREATED,
            PurchaseCreatedPayload(
                purchase_id=result.id,
                student_id=payload.student_id,
                course_id=payload.course_id,
                tier=tier,
                metadata=metadata,
            ),
            correlation_id=envelope.correlation_id,
            source=SOURCE,
            event_id=created_event_id,
        )
        staged = await self._emitter.stage(session, outgoing)
        return result, outgoing, staged

    async def _payment_metadata(self, session: AsyncSession, payload: PurchaseConfirmedPayload) -> dict[str, Any] | None:
        result = await session.execute(
            select(Payment.metadata_).where(
                Payment.id == payload.payment_id,
                Payment.student_id == payload.student_id,
                Payment.status == "succeeded",
            )
        )
        metadata = result.scalar_one_or_none()
        if metadata is None:
            logger.warning("payment_record_not_found", payment_id=payload.payment_id)
        return metadata
