"""Processed-events ledger: the dedup gate every stage passes through.

``has_processed`` is checked before any side effect; ``mark_processed`` is
written in the same transaction as the business write, so a crash either
loses both or keeps both. The (correlation_id, event_type) unique constraint
makes a concurrent second mark a no-op.
"""

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.db.conflict import insert_or_ignore
from fulfillment.db.models import ProcessedEvent
from fulfillment.events.envelope import EventEnvelope


async def has_processed(session: AsyncSession, correlation_id: str, event_type: str, event_id: str | None = None) -> bool:
    """Return True if this (correlation_id, event_type), or this exact event id, was already handled."""
    clause = (ProcessedEvent.correlation_id == correlation_id) & (ProcessedEvent.event_type == event_type)
    if event_id is not None:
        clause = or_(clause, ProcessedEvent.event_id == event_id)
    result = await session.execute(select(ProcessedEvent.event_id).where(clause).limit(1))
    return result.scalar_one_or_none() is not None


async def mark_processed(session: AsyncSession, envelope: EventEnvelope, source: str) -> bool:
    """Record the event as handled. Returns False if another attempt recorded it first."""
    inserted = await insert_or_ignore(
        session,
        ProcessedEvent.__table__,
        {
            "event_id": envelope.event_id,
            "event_type": envelope.type,
            "correlation_id": envelope.correlation_id,
            "payload": envelope.payload,
            "source": source,
            "version": envelope.version,
        },
        ProcessedEvent.event_id,
    )
    return inserted is not None
