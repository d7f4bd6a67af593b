"""Dead-letter sink: events a stage gave up on.

An event lands here exactly once per consuming stage (unique on event id and
consumer), tagged with the final error and the number of attempts made.
Replaying re-appends the original envelope to its topic and stamps
``replayed_at``; the consumer's dedup gate keeps the replay safe. A replay
that fails again refreshes the existing row and clears ``replayed_at`` so the
event is listed for replay once more.
"""

import uuid
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.exceptions import RetryLimitExceededError
from fulfillment.db.conflict import insert_or_ignore
from fulfillment.db.models import DeadLetter
from fulfillment.domain.results import AlreadyExists, Created
from fulfillment.events.log import EventLog

logger = structlog.get_logger(__name__)


def _final_error(error: BaseException) -> BaseException:
    if isinstance(error, RetryLimitExceededError) and error.last_error is not None:
        return error.last_error
    return error


class DeadLetterSink:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def record(
        self,
        original_event: dict[str, Any],
        consumer: str,
        error: BaseException,
        attempts: int,
        topic: str | None = None,
        partition: int | None = None,
        offset: int | None = None,
    ) -> Created | AlreadyExists:
        final = _final_error(error)
        event_id = original_event.get("eventId") or _position_id(topic, partition, offset, original_event)
        failure = {
            "error": str(final) or type(final).__name__,
            "error_type": type(final).__name__,
            "attempt_count": attempts,
            "failed_at": datetime.now(UTC),
        }
        position = {"topic": topic, "log_partition": partition, "log_offset": offset}

        async with self._session_factory() as session:
            async with session.begin():
                new_id = await insert_or_ignore(
                    session,
                    DeadLetter.__table__,
                    {
                        "id": uuid.uuid4(),
                        "event_id": str(event_id),
                        "correlation_id": original_event.get("correlationId"),
                        "event_type": original_event.get("type"),
                        "consumer": consumer,
                        "original_event": original_event,
                        **failure,
                        **position,
                    },
                    DeadLetter.id,
                )
                if new_id is None:
                    existing = await session.execute(
                        select(DeadLetter.id).where(DeadLetter.event_id == str(event_id), DeadLetter.consumer == consumer)
                    )
                    existing_id = existing.scalar_one()
                    # Keep the recorded position when the new failure has none
                    refreshed = {**failure, "replayed_at": None}
                    if topic is not None:
                        refreshed.update(position)
                    await session.execute(update(DeadLetter).where(DeadLetter.id == existing_id).values(**refreshed))
                    logger.error(
                        "dead_letter_refailed",
                        dead_letter_id=str(existing_id),
                        event_id=event_id,
                        consumer=consumer,
                        attempts=attempts,
                        error=failure["error"],
                        error_type=failure["error_type"],
                    )
                    return AlreadyExists(existing_id)

        logger.error(
            "dead_letter_recorded",
            dead_letter_id=str(new_id),
            event_id=event_id,
            consumer=consumer,
            attempts=attempts,
            error=str(final),
            error_type=type(final).__name__,
        )
        return Created(new_id)

    async def get(self, dead_letter_id: uuid.UUID) -> DeadLetter | None:
        async with self._session_factory() as session:
            return await session.get(DeadLetter, dead_letter_id)

    async def list_dead_letters(self, consumer: str | None = None, include_replayed: bool = False, limit: int = 100) -> list[DeadLetter]:
        async with self._session_factory() as session:
            stmt = select(DeadLetter).order_by(DeadLetter.failed_at.desc()).limit(limit)
            if consumer is not None:
                stmt = stmt.where(DeadLetter.consumer == consumer)
            if not include_replayed:
                stmt = stmt.where(DeadLetter.replayed_at.is_(None))
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def replay(self, dead_letter_id: uuid.UUID, event_log: EventLog) -> DeadLetter | None:
        """Republish the original event to the topic it was read from.

        Returns the updated row, or None if no such dead letter exists.
        """
        async with self._session_factory() as session:
            row = await session.get(DeadLetter, dead_letter_id)
            if row is None:
                return None
            if row.topic is None:
                raise ValueError(f"Dead letter {dead_letter_id} has no source topic to replay to")

            key = row.correlation_id or row.event_id
            await event_log.publish(
                row.topic,
                key=key,
                value=row.original_event,
                headers={"eventId": row.event_id, "replayOf": str(row.id)},
            )
            row.replayed_at = datetime.now(UTC)
            await session.commit()

        logger.info("dead_letter_replayed", dead_letter_id=str(dead_letter_id), event_id=row.event_id, topic=row.topic)
        return row


def _position_id(topic: str | None, partition: int | None, offset: int | None, original_event: dict[str, Any]) -> str:
    # Malformed events may carry no eventId: identify them by log position
    if topic is not None and offset is not None:
        return f"{topic}:{partition or 0}:{offset}"
    return str(uuid.uuid5(uuid.NAMESPACE_OID, repr(sorted(original_event.items()))))
