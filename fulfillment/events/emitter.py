"""Idempotent emitter: persist the event, then publish it.

An event is written to ``event_outbox`` (keyed by event id) before it is
published, so a crash between the two never loses it: ``sweep`` republishes
anything persisted but unpublished. Staging the same event id twice is a
no-op, and emitting an already-published event does nothing.

Stages that produce an event as part of a business write call ``stage`` inside
their own transaction and ``publish`` after commit, so the effect and the
intent to publish commit atomically.
"""

from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.config import Settings, get_settings
from fulfillment.core.exceptions import EventPublishError
from fulfillment.db.conflict import insert_or_ignore
from fulfillment.db.models import OutboxEvent
from fulfillment.events.envelope import EventEnvelope
from fulfillment.events.log import EventLog, topic_for

logger = structlog.get_logger(__name__)


class IdempotentEmitter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_log: EventLog,
        settings: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._log = event_log
        self._settings = settings or get_settings()

    async def stage(self, session: AsyncSession, envelope: EventEnvelope) -> bool:
        """Persist the event in the caller's transaction. Returns False if it was already staged."""
        inserted = await insert_or_ignore(
            session,
            OutboxEvent.__table__,
            {
                "event_id": envelope.event_id,
                "correlation_id": envelope.correlation_id,
                "event_type": envelope.type,
                "topic": topic_for(envelope.type, self._settings),
                "envelope": envelope.to_wire(),
                "publish_attempts": 0,
                "created_at": datetime.now(UTC),
            },
            OutboxEvent.event_id,
        )
        if inserted is None:
            logger.debug("outbox_event_already_staged", event_id=envelope.event_id, event_type=envelope.type)
            return False
        return True

    async def publish(self, envelope: EventEnvelope) -> None:
        """Publish a staged event and mark it published. Raises EventPublishError on failure."""
        await self._publish(
            envelope.event_id,
            topic_for(envelope.type, self._settings),
            envelope.correlation_id,
            envelope.to_wire(),
        )

    async def emit(self, envelope: EventEnvelope) -> None:
        """Persist then publish; a repeat call with the same event id is a no-op once published."""
        async with self._session_factory() as session:
            async with session.begin():
                await self.stage(session, envelope)
        await self.flush(envelope.event_id)

    async def flush(self, event_id: str) -> bool:
        """Publish a persisted event if it has not been published yet.

        Returns True when a publish happened.
        """
        async with self._session_factory() as session:
            row = await session.get(OutboxEvent, event_id)
            if row is None or row.published_at is not None:
                return False
            topic, key, value = row.topic, row.correlation_id, row.envelope

        await self._publish(event_id, topic, key, value)
        return True

    async def sweep(self, now: datetime | None = None) -> int:
        """Republish persisted-but-unpublished events older than the grace period.

        Returns the number of events published. A failing event is logged and
        left for the next sweep.
        """
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(seconds=self._settings.outbox_grace_seconds)

        async with self._session_factory() as session:
            result = await session.execute(
                select(OutboxEvent.event_id, OutboxEvent.topic, OutboxEvent.correlation_id, OutboxEvent.envelope)
                .where(OutboxEvent.published_at.is_(None), OutboxEvent.created_at <= cutoff)
                .order_by(OutboxEvent.created_at)
                .limit(self._settings.outbox_batch_size)
            )
            pending = result.all()

        published = 0
        for event_id, topic, key, value in pending:
            try:
                await self._publish(event_id, topic, key, value)
                published += 1
            except EventPublishError:
                logger.warning("outbox_sweep_publish_failed", event_id=event_id, topic=topic)

        if pending:
            logger.info("outbox_sweep_complete", pending=len(pending), published=published)
        return published

    async def _publish(self, event_id: str, topic: str, key: str, value: dict) -> None:
        headers = {
            "eventId": event_id,
            "correlationId": key,
            "eventType": value.get("type", ""),
            "source": value.get("source", ""),
        }
        try:
            await self._log.publish(topic, key=key, value=value, headers=headers)
        except EventPublishError as exc:
            await self._record_failure(event_id, str(exc))
            raise

        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.event_id == event_id, OutboxEvent.published_at.is_(None))
                    .values(
                        published_at=datetime.now(UTC),
                        publish_attempts=OutboxEvent.publish_attempts + 1,
                        last_error=None,
                    )
                )
        logger.info("event_published", event_id=event_id, topic=topic, event_type=value.get("type"))

    async def _record_failure(self, event_id: str, error: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.event_id == event_id)
                    .values(publish_attempts=OutboxEvent.publish_attempts + 1, last_error=error)
                )
