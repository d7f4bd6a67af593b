"""Stage consumer: reads one record at a time, handles it, commits its offset.

Each record goes through:
  1. envelope parsing and handler lookup (malformed/unknown -> give up at once)
  2. the handler under the stage's retry budget
  3. on exhaustion, the dead-letter sink (or a warning, for stages that never
     dead-letter)

The offset is committed only after the record is fully dealt with, so a crash
mid-record means redelivery, which the handlers' dedup gate absorbs. On stop
the current record finishes and the consumer leaves its group before exiting.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from aiokafka import AIOKafkaConsumer

from fulfillment.core.config import Settings, get_settings
from fulfillment.core.exceptions import PermanentEventError, RetryLimitExceededError, UnknownEventTypeError
from fulfillment.core.logging import event_context
from fulfillment.events.envelope import EventEnvelope, EventType, parse_envelope, raw_to_dict
from fulfillment.ledger.dead_letter import DeadLetterSink
from fulfillment.ledger.retry import RetryPolicy, run_with_budget

logger = structlog.get_logger(__name__)

Handler = Callable[[EventEnvelope], Awaitable[Any]]

HANDLED = "handled"
DEAD_LETTERED = "dead_lettered"
DROPPED = "dropped"


def build_kafka_consumer(topics: list[str], group_id: str, settings: Settings | None = None) -> AIOKafkaConsumer:
    settings = settings or get_settings()
    return AIOKafkaConsumer(
        *topics,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        client_id=f"{settings.kafka_client_id}-{group_id}",
        group_id=group_id,
        enable_auto_commit=False,  # commit after each record is handled
        auto_offset_reset=settings.kafka_auto_offset_reset,
        session_timeout_ms=settings.kafka_session_timeout_ms,
        heartbeat_interval_ms=settings.kafka_heartbeat_interval_ms,
    )


class StageConsumer:
    def __init__(
        self,
        stage: str,
        handlers: dict[EventType, Handler],
        policy: RetryPolicy,
        dead_letters: DeadLetterSink | None,
        consumer: AIOKafkaConsumer | None = None,
        poll_timeout_ms: int = 1000,
    ):
        self.stage = stage
        self._handlers = handlers
        self._policy = policy
        self._dead_letters = dead_letters
        self._consumer = consumer
        self._poll_timeout_ms = poll_timeout_ms
        self._stop = asyncio.Event()
        self._log = logger.bind(stage=stage)

    def request_stop(self) -> None:
        """Stop after the record in flight; no new record is started."""
        if not self._stop.is_set():
            self._log.info("stage_consumer_stop_requested")
        self._stop.set()

    async def run(self) -> None:
        if self._consumer is None:
            raise RuntimeError("StageConsumer.run() needs a log consumer")

        await self._consumer.start()
        self._log.info("stage_consumer_started")
        try:
            while not self._stop.is_set():
                batches = await self._consumer.getmany(timeout_ms=self._poll_timeout_ms, max_records=1)
                for tp, records in batches.items():
                    for record in records:
                        await self.process(record)
                        await self._consumer.commit({tp: record.offset + 1})
        finally:
            # Leaves the consumer group so partitions are reassigned
            await self._consumer.stop()
            self._log.info("stage_consumer_stopped")

    async def process(self, record: Any) -> str:
        """Handle one log record; returns HANDLED, DEAD_LETTERED or DROPPED."""
        try:
            envelope = parse_envelope(record.value)
            handler = self._handlers.get(envelope.event_type)
            if handler is None:
                raise UnknownEventTypeError(envelope.type)
        except PermanentEventError as exc:
            return await self._give_up(record, exc, attempts=1)

        with event_context(envelope, self.stage):
            try:
                result = await run_with_budget(self.stage, self._policy, lambda: handler(envelope))
            except RetryLimitExceededError as exc:
                return await self._give_up(record, exc, attempts=exc.attempts)
            except PermanentEventError as exc:
                return await self._give_up(record, exc, attempts=1)

            self._log.info("event_handled", outcome=type(result).__name__)
            return HANDLED

    async def _give_up(self, record: Any, error: BaseException, attempts: int) -> str:
        original = raw_to_dict(record.value)
        if self._dead_letters is None:
            self._log.warning(
                "event_dropped",
                event_id=original.get("eventId"),
                attempts=attempts,
                error=str(error),
                error_type=type(error).__name__,
            )
            return DROPPED

        await self._dead_letters.record(
            original,
            consumer=self.stage,
            error=error,
            attempts=attempts,
            topic=getattr(record, "topic", None),
            partition=getattr(record, "partition", None),
            offset=getattr(record, "offset", None),
        )
        return DEAD_LETTERED
