"""Event log client.

The log is partitioned by correlation id (the record key), so every event of
one purchase lifecycle lands on the same partition and is consumed in order.
One topic per event type.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import structlog
from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from fulfillment.core.config import Settings, get_settings
from fulfillment.core.exceptions import EventPublishError
from fulfillment.events.envelope import EventType

logger = structlog.get_logger(__name__)


def topic_for(event_type: EventType | str, settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    topics = {
        EventType.PURCHASE_CONFIRMED: settings.topic_purchase_confirmed,
        EventType.PURCHASE_CREATED: settings.topic_purchase_created,
        EventType.TRAINER_ALLOCATED: settings.topic_trainer_allocated,
        EventType.SESSIONS_GENERATED: settings.topic_sessions_generated,
    }
    return topics[EventType(event_type)]


@dataclass
class LogRecord:
    """A record as read from the log (same attribute names as aiokafka's ConsumerRecord)."""

    topic: str
    key: bytes | None
    value: bytes
    partition: int = 0
    offset: int = 0
    headers: list[tuple[str, bytes]] = field(default_factory=list)


@runtime_checkable
class EventLog(Protocol):
    """Publishing side of the event log."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def publish(self, topic: str, key: str, value: dict[str, Any], headers: dict[str, str] | None = None) -> None:
        """Append one record; raises EventPublishError when the log does not acknowledge it."""
        ...


def _encode_headers(headers: dict[str, str] | None) -> list[tuple[str, bytes]]:
    return [(k, v.encode("utf-8")) for k, v in (headers or {}).items()]


class KafkaEventLog:
    """EventLog backed by an aiokafka producer (acks from all in-sync replicas)."""

    def __init__(self, bootstrap_servers: str | None = None, client_id: str | None = None):
        settings = get_settings()
        self._producer = AIOKafkaProducer(
            bootstrap_servers=bootstrap_servers or settings.kafka_bootstrap_servers,
            client_id=client_id or settings.kafka_client_id,
            acks="all",
            enable_idempotence=True,
            value_serializer=lambda v: json.dumps(v).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k else None,
        )

    async def start(self) -> None:
        logger.info("kafka_producer_starting")
        await self._producer.start()
        logger.info("kafka_producer_started")

    async def stop(self) -> None:
        logger.info("kafka_producer_stopping")
        await self._producer.stop()
        logger.info("kafka_producer_stopped")

    async def publish(self, topic: str, key: str, value: dict[str, Any], headers: dict[str, str] | None = None) -> None:
        try:
            await self._producer.send_and_wait(topic, value, key=key, headers=_encode_headers(headers))
        except KafkaError as exc:
            logger.error("kafka_publish_failed", topic=topic, key=key, error=str(exc), error_type=type(exc).__name__)
            raise EventPublishError(f"Failed to publish to '{topic}': {exc}") from exc


class InMemoryEventLog:
    """EventLog keeping records in memory, for tests and single-process local runs.

    ``fail_next(n)`` makes the next n publishes raise EventPublishError, to
    exercise the outbox sweep.
    """

    def __init__(self):
        self.records: list[LogRecord] = []
        self._failures_remaining = 0
        self.started = False

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    def fail_next(self, count: int = 1) -> None:
        self._failures_remaining = count

    async def publish(self, topic: str, key: str, value: dict[str, Any], headers: dict[str, str] | None = None) -> None:
        if self._failures_remaining > 0:
            self._failures_remaining -= 1
            raise EventPublishError(f"Simulated publish failure on '{topic}'")
        offset = sum(1 for r in self.records if r.topic == topic)
        self.records.append(
            LogRecord(
                topic=topic,
                key=key.encode("utf-8") if key else None,
                value=json.dumps(value).encode("utf-8"),
                offset=offset,
                headers=_encode_headers(headers),
            )
        )

    def on_topic(self, topic: str) -> list[LogRecord]:
        return [r for r in self.records if r.topic == topic]

    def envelopes(self, topic: str) -> list[dict[str, Any]]:
        return [json.loads(r.value) for r in self.on_topic(topic)]
