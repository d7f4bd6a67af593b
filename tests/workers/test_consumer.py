"""Test StageConsumer — per-record handling, retry budgets, dead-lettering and offset commits."""

import json
import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiokafka.structs import TopicPartition
from sqlalchemy import select

from fulfillment.core.exceptions import MalformedEventError
from fulfillment.db.models import DeadLetter
from fulfillment.events.envelope import EventType
from fulfillment.events.log import LogRecord
from fulfillment.ledger.retry import RetryPolicy
from fulfillment.services.allocation_coordinator import AllocationCoordinator
from fulfillment.workers.consumer import DEAD_LETTERED, DROPPED, HANDLED, StageConsumer

pytestmark = pytest.mark.unit


def _record(value, topic="purchase-created", offset=0) -> LogRecord:
    raw = value if isinstance(value, bytes) else json.dumps(value).encode("utf-8")
    return LogRecord(topic=topic, key=b"corr-001", value=raw, offset=offset)


def _envelope(event_type="PurchaseCreated", payload=None, event_id=None) -> dict:
    return {
        "eventId": event_id or str(uuid.uuid4()),
        "correlationId": "corr-001",
        "type": event_type,
        "source": "purchase-materializer",
        "version": "1.0.0",
        "emittedAt": datetime.now(UTC).isoformat(),
        "payload": payload or {},
    }


async def _dead_letters(session_factory) -> list[DeadLetter]:
    async with session_factory() as session:
        return list((await session.execute(select(DeadLetter))).scalars().all())


class TestProcess:
    @pytest.mark.asyncio
    async def test_handled_record(self, dead_letters, settings):
        handler = AsyncMock(return_value="ok")
        consumer = StageConsumer(
            "materializer",
            {EventType.PURCHASE_CREATED: handler},
            RetryPolicy.for_stage("materializer", settings),
            dead_letters,
        )

        outcome = await consumer.process(_record(_envelope()))

        assert outcome == HANDLED
        handler.assert_awaited_once()
        assert handler.await_args.args[0].type == "PurchaseCreated"

    @pytest.mark.asyncio
    async def test_undecodable_record_dead_lettered_without_retry(self, dead_letters, session_factory, settings):
        handler = AsyncMock()
        consumer = StageConsumer(
            "materializer",
            {EventType.PURCHASE_CONFIRMED: handler},
            RetryPolicy.for_stage("materializer", settings),
            dead_letters,
        )

        outcome = await consumer.process(_record(b"{not json", topic="purchase-confirmed", offset=41))

        assert outcome == DEAD_LETTERED
        handler.assert_not_awaited()
        [row] = await _dead_letters(session_factory)
        assert row.event_id == "purchase-confirmed:0:41"
        assert row.error_type == "MalformedEventError"
        assert row.attempt_count == 1
        assert row.original_event == {"raw": "{not json"}

    @pytest.mark.asyncio
    async def test_unknown_event_type_dead_lettered(self, dead_letters, session_factory, settings):
        consumer = StageConsumer(
            "materializer",
            {EventType.PURCHASE_CONFIRMED: AsyncMock()},
            RetryPolicy.for_stage("materializer", settings),
            dead_letters,
        )

        outcome = await consumer.process(_record(_envelope("RefundIssued", event_id="evt-refund-1")))

        assert outcome == DEAD_LETTERED
        [row] = await _dead_letters(session_factory)
        assert row.event_id == "evt-refund-1"
        assert row.error_type == "UnknownEventTypeError"
        assert row.consumer == "materializer"

    @pytest.mark.asyncio
    async def test_known_type_without_handler_in_this_stage_is_dead_lettered(
        self, dead_letters, session_factory, settings
    ):
        consumer = StageConsumer(
            "scheduler",
            {EventType.TRAINER_ALLOCATED: AsyncMock()},
            RetryPolicy.for_stage("scheduler", settings),
            dead_letters,
        )

        outcome = await consumer.process(_record(_envelope("PurchaseCreated")))

        assert outcome == DEAD_LETTERED
        [row] = await _dead_letters(session_factory)
        assert row.error_type == "UnknownEventTypeError"

    @pytest.mark.asyncio
    async def test_permanent_handler_error_is_not_retried(self, dead_letters, session_factory, settings):
        handler = AsyncMock(side_effect=MalformedEventError("Invalid PurchaseCreated payload"))
        consumer = StageConsumer(
            "allocator",
            {EventType.PURCHASE_CREATED: handler},
            RetryPolicy.for_stage("allocator", settings),
            dead_letters,
        )

        outcome = await consumer.process(_record(_envelope()))

        assert outcome == DEAD_LETTERED
        assert handler.await_count == 1
        [row] = await _dead_letters(session_factory)
        assert row.attempt_count == 1

    @pytest.mark.asyncio
    async def test_collaborator_outage_exhausts_budget_then_dead_letters_once(
        self, session_factory, emitter, dead_letters, settings, matcher_factory, event_log
    ):
        """Matcher times out on every call: 5 attempts, one dead letter, no TrainerAllocated."""
        matcher = matcher_factory("timeout")
        coordinator = AllocationCoordinator(session_factory, emitter, matcher, settings)
        consumer = StageConsumer(
            "allocator",
            {EventType.PURCHASE_CREATED: coordinator.handle},
            RetryPolicy.for_stage("allocator", settings),
            dead_letters,
        )
        record = _record(
            _envelope(
                payload={"purchaseId": str(uuid.uuid4()), "studentId": "S1", "courseId": "C1", "tier": 10},
                event_id="evt-created-outage",
            )
        )

        first = await consumer.process(record)
        second = await consumer.process(record)

        assert first == second == DEAD_LETTERED
        assert len(matcher.calls) == 10
        [row] = await _dead_letters(session_factory)
        assert row.attempt_count == 5
        assert row.error_type == "TutorMatchingError"
        assert row.consumer == "allocator"
        assert event_log.on_topic("trainer-allocated") == []

    @pytest.mark.asyncio
    async def test_stage_without_dead_letters_drops(self, settings):
        handler = AsyncMock(side_effect=ConnectionError("redis down"))
        consumer = StageConsumer(
            "cache",
            {EventType.PURCHASE_CREATED: handler},
            RetryPolicy.for_stage("cache", settings),
            None,
        )

        outcome = await consumer.process(_record(_envelope()))

        assert outcome == DROPPED
        assert handler.await_count == settings.cache_max_attempts


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_commits_each_offset_after_handling_and_stops(self, dead_letters, settings):
        tp = TopicPartition("purchase-created", 0)
        records = [_record(_envelope(), offset=7), _record(b"garbage", offset=8)]
        handler = AsyncMock()
        log_consumer = MagicMock()
        log_consumer.start = AsyncMock()
        log_consumer.stop = AsyncMock()
        log_consumer.commit = AsyncMock()

        stage_consumer = StageConsumer(
            "allocator",
            {EventType.PURCHASE_CREATED: handler},
            RetryPolicy.for_stage("allocator", settings),
            dead_letters,
            consumer=log_consumer,
            poll_timeout_ms=10,
        )

        batches = [{tp: [records[0]]}, {tp: [records[1]]}]

        async def getmany(timeout_ms, max_records):
            if batches:
                return batches.pop(0)
            stage_consumer.request_stop()
            return {}

        log_consumer.getmany = AsyncMock(side_effect=getmany)

        await stage_consumer.run()

        log_consumer.start.assert_awaited_once()
        assert [c.args[0] for c in log_consumer.commit.await_args_list] == [{tp: 8}, {tp: 9}]
        log_consumer.stop.assert_awaited_once()
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_consumer_is_stopped_when_handling_crashes(self, settings):
        tp = TopicPartition("purchase-created", 0)
        log_consumer = MagicMock()
        log_consumer.start = AsyncMock()
        log_consumer.stop = AsyncMock()
        log_consumer.commit = AsyncMock()
        log_consumer.getmany = AsyncMock(return_value={tp: [_record(_envelope(), offset=3)]})
        broken_sink = MagicMock()
        broken_sink.record = AsyncMock(side_effect=ConnectionError("database unavailable"))

        stage_consumer = StageConsumer(
            "allocator",
            {EventType.PURCHASE_CREATED: AsyncMock(side_effect=ConnectionError("matcher down"))},
            RetryPolicy(max_attempts=1, initial_delay=0, max_delay=0),
            broken_sink,
            consumer=log_consumer,
        )

        with pytest.raises(ConnectionError, match="database unavailable"):
            await stage_consumer.run()

        # The record was never dealt with, so its offset stays uncommitted
        log_consumer.commit.assert_not_awaited()
        log_consumer.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_without_consumer_raises(self, dead_letters, settings):
        stage_consumer = StageConsumer("allocator", {}, RetryPolicy(max_attempts=1), dead_letters)

        with pytest.raises(RuntimeError):
            await stage_consumer.run()
