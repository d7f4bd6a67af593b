"""Wiring of the consumers and timers each stage's process runs."""

from collections.abc import Callable

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.config import Settings
from fulfillment.events.emitter import IdempotentEmitter
from fulfillment.events.envelope import EventType
from fulfillment.events.log import EventLog
from fulfillment.integrations.tutor_matching import HttpTutorMatcher, TutorMatcher
from fulfillment.ledger.dead_letter import DeadLetterSink
from fulfillment.ledger.retry import RetryPolicy
from fulfillment.services.allocation_coordinator import AllocationCoordinator
from fulfillment.services.cache_invalidator import INVALIDATING_EVENTS, CacheInvalidator
from fulfillment.services.purchase_materializer import PurchaseMaterializer
from fulfillment.services.session_scheduler import SessionScheduler
from fulfillment.workers.consumer import StageConsumer, build_kafka_consumer
from fulfillment.workers.ticker import PeriodicTask

STAGES = ("materializer", "allocator", "scheduler", "cache", "outbox")


def build_runnables(
    stage: str,
    session_factory: async_sessionmaker[AsyncSession],
    event_log: EventLog,
    settings: Settings,
    redis_client: redis.Redis | None = None,
    matcher: TutorMatcher | None = None,
    consumer_factory: Callable = build_kafka_consumer,
) -> list[StageConsumer | PeriodicTask]:
    """Wire the consumers and timers one stage's process runs."""
    emitter = IdempotentEmitter(session_factory, event_log, settings)
    dead_letters = DeadLetterSink(session_factory)

    if stage == "materializer":
        materializer = PurchaseMaterializer(session_factory, emitter, settings)
        return [
            StageConsumer(
                stage,
                {EventType.PURCHASE_CONFIRMED: materializer.handle},
                RetryPolicy.for_stage(stage, settings),
                dead_letters,
                consumer_factory([settings.topic_purchase_confirmed], settings.group_materializer, settings),
            )
        ]

    if stage == "allocator":
        coordinator = AllocationCoordinator(session_factory, emitter, matcher or HttpTutorMatcher(), settings)
        return [
            StageConsumer(
                stage,
                {EventType.PURCHASE_CREATED: coordinator.handle},
                RetryPolicy.for_stage(stage, settings),
                dead_letters,
                consumer_factory([settings.topic_purchase_created], settings.group_allocator, settings),
            )
        ]

    if stage == "scheduler":
        scheduler = SessionScheduler(session_factory, emitter, settings)
        return [
            StageConsumer(
                stage,
                {EventType.TRAINER_ALLOCATED: scheduler.handle},
                RetryPolicy.for_stage(stage, settings),
                dead_letters,
                consumer_factory([settings.topic_trainer_allocated], settings.group_scheduler, settings),
            ),
            PeriodicTask(
                "session_top_up",
                settings.top_up_interval_seconds,
                scheduler.top_up_all,
                on_stop=scheduler.request_stop,
            ),
        ]

    if stage == "cache":
        if redis_client is None:
            raise ValueError("cache stage needs a Redis client")
        invalidator = CacheInvalidator(redis_client, session_factory, settings)
        return [
            StageConsumer(
                stage,
                {event_type: invalidator.handle for event_type in INVALIDATING_EVENTS},
                RetryPolicy.for_stage(stage, settings),
                None,  # cache failures never dead-letter
                consumer_factory(
                    [
                        settings.topic_purchase_created,
                        settings.topic_trainer_allocated,
                        settings.topic_sessions_generated,
                    ],
                    settings.group_cache,
                    settings,
                ),
            )
        ]

    if stage == "outbox":
        return [PeriodicTask("outbox_sweep", settings.outbox_sweep_interval_seconds, emitter.sweep)]

    raise ValueError(f"Unknown stage '{stage}'")
