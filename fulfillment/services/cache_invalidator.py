"""Cache invalidator: evicts a student's read-model cache entries.

Deleting a key is safe to repeat, so this stage does not use the processed-
events ledger. Failures are retried on a short budget, logged and swallowed:
a stale cache heals on its own TTL and must never block or dead-letter the
fulfillment chain.
"""

import uuid

import redis.asyncio as redis
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.config import Settings, get_settings
from fulfillment.core.exceptions import MalformedEventError, RetryLimitExceededError
from fulfillment.db.models import Allocation
from fulfillment.events.envelope import EventEnvelope, EventType
from fulfillment.ledger.retry import RetryPolicy, run_with_budget

logger = structlog.get_logger(__name__)

STUDENT_CACHE_KEYS = (
    "student:home:{student_id}",
    "student:learning:{student_id}",
)

INVALIDATING_EVENTS = (
    EventType.PURCHASE_CREATED,
    EventType.TRAINER_ALLOCATED,
    EventType.SESSIONS_GENERATED,
)


def student_cache_keys(student_id: str) -> list[str]:
    return [template.format(student_id=student_id) for template in STUDENT_CACHE_KEYS]


class CacheInvalidator:
    def __init__(
        self,
        redis_client: redis.Redis,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ):
        self._redis = redis_client
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._policy = RetryPolicy.for_stage("cache", self._settings)

    async def handle(self, envelope: EventEnvelope) -> list[str]:
        """Delete the student's cache keys. Returns the keys that were invalidated."""
        if envelope.event_type not in INVALIDATING_EVENTS:
            logger.debug("cache_invalidation_not_applicable", event_type=envelope.type)
            return []

        student_id = await self._student_id(envelope)
        if not student_id:
            logger.warning("cache_invalidation_no_student", event_type=envelope.type, event_id=envelope.event_id)
            return []

        invalidated = []
        for key in student_cache_keys(student_id):
            try:
                await run_with_budget("cache", self._policy, lambda key=key: self._redis.delete(key))
            except RetryLimitExceededError as exc:
                logger.warning(
                    "cache_key_invalidation_failed",
                    key=key,
                    attempts=exc.attempts,
                    error=str(exc.last_error),
                    error_type=type(exc.last_error).__name__,
                )
                continue
            invalidated.append(key)

        logger.info("student_cache_invalidated", student_id=student_id, keys=invalidated, event_type=envelope.type)
        return invalidated

    async def _student_id(self, envelope: EventEnvelope) -> str | None:
        student_id = envelope.payload.get("studentId")
        if student_id:
            return str(student_id)

        # Older SessionsGenerated events only carry the allocation
        allocation_id = envelope.payload.get("allocationId")
        if not allocation_id or self._session_factory is None:
            return None
        try:
            allocation_uuid = uuid.UUID(str(allocation_id))
        except ValueError as exc:
            raise MalformedEventError(f"Invalid allocationId '{allocation_id}'") from exc

        async with self._session_factory() as session:
            result = await session.execute(select(Allocation.student_id).where(Allocation.id == allocation_uuid))
            return result.scalar_one_or_none()
