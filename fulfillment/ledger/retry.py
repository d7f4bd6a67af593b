"""Per-stage retry budgets.

Transient failures are retried with exponential backoff up to the stage's
attempt budget. Permanent failures (malformed or unknown events) are never
retried. Exhausting the budget raises RetryLimitExceededError carrying the
final error, which the consumer turns into a dead-letter entry.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from fulfillment.core.config import Settings
from fulfillment.core.exceptions import PermanentEventError, RetryLimitExceededError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, Exception) and not isinstance(exc, PermanentEventError)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def retrying(self, stage: str) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.initial_delay, exp_base=self.multiplier, max=self.max_delay),
            reraise=True,
            before_sleep=lambda rs: logger.warning(
                "stage_attempt_failed_retrying",
                stage=stage,
                attempt=rs.attempt_number,
                max_attempts=self.max_attempts,
                error=str(rs.outcome.exception()),
                error_type=type(rs.outcome.exception()).__name__,
            ),
        )

    @classmethod
    def for_stage(cls, stage: str, settings: Settings) -> "RetryPolicy":
        if stage == "materializer":
            return cls(
                settings.materializer_max_attempts,
                settings.retry_initial_delay_seconds,
                settings.retry_max_delay_seconds,
                settings.retry_multiplier,
            )
        if stage == "allocator":
            return cls(
                settings.allocator_max_attempts,
                settings.allocator_initial_delay_seconds,
                settings.allocator_max_delay_seconds,
                settings.retry_multiplier,
            )
        if stage == "scheduler":
            return cls(
                settings.scheduler_max_attempts,
                settings.retry_initial_delay_seconds,
                settings.retry_max_delay_seconds,
                settings.retry_multiplier,
            )
        if stage == "cache":
            return cls(
                settings.cache_max_attempts,
                settings.cache_retry_delay_seconds,
                settings.cache_retry_delay_seconds * 4,
                settings.retry_multiplier,
            )
        raise ValueError(f"Unknown stage '{stage}'")


async def run_with_budget(stage: str, policy: RetryPolicy, operation: Callable[[], Awaitable[T]]) -> T:
    """Run ``operation`` under ``policy``.

    PermanentEventError propagates after the first attempt. Any other error
    that survives the budget is raised as RetryLimitExceededError.
    """
    attempts = 0
    try:
        async for attempt in policy.retrying(stage):
            with attempt:
                attempts = attempt.retry_state.attempt_number
                result = await operation()
    except PermanentEventError:
        raise
    except Exception as exc:
        raise RetryLimitExceededError(stage, attempts, exc) from exc
    return result
