"""Worker process entry point.

    python -m fulfillment.workers.runner materializer|allocator|scheduler|cache|outbox

Each stage runs as its own process; run several per stage to scale out, the
consumer group spreads partitions between them. SIGTERM/SIGINT let the record
in flight finish, then the process leaves its group and exits.
"""

import argparse
import asyncio
import signal

# configure_structlog MUST run before the other fulfillment imports (structlog
# caches the processor chain on first use).
from fulfillment.core.logging import configure_structlog
from fulfillment.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else _early_settings.log_level,
    json_logs=not _early_settings.debug,
)

import structlog  # noqa: E402

from fulfillment.core.config import get_settings  # noqa: E402
from fulfillment.db import close_db, close_redis, create_tables, init_db, init_redis  # noqa: E402
from fulfillment.events.log import KafkaEventLog  # noqa: E402
from fulfillment.workers.stages import STAGES, build_runnables  # noqa: E402

logger = structlog.get_logger(__name__)


async def run_stage(stage: str, create_schema: bool = False) -> None:
    settings = get_settings()
    logger.info("worker_startup_begin", stage=stage)

    session_factory = await init_db()
    if create_schema:
        await create_tables()
    redis_client = await init_redis() if stage == "cache" else None

    event_log = KafkaEventLog()
    await event_log.start()

    runnables = build_runnables(stage, session_factory, event_log, settings, redis_client=redis_client)

    loop = asyncio.get_running_loop()

    def handle_stop_signal() -> None:
        logger.info("stop_signal_received", stage=stage, action="finish_current_record")
        for runnable in runnables:
            runnable.request_stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_stop_signal)

    try:
        await asyncio.gather(*(runnable.run() for runnable in runnables))
    finally:
        logger.info("worker_shutdown_begin", stage=stage)
        await event_log.stop()
        await close_redis()
        await close_db()
        logger.info("worker_shutdown_complete", stage=stage)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run one fulfillment pipeline stage")
    parser.add_argument("stage", choices=STAGES)
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables first (local runs)")
    args = parser.parse_args(argv)
    asyncio.run(run_stage(args.stage, create_schema=args.create_tables))


if __name__ == "__main__":
    main()
