"""Replay dead-lettered events back onto their source topics.

Usage:
    python scripts/replay_dead_letters.py [--consumer allocator] [--limit 50] [--dry-run]

Run after the underlying failure is fixed. Replays are safe to repeat: every
stage dedups on the processed-events ledger.
"""

import argparse
import asyncio

from fulfillment.core.config import get_settings
from fulfillment.db.base import close_db, get_session_factory, init_db
from fulfillment.events.log import KafkaEventLog
from fulfillment.ledger.dead_letter import DeadLetterSink


async def main(consumer: str | None, limit: int, dry_run: bool) -> None:
    settings = get_settings()
    await init_db(settings.database_url)
    sink = DeadLetterSink(get_session_factory())

    rows = await sink.list_dead_letters(consumer=consumer, limit=limit)
    print(f"Found {len(rows)} unreplayed dead letter(s):")
    for row in rows:
        print(f"  {row.id} | {row.consumer} | {row.event_type} | attempts={row.attempt_count} | {row.error[:80]}")

    if dry_run or not rows:
        await close_db()
        return

    event_log = KafkaEventLog()
    await event_log.start()
    replayed = 0
    try:
        for row in rows:
            if row.topic is None:
                print(f"  Skipped {row.id}: no source topic")
                continue
            await sink.replay(row.id, event_log)
            replayed += 1
    finally:
        await event_log.stop()
        await close_db()

    print(f"\nReplayed {replayed} event(s).")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--consumer", help="Only replay dead letters of this stage")
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()
    asyncio.run(main(args.consumer, args.limit, args.dry_run))
