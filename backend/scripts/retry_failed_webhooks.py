"""Retry FAILED webhook records that still have attempts left.

Records that used every attempt are listed for manual review and left alone.

    python scripts/retry_failed_webhooks.py [--limit N]
"""

import argparse
import asyncio

from hookly.core.config import get_settings
from hookly.core.logging import configure_structlog
from hookly.db import close_db, get_session_factory, init_db
from hookly.services.billing import build_billing_services


async def main(limit: int) -> None:
    await init_db()
    try:
        services = build_billing_services(get_session_factory(), get_settings())

        counts = await services.retry_manager.retry_failed(limit=limit)
        print("Retry results:")
        for outcome, count in counts.items():
            print(f"  {outcome.value}: {count}")

        exhausted = await services.ledger.list_exhausted(limit=limit)
        print(f"\n{len(exhausted)} record(s) need manual review:")
        for record in exhausted:
            print(f"  {record.id} | {record.event_type} | {record.external_id} | attempts={record.attempt_count} | {record.last_error}")
    finally:
        await close_db()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    configure_structlog(json_logs=False)
    asyncio.run(main(args.limit))
