"""Fail webhook records stuck in PROCESSING so the retry job can reclaim them.

A worker that crashes mid-event leaves its ledger row in PROCESSING, and every
redelivery of that event is then treated as in flight. Run this on a schedule.

    python scripts/sweep_stale_webhooks.py [--older-than-seconds N]
"""

import argparse
import asyncio
from datetime import timedelta

from hookly.core.config import get_settings
from hookly.core.logging import configure_structlog
from hookly.db import close_db, get_session_factory, init_db
from hookly.services.billing import build_billing_services


async def main(older_than_seconds: int | None) -> None:
    settings = get_settings()
    timeout = older_than_seconds or settings.webhook_processing_timeout_seconds

    await init_db()
    try:
        services = build_billing_services(get_session_factory(), settings)
        swept = await services.ledger.sweep_stale(timedelta(seconds=timeout))
        print(f"Swept {swept} stale PROCESSING record(s) older than {timeout}s.")
    finally:
        await close_db()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--older-than-seconds", type=int, default=None)
    args = parser.parse_args()

    configure_structlog(json_logs=False)
    asyncio.run(main(args.older_than_seconds))
