"""Show every ledger row for one provider object (subscription or order id).

    python scripts/webhook_history.py sub_123
"""

import argparse
import asyncio

from hookly.core.config import get_settings
from hookly.core.logging import configure_structlog
from hookly.db import close_db, get_session_factory, init_db
from hookly.domain.webhooks import WebhookProvider
from hookly.services.billing import build_billing_services


async def main(resource_id: str, provider: WebhookProvider) -> None:
    await init_db()
    try:
        services = build_billing_services(get_session_factory(), get_settings())
        records = await services.ledger.history(provider, resource_id)

        print(f"{len(records)} record(s) for {provider.value}:{resource_id}")
        for record in records:
            print(
                f"  {record.created_at.isoformat()} | {record.event_type} | {record.status} "
                f"| attempts={record.attempt_count} | {record.processing_result or record.last_error or ''}"
            )
    finally:
        await close_db()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("resource_id", help="Provider data.id, e.g. a subscription id")
    parser.add_argument("--provider", default=WebhookProvider.LEMONSQUEEZY.value, choices=[p.value for p in WebhookProvider])
    args = parser.parse_args()

    configure_structlog(json_logs=False)
    asyncio.run(main(args.resource_id, WebhookProvider(args.provider)))
