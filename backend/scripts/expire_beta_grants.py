"""Move accounts whose promo beta grant has lapsed back to TRIAL.

    python scripts/expire_beta_grants.py
"""

import asyncio

from hookly.core.config import get_settings
from hookly.core.logging import configure_structlog
from hookly.db import close_db, get_session_factory, init_db
from hookly.services.billing import build_billing_services


async def main() -> None:
    await init_db()
    try:
        services = build_billing_services(get_session_factory(), get_settings())
        expired = await services.state_machine.expire_beta_grants()
        print(f"Expired {expired} beta grant(s).")
    finally:
        await close_db()


if __name__ == "__main__":
    configure_structlog(json_logs=False)
    asyncio.run(main())
