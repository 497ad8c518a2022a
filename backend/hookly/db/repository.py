"""SQLAlchemy implementation of the billing repository.

Every method opens its own short-lived session from the injected factory.
Returned ORM instances are detached (expire_on_commit=False) and safe to read
after the session closes; account writes go back through save_account_state.
"""

import uuid
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookly.db.models.account import Account
from hookly.db.models.conversion_event import ConversionEvent
from hookly.db.models.webhook_event import WebhookEvent
from hookly.db.types import utcnow
from hookly.domain.plans import PLAN_CATALOG, Plan
from hookly.domain.webhooks import WebhookProvider, WebhookStatus

logger = structlog.get_logger(__name__)


class SqlAlchemyBillingRepository:
    """Accounts, webhook ledger rows and conversion events."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ── Accounts ────────────────────────────────────────────────────

    async def create_account(self, user_id: str, email: str, plan: Plan = Plan.TRIAL) -> Account:
        account = Account(
            id=user_id,
            email=email.strip().lower(),
            plan=plan,
            usage_count=0,
            usage_limit=PLAN_CATALOG[plan].monthly_quota,
            overage_count=0,
            overage_charge=Decimal("0.00"),
            overage_warning_sent=False,
            beta_flag=False,
        )
        async with self.session_factory() as session:
            session.add(account)
            await session.commit()
        return account

    async def get_account(self, user_id: str) -> Account | None:
        async with self.session_factory() as session:
            return await session.get(Account, user_id)

    async def find_user_by_id_or_email(self, user_id: str | None, email: str | None) -> Account | None:
        """Look up by user id first, then by case-insensitive email."""
        async with self.session_factory() as session:
            if user_id:
                account = await session.get(Account, user_id)
                if account is not None:
                    return account
            if email:
                result = await session.execute(
                    select(Account).where(func.lower(Account.email) == email.strip().lower())
                )
                return result.scalar_one_or_none()
        return None

    async def save_account_state(self, account: Account) -> Account:
        """Persist a modified account and return the stored instance.

        The account's version must match the stored row. A concurrent writer
        that committed first makes this raise StaleDataError.
        """
        async with self.session_factory() as session:
            merged = await session.merge(account)
            await session.commit()
            return merged

    async def list_expired_beta_accounts(self, now: datetime) -> list[Account]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Account).where(
                    Account.beta_flag.is_(True),
                    Account.beta_expiry.is_not(None),
                    Account.beta_expiry <= now,
                )
            )
            return list(result.scalars().all())

    # ── Webhook ledger ──────────────────────────────────────────────

    async def insert_webhook_record_if_absent(
        self,
        provider: WebhookProvider,
        external_id: str,
        event_type: str,
        payload: dict,
        user_id: str | None = None,
        resource_id: str | None = None,
    ) -> tuple[WebhookEvent, bool]:
        """Insert a PROCESSING row unless (provider, external_id) already exists.

        Returns:
            (record, created). On a unique violation the existing row is
            returned with created=False.
        """
        now = utcnow()
        async with self.session_factory() as session:
            record = WebhookEvent(
                provider=provider,
                external_id=external_id,
                resource_id=resource_id,
                event_type=event_type,
                status=WebhookStatus.PROCESSING,
                payload=payload,
                user_id=user_id,
                attempt_count=1,
                last_attempt_at=now,
                created_at=now,
                updated_at=now,
            )
            session.add(record)
            try:
                await session.commit()
                return record, True
            except IntegrityError:
                await session.rollback()
                logger.debug("webhook_record_exists", provider=str(provider), external_id=external_id)

        existing = await self.get_webhook_record(provider, external_id)
        if existing is None:
            # Unique violation with no row means a concurrent delete; nothing sane to classify
            raise RuntimeError(f"Webhook record {provider}:{external_id} vanished after unique violation")
        return existing, False

    async def get_webhook_record(self, provider: WebhookProvider, external_id: str) -> WebhookEvent | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookEvent).where(
                    WebhookEvent.provider == provider,
                    WebhookEvent.external_id == external_id,
                )
            )
            return result.scalar_one_or_none()

    async def get_webhook_record_by_id(self, record_id: uuid.UUID) -> WebhookEvent | None:
        async with self.session_factory() as session:
            return await session.get(WebhookEvent, record_id)

    async def list_webhook_records_for_resource(self, provider: WebhookProvider, resource_id: str) -> list[WebhookEvent]:
        """Every ledger row for one provider object (subscription or order), oldest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookEvent)
                .where(
                    WebhookEvent.provider == provider,
                    WebhookEvent.resource_id == resource_id,
                )
                .order_by(WebhookEvent.created_at)
            )
            return list(result.scalars().all())

    async def update_webhook_record_status(
        self,
        record_id: uuid.UUID,
        status: WebhookStatus,
        *,
        last_error: str | None = None,
        processing_result: str | None = None,
        expected_attempts: int | None = None,
    ) -> bool:
        """Move a PROCESSING row to a final status.

        Returns False when the row is no longer PROCESSING (already finished
        or swept), or when expected_attempts is given and attempt_count has
        moved on; nothing is written then.
        """
        values = {"status": status, "updated_at": utcnow()}
        if last_error is not None:
            values["last_error"] = last_error
        if processing_result is not None:
            values["processing_result"] = processing_result

        stmt = update(WebhookEvent).where(
            WebhookEvent.id == record_id,
            WebhookEvent.status == WebhookStatus.PROCESSING,
        )
        if expected_attempts is not None:
            stmt = stmt.where(WebhookEvent.attempt_count == expected_attempts)

        async with self.session_factory() as session:
            result = await session.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def claim_failed_record(self, record_id: uuid.UUID, expected_attempts: int) -> bool:
        """FAILED -> PROCESSING with attempt_count + 1.

        expected_attempts guards against two workers claiming the same
        failure; only the first update matches.
        """
        now = utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(WebhookEvent)
                .where(
                    WebhookEvent.id == record_id,
                    WebhookEvent.status == WebhookStatus.FAILED,
                    WebhookEvent.attempt_count == expected_attempts,
                )
                .values(
                    status=WebhookStatus.PROCESSING,
                    attempt_count=WebhookEvent.attempt_count + 1,
                    last_attempt_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def complete_swept_record(
        self,
        record_id: uuid.UUID,
        expected_attempts: int,
        swept_error: str,
        processing_result: str | None = None,
    ) -> bool:
        """FAILED -> COMPLETED for a row failed by the stale sweep.

        Matches only while last_error is still the sweep's error and
        attempt_count is unchanged, so a row already claimed for a retry is
        left alone.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(WebhookEvent)
                .where(
                    WebhookEvent.id == record_id,
                    WebhookEvent.status == WebhookStatus.FAILED,
                    WebhookEvent.attempt_count == expected_attempts,
                    WebhookEvent.last_error == swept_error,
                )
                .values(
                    status=WebhookStatus.COMPLETED,
                    processing_result=processing_result,
                    last_error=None,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def sweep_stale_processing(self, older_than: datetime, error: str) -> int:
        """Fail PROCESSING rows whose last attempt started before older_than."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(WebhookEvent)
                .where(
                    WebhookEvent.status == WebhookStatus.PROCESSING,
                    WebhookEvent.last_attempt_at < older_than,
                )
                .values(status=WebhookStatus.FAILED, last_error=error, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount

    async def list_failed_records(
        self,
        *,
        below_attempts: int | None = None,
        min_attempts: int | None = None,
        limit: int = 100,
    ) -> list[WebhookEvent]:
        """FAILED rows, oldest first, optionally filtered by attempt_count."""
        stmt = select(WebhookEvent).where(WebhookEvent.status == WebhookStatus.FAILED)
        if below_attempts is not None:
            stmt = stmt.where(WebhookEvent.attempt_count < below_attempts)
        if min_attempts is not None:
            stmt = stmt.where(WebhookEvent.attempt_count >= min_attempts)
        stmt = stmt.order_by(WebhookEvent.created_at).limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ── Conversions ─────────────────────────────────────────────────

    async def add_conversion_event(
        self,
        user_id: str,
        from_plan: str,
        to_plan: str,
        amount: Decimal,
        source: str,
    ) -> ConversionEvent:
        event = ConversionEvent(
            user_id=user_id,
            from_plan=str(from_plan),
            to_plan=str(to_plan),
            amount=amount,
            source=source,
        )
        async with self.session_factory() as session:
            session.add(event)
            await session.commit()
        return event

    async def list_conversion_events(self, user_id: str) -> list[ConversionEvent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ConversionEvent)
                .where(ConversionEvent.user_id == user_id)
                .order_by(ConversionEvent.created_at)
            )
            return list(result.scalars().all())
