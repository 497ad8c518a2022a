"""Ports: the collaborator interfaces the billing core depends on.

Services receive implementations through their constructors:
- BillingRepository: SqlAlchemyBillingRepository (hookly.db.repository)
- AnalyticsPort: ConversionRecorder (hookly.metrics.cloudwatch)
- PaymentProviderPort: LemonSqueezyClient (hookly.integrations.lemonsqueezy)

Tests substitute fakes or AsyncMock objects for any of them.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

from hookly.db.models.account import Account
from hookly.db.models.webhook_event import WebhookEvent
from hookly.domain.webhooks import WebhookProvider, WebhookStatus


@runtime_checkable
class BillingRepository(Protocol):
    """Storage operations for accounts and the webhook ledger.

    insert_webhook_record_if_absent must rely on a storage-level unique
    index on (provider, external_id), never a read-then-write check.
    """

    async def find_user_by_id_or_email(self, user_id: str | None, email: str | None) -> Account | None: ...

    async def get_account(self, user_id: str) -> Account | None: ...

    async def save_account_state(self, account: Account) -> Account: ...

    async def list_expired_beta_accounts(self, now: datetime) -> list[Account]: ...

    async def insert_webhook_record_if_absent(
        self,
        provider: WebhookProvider,
        external_id: str,
        event_type: str,
        payload: dict,
        user_id: str | None = None,
        resource_id: str | None = None,
    ) -> tuple[WebhookEvent, bool]: ...

    async def get_webhook_record(self, provider: WebhookProvider, external_id: str) -> WebhookEvent | None: ...

    async def get_webhook_record_by_id(self, record_id: uuid.UUID) -> WebhookEvent | None: ...

    async def list_webhook_records_for_resource(self, provider: WebhookProvider, resource_id: str) -> list[WebhookEvent]: ...

    async def update_webhook_record_status(
        self,
        record_id: uuid.UUID,
        status: WebhookStatus,
        *,
        last_error: str | None = None,
        processing_result: str | None = None,
        expected_attempts: int | None = None,
    ) -> bool: ...

    async def claim_failed_record(self, record_id: uuid.UUID, expected_attempts: int) -> bool: ...

    async def complete_swept_record(
        self,
        record_id: uuid.UUID,
        expected_attempts: int,
        swept_error: str,
        processing_result: str | None = None,
    ) -> bool: ...

    async def sweep_stale_processing(self, older_than: datetime, error: str) -> int: ...

    async def list_failed_records(
        self,
        *,
        below_attempts: int | None = None,
        min_attempts: int | None = None,
        limit: int = 100,
    ) -> list[WebhookEvent]: ...


@runtime_checkable
class AnalyticsPort(Protocol):
    """Best-effort audit of plan changes. Callers log failures and move on."""

    async def record_conversion(
        self,
        user_id: str,
        from_plan: str,
        to_plan: str,
        amount: Decimal,
        source: str,
    ) -> None: ...


@runtime_checkable
class PaymentProviderPort(Protocol):
    """Payment provider operations.

    Only verify_webhook_signature is used on the webhook path; the
    subscription operations serve admin and checkout flows.
    """

    def verify_webhook_signature(self, raw_body: bytes, signature: str | None) -> bool: ...

    async def get_subscription(self, subscription_id: str) -> dict[str, Any]: ...

    async def update_subscription(self, subscription_id: str, attributes: dict[str, Any]) -> dict[str, Any]: ...

    async def cancel_subscription(self, subscription_id: str) -> dict[str, Any]: ...
