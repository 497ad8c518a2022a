"""OverageAccountant: usage counters, overage charges and the warning flag.

evaluate() is read-only. The mutating operations each load the account,
apply one change and save under the optimistic lock, reloading and
reapplying when another writer got there first. Applying any of them twice
leaves the same state as applying it once, except record_usage which counts.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal

import structlog
from sqlalchemy.orm.exc import StaleDataError

from hookly.core.exceptions import UserNotFoundError
from hookly.domain.overage import OverageRates, OverageReport, evaluate_overage, upgrade_prompt
from hookly.domain.plans import Plan
from hookly.ports import BillingRepository

logger = structlog.get_logger(__name__)

MAX_SAVE_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(UTC)


class OverageAccountant:
    def __init__(
        self,
        repository: BillingRepository,
        rates: OverageRates = OverageRates(),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.repository = repository
        self.rates = rates
        self.clock = clock

    def evaluate(self, account) -> OverageReport:
        return evaluate_overage(Plan(account.plan), account.usage_count, account.usage_limit, self.rates)

    def upgrade_prompt(self, account) -> str:
        return upgrade_prompt(self.evaluate(account), Plan(account.plan))

    async def evaluate_user(self, user_id: str) -> OverageReport:
        return self.evaluate(await self._load(user_id))

    async def record_usage(self, user_id: str, units: int = 1):
        """Add units to the period usage and refresh the stored overage."""
        if units < 0:
            raise ValueError("units must be non-negative")

        def apply(account) -> bool:
            account.usage_count += units
            self._store_overage(account)
            return True

        account, _ = await self._mutate(user_id, apply)
        return account

    async def record_overage(self, user_id: str) -> OverageReport:
        """Persist overage_count and overage_charge for the current usage."""

        def apply(account) -> bool:
            report = self.evaluate(account)
            if account.overage_count == report.overage_units and account.overage_charge == report.overage_charge:
                return False
            self._store_overage(account)
            return True

        account, changed = await self._mutate(user_id, apply)
        report = self.evaluate(account)
        if changed and report.overage_units:
            logger.info(
                "overage_recorded",
                user_id=user_id,
                overage_units=report.overage_units,
                overage_charge=str(report.overage_charge),
            )
        return report

    async def mark_warning_sent(self, user_id: str) -> bool:
        """Set the warning flag. True only for the call that actually set it."""

        def apply(account) -> bool:
            if account.overage_warning_sent:
                return False
            account.overage_warning_sent = True
            return True

        _, changed = await self._mutate(user_id, apply)
        if changed:
            logger.info("usage_warning_marked", user_id=user_id)
        return changed

    async def reset_period(self, user_id: str):
        """Start a new billing period: zero usage and overage, clear the warning flag."""
        now = self.clock()

        def apply(account) -> bool:
            account.usage_count = 0
            account.overage_count = 0
            account.overage_charge = Decimal("0.00")
            account.overage_warning_sent = False
            account.last_reset_at = now
            return True

        account, _ = await self._mutate(user_id, apply)
        logger.info("usage_period_reset", user_id=user_id)
        return account

    def _store_overage(self, account) -> None:
        report = self.evaluate(account)
        account.overage_count = report.overage_units
        account.overage_charge = report.overage_charge

    async def _load(self, user_id: str):
        account = await self.repository.get_account(user_id)
        if account is None:
            raise UserNotFoundError(user_id, None)
        return account

    async def _mutate(self, user_id: str, apply: Callable[[object], bool]):
        """Load, apply and save, reloading on a version conflict.

        Returns:
            (account, changed). Nothing is written when apply returns False.
        """
        attempt = 1
        while True:
            account = await self._load(user_id)
            if not apply(account):
                return account, False
            try:
                return await self.repository.save_account_state(account), True
            except StaleDataError:
                if attempt >= MAX_SAVE_ATTEMPTS:
                    raise
                logger.info("account_version_conflict", user_id=user_id, attempt=attempt)
                attempt += 1
