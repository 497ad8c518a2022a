"""SubscriptionStateMachine: the only writer of plan and usage fields.

Tier order is TRIAL < STARTER < PRO < AGENCY.
- upgrade(): target >= current, lateral allowed; a lower target is rejected
- cancel_or_expire(): unconditional move to TRIAL, the only downgrade path
- apply_promo_code() / upgrade_manually(): same monotonic rule as upgrade()
- beta grants remember the base plan they sit on; expiry restores it

State changes are persisted through the repository port with optimistic
locking; a concurrent writer surfaces as StaleDataError to the caller.
Conversions are audit records: publish_conversion() is best-effort and runs
after the account write, never inside it.
"""

from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import structlog

from hookly.domain.outcomes import Conversion, ErrorKind, TransitionResult
from hookly.domain.plans import PLAN_CATALOG, Plan, PlanTerms, is_upgrade_or_lateral
from hookly.domain.promotions import DEFAULT_PROMO_CODES, PromoCode, evaluate_promo_code
from hookly.ports import AnalyticsPort, BillingRepository

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SubscriptionStateMachine:
    def __init__(
        self,
        repository: BillingRepository,
        analytics: AnalyticsPort,
        catalog: Mapping[Plan, PlanTerms] = PLAN_CATALOG,
        promo_codes: Mapping[str, PromoCode] = DEFAULT_PROMO_CODES,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.repository = repository
        self.analytics = analytics
        self.catalog = catalog
        self.promo_codes = promo_codes
        self.clock = clock

    # ── Transitions ─────────────────────────────────────────────────

    async def upgrade(self, account, target_plan: Plan, source: str, event_at: datetime | None = None) -> TransitionResult:
        """Move account to target_plan if that does not lower its tier.

        Resets the period usage, sets usage_limit from the catalog and clears
        overage. A paid upgrade also ends any promo beta grant. While a beta
        grant runs, a purchase below the beta plan is recorded as the grant's
        base plan instead of being rejected.

        Args:
            account: Account loaded from the repository
            target_plan: Plan to move to
            source: Attribution for the conversion record (event name, "manual", ...)
            event_at: Provider timestamp of the triggering event, if any

        Returns:
            TransitionResult. Rejected with INVALID_TRANSITION on a downgrade,
            unchanged when event_at is older than the last applied event.
        """
        from_plan = Plan(account.plan)
        target_plan = Plan(target_plan)

        if self._is_stale(account, event_at):
            logger.info(
                "subscription_stale_event_ignored",
                user_id=account.id,
                event_at=event_at.isoformat(),
                last_billing_event_at=account.last_billing_event_at.isoformat(),
            )
            return TransitionResult.unchanged("stale event", plan=from_plan)

        if account.beta_flag and not is_upgrade_or_lateral(from_plan, target_plan):
            return await self._record_beta_base_plan(account, target_plan, source, event_at)

        if not is_upgrade_or_lateral(from_plan, target_plan):
            logger.warning(
                "subscription_downgrade_rejected",
                user_id=account.id,
                from_plan=from_plan.value,
                to_plan=target_plan.value,
                source=source,
            )
            return TransitionResult.rejected(
                ErrorKind.INVALID_TRANSITION,
                f"downgrade {from_plan.value} -> {target_plan.value} is only allowed through cancellation",
                from_plan=from_plan,
                to_plan=target_plan,
            )

        self._start_period(account, target_plan)
        self._clear_beta(account)
        self._stamp_event(account, event_at)

        return await self._save(account, from_plan, target_plan, source, self._price(target_plan))

    async def cancel_or_expire(self, account, source: str, event_at: datetime | None = None) -> TransitionResult:
        """Move account to TRIAL, reset usage and clear overage. Never rejected.

        Also ends any beta grant; the subscription it sat on is gone.
        """
        from_plan = Plan(account.plan)

        if self._is_stale(account, event_at):
            logger.info(
                "subscription_stale_event_ignored",
                user_id=account.id,
                event_at=event_at.isoformat(),
                last_billing_event_at=account.last_billing_event_at.isoformat(),
            )
            return TransitionResult.unchanged("stale event", plan=from_plan)

        self._start_period(account, Plan.TRIAL)
        self._clear_beta(account)
        self._stamp_event(account, event_at)

        return await self._save(account, from_plan, Plan.TRIAL, source, Decimal("0.00"))

    async def apply_promo_code(self, user_id: str, code: str) -> TransitionResult:
        """Apply a promo code to an account and publish the conversion."""
        account = await self.repository.get_account(user_id)
        if account is None:
            return TransitionResult.rejected(ErrorKind.USER_NOT_FOUND, f"no account {user_id}")

        from_plan = Plan(account.plan)
        evaluation = evaluate_promo_code(from_plan, code, self.promo_codes)
        if not evaluation.is_valid:
            kind = ErrorKind.INVALID_PROMO_CODE if evaluation.promo is None else ErrorKind.INVALID_TRANSITION
            logger.info("promo_code_rejected", user_id=user_id, code=code, reason=evaluation.message)
            return TransitionResult.rejected(kind, evaluation.message, from_plan=from_plan)

        promo = evaluation.promo
        self._start_period(account, promo.target_plan)
        amount = self._price(promo.target_plan)
        if promo.is_beta_grant:
            if not account.beta_flag:
                account.beta_base_plan = from_plan
            account.beta_flag = True
            account.beta_expiry = self.clock() + timedelta(days=evaluation.beta_duration_days)
            amount = Decimal("0.00")
        else:
            self._clear_beta(account)

        result = await self._save(account, from_plan, promo.target_plan, f"promo:{code.strip().upper()}", amount)
        logger.info(
            "promo_code_applied",
            user_id=user_id,
            code=code.strip().upper(),
            to_plan=promo.target_plan.value,
            beta=promo.is_beta_grant,
        )
        await self.publish_conversion(result)
        return result

    async def upgrade_manually(self, user_id: str, target_plan: Plan, reason: str = "Manual upgrade") -> TransitionResult:
        """Admin upgrade. Same monotonic rule as webhook upgrades."""
        account = await self.repository.get_account(user_id)
        if account is None:
            return TransitionResult.rejected(ErrorKind.USER_NOT_FOUND, f"no account {user_id}")

        result = await self.upgrade(account, target_plan, source="manual")
        if result.changed:
            logger.info("subscription_manual_upgrade", user_id=user_id, to_plan=Plan(target_plan).value, reason=reason)
            await self.publish_conversion(result)
        return result

    async def expire_beta_grants(self, now: datetime | None = None) -> int:
        """End every lapsed beta grant, returning the account to its base plan.

        The base plan is the plan held when the grant was applied, or a paid
        plan bought while it ran; TRIAL when there is neither.

        Returns:
            Number of grants ended. Accounts that fail to save are logged and
            left for the next run.
        """
        now = now or self.clock()
        expired = 0
        for account in await self.repository.list_expired_beta_accounts(now):
            try:
                result = await self._end_beta_grant(account)
            except Exception:
                logger.exception("beta_expiry_failed", user_id=account.id)
                continue
            expired += 1
            await self.publish_conversion(result)
        logger.info("beta_grants_expired", count=expired)
        return expired

    # ── Audit ───────────────────────────────────────────────────────

    async def publish_conversion(self, result: TransitionResult) -> None:
        """Send the transition's conversion record to analytics. Never raises."""
        conversion = result.conversion
        if conversion is None:
            return
        try:
            await self.analytics.record_conversion(
                conversion.user_id,
                conversion.from_plan.value,
                conversion.to_plan.value,
                conversion.amount,
                conversion.source,
            )
        except Exception as e:
            logger.warning(
                "conversion_record_failed",
                user_id=conversion.user_id,
                from_plan=conversion.from_plan.value,
                to_plan=conversion.to_plan.value,
                error=str(e),
            )

    # ── Beta grants ─────────────────────────────────────────────────

    async def _record_beta_base_plan(self, account, target_plan: Plan, source: str, event_at: datetime | None) -> TransitionResult:
        """A purchase below the beta plan becomes the plan the grant falls back to.

        The base plan follows the same monotonic rule as the plan itself.
        """
        current = Plan(account.plan)
        base = Plan(account.beta_base_plan or Plan.TRIAL)
        if not is_upgrade_or_lateral(base, target_plan):
            logger.warning(
                "subscription_downgrade_rejected",
                user_id=account.id,
                from_plan=base.value,
                to_plan=target_plan.value,
                source=source,
                beta_plan=current.value,
            )
            return TransitionResult.rejected(
                ErrorKind.INVALID_TRANSITION,
                f"downgrade {base.value} -> {target_plan.value} is only allowed through cancellation",
                from_plan=base,
                to_plan=target_plan,
            )

        account.beta_base_plan = target_plan
        self._stamp_event(account, event_at)
        saved = await self.repository.save_account_state(account)
        logger.info(
            "subscription_beta_base_plan_recorded",
            user_id=saved.id,
            beta_plan=current.value,
            from_plan=base.value,
            to_plan=target_plan.value,
            source=source,
        )
        return TransitionResult(
            ok=True,
            changed=True,
            from_plan=current,
            to_plan=current,
            reason=f"base plan {base.value} -> {target_plan.value}, beta {current.value} kept",
            conversion=Conversion(saved.id, base, target_plan, self._price(target_plan), source),
            account=saved,
        )

    async def _end_beta_grant(self, account) -> TransitionResult:
        from_plan = Plan(account.plan)
        base = Plan(account.beta_base_plan or Plan.TRIAL)
        self._start_period(account, base)
        self._clear_beta(account)
        return await self._save(account, from_plan, base, "beta_expiry", Decimal("0.00"))

    @staticmethod
    def _clear_beta(account) -> None:
        account.beta_flag = False
        account.beta_expiry = None
        account.beta_base_plan = None

    # ── Internals ───────────────────────────────────────────────────

    def _start_period(self, account, plan: Plan) -> None:
        account.plan = plan
        account.usage_count = 0
        account.usage_limit = self.catalog[plan].monthly_quota
        account.overage_count = 0
        account.overage_charge = Decimal("0.00")
        account.overage_warning_sent = False
        account.last_reset_at = self.clock()

    def _price(self, plan: Plan) -> Decimal:
        return (Decimal(self.catalog[plan].price_cents) / 100).quantize(Decimal("0.01"))

    @staticmethod
    def _is_stale(account, event_at: datetime | None) -> bool:
        last = account.last_billing_event_at
        return event_at is not None and last is not None and event_at < last

    @staticmethod
    def _stamp_event(account, event_at: datetime | None) -> None:
        if event_at is not None:
            account.last_billing_event_at = event_at

    async def _save(self, account, from_plan: Plan, to_plan: Plan, source: str, amount: Decimal) -> TransitionResult:
        saved = await self.repository.save_account_state(account)
        logger.info(
            "subscription_transition_applied",
            user_id=saved.id,
            from_plan=from_plan.value,
            to_plan=to_plan.value,
            source=source,
        )
        return TransitionResult(
            ok=True,
            changed=True,
            from_plan=from_plan,
            to_plan=to_plan,
            reason=f"{from_plan.value} -> {to_plan.value}",
            conversion=Conversion(saved.id, from_plan, to_plan, amount, source),
            account=saved,
        )
