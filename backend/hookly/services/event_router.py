"""EventRouter: maps provider event names to subscription handlers.

Handlers resolve the account, ask the plan policy for a target tier when the
event grants one, and call the state machine. They never touch the ledger;
the webhook processor turns their HandlerResult into a ledger status.
"""

import structlog

from hookly.domain.outcomes import ErrorKind, HandlerResult
from hookly.domain.plan_policy import PlanDeterminationPolicy
from hookly.domain.webhooks import BillingEventType, WebhookEnvelope
from hookly.ports import BillingRepository
from hookly.services.subscription import SubscriptionStateMachine

logger = structlog.get_logger(__name__)

ORDER_PAID_STATUS = "paid"
ACTIVE_STATUS = "active"
DOWNGRADE_STATUSES = frozenset({"cancelled", "expired"})


class EventRouter:
    def __init__(
        self,
        repository: BillingRepository,
        state_machine: SubscriptionStateMachine,
        plan_policy: PlanDeterminationPolicy,
    ):
        self.repository = repository
        self.state_machine = state_machine
        self.plan_policy = plan_policy
        self._handlers = {
            BillingEventType.ORDER_CREATED: self._handle_order_created,
            BillingEventType.SUBSCRIPTION_CREATED: self._handle_subscription_active,
            BillingEventType.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            BillingEventType.SUBSCRIPTION_RESUMED: self._handle_subscription_active,
            BillingEventType.SUBSCRIPTION_CANCELLED: self._handle_subscription_ended,
            BillingEventType.SUBSCRIPTION_EXPIRED: self._handle_subscription_ended,
        }

    async def dispatch(self, event_type: str, envelope: WebhookEnvelope) -> HandlerResult:
        """Run the handler for event_type.

        Unknown event types return a SKIPPED result. Exceptions from the
        repository or state machine propagate to the caller.
        """
        handler = self._handlers.get(event_type)
        if handler is None:
            return HandlerResult.skipped(f"Unhandled event type: {event_type}")
        return await handler(envelope)

    # ── Handlers ────────────────────────────────────────────────────

    async def _handle_order_created(self, envelope: WebhookEnvelope) -> HandlerResult:
        if envelope.status != ORDER_PAID_STATUS:
            return HandlerResult.noop(f"order status {envelope.status} is not paid")
        return await self._upgrade(envelope)

    async def _handle_subscription_active(self, envelope: WebhookEnvelope) -> HandlerResult:
        if envelope.status != ACTIVE_STATUS:
            return HandlerResult.noop(f"subscription status {envelope.status} is not active")
        return await self._upgrade(envelope)

    async def _handle_subscription_updated(self, envelope: WebhookEnvelope) -> HandlerResult:
        if envelope.status == ACTIVE_STATUS:
            return await self._upgrade(envelope)
        if envelope.status in DOWNGRADE_STATUSES:
            return await self._handle_subscription_ended(envelope)
        # past_due, paused, on_trial, unpaid: entitlement unchanged until cancelled/expired
        return HandlerResult.noop(f"subscription status {envelope.status} does not change the plan")

    async def _handle_subscription_ended(self, envelope: WebhookEnvelope) -> HandlerResult:
        account = await self._find_account(envelope)
        if account is None:
            return self._user_not_found(envelope)

        transition = await self.state_machine.cancel_or_expire(
            account,
            source=envelope.event_name,
            event_at=envelope.occurred_at,
        )
        return HandlerResult.from_transition(transition)

    # ── Helpers ─────────────────────────────────────────────────────

    async def _upgrade(self, envelope: WebhookEnvelope) -> HandlerResult:
        account = await self._find_account(envelope)
        if account is None:
            return self._user_not_found(envelope)

        determination = self.plan_policy.determine_plan(envelope)
        if determination.fallback_used:
            logger.warning(
                "plan_determination_fallback",
                user_id=account.id,
                plan=determination.plan.value,
                product_name=envelope.product_name,
                variant_name=envelope.variant_name,
                product_id=envelope.product_id,
                variant_id=envelope.variant_id,
            )

        transition = await self.state_machine.upgrade(
            account,
            determination.plan,
            source=envelope.event_name,
            event_at=envelope.occurred_at,
        )
        return HandlerResult.from_transition(transition)

    async def _find_account(self, envelope: WebhookEnvelope):
        return await self.repository.find_user_by_id_or_email(envelope.user_id, envelope.user_email)

    @staticmethod
    def _user_not_found(envelope: WebhookEnvelope) -> HandlerResult:
        return HandlerResult.failed(
            ErrorKind.USER_NOT_FOUND,
            f"no account for user_id={envelope.user_id} email={envelope.user_email}",
        )
