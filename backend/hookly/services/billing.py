"""Wiring for the billing services.

build_billing_services() constructs every component with its collaborators
passed in explicitly. Routes and operator scripts call it with the session
factory from hookly.db; tests pass fakes for the provider or analytics.
"""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookly.core.config import Settings, get_settings
from hookly.db.repository import SqlAlchemyBillingRepository
from hookly.domain.overage import OverageRates
from hookly.domain.plan_policy import PlanDeterminationPolicy
from hookly.domain.plans import Plan
from hookly.integrations.lemonsqueezy import LemonSqueezyClient
from hookly.metrics.cloudwatch import ConversionRecorder
from hookly.ports import AnalyticsPort, PaymentProviderPort
from hookly.services.event_router import EventRouter
from hookly.services.ledger import IdempotencyLedger
from hookly.services.overage import OverageAccountant
from hookly.services.processor import WebhookProcessor
from hookly.services.retry import RetryManager
from hookly.services.subscription import SubscriptionStateMachine


@dataclass(frozen=True)
class BillingServices:
    repository: SqlAlchemyBillingRepository
    ledger: IdempotencyLedger
    state_machine: SubscriptionStateMachine
    router: EventRouter
    processor: WebhookProcessor
    overage: OverageAccountant

    @property
    def retry_manager(self) -> RetryManager:
        return self.processor.retry_manager


def build_billing_services(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings | None = None,
    payment_provider: PaymentProviderPort | None = None,
    analytics: AnalyticsPort | None = None,
) -> BillingServices:
    settings = settings or get_settings()
    repository = SqlAlchemyBillingRepository(session_factory)

    ledger = IdempotencyLedger(repository, max_attempts=settings.webhook_max_attempts)
    state_machine = SubscriptionStateMachine(repository, analytics or ConversionRecorder(repository))
    plan_policy = PlanDeterminationPolicy(fallback_plan=Plan(settings.fallback_plan.lower()))
    router = EventRouter(repository, state_machine, plan_policy)
    processor = WebhookProcessor(
        ledger,
        router,
        state_machine,
        payment_provider or LemonSqueezyClient(settings),
    )
    overage = OverageAccountant(
        repository,
        OverageRates(
            rate_per_unit=settings.overage_rate,
            warn_threshold=settings.usage_warn_threshold,
            upgrade_threshold=settings.usage_upgrade_threshold,
        ),
    )

    return BillingServices(
        repository=repository,
        ledger=ledger,
        state_machine=state_machine,
        router=router,
        processor=processor,
        overage=overage,
    )
