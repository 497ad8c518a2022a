"""Tests for the webhook pipeline: routing, ledger outcomes and idempotence."""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from hookly.core.exceptions import MalformedPayloadError, WebhookAuthenticationError
from hookly.core.signatures import compute_signature
from hookly.domain.plans import Plan
from hookly.domain.webhooks import WebhookProvider, WebhookStatus, parse_webhook_payload
from hookly.services.ledger import AdmissionDecision
from hookly.services.processor import USER_LOOKUP_FAILED
from hookly.services.retry import RetryOutcome

pytestmark = pytest.mark.integration

PROVIDER = WebhookProvider.LEMONSQUEEZY


async def _record(services, envelope):
    return await services.ledger.get(PROVIDER, envelope.external_id)


class TestRouting:
    async def test_subscription_created_upgrades_by_product_name(self, services, make_account, make_event, repository):
        await make_account(plan=Plan.TRIAL)
        envelope = parse_webhook_payload(make_event("subscription_created", product_name="Hookly Starter Plan"))

        receipt = await services.processor.process(envelope)

        assert receipt.decision == AdmissionDecision.NEW
        assert receipt.status == WebhookStatus.COMPLETED
        assert (await repository.get_account("user_1")).plan == Plan.STARTER
        assert (await _record(services, envelope)).processing_result == "trial -> starter"

    async def test_order_created_paid_agency(self, services, make_account, make_event, repository, analytics):
        await make_account(plan=Plan.STARTER)
        envelope = parse_webhook_payload(make_event("order_created", data_id="ord_9", status="paid", product_name="Hookly Agency"))

        await services.processor.process(envelope)

        assert (await repository.get_account("user_1")).plan == Plan.AGENCY
        assert analytics.conversions[0]["amount"] == Decimal("149.00")

    async def test_unpaid_order_is_noop(self, services, make_account, make_event, repository):
        await make_account(plan=Plan.TRIAL)
        envelope = parse_webhook_payload(make_event("order_created", status="pending", product_name="Hookly Pro"))

        receipt = await services.processor.process(envelope)

        assert receipt.status == WebhookStatus.COMPLETED
        assert (await repository.get_account("user_1")).plan == Plan.TRIAL

    async def test_user_found_by_email_when_id_missing(self, services, make_account, make_event, repository):
        await make_account(user_id="user_42", email="someone@example.com")
        payload = make_event(user_id=None, email="SomeOne@example.com", custom_plan="pro")

        await services.processor.process(parse_webhook_payload(payload))

        assert (await repository.get_account("user_42")).plan == Plan.PRO

    async def test_unknown_event_type_is_skipped(self, services, make_account, make_event):
        await make_account()
        envelope = parse_webhook_payload(make_event("license_key_created"))

        receipt = await services.processor.process(envelope)

        assert receipt.status == WebhookStatus.SKIPPED
        record = await _record(services, envelope)
        assert record.status == WebhookStatus.SKIPPED
        assert "license_key_created" in record.processing_result

    async def test_fallback_plan_is_logged(self, services, make_account, make_event, repository):
        await make_account()
        envelope = parse_webhook_payload(make_event(product_name="Mystery Bundle"))

        with patch("hookly.services.event_router.logger") as mock_logger:
            await services.processor.process(envelope)

        assert (await repository.get_account("user_1")).plan == Plan.PRO
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args.args[0] == "plan_determination_fallback"

    async def test_updated_past_due_keeps_plan(self, services, make_account, make_event, repository):
        await make_account(plan=Plan.PRO)
        envelope = parse_webhook_payload(make_event("subscription_updated", status="past_due", product_name="Pro"))

        receipt = await services.processor.process(envelope)

        assert receipt.status == WebhookStatus.COMPLETED
        assert (await repository.get_account("user_1")).plan == Plan.PRO

    async def test_updated_expired_status_downgrades(self, services, make_account, make_event, repository):
        await make_account(plan=Plan.PRO)
        envelope = parse_webhook_payload(make_event("subscription_updated", status="expired"))

        await services.processor.process(envelope)

        assert (await repository.get_account("user_1")).plan == Plan.TRIAL

    async def test_resumed_subscription_upgrades(self, services, make_account, make_event, repository):
        await make_account(plan=Plan.TRIAL)
        envelope = parse_webhook_payload(make_event("subscription_resumed", product_name="Agency"))

        await services.processor.process(envelope)

        assert (await repository.get_account("user_1")).plan == Plan.AGENCY


class TestCancellation:
    async def test_cancelled_pro_account_with_usage(self, services, make_account, make_event, repository):
        await make_account(plan=Plan.PRO, usage_count=120)
        envelope = parse_webhook_payload(make_event("subscription_cancelled", status="cancelled"))

        receipt = await services.processor.process(envelope)

        assert receipt.status == WebhookStatus.COMPLETED
        account = await repository.get_account("user_1")
        assert account.plan == Plan.TRIAL
        assert account.usage_count == 0
        assert account.overage_count == 0
        assert account.overage_charge == Decimal("0.00")

    async def test_old_active_update_after_cancel_does_not_resurrect(self, services, make_account, make_event, repository):
        await make_account(plan=Plan.PRO)
        cancel = make_event("subscription_cancelled", status="cancelled", updated_at="2026-10-02T09:00:00Z")
        stale_update = make_event("subscription_updated", status="active", product_name="Pro", updated_at="2026-10-01T09:00:00Z")

        await services.processor.process(parse_webhook_payload(cancel))
        receipt = await services.processor.process(parse_webhook_payload(stale_update))

        assert receipt.status == WebhookStatus.COMPLETED
        assert (await repository.get_account("user_1")).plan == Plan.TRIAL


class TestFailures:
    async def test_user_not_found_fails_with_note(self, services, make_event):
        envelope = parse_webhook_payload(make_event(user_id="ghost", email="ghost@example.com"))

        with patch("hookly.services.processor.logger") as mock_logger:
            receipt = await services.processor.process(envelope)

        assert receipt.status == WebhookStatus.FAILED
        record = await _record(services, envelope)
        assert record.last_error.startswith(USER_LOOKUP_FAILED)
        mock_logger.error.assert_called_once()

    async def test_downgrade_via_purchase_completes_with_rejection(self, services, make_account, make_event, repository):
        await make_account(plan=Plan.AGENCY)
        envelope = parse_webhook_payload(make_event("order_created", status="paid", product_name="Hookly Starter"))

        receipt = await services.processor.process(envelope)

        assert receipt.status == WebhookStatus.COMPLETED
        assert (await _record(services, envelope)).processing_result.startswith("rejected:")
        assert (await repository.get_account("user_1")).plan == Plan.AGENCY

    async def test_handler_exception_marks_failed(self, services, make_account, make_event):
        await make_account()
        envelope = parse_webhook_payload(make_event(product_name="Pro"))

        with patch.object(services.router, "dispatch", AsyncMock(side_effect=RuntimeError("connection reset"))):
            receipt = await services.processor.process(envelope)

        assert receipt.status == WebhookStatus.FAILED
        record = await _record(services, envelope)
        assert record.last_error == "RuntimeError: connection reset"
        assert record.attempt_count == 1


class TestIdempotence:
    async def test_replay_after_completion_changes_nothing(self, services, make_account, make_event, repository, analytics):
        await make_account(plan=Plan.TRIAL)
        envelope = parse_webhook_payload(make_event(product_name="Pro"))
        await services.processor.process(envelope)
        version = (await repository.get_account("user_1")).version

        receipt = await services.processor.process(envelope)

        assert receipt.decision == AdmissionDecision.DUPLICATE_COMPLETED
        assert (await repository.get_account("user_1")).version == version
        assert len(analytics.conversions) == 1

    async def test_concurrent_deliveries_of_evt_001_apply_once(self, services, make_account, make_event, repository, analytics):
        await make_account(plan=Plan.TRIAL)
        envelope = parse_webhook_payload(make_event(data_id="evt_001", product_name="Pro"))

        receipts = await asyncio.gather(*(services.processor.process(envelope) for _ in range(5)))

        assert [r.decision for r in receipts].count(AdmissionDecision.NEW) == 1
        record = await _record(services, envelope)
        assert record.status == WebhookStatus.COMPLETED
        assert len(analytics.conversions) == 1
        account = await repository.get_account("user_1")
        assert account.plan == Plan.PRO
        assert account.version == 2


class TestIngest:
    async def test_bad_signature_creates_no_record(self, services, make_event, signed):
        payload = make_event()
        raw, _ = signed(payload)

        with pytest.raises(WebhookAuthenticationError):
            await services.processor.ingest(raw, "0" * 64)

        assert await _record(services, parse_webhook_payload(payload)) is None

    async def test_missing_signature_is_rejected(self, services, make_event, signed):
        raw, _ = signed(make_event())

        with pytest.raises(WebhookAuthenticationError):
            await services.processor.ingest(raw, None)

    async def test_invalid_json_is_malformed(self, services, test_settings):
        raw = b"{not json"

        with pytest.raises(MalformedPayloadError):
            await services.processor.ingest(raw, compute_signature(raw, test_settings.lemonsqueezy_webhook_secret))

    async def test_missing_event_name_is_malformed(self, services, make_event, signed):
        payload = make_event()
        del payload["meta"]["event_name"]
        raw, signature = signed(payload)

        with pytest.raises(MalformedPayloadError) as exc_info:
            await services.processor.ingest(raw, signature)

        assert exc_info.value.field == "meta.event_name"

    async def test_signed_delivery_is_processed(self, services, make_account, make_event, signed, repository):
        await make_account()
        raw, signature = signed(make_event(product_name="Hookly Agency"))

        receipt = await services.processor.ingest(raw, signature)

        assert receipt.status == WebhookStatus.COMPLETED
        assert (await repository.get_account("user_1")).plan == Plan.AGENCY


class TestSweptWorker:
    async def _admit_and_sweep(self, services, envelope):
        admission = await services.ledger.admit(
            PROVIDER, envelope.external_id, envelope.event_name, envelope.raw, envelope.user_id, envelope.resource_id
        )
        await services.ledger.sweep_stale(timedelta(seconds=1), now=datetime.now(UTC) + timedelta(minutes=20))
        return admission.record

    async def test_late_finish_completes_swept_row_once(self, services, make_account, make_event, repository, analytics):
        await make_account()
        envelope = parse_webhook_payload(make_event(product_name="Pro"))
        record = await self._admit_and_sweep(services, envelope)

        status = await services.processor.execute(record, envelope)
        counts = await services.retry_manager.retry_failed()

        assert status == WebhookStatus.COMPLETED
        assert counts[RetryOutcome.RETRIED] == 0
        stored = await _record(services, envelope)
        assert stored.status == WebhookStatus.COMPLETED
        assert stored.last_error is None
        assert len(analytics.conversions) == 1
        assert (await repository.get_account("user_1")).version == 2

    async def test_late_finish_yields_to_claimed_retry(self, services, make_account, make_event, analytics):
        await make_account()
        envelope = parse_webhook_payload(make_event(product_name="Pro"))
        record = await self._admit_and_sweep(services, envelope)
        assert await services.ledger.claim_for_retry(await _record(services, envelope))

        status = await services.processor.execute(record, envelope)

        assert status == WebhookStatus.PROCESSING
        assert analytics.conversions == []
        stored = await _record(services, envelope)
        assert stored.status == WebhookStatus.PROCESSING
        assert stored.attempt_count == 2

        assert await services.processor.execute(stored, envelope) == WebhookStatus.COMPLETED
        assert len(analytics.conversions) == 1


class TestBetaGrants:
    async def test_paid_order_during_beta_survives_expiry(self, services, make_account, make_event, repository, analytics):
        await make_account(plan=Plan.TRIAL)
        await services.state_machine.apply_promo_code("user_1", "BETA_PRO")
        envelope = parse_webhook_payload(make_event("order_created", data_id="ord_7", status="paid", product_name="Hookly Starter"))

        receipt = await services.processor.process(envelope)

        assert receipt.status == WebhookStatus.COMPLETED
        assert (await _record(services, envelope)).processing_result.startswith("base plan trial -> starter")
        assert analytics.conversions[-1]["to_plan"] == "starter"
        assert (await repository.get_account("user_1")).plan == Plan.PRO

        await services.state_machine.expire_beta_grants(now=datetime.now(UTC) + timedelta(days=31))

        assert (await repository.get_account("user_1")).plan == Plan.STARTER

    async def test_paid_pro_subscription_outlives_beta_grant(self, services, make_account, make_event, repository):
        await make_account(plan=Plan.TRIAL)
        await services.processor.process(parse_webhook_payload(make_event(product_name="Hookly Pro")))
        granted = await services.state_machine.apply_promo_code("user_1", "BETA_PRO")

        expired = await services.state_machine.expire_beta_grants(now=datetime.now(UTC) + timedelta(days=31))

        assert granted.ok
        assert expired == 1
        assert (await repository.get_account("user_1")).plan == Plan.PRO


class TestResourceHistory:
    async def test_rows_are_found_by_provider_object_id(self, services, make_account, make_event):
        await make_account()
        created = parse_webhook_payload(make_event("subscription_created", data_id="sub_77", product_name="Starter"))
        updated = parse_webhook_payload(
            make_event("subscription_updated", data_id="sub_77", product_name="Pro", updated_at="2026-10-05T08:00:00Z")
        )
        other = parse_webhook_payload(make_event("subscription_created", data_id="sub_78", product_name="Pro"))
        for envelope in (created, updated, other):
            await services.processor.process(envelope)

        history = await services.ledger.history(PROVIDER, "sub_77")

        assert [r.external_id for r in history] == [created.external_id, updated.external_id]
        assert {r.resource_id for r in history} == {"sub_77"}
