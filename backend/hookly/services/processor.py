"""WebhookProcessor: the inbound webhook pipeline.

ingest() authenticates and parses the raw body, process() admits the event
to the ledger and, for new events, runs execute(). execute() is also the
pipeline the RetryManager re-runs, so a retry follows exactly the path of a
first delivery.

Ledger status per handler result:
- APPLIED, NOOP                  -> COMPLETED
- SKIPPED                        -> SKIPPED
- FAILED / invalid transition    -> COMPLETED, rejection kept in processing_result
- FAILED / user not found        -> FAILED with the USER_LOOKUP_FAILED note
- FAILED / other, or an exception -> FAILED, retryable
"""

import json
from dataclasses import dataclass

import structlog

from hookly.core.exceptions import MalformedPayloadError, WebhookAuthenticationError
from hookly.core.logging import webhook_log_context
from hookly.domain.outcomes import ErrorKind, HandlerKind, HandlerResult
from hookly.domain.webhooks import WebhookEnvelope, WebhookProvider, WebhookStatus, parse_webhook_payload
from hookly.metrics.cloudwatch import emit_webhook_outcome
from hookly.ports import PaymentProviderPort
from hookly.services.event_router import EventRouter
from hookly.services.ledger import AdmissionDecision, IdempotencyLedger
from hookly.services.retry import RetryManager, RetryOutcome
from hookly.services.subscription import SubscriptionStateMachine

logger = structlog.get_logger(__name__)

USER_LOOKUP_FAILED = "user lookup failed — event lost"


@dataclass(frozen=True)
class WebhookReceipt:
    """What happened to one delivery, returned to the HTTP layer."""

    external_id: str
    decision: AdmissionDecision
    status: WebhookStatus


class WebhookProcessor:
    def __init__(
        self,
        ledger: IdempotencyLedger,
        router: EventRouter,
        state_machine: SubscriptionStateMachine,
        payment_provider: PaymentProviderPort,
        provider: WebhookProvider = WebhookProvider.LEMONSQUEEZY,
    ):
        self.ledger = ledger
        self.router = router
        self.state_machine = state_machine
        self.payment_provider = payment_provider
        self.provider = provider
        self.retry_manager = RetryManager(ledger, self.execute)

    async def ingest(self, raw_body: bytes, signature: str | None) -> WebhookReceipt:
        """Verify, parse and process one raw delivery.

        Raises:
            WebhookAuthenticationError: signature missing, wrong, or no secret configured
            MalformedPayloadError: body is not JSON or lacks required fields
        """
        if not self.payment_provider.verify_webhook_signature(raw_body, signature):
            logger.warning("webhook_signature_invalid", provider=self.provider.value, has_signature=bool(signature))
            raise WebhookAuthenticationError("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedPayloadError("Webhook body is not valid JSON") from e

        envelope = parse_webhook_payload(payload)
        return await self.process(envelope)

    async def process(self, envelope: WebhookEnvelope) -> WebhookReceipt:
        with webhook_log_context(self.provider.value, envelope.external_id, envelope.event_name):
            logger.info("webhook_received", resource_id=envelope.resource_id)

            admission = await self.ledger.admit(
                self.provider,
                envelope.external_id,
                envelope.event_name,
                envelope.raw,
                envelope.user_id,
                envelope.resource_id,
            )
            record = admission.record

            if admission.is_new:
                status = await self.execute(record, envelope)
                return WebhookReceipt(envelope.external_id, admission.decision, status)

            if admission.decision == AdmissionDecision.RETRYABLE_FAILED:
                outcome = await self.retry_manager.retry(record, envelope)
                if outcome == RetryOutcome.RETRIED:
                    current = await self.ledger.get(self.provider, envelope.external_id)
                    return WebhookReceipt(envelope.external_id, admission.decision, WebhookStatus(current.status))

            return WebhookReceipt(envelope.external_id, admission.decision, WebhookStatus(record.status))

    async def execute(self, record, envelope: WebhookEnvelope) -> WebhookStatus:
        """Route a claimed PROCESSING record and write its final ledger status.

        Returns the status the row holds afterwards. If the row left
        PROCESSING under this worker (stale sweep, then a retry claim), that
        is the status returned and no conversion is published from here.
        """
        try:
            result = await self.router.dispatch(envelope.event_name, envelope)
        except Exception as e:
            logger.exception("webhook_handler_error", record_id=str(record.id))
            written = await self.ledger.fail(record.id, f"{type(e).__name__}: {e}", attempt=record.attempt_count)
            status = WebhookStatus.FAILED if written else await self._stored_status(record)
            await emit_webhook_outcome(envelope.event_name, status.value)
            return status

        status, written = await self._record_result(record, result)

        # Ledger row is already out of PROCESSING; audit is best-effort from here on
        if written and result.kind == HandlerKind.APPLIED and result.transition is not None:
            await self.state_machine.publish_conversion(result.transition)

        await emit_webhook_outcome(envelope.event_name, status.value)
        return status

    async def _record_result(self, record, result: HandlerResult) -> tuple[WebhookStatus, bool]:
        """Write the ledger status for result.

        Returns:
            (status, written). written is False when another writer finished
            the row first; status is then the one stored on the row.
        """
        if result.kind in (HandlerKind.APPLIED, HandlerKind.NOOP):
            if not await self._complete(record, result.reason):
                return await self._stored_status(record), False
            logger.info("webhook_completed", result=result.kind.value, detail=result.reason)
            return WebhookStatus.COMPLETED, True

        if result.kind == HandlerKind.SKIPPED:
            if not await self.ledger.skip(record.id, result.reason, attempt=record.attempt_count):
                return await self._stored_status(record), False
            logger.info("webhook_skipped", reason=result.reason)
            return WebhookStatus.SKIPPED, True

        if result.error_kind == ErrorKind.INVALID_TRANSITION:
            if not await self._complete(record, f"rejected: {result.reason}"):
                return await self._stored_status(record), False
            logger.warning("webhook_transition_rejected", reason=result.reason)
            return WebhookStatus.COMPLETED, True

        if result.error_kind == ErrorKind.USER_NOT_FOUND:
            written = await self.ledger.fail(record.id, f"{USER_LOOKUP_FAILED}: {result.reason}", attempt=record.attempt_count)
            logger.error("webhook_user_not_found", reason=result.reason, record_id=str(record.id))
        else:
            written = await self.ledger.fail(record.id, result.reason, attempt=record.attempt_count)
            logger.error("webhook_processing_failed", reason=result.reason, error_kind=str(result.error_kind))
        if not written:
            return await self._stored_status(record), False
        return WebhookStatus.FAILED, True

    async def _complete(self, record, note: str | None) -> bool:
        if await self.ledger.complete(record.id, note, attempt=record.attempt_count):
            return True
        # The sweep failed the row while the handler ran; keep the work if no retry took over
        return await self.ledger.complete_after_sweep(record, note)

    async def _stored_status(self, record) -> WebhookStatus:
        current = await self.ledger.get_by_id(record.id)
        return WebhookStatus(current.status)
