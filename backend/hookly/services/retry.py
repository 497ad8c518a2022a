"""RetryManager: bounded reprocessing of FAILED webhook records.

A retry claims the row (FAILED -> PROCESSING, attempt_count + 1) and then runs
the same pipeline a first delivery runs. Once attempt_count reaches
max_attempts the record is terminal and only an operator can resolve it.
"""

from collections.abc import Awaitable, Callable
from enum import StrEnum

import structlog

from hookly.core.exceptions import MalformedPayloadError
from hookly.domain.webhooks import WebhookEnvelope, WebhookStatus, parse_webhook_payload
from hookly.services.ledger import IdempotencyLedger

logger = structlog.get_logger(__name__)

Pipeline = Callable[[object, WebhookEnvelope], Awaitable[WebhookStatus]]


class RetryOutcome(StrEnum):
    RETRIED = "retried"
    EXHAUSTED = "exhausted"
    CLAIM_LOST = "claim_lost"
    NOT_FAILED = "not_failed"


class RetryManager:
    def __init__(self, ledger: IdempotencyLedger, pipeline: Pipeline):
        """
        Args:
            ledger: Ledger whose max_attempts caps the retries
            pipeline: Coroutine run on a claimed record; returns the final status
        """
        self.ledger = ledger
        self.pipeline = pipeline

    @property
    def max_attempts(self) -> int:
        return self.ledger.max_attempts

    async def retry(self, record, envelope: WebhookEnvelope | None = None) -> RetryOutcome:
        """Reprocess one FAILED record if it has attempts left."""
        if WebhookStatus(record.status) != WebhookStatus.FAILED:
            return RetryOutcome.NOT_FAILED

        if record.attempt_count >= self.max_attempts:
            logger.error(
                "webhook_retry_exhausted",
                record_id=str(record.id),
                external_id=record.external_id,
                attempt_count=record.attempt_count,
                last_error=record.last_error,
                manual_review=True,
            )
            return RetryOutcome.EXHAUSTED

        if envelope is None:
            try:
                envelope = parse_webhook_payload(record.payload)
            except MalformedPayloadError as e:
                # Stored payload was validated on admission; this only happens after manual edits
                logger.error("webhook_retry_payload_invalid", record_id=str(record.id), error=str(e))
                return RetryOutcome.EXHAUSTED

        if not await self.ledger.claim_for_retry(record):
            return RetryOutcome.CLAIM_LOST
        claimed = await self.ledger.get_by_id(record.id)

        logger.info(
            "webhook_retry_started",
            record_id=str(record.id),
            attempt=claimed.attempt_count,
            max_attempts=self.max_attempts,
        )
        status = await self.pipeline(claimed, envelope)
        logger.info("webhook_retry_finished", record_id=str(record.id), status=status.value)
        return RetryOutcome.RETRIED

    async def retry_failed(self, limit: int = 100) -> dict[RetryOutcome, int]:
        """Retry every FAILED record with attempts left, oldest first."""
        counts = {outcome: 0 for outcome in RetryOutcome}
        for record in await self.ledger.list_failed(limit=limit):
            outcome = await self.retry(record)
            counts[outcome] += 1
        return counts
