"""IdempotencyLedger: admission and bookkeeping for webhook deliveries.

Admission is an insert against the (provider, external_id) unique index.
Losing the insert race is not an error: the existing row decides what the
caller does next.

    PROCESSING -> DUPLICATE_IN_FLIGHT   skip, 200
    COMPLETED  -> DUPLICATE_COMPLETED   skip, 200
    SKIPPED    -> DUPLICATE_SKIPPED     skip, 200
    FAILED     -> RETRYABLE_FAILED      hand to RetryManager
                  RETRY_EXHAUSTED       attempt_count >= max_attempts, manual review

complete/fail/skip only move a row out of PROCESSING, so a row is finished
exactly once even if a sweep and a slow worker race. A worker that finishes after the sweep failed its row can still complete it
with complete_after_sweep(), as long as no retry has claimed the row.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum

import structlog

from hookly.domain.webhooks import WebhookProvider, WebhookStatus
from hookly.ports import BillingRepository

logger = structlog.get_logger(__name__)

STALE_PROCESSING_ERROR = "processing timed out"


class AdmissionDecision(StrEnum):
    NEW = "new"
    DUPLICATE_COMPLETED = "duplicate_completed"
    DUPLICATE_IN_FLIGHT = "duplicate_in_flight"
    DUPLICATE_SKIPPED = "duplicate_skipped"
    RETRYABLE_FAILED = "retryable_failed"
    RETRY_EXHAUSTED = "retry_exhausted"


@dataclass(frozen=True)
class Admission:
    decision: AdmissionDecision
    record: object

    @property
    def is_new(self) -> bool:
        return self.decision == AdmissionDecision.NEW


class IdempotencyLedger:
    def __init__(self, repository: BillingRepository, max_attempts: int = 3):
        self.repository = repository
        self.max_attempts = max_attempts

    async def admit(
        self,
        provider: WebhookProvider,
        external_id: str,
        event_type: str,
        payload: dict,
        user_id: str | None = None,
        resource_id: str | None = None,
    ) -> Admission:
        record, created = await self.repository.insert_webhook_record_if_absent(
            provider, external_id, event_type, payload, user_id, resource_id
        )
        if created:
            logger.info("webhook_admitted", record_id=str(record.id))
            return Admission(AdmissionDecision.NEW, record)

        decision = self.classify(record)
        if decision == AdmissionDecision.RETRY_EXHAUSTED:
            logger.error(
                "webhook_retry_exhausted",
                record_id=str(record.id),
                attempt_count=record.attempt_count,
                last_error=record.last_error,
                manual_review=True,
            )
        else:
            logger.info("webhook_duplicate", decision=decision.value, record_id=str(record.id))
        return Admission(decision, record)

    def classify(self, record) -> AdmissionDecision:
        """Admission decision for an existing ledger row."""
        status = WebhookStatus(record.status)
        if status == WebhookStatus.PROCESSING:
            return AdmissionDecision.DUPLICATE_IN_FLIGHT
        if status == WebhookStatus.COMPLETED:
            return AdmissionDecision.DUPLICATE_COMPLETED
        if status == WebhookStatus.SKIPPED:
            return AdmissionDecision.DUPLICATE_SKIPPED
        if record.attempt_count >= self.max_attempts:
            return AdmissionDecision.RETRY_EXHAUSTED
        return AdmissionDecision.RETRYABLE_FAILED

    # attempt: the attempt_count the caller is working on. When given, a row
    # re-claimed by a retry since then is not touched.

    async def complete(self, record_id, result: str | None = None, *, attempt: int | None = None) -> bool:
        return await self._finish(record_id, WebhookStatus.COMPLETED, attempt, processing_result=result)

    async def fail(self, record_id, error: str, *, attempt: int | None = None) -> bool:
        return await self._finish(record_id, WebhookStatus.FAILED, attempt, last_error=error)

    async def skip(self, record_id, reason: str, *, attempt: int | None = None) -> bool:
        return await self._finish(record_id, WebhookStatus.SKIPPED, attempt, processing_result=reason)

    async def complete_after_sweep(self, record, result: str | None = None) -> bool:
        """Complete a row the stale sweep failed while its worker was still running.

        Matches only while the row still holds the sweep's error and the
        attempt_count this worker started with, i.e. no retry has claimed it.
        """
        recovered = await self.repository.complete_swept_record(
            record.id, record.attempt_count, STALE_PROCESSING_ERROR, result
        )
        if recovered:
            logger.warning("webhook_sweep_overridden", record_id=str(record.id), attempt_count=record.attempt_count)
        return recovered

    async def claim_for_retry(self, record) -> bool:
        """Move a FAILED row back to PROCESSING for one more attempt.

        Returns False if another worker claimed it first.
        """
        claimed = await self.repository.claim_failed_record(record.id, record.attempt_count)
        if not claimed:
            logger.info("webhook_retry_claim_lost", record_id=str(record.id))
        return claimed

    async def sweep_stale(self, older_than: timedelta, now: datetime | None = None) -> int:
        """Fail PROCESSING rows whose attempt started more than older_than ago."""
        cutoff = (now or datetime.now(UTC)) - older_than
        swept = await self.repository.sweep_stale_processing(cutoff, STALE_PROCESSING_ERROR)
        if swept:
            logger.warning("webhook_stale_processing_swept", count=swept, cutoff=cutoff.isoformat())
        return swept

    async def get(self, provider: WebhookProvider, external_id: str):
        return await self.repository.get_webhook_record(provider, external_id)

    async def get_by_id(self, record_id):
        return await self.repository.get_webhook_record_by_id(record_id)

    async def history(self, provider: WebhookProvider, resource_id: str) -> list:
        """Ledger rows for one provider object (the payload's data.id), oldest first."""
        return await self.repository.list_webhook_records_for_resource(provider, resource_id)

    async def list_failed(self, limit: int = 100) -> list:
        """FAILED rows that still have attempts left."""
        return await self.repository.list_failed_records(below_attempts=self.max_attempts, limit=limit)

    async def list_exhausted(self, limit: int = 100) -> list:
        """FAILED rows that used every attempt and need manual review."""
        return await self.repository.list_failed_records(min_attempts=self.max_attempts, limit=limit)

    async def _finish(self, record_id, status: WebhookStatus, attempt: int | None, **fields) -> bool:
        updated = await self.repository.update_webhook_record_status(record_id, status, expected_attempts=attempt, **fields)
        if not updated:
            # Row left PROCESSING under us (stale sweep) or a retry re-claimed it
            logger.warning("webhook_finish_conflict", record_id=str(record_id), status=status.value)
        return updated
