"""CloudWatch custom metrics for webhook outcomes and plan conversions.

Emission is fire-and-forget: the put_metric_data call runs in a thread pool,
catches its own exceptions and logs a warning. Callers never wait on it and
it never raises into the webhook path.

ConversionRecorder is the AnalyticsPort implementation: it writes the
conversion_events audit row and then emits the matching metric.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from decimal import Decimal

import boto3
import structlog

from hookly.core.config import get_settings
from hookly.db.repository import SqlAlchemyBillingRepository

logger = structlog.get_logger(__name__)

_cw_client = None
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="cw-metrics")


def _get_client():
    global _cw_client
    if _cw_client is None:
        _cw_client = boto3.client("cloudwatch", region_name=get_settings().aws_region)
    return _cw_client


def _put_metric(metric_name: str, dimensions: list[dict], value: float, unit: str) -> None:
    """Synchronous put_metric_data. Runs in thread pool."""
    try:
        _get_client().put_metric_data(
            Namespace=get_settings().metrics_namespace,
            MetricData=[{
                "MetricName": metric_name,
                "Dimensions": dimensions,
                "Value": value,
                "Unit": unit,
                "Timestamp": datetime.now(timezone.utc),
            }],
        )
    except Exception as e:
        logger.warning("metric_emit_failed", error=str(e), metric=metric_name)


def _submit(metric_name: str, dimensions: list[dict], value: float, unit: str) -> None:
    if not get_settings().metrics_enabled:
        return
    loop = asyncio.get_event_loop()
    loop.run_in_executor(_executor, _put_metric, metric_name, dimensions, value, unit)


async def emit_webhook_outcome(event_type: str, outcome: str) -> None:
    """Count one webhook delivery by event type and ledger outcome. Fire-and-forget."""
    _submit(
        "WebhookEvents",
        [{"Name": "EventType", "Value": event_type}, {"Name": "Outcome", "Value": outcome}],
        1.0,
        "Count",
    )


async def emit_conversion(from_plan: str, to_plan: str, amount: Decimal) -> None:
    """Record conversion revenue per plan pair. Fire-and-forget."""
    _submit(
        "ConversionAmount",
        [{"Name": "FromPlan", "Value": from_plan}, {"Name": "ToPlan", "Value": to_plan}],
        float(amount),
        "None",
    )


class ConversionRecorder:
    """AnalyticsPort backed by the conversion_events table and CloudWatch."""

    def __init__(self, repository: SqlAlchemyBillingRepository):
        self.repository = repository

    async def record_conversion(
        self,
        user_id: str,
        from_plan: str,
        to_plan: str,
        amount: Decimal,
        source: str,
    ) -> None:
        await self.repository.add_conversion_event(user_id, from_plan, to_plan, amount, source)
        await emit_conversion(str(from_plan), str(to_plan), amount)
        logger.info(
            "conversion_recorded",
            user_id=user_id,
            from_plan=str(from_plan),
            to_plan=str(to_plan),
            amount=str(amount),
            source=source,
        )
