"""Webhook vocabulary and payload normalization.

Pure domain code: enums shared by the ledger and the router, and
parse_webhook_payload(), which turns a decoded provider body into a
WebhookEnvelope or raises MalformedPayloadError naming the missing field.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from hookly.core.exceptions import MalformedPayloadError


class WebhookProvider(StrEnum):
    LEMONSQUEEZY = "lemonsqueezy"
    STRIPE = "stripe"


class WebhookStatus(StrEnum):
    """Ledger lifecycle of one delivered event."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class BillingEventType(StrEnum):
    """Event names the router has handlers for."""

    ORDER_CREATED = "order_created"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_EXPIRED = "subscription_expired"


@dataclass(frozen=True)
class WebhookEnvelope:
    """The fields of a provider event that processing relies on."""

    event_name: str
    resource_id: str
    status: str
    user_email: str
    user_id: str | None = None
    product_name: str | None = None
    variant_name: str | None = None
    product_id: str | None = None
    variant_id: str | None = None
    custom_data: dict = field(default_factory=dict)
    occurred_at: datetime | None = None
    raw: dict = field(default_factory=dict)

    @property
    def external_id(self) -> str:
        """Ledger key for this delivery.

        The provider reuses data.id for every event about one subscription, so
        the key combines event name, resource id and the resource's
        updated_at. A provider retry resends the identical body and maps to
        the same key.
        """
        key = f"{self.event_name}:{self.resource_id}"
        if self.occurred_at is not None:
            key = f"{key}@{self.occurred_at.isoformat()}"
        return key


def _require_mapping(value: Any, path: str) -> dict:
    if not isinstance(value, dict):
        raise MalformedPayloadError(f"Webhook payload field '{path}' must be an object", field=path)
    return value


def _require_text(container: dict, key: str, path: str) -> str:
    value = container.get(key)
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        raise MalformedPayloadError(f"Webhook payload is missing required field '{path}'", field=path)
    return value


def _optional_text(container: dict, key: str) -> str | None:
    value = container.get(key)
    if value is None:
        return None
    return str(value)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a provider ISO-8601 timestamp into an aware UTC datetime."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def parse_webhook_payload(payload: Any) -> WebhookEnvelope:
    """Validate the minimum webhook shape and normalize it.

    Required: meta.event_name, data.id, data.attributes.status,
    data.attributes.user_email. Everything else is optional.

    Raises:
        MalformedPayloadError: if a required field is missing or mistyped
    """
    body = _require_mapping(payload, "$")
    meta = _require_mapping(body.get("meta"), "meta")
    data = _require_mapping(body.get("data"), "data")
    attributes = _require_mapping(data.get("attributes"), "data.attributes")

    event_name = _require_text(meta, "event_name", "meta.event_name")
    resource_id = _require_text(data, "id", "data.id")
    status = _require_text(attributes, "status", "data.attributes.status")
    user_email = _require_text(attributes, "user_email", "data.attributes.user_email")

    custom_data = meta.get("custom_data") or {}
    if not isinstance(custom_data, dict):
        raise MalformedPayloadError("Webhook payload field 'meta.custom_data' must be an object", field="meta.custom_data")

    occurred_at = parse_timestamp(attributes.get("updated_at")) or parse_timestamp(attributes.get("created_at"))

    return WebhookEnvelope(
        event_name=event_name.strip().lower(),
        resource_id=resource_id,
        status=status.strip().lower(),
        user_email=user_email.strip().lower(),
        user_id=_optional_text(custom_data, "user_id"),
        product_name=_optional_text(attributes, "product_name"),
        variant_name=_optional_text(attributes, "variant_name"),
        product_id=_optional_text(attributes, "product_id"),
        variant_id=_optional_text(attributes, "variant_id"),
        custom_data=custom_data,
        occurred_at=occurred_at,
        raw=body,
    )
