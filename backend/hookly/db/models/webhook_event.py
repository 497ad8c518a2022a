"""WebhookEvent model: the idempotency ledger.

One row per (provider, external_id). The unique constraint is the only
serialization point between concurrent deliveries of the same event.
"""

import uuid

from sqlalchemy import Column, Enum, Index, Integer, String, Text, UniqueConstraint, Uuid

from hookly.db.base import Base
from hookly.db.types import JSONPayload, UTCDateTime, utcnow
from hookly.domain.webhooks import WebhookProvider, WebhookStatus


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_webhook_events_provider_external_id"),
        Index("ix_webhook_events_status_last_attempt_at", "status", "last_attempt_at"),
        Index("ix_webhook_events_provider_resource_id", "provider", "resource_id"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    provider = Column(
        Enum(WebhookProvider, name="webhook_provider", native_enum=False, create_constraint=True, values_callable=_enum_values),
        nullable=False,
    )
    external_id = Column(String(255), nullable=False)
    resource_id = Column(String(255), nullable=True)  # provider data.id
    event_type = Column(String(100), nullable=False, index=True)
    status = Column(
        Enum(WebhookStatus, name="webhook_status", native_enum=False, create_constraint=True, values_callable=_enum_values),
        nullable=False,
        default=WebhookStatus.PROCESSING,
        index=True,
    )
    payload = Column(JSONPayload, nullable=False, default=dict)
    user_id = Column(String(255), nullable=True, index=True)

    attempt_count = Column(Integer, nullable=False, default=1)
    last_error = Column(Text, nullable=True)
    processing_result = Column(Text, nullable=True)  # skip reason or outcome note
    last_attempt_at = Column(UTCDateTime, nullable=True, default=utcnow)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.provider}:{self.external_id} status={self.status} attempts={self.attempt_count}>"
