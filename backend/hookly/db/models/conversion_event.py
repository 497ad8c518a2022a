"""ConversionEvent model: append-only record of plan changes for analytics."""

import uuid
from decimal import Decimal

from sqlalchemy import Column, Numeric, String, Uuid

from hookly.db.base import Base
from hookly.db.types import UTCDateTime, utcnow


class ConversionEvent(Base):
    __tablename__ = "conversion_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=False, index=True)
    from_plan = Column(String(50), nullable=False)
    to_plan = Column(String(50), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    source = Column(String(100), nullable=False)  # webhook event name, promo:<CODE>, manual, beta_expiry

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    # NO updated_at -- conversions are immutable (append-only)
