"""Account model: plan, usage counters and beta grant for one user."""

from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, Column, Enum, Integer, Numeric, String

from hookly.db.base import Base
from hookly.db.types import UTCDateTime, utcnow
from hookly.domain.plans import Plan


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("usage_count >= 0", name="ck_accounts_usage_count_non_negative"),
        CheckConstraint("overage_count >= 0", name="ck_accounts_overage_count_non_negative"),
    )

    id = Column(String(255), primary_key=True)  # provider-independent user id
    email = Column(String(255), unique=True, nullable=False, index=True)

    plan = Column(
        Enum(Plan, name="plan_tier", native_enum=False, create_constraint=True, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=Plan.TRIAL,
    )

    # Usage for the current billing period
    usage_count = Column(Integer, nullable=False, default=0)
    usage_limit = Column(Integer, nullable=True, default=15)  # NULL = unbounded
    overage_count = Column(Integer, nullable=False, default=0)
    overage_charge = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    overage_warning_sent = Column(Boolean, nullable=False, default=False)
    last_reset_at = Column(UTCDateTime, nullable=True)

    # Promo beta grant
    beta_flag = Column(Boolean, nullable=False, default=False)
    beta_expiry = Column(UTCDateTime, nullable=True)
    # Plan to restore when the grant ends; paid purchases during the grant land here
    beta_base_plan = Column(
        Enum(Plan, name="beta_base_plan_tier", native_enum=False, create_constraint=True, values_callable=lambda e: [m.value for m in e]),
        nullable=True,
    )

    # occurred_at of the newest billing event applied; older events are stale
    last_billing_event_at = Column(UTCDateTime, nullable=True)

    version = Column(Integer, nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Account id={self.id!r} plan={self.plan} usage={self.usage_count}/{self.usage_limit}>"
