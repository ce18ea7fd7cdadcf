from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Integer, String, func

from billing_core.core.database import Base
from billing_core.models.shared import UUIDType, generate_uuid


class SubscriptionStatus(str, Enum):
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    PAUSED = "paused"
    CANCELED = "canceled"


class BillingInterval(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class Subscription(Base):
    """Subscription row driven by the lifecycle service.

    Rows are never deleted: canceled and incomplete_expired are terminal
    statuses, not removals.
    """

    __tablename__ = "subscriptions"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    customer_id = Column(UUIDType, nullable=False, index=True)
    status = Column(
        String(30), nullable=False, default=SubscriptionStatus.INCOMPLETE.value, index=True
    )

    # Pricing
    amount_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    interval = Column(String(10), nullable=False, default=BillingInterval.MONTH.value)
    interval_count = Column(Integer, nullable=False, default=1)

    # Billing period
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False, index=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    default_payment_method_id = Column(UUIDType, nullable=True)

    # Dunning bookkeeping
    past_due_since = Column(DateTime(timezone=True), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True, index=True)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)
    last_payment_id = Column(String(255), nullable=True)
    last_payment_error = Column(String(1000), nullable=True)
    unpaid_since = Column(DateTime(timezone=True), nullable=True)

    canceled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
