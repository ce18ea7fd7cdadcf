"""Schemas for the subscription lifecycle batch jobs."""

from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, PositiveInt


class PaymentType(str, Enum):
    RENEWAL = "renewal"
    TRIAL_CONVERSION = "trial_conversion"
    RETRY = "retry"


class PaymentMetadata(BaseModel):
    subscription_id: UUID
    type: PaymentType


class ProcessPaymentInput(BaseModel):
    """Charge request handed to the payment processing collaborator."""

    customer_id: UUID
    amount: int  # smallest currency unit
    currency: str
    payment_method_id: str  # provider-side payment method ID
    idempotency_key: str
    metadata: PaymentMetadata


class ProcessPaymentResult(BaseModel):
    """Outcome of a charge. Declines are ``success=False``, not exceptions."""

    success: bool
    payment_id: str | None = None
    error: str | None = None


class SavedPaymentMethod(BaseModel):
    id: UUID
    provider_payment_method_id: str


class LifecycleEventType(str, Enum):
    RENEWED = "subscription.renewed"
    RENEWAL_FAILED = "subscription.renewal_failed"
    TRIAL_CONVERTED = "subscription.trial_converted"
    TRIAL_CONVERSION_FAILED = "subscription.trial_conversion_failed"
    ENTERED_GRACE_PERIOD = "subscription.entered_grace_period"
    RETRY_SCHEDULED = "subscription.retry_scheduled"
    RETRY_SUCCEEDED = "subscription.retry_succeeded"
    RETRY_FAILED = "subscription.retry_failed"
    MARKED_UNPAID = "subscription.marked_unpaid"
    CANCELED_NONPAYMENT = "subscription.canceled_nonpayment"
    CANCELED_AT_PERIOD_END = "subscription.canceled_at_period_end"


class LifecycleEvent(BaseModel):
    """Event emitted to the configured sink; never persisted by the service."""

    type: LifecycleEventType
    subscription_id: UUID
    customer_id: UUID
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class SubscriptionResultDetail(BaseModel):
    subscription_id: UUID
    success: bool
    error: str | None = None


class OperationResult(BaseModel):
    """Per-operation batch summary."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    details: list[SubscriptionResultDetail] = Field(default_factory=list)

    def record_success(self, subscription_id: UUID) -> None:
        self.processed += 1
        self.succeeded += 1
        self.details.append(SubscriptionResultDetail(subscription_id=subscription_id, success=True))

    def record_failure(self, subscription_id: UUID, error: str) -> None:
        self.processed += 1
        self.failed += 1
        self.details.append(
            SubscriptionResultDetail(subscription_id=subscription_id, success=False, error=error)
        )


class ProcessAllResult(BaseModel):
    renewals: OperationResult
    trial_conversions: OperationResult
    retries: OperationResult
    cancellations: OperationResult


class LifecycleConfig(BaseModel):
    """Policy and collaborators for SubscriptionLifecycleService.

    A missing callback or a negative day count fails validation, which is
    the only error the batch operations surface to their caller.
    """

    grace_period_days: int = Field(default=7, ge=0)
    retry_intervals: list[PositiveInt] = Field(default_factory=lambda: [1, 3, 5])
    trial_conversion_days: int = Field(default=0, ge=0)
    # None: past_due -> unpaid -> canceled in the same run.
    # N: stay unpaid for N days, canceled by a later run.
    unpaid_retention_days: int | None = Field(default=None, ge=0)

    process_payment: Callable[[ProcessPaymentInput], Any]
    get_default_payment_method: Callable[[UUID], Any]
    on_event: Callable[[LifecycleEvent], Any] | None = None
