"""Service driving subscriptions through renewals, trial conversions, retries and cancellations.

Designed to run as a periodic batch job (see ``billing_core.worker``). Each
operation re-reads eligible subscriptions from storage, processes them one
at a time and records a per-subscription outcome; one subscription failing
never stops the rest of the batch. Every status write is validated against
the transition table.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from billing_core.models.subscription import Subscription, SubscriptionStatus
from billing_core.repositories.subscription_repository import LifecycleStorage
from billing_core.schemas.subscription_lifecycle import (
    LifecycleConfig,
    LifecycleEvent,
    LifecycleEventType,
    OperationResult,
    PaymentMetadata,
    PaymentType,
    ProcessAllResult,
    ProcessPaymentInput,
    ProcessPaymentResult,
    SavedPaymentMethod,
)
from billing_core.services.payment_provider import PaymentProcessorUnavailable
from billing_core.services.status_transitions import assert_valid_transition
from billing_core.services.subscription_dates import add_interval, ensure_utc

logger = logging.getLogger(__name__)

NO_PAYMENT_METHOD_ERROR = "No default payment method found"
NONPAYMENT_CANCEL_REASON = "Payment failed - grace period expired"
PERIOD_END_CANCEL_REASON = "Canceled at period end"

# Handlers return None on success or an error message on an expected failure
_Handler = Callable[[Subscription, datetime], str | None]


class SubscriptionLifecycleService:
    """Orchestrates the time-driven part of the subscription lifecycle."""

    def __init__(self, storage: LifecycleStorage, config: LifecycleConfig):
        if storage is None:
            raise ValueError("A storage backend is required")
        self.storage = storage
        self.config = config

    # ── Batch operations ────────────────────────────────────────────

    def process_all(self, now: datetime | None = None) -> ProcessAllResult:
        """Run renewals, trial conversions, retries and cancellations in order.

        Each step re-reads storage, so a subscription moved by one step is
        seen in its new state by the next.
        """
        now = now or datetime.now(UTC)
        result = ProcessAllResult(
            renewals=self.process_renewals(now),
            trial_conversions=self.process_trial_conversions(now),
            retries=self.process_retries(now),
            cancellations=self.process_cancellations(now),
        )
        logger.info(
            "Lifecycle run finished: renewals=%d/%d trials=%d/%d retries=%d/%d cancellations=%d/%d",
            result.renewals.succeeded,
            result.renewals.processed,
            result.trial_conversions.succeeded,
            result.trial_conversions.processed,
            result.retries.succeeded,
            result.retries.processed,
            result.cancellations.succeeded,
            result.cancellations.processed,
        )
        return result

    def process_renewals(self, now: datetime | None = None) -> OperationResult:
        """Charge active subscriptions whose current period has ended."""
        now = now or datetime.now(UTC)
        result = OperationResult()
        for subscription in self.storage.find_subscriptions_needing_renewal(now):
            self._process_one(result, subscription, self._renew, now)
        self._log_result("renewals", result)
        return result

    def process_trial_conversions(self, now: datetime | None = None) -> OperationResult:
        """Charge trialing subscriptions once trial_end + trial_conversion_days has passed."""
        now = now or datetime.now(UTC)
        result = OperationResult()
        subscriptions = self.storage.find_trials_needing_conversion(
            now, self.config.trial_conversion_days
        )
        for subscription in subscriptions:
            self._process_one(result, subscription, self._convert_trial, now)
        self._log_result("trial conversions", result)
        return result

    def process_retries(self, now: datetime | None = None) -> OperationResult:
        """Retry payment for past_due subscriptions whose next retry is due."""
        now = now or datetime.now(UTC)
        result = OperationResult()
        for subscription in self.storage.find_past_due_needing_retry(now):
            self._process_one(result, subscription, self._retry, now)
        self._log_result("retries", result)
        return result

    def process_cancellations(self, now: datetime | None = None) -> OperationResult:
        """Cancel subscriptions that ran out of grace period and retries.

        Also finishes cancellations left in ``unpaid`` (either on purpose,
        when ``unpaid_retention_days`` is set, or by an interrupted run) and
        cancels active subscriptions flagged ``cancel_at_period_end``.
        """
        now = now or datetime.now(UTC)
        result = OperationResult()

        for subscription in self.storage.find_past_due_exceeding_grace_period(
            now, self.config.grace_period_days
        ):
            self._process_one(result, subscription, self._cancel_for_nonpayment, now)

        retention_days = self.config.unpaid_retention_days
        for subscription in self.storage.find_unpaid_exceeding_retention(
            now, retention_days if retention_days is not None else 0
        ):
            self._process_one(result, subscription, self._cancel_unpaid, now)

        for subscription in self.storage.find_subscriptions_ending_at_period_end(now):
            self._process_one(result, subscription, self._cancel_at_period_end, now)

        self._log_result("cancellations", result)
        return result

    # ── Per-subscription handlers ───────────────────────────────────

    def _renew(self, subscription: Subscription, now: datetime) -> str | None:
        status = SubscriptionStatus(subscription.status)
        payment_method = self._get_payment_method(subscription)
        if payment_method is None:
            # Nothing to retry against, so the status stays as it is
            self._emit(
                LifecycleEventType.RENEWAL_FAILED,
                subscription,
                now,
                {"error": NO_PAYMENT_METHOD_ERROR, "reason": "no_payment_method"},
            )
            return NO_PAYMENT_METHOD_ERROR

        period_end = ensure_utc(subscription.current_period_end)
        outcome = self._charge(subscription, payment_method, PaymentType.RENEWAL, period_end)
        if not outcome.success:
            error = outcome.error or "Payment failed"
            self._enter_past_due(
                subscription, status, error, now, LifecycleEventType.RENEWAL_FAILED
            )
            return error

        new_start = period_end
        new_end = add_interval(new_start, str(subscription.interval), int(subscription.interval_count))
        updated = self._transition(
            subscription,
            status,
            SubscriptionStatus.ACTIVE,
            {
                "current_period_start": new_start,
                "current_period_end": new_end,
                "last_payment_id": outcome.payment_id,
                "last_payment_error": None,
            },
        )
        self._emit(
            LifecycleEventType.RENEWED,
            updated,
            now,
            {
                "amount": int(subscription.amount_cents),
                "currency": str(subscription.currency),
                "payment_id": outcome.payment_id,
                "new_period_end": new_end.isoformat(),
            },
        )
        return None

    def _convert_trial(self, subscription: Subscription, now: datetime) -> str | None:
        status = SubscriptionStatus(subscription.status)
        payment_method = self._get_payment_method(subscription)
        if payment_method is None:
            # The trial cannot run past its end without a way to pay
            outcome = ProcessPaymentResult(success=False, error=NO_PAYMENT_METHOD_ERROR)
        else:
            trial_end = ensure_utc(subscription.trial_end)
            outcome = self._charge(
                subscription, payment_method, PaymentType.TRIAL_CONVERSION, trial_end
            )

        if not outcome.success:
            error = outcome.error or "Payment failed"
            self._enter_past_due(
                subscription, status, error, now, LifecycleEventType.TRIAL_CONVERSION_FAILED
            )
            return error

        new_end = add_interval(now, str(subscription.interval), int(subscription.interval_count))
        updated = self._transition(
            subscription,
            status,
            SubscriptionStatus.ACTIVE,
            {
                "current_period_start": now,
                "current_period_end": new_end,
                "last_payment_id": outcome.payment_id,
                "last_payment_error": None,
            },
        )
        self._emit(
            LifecycleEventType.TRIAL_CONVERTED,
            updated,
            now,
            {
                "amount": int(subscription.amount_cents),
                "currency": str(subscription.currency),
                "payment_id": outcome.payment_id,
                "new_period_end": new_end.isoformat(),
            },
        )
        return None

    def _retry(self, subscription: Subscription, now: datetime) -> str | None:
        status = SubscriptionStatus(subscription.status)
        retry_count = int(subscription.retry_count or 0)
        period_end = ensure_utc(subscription.current_period_end)

        payment_method = self._get_payment_method(subscription)
        if payment_method is None:
            outcome = ProcessPaymentResult(success=False, error=NO_PAYMENT_METHOD_ERROR)
        else:
            outcome = self._charge(subscription, payment_method, PaymentType.RETRY, period_end)

        if outcome.success:
            new_end = add_interval(
                period_end, str(subscription.interval), int(subscription.interval_count)
            )
            updated = self._transition(
                subscription,
                status,
                SubscriptionStatus.ACTIVE,
                {
                    "current_period_start": period_end,
                    "current_period_end": new_end,
                    "past_due_since": None,
                    "retry_count": 0,
                    "next_retry_at": None,
                    "last_retry_at": now,
                    "last_payment_id": outcome.payment_id,
                    "last_payment_error": None,
                },
            )
            self._emit(
                LifecycleEventType.RETRY_SUCCEEDED,
                updated,
                now,
                {
                    "amount": int(subscription.amount_cents),
                    "currency": str(subscription.currency),
                    "payment_id": outcome.payment_id,
                    "retry_attempt": retry_count + 1,
                },
            )
            return None

        error = outcome.error or "Payment failed"
        attempt = retry_count + 1
        intervals = self.config.retry_intervals
        has_more_retries = attempt < len(intervals)
        next_retry_at = now + timedelta(days=intervals[attempt]) if has_more_retries else None

        updated = self._transition(
            subscription,
            status,
            status,
            {
                "retry_count": attempt,
                "last_retry_at": now,
                "next_retry_at": next_retry_at,
                "last_payment_error": error[:1000],
            },
        )
        self._emit(
            LifecycleEventType.RETRY_FAILED,
            updated,
            now,
            {
                "retry_attempt": attempt,
                "error": error,
                "max_retries_reached": not has_more_retries,
            },
        )
        if next_retry_at is not None:
            self._emit(
                LifecycleEventType.RETRY_SCHEDULED,
                updated,
                now,
                {
                    "retry_attempt": attempt + 1,
                    "next_retry_at": next_retry_at.isoformat(),
                    "interval_days": intervals[attempt],
                },
            )
        elif self._grace_period_expired(updated, now):
            self._cancel_for_nonpayment(updated, now)
        return error

    def _cancel_for_nonpayment(self, subscription: Subscription, now: datetime) -> str | None:
        status = SubscriptionStatus(subscription.status)
        past_due_since = ensure_utc(subscription.past_due_since)

        unpaid = self._transition(
            subscription, status, SubscriptionStatus.UNPAID, {"unpaid_since": now}
        )

        retention_days = self.config.unpaid_retention_days
        if retention_days is not None:
            self._emit(
                LifecycleEventType.MARKED_UNPAID,
                unpaid,
                now,
                {
                    "grace_period_days": self.config.grace_period_days,
                    "grace_period_started_at": _isoformat(past_due_since),
                    "cancel_after": (now + timedelta(days=retention_days)).isoformat(),
                },
            )
            return None

        self._cancel_nonpayment(unpaid, SubscriptionStatus.UNPAID, past_due_since, now)
        return None

    def _cancel_unpaid(self, subscription: Subscription, now: datetime) -> str | None:
        status = SubscriptionStatus(subscription.status)
        self._cancel_nonpayment(
            subscription, status, ensure_utc(subscription.past_due_since), now
        )
        return None

    def _cancel_at_period_end(self, subscription: Subscription, now: datetime) -> str | None:
        status = SubscriptionStatus(subscription.status)
        period_end = ensure_utc(subscription.current_period_end)
        updated = self._transition(
            subscription,
            status,
            SubscriptionStatus.CANCELED,
            {"canceled_at": now, "cancellation_reason": PERIOD_END_CANCEL_REASON},
        )
        self._emit(
            LifecycleEventType.CANCELED_AT_PERIOD_END,
            updated,
            now,
            {"period_end": _isoformat(period_end)},
        )
        return None

    # ── Helpers ─────────────────────────────────────────────────────

    def _cancel_nonpayment(
        self,
        subscription: Subscription,
        status: SubscriptionStatus,
        past_due_since: datetime | None,
        now: datetime,
    ) -> None:
        canceled = self._transition(
            subscription,
            status,
            SubscriptionStatus.CANCELED,
            {
                "canceled_at": now,
                "cancellation_reason": NONPAYMENT_CANCEL_REASON,
                "next_retry_at": None,
            },
        )
        self._emit(
            LifecycleEventType.CANCELED_NONPAYMENT,
            canceled,
            now,
            {
                "grace_period_days": self.config.grace_period_days,
                "grace_period_started_at": _isoformat(past_due_since),
                "grace_period_ended_at": now.isoformat(),
            },
        )

    def _enter_past_due(
        self,
        subscription: Subscription,
        status: SubscriptionStatus,
        error: str,
        now: datetime,
        failed_event: LifecycleEventType,
    ) -> None:
        """Move to past_due, start the grace period and schedule the first retry."""
        intervals = self.config.retry_intervals
        next_retry_at = now + timedelta(days=intervals[0]) if intervals else None

        updated = self._transition(
            subscription,
            status,
            SubscriptionStatus.PAST_DUE,
            {
                "past_due_since": now,
                "retry_count": 0,
                "next_retry_at": next_retry_at,
                "last_retry_at": None,
                "last_payment_error": error[:1000],
            },
        )
        self._emit(failed_event, updated, now, {"error": error})
        self._emit(
            LifecycleEventType.ENTERED_GRACE_PERIOD,
            updated,
            now,
            {
                "grace_period_days": self.config.grace_period_days,
                "grace_period_ends_at": (
                    now + timedelta(days=self.config.grace_period_days)
                ).isoformat(),
            },
        )
        if next_retry_at is not None:
            self._emit(
                LifecycleEventType.RETRY_SCHEDULED,
                updated,
                now,
                {
                    "retry_attempt": 1,
                    "next_retry_at": next_retry_at.isoformat(),
                    "interval_days": intervals[0],
                },
            )

    def _grace_period_expired(self, subscription: Subscription, now: datetime) -> bool:
        past_due_since = ensure_utc(subscription.past_due_since)
        if past_due_since is None:
            return False
        return past_due_since + timedelta(days=self.config.grace_period_days) <= now

    def _get_payment_method(self, subscription: Subscription) -> SavedPaymentMethod | None:
        raw = self.config.get_default_payment_method(subscription.customer_id)
        if raw is None:
            return None
        return SavedPaymentMethod.model_validate(raw)

    def _charge(
        self,
        subscription: Subscription,
        payment_method: SavedPaymentMethod,
        payment_type: PaymentType,
        period_end: datetime | None,
    ) -> ProcessPaymentResult:
        """Call the payment collaborator.

        Declines come back as ``success=False``. A raised transport error or
        timeout is treated as a failed attempt too, since the charge may or
        may not have happened; the idempotency key makes a later attempt
        safe. ``PaymentProcessorUnavailable`` means nothing was attempted
        and propagates so the subscription is left untouched.
        """
        payment_input = ProcessPaymentInput(
            customer_id=subscription.customer_id,  # type: ignore[arg-type]
            amount=int(subscription.amount_cents),
            currency=str(subscription.currency),
            payment_method_id=payment_method.provider_payment_method_id,
            idempotency_key=(
                f"{subscription.id}:{payment_type.value}:"
                f"{_isoformat(period_end)}:{int(subscription.retry_count or 0)}"
            ),
            metadata=PaymentMetadata(
                subscription_id=subscription.id,  # type: ignore[arg-type]
                type=payment_type,
            ),
        )
        try:
            raw = self.config.process_payment(payment_input)
        except PaymentProcessorUnavailable:
            raise
        except Exception as exc:
            logger.warning(
                "Payment call for subscription %s raised %s: %s",
                subscription.id,
                type(exc).__name__,
                exc,
            )
            return ProcessPaymentResult(success=False, error=str(exc) or type(exc).__name__)
        return ProcessPaymentResult.model_validate(raw)

    def _transition(
        self,
        subscription: Subscription,
        from_status: SubscriptionStatus,
        to_status: SubscriptionStatus,
        fields: dict[str, Any],
    ) -> Subscription:
        assert_valid_transition(from_status, to_status, subscription.id)
        updated = self.storage.update_subscription_status(subscription.id, to_status, fields)  # type: ignore[arg-type]
        if from_status != to_status:
            logger.info(
                "Subscription %s moved %s -> %s",
                updated.id,
                from_status.value,
                to_status.value,
            )
        return updated

    def _emit(
        self,
        event_type: LifecycleEventType,
        subscription: Subscription,
        now: datetime,
        data: dict[str, Any],
    ) -> None:
        if self.config.on_event is None:
            return
        event = LifecycleEvent(
            type=event_type,
            subscription_id=subscription.id,  # type: ignore[arg-type]
            customer_id=subscription.customer_id,  # type: ignore[arg-type]
            data=data,
            timestamp=now,
        )
        try:
            self.config.on_event(event)
        except Exception:
            logger.exception(
                "Event sink failed for %s on subscription %s", event_type.value, subscription.id
            )

    def _process_one(
        self,
        result: OperationResult,
        subscription: Subscription,
        handler: _Handler,
        now: datetime,
    ) -> None:
        subscription_id = subscription.id
        try:
            error = handler(subscription, now)
        except PaymentProcessorUnavailable as exc:
            logger.warning("Payment processor unavailable for subscription %s: %s", subscription_id, exc)
            result.record_failure(subscription_id, str(exc))  # type: ignore[arg-type]
            return
        except Exception as exc:
            logger.exception("Lifecycle processing failed for subscription %s", subscription_id)
            result.record_failure(subscription_id, str(exc))  # type: ignore[arg-type]
            return

        if error is None:
            result.record_success(subscription_id)  # type: ignore[arg-type]
        else:
            result.record_failure(subscription_id, error)  # type: ignore[arg-type]

    @staticmethod
    def _log_result(operation: str, result: OperationResult) -> None:
        if result.processed > 0:
            logger.info(
                "Processed %d %s (%d succeeded, %d failed)",
                result.processed,
                operation,
                result.succeeded,
                result.failed,
            )


def _isoformat(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None
