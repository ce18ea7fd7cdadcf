"""Storage for the subscription lifecycle service.

``LifecycleStorage`` is the contract the lifecycle service consumes;
``SubscriptionRepository`` implements it on SQLAlchemy.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_core.models.subscription import Subscription, SubscriptionStatus
from billing_core.services.status_transitions import assert_valid_transition

# Columns the lifecycle service may write alongside a status change
_WRITABLE_FIELDS = frozenset(
    {
        "current_period_start",
        "current_period_end",
        "trial_end",
        "cancel_at_period_end",
        "default_payment_method_id",
        "past_due_since",
        "retry_count",
        "next_retry_at",
        "last_retry_at",
        "last_payment_id",
        "last_payment_error",
        "unpaid_since",
        "canceled_at",
        "cancellation_reason",
    }
)


class LifecycleStorage(ABC):
    """Abstract storage consumed by the lifecycle service."""

    @abstractmethod
    def get_by_id(self, subscription_id: UUID) -> Subscription | None:
        pass  # pragma: no cover

    @abstractmethod
    def find_subscriptions_needing_renewal(self, now: datetime) -> list[Subscription]:
        """Active subscriptions whose current period has ended."""
        pass  # pragma: no cover

    @abstractmethod
    def find_trials_needing_conversion(
        self, now: datetime, conversion_days: int
    ) -> list[Subscription]:
        """Trialing subscriptions with trial_end + conversion_days <= now."""
        pass  # pragma: no cover

    @abstractmethod
    def find_past_due_needing_retry(self, now: datetime) -> list[Subscription]:
        """Past-due subscriptions whose scheduled retry is due."""
        pass  # pragma: no cover

    @abstractmethod
    def find_past_due_exceeding_grace_period(
        self, now: datetime, grace_period_days: int
    ) -> list[Subscription]:
        """Past-due subscriptions out of grace with no retry left."""
        pass  # pragma: no cover

    @abstractmethod
    def find_unpaid_exceeding_retention(
        self, now: datetime, retention_days: int
    ) -> list[Subscription]:
        pass  # pragma: no cover

    @abstractmethod
    def find_subscriptions_ending_at_period_end(self, now: datetime) -> list[Subscription]:
        pass  # pragma: no cover

    @abstractmethod
    def update_subscription_status(
        self,
        subscription_id: UUID,
        status: SubscriptionStatus,
        fields: dict[str, Any] | None = None,
    ) -> Subscription:
        """Persist a validated status change together with extra fields."""
        pass  # pragma: no cover


class SubscriptionRepository(LifecycleStorage):
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, subscription_id: UUID) -> Subscription | None:
        return self.db.query(Subscription).filter(Subscription.id == subscription_id).first()

    def find_subscriptions_needing_renewal(self, now: datetime) -> list[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.cancel_at_period_end.is_(False),
                Subscription.current_period_end <= now,
            )
            .order_by(Subscription.current_period_end)
            .all()
        )

    def find_trials_needing_conversion(
        self, now: datetime, conversion_days: int
    ) -> list[Subscription]:
        cutoff = now - timedelta(days=conversion_days)
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.TRIALING.value,
                Subscription.trial_end.isnot(None),
                Subscription.trial_end <= cutoff,
            )
            .order_by(Subscription.trial_end)
            .all()
        )

    def find_past_due_needing_retry(self, now: datetime) -> list[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.PAST_DUE.value,
                Subscription.next_retry_at.isnot(None),
                Subscription.next_retry_at <= now,
            )
            .order_by(Subscription.next_retry_at)
            .all()
        )

    def find_past_due_exceeding_grace_period(
        self, now: datetime, grace_period_days: int
    ) -> list[Subscription]:
        cutoff = now - timedelta(days=grace_period_days)
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.PAST_DUE.value,
                Subscription.next_retry_at.is_(None),
                Subscription.past_due_since.isnot(None),
                Subscription.past_due_since <= cutoff,
            )
            .order_by(Subscription.past_due_since)
            .all()
        )

    def find_unpaid_exceeding_retention(
        self, now: datetime, retention_days: int
    ) -> list[Subscription]:
        cutoff = now - timedelta(days=retention_days)
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.UNPAID.value,
                Subscription.unpaid_since.isnot(None),
                Subscription.unpaid_since <= cutoff,
            )
            .order_by(Subscription.unpaid_since)
            .all()
        )

    def find_subscriptions_ending_at_period_end(self, now: datetime) -> list[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.cancel_at_period_end.is_(True),
                Subscription.current_period_end <= now,
            )
            .order_by(Subscription.current_period_end)
            .all()
        )

    def update_subscription_status(
        self,
        subscription_id: UUID,
        status: SubscriptionStatus,
        fields: dict[str, Any] | None = None,
    ) -> Subscription:
        """Validate the transition against the stored row, then persist it.

        Raises:
            ValueError: If the subscription does not exist or a field is not writable.
            InvalidStatusTransition: If the stored status cannot move to ``status``.
        """
        subscription = self.get_by_id(subscription_id)
        if not subscription:
            raise ValueError(f"Subscription {subscription_id} not found")

        # Re-read so a concurrent external change is validated, not overwritten
        self.db.refresh(subscription)
        assert_valid_transition(str(subscription.status), status, subscription_id)

        update_data = fields or {}
        unknown = set(update_data) - _WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not writable by lifecycle updates: {sorted(unknown)}")

        subscription.status = SubscriptionStatus(status).value  # type: ignore[assignment]
        for key, value in update_data.items():
            setattr(subscription, key, value)
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.refresh(subscription)
        return subscription
