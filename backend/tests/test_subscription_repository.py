"""Tests for SubscriptionRepository and PaymentMethodRepository."""

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from billing_core.core import database as db_module
from billing_core.core.database import get_db, init_db
from billing_core.models.payment_method import PaymentMethod
from billing_core.models.subscription import Subscription, SubscriptionStatus
from billing_core.repositories.payment_method_repository import PaymentMethodRepository
from billing_core.repositories.subscription_repository import (
    LifecycleStorage,
    SubscriptionRepository,
)
from billing_core.schemas.subscription_lifecycle import SavedPaymentMethod
from billing_core.services.status_transitions import InvalidStatusTransition
from billing_core.services.subscription_dates import ensure_utc

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=UTC)


@pytest.fixture
def db_session():
    """Create a database session for direct repository testing."""
    gen = get_db()
    db = next(gen)
    try:
        yield db
    finally:
        for _ in gen:
            pass


def _create_subscription(db, **overrides) -> Subscription:
    values = {
        "customer_id": uuid.uuid4(),
        "status": SubscriptionStatus.ACTIVE.value,
        "amount_cents": 2999,
        "currency": "USD",
        "interval": "month",
        "current_period_start": NOW - timedelta(days=30),
        "current_period_end": NOW + timedelta(days=1),
    }
    values.update(overrides)
    subscription = Subscription(**values)
    db.add(subscription)
    db.commit()
    db.refresh(subscription)
    return subscription


def _ids(subscriptions) -> set:
    return {s.id for s in subscriptions}


class TestSubscriptionModel:
    def test_init_db_creates_tables(self):
        init_db()
        tables = inspect(db_module.engine).get_table_names()
        assert {"subscriptions", "payment_methods"} <= set(tables)

    def test_defaults(self, db_session):
        subscription = Subscription(
            customer_id=uuid.uuid4(),
            current_period_start=NOW,
            current_period_end=NOW + timedelta(days=30),
        )
        db_session.add(subscription)
        db_session.commit()
        db_session.refresh(subscription)

        assert isinstance(subscription.id, uuid.UUID)
        assert subscription.status == SubscriptionStatus.INCOMPLETE.value
        assert subscription.retry_count == 0
        assert subscription.cancel_at_period_end is False
        assert subscription.interval == "month"
        assert subscription.interval_count == 1
        assert subscription.created_at is not None

    def test_columns_are_lifecycle_fields_only(self):
        columns = set(Subscription.__table__.columns.keys())
        assert "external_id" not in columns
        assert {"past_due_since", "retry_count", "next_retry_at", "unpaid_since"} <= columns


class TestFinders:
    def test_is_lifecycle_storage(self, db_session):
        assert isinstance(SubscriptionRepository(db_session), LifecycleStorage)

    def test_get_by_id(self, db_session):
        subscription = _create_subscription(db_session)
        repo = SubscriptionRepository(db_session)
        assert repo.get_by_id(subscription.id).id == subscription.id
        assert repo.get_by_id(uuid.uuid4()) is None

    def test_find_subscriptions_needing_renewal(self, db_session):
        due = _create_subscription(db_session, current_period_end=NOW - timedelta(hours=1))
        exactly_now = _create_subscription(db_session, current_period_end=NOW)
        _create_subscription(db_session, current_period_end=NOW + timedelta(hours=1))
        _create_subscription(
            db_session,
            current_period_end=NOW - timedelta(hours=1),
            cancel_at_period_end=True,
        )
        _create_subscription(
            db_session,
            status=SubscriptionStatus.PAST_DUE.value,
            current_period_end=NOW - timedelta(hours=1),
        )

        found = SubscriptionRepository(db_session).find_subscriptions_needing_renewal(NOW)
        assert _ids(found) == {due.id, exactly_now.id}

    def test_find_trials_needing_conversion(self, db_session):
        ended = _create_subscription(
            db_session,
            status=SubscriptionStatus.TRIALING.value,
            trial_end=NOW - timedelta(days=3),
        )
        recent = _create_subscription(
            db_session,
            status=SubscriptionStatus.TRIALING.value,
            trial_end=NOW - timedelta(hours=1),
        )
        _create_subscription(
            db_session,
            status=SubscriptionStatus.TRIALING.value,
            trial_end=NOW + timedelta(days=1),
        )
        _create_subscription(db_session, status=SubscriptionStatus.TRIALING.value, trial_end=None)

        repo = SubscriptionRepository(db_session)
        assert _ids(repo.find_trials_needing_conversion(NOW, 0)) == {ended.id, recent.id}
        assert _ids(repo.find_trials_needing_conversion(NOW, 2)) == {ended.id}

    def test_find_past_due_needing_retry(self, db_session):
        due = _create_subscription(
            db_session,
            status=SubscriptionStatus.PAST_DUE.value,
            past_due_since=NOW - timedelta(days=1),
            next_retry_at=NOW - timedelta(minutes=1),
        )
        _create_subscription(
            db_session,
            status=SubscriptionStatus.PAST_DUE.value,
            past_due_since=NOW - timedelta(days=1),
            next_retry_at=NOW + timedelta(days=1),
        )
        _create_subscription(
            db_session,
            status=SubscriptionStatus.PAST_DUE.value,
            past_due_since=NOW - timedelta(days=1),
            next_retry_at=None,
        )

        found = SubscriptionRepository(db_session).find_past_due_needing_retry(NOW)
        assert _ids(found) == {due.id}

    def test_find_past_due_exceeding_grace_period(self, db_session):
        expired = _create_subscription(
            db_session,
            status=SubscriptionStatus.PAST_DUE.value,
            past_due_since=NOW - timedelta(days=8),
        )
        _create_subscription(
            db_session,
            status=SubscriptionStatus.PAST_DUE.value,
            past_due_since=NOW - timedelta(days=3),
        )
        # Still has a retry scheduled
        _create_subscription(
            db_session,
            status=SubscriptionStatus.PAST_DUE.value,
            past_due_since=NOW - timedelta(days=8),
            next_retry_at=NOW + timedelta(days=1),
        )

        found = SubscriptionRepository(db_session).find_past_due_exceeding_grace_period(NOW, 7)
        assert _ids(found) == {expired.id}

    def test_find_unpaid_exceeding_retention(self, db_session):
        old = _create_subscription(
            db_session,
            status=SubscriptionStatus.UNPAID.value,
            unpaid_since=NOW - timedelta(days=10),
        )
        recent = _create_subscription(
            db_session,
            status=SubscriptionStatus.UNPAID.value,
            unpaid_since=NOW - timedelta(hours=1),
        )

        repo = SubscriptionRepository(db_session)
        assert _ids(repo.find_unpaid_exceeding_retention(NOW, 7)) == {old.id}
        assert _ids(repo.find_unpaid_exceeding_retention(NOW, 0)) == {old.id, recent.id}

    def test_find_subscriptions_ending_at_period_end(self, db_session):
        ending = _create_subscription(
            db_session,
            cancel_at_period_end=True,
            current_period_end=NOW - timedelta(minutes=5),
        )
        _create_subscription(
            db_session,
            cancel_at_period_end=True,
            current_period_end=NOW + timedelta(days=5),
        )

        found = SubscriptionRepository(db_session).find_subscriptions_ending_at_period_end(NOW)
        assert _ids(found) == {ending.id}


class TestUpdateSubscriptionStatus:
    def test_updates_status_and_fields(self, db_session):
        subscription = _create_subscription(db_session)
        repo = SubscriptionRepository(db_session)

        updated = repo.update_subscription_status(
            subscription.id,
            SubscriptionStatus.PAST_DUE,
            {"past_due_since": NOW, "retry_count": 0, "last_payment_error": "Card declined"},
        )

        assert updated.status == SubscriptionStatus.PAST_DUE.value
        assert ensure_utc(updated.past_due_since) == NOW
        assert updated.last_payment_error == "Card declined"

    def test_same_status_write_is_allowed(self, db_session):
        subscription = _create_subscription(
            db_session, status=SubscriptionStatus.PAST_DUE.value, retry_count=1
        )
        updated = SubscriptionRepository(db_session).update_subscription_status(
            subscription.id, SubscriptionStatus.PAST_DUE, {"retry_count": 2}
        )
        assert updated.retry_count == 2

    def test_rejects_invalid_transition_and_leaves_row(self, db_session):
        subscription = _create_subscription(db_session, status=SubscriptionStatus.CANCELED.value)
        repo = SubscriptionRepository(db_session)

        with pytest.raises(InvalidStatusTransition):
            repo.update_subscription_status(subscription.id, SubscriptionStatus.ACTIVE)

        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.CANCELED.value

    def test_validates_against_stored_status(self, db_session):
        subscription = _create_subscription(db_session)
        # Another writer cancels the row behind this session's back
        db_session.execute(
            Subscription.__table__.update()
            .where(Subscription.id == subscription.id)
            .values(status=SubscriptionStatus.CANCELED.value)
        )
        db_session.commit()

        with pytest.raises(InvalidStatusTransition):
            SubscriptionRepository(db_session).update_subscription_status(
                subscription.id, SubscriptionStatus.PAST_DUE
            )

    def test_not_found(self, db_session):
        with pytest.raises(ValueError, match="not found"):
            SubscriptionRepository(db_session).update_subscription_status(
                uuid.uuid4(), SubscriptionStatus.ACTIVE
            )

    def test_rejects_unknown_fields(self, db_session):
        subscription = _create_subscription(db_session)
        with pytest.raises(ValueError, match="amount_cents"):
            SubscriptionRepository(db_session).update_subscription_status(
                subscription.id, SubscriptionStatus.ACTIVE, {"amount_cents": 1}
            )

    def test_rolls_back_on_database_error(self, db_session):
        subscription = _create_subscription(db_session)
        repo = SubscriptionRepository(db_session)

        with (
            patch.object(db_session, "commit", side_effect=SQLAlchemyError("disk full")),
            patch.object(db_session, "rollback") as mock_rollback,
            pytest.raises(SQLAlchemyError, match="disk full"),
        ):
            repo.update_subscription_status(subscription.id, SubscriptionStatus.PAST_DUE)

        mock_rollback.assert_called_once()


class TestPaymentMethodRepository:
    def _create_payment_method(self, db, customer_id, **overrides) -> PaymentMethod:
        values = {
            "customer_id": customer_id,
            "provider": "stripe",
            "provider_payment_method_id": "pm_123",
            "is_default": True,
        }
        values.update(overrides)
        payment_method = PaymentMethod(**values)
        db.add(payment_method)
        db.commit()
        db.refresh(payment_method)
        return payment_method

    def test_get_default_payment_method(self, db_session):
        customer_id = uuid.uuid4()
        self._create_payment_method(
            db_session, customer_id, provider_payment_method_id="pm_old", is_default=False
        )
        default = self._create_payment_method(db_session, customer_id)

        result = PaymentMethodRepository(db_session).get_default_payment_method(customer_id)

        assert result == SavedPaymentMethod(id=default.id, provider_payment_method_id="pm_123")

    def test_no_default_payment_method(self, db_session):
        customer_id = uuid.uuid4()
        self._create_payment_method(db_session, customer_id, is_default=False)

        repo = PaymentMethodRepository(db_session)
        assert repo.get_default_payment_method(customer_id) is None
        assert repo.get_default_payment_method(uuid.uuid4()) is None

    def test_get_by_customer_id(self, db_session):
        customer_id = uuid.uuid4()
        self._create_payment_method(db_session, customer_id)
        self._create_payment_method(db_session, customer_id, is_default=False)
        self._create_payment_method(db_session, uuid.uuid4())

        assert len(PaymentMethodRepository(db_session).get_by_customer_id(customer_id)) == 2
