"""Repository resolving the payment method charged on renewal."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy.orm import Session

from billing_core.models.payment_method import PaymentMethod
from billing_core.schemas.subscription_lifecycle import SavedPaymentMethod


class PaymentMethodRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_customer_id(self, customer_id: UUID) -> list[PaymentMethod]:
        return self.db.query(PaymentMethod).filter(PaymentMethod.customer_id == customer_id).all()

    def get_default(self, customer_id: UUID) -> PaymentMethod | None:
        return (
            self.db.query(PaymentMethod)
            .filter(
                PaymentMethod.customer_id == customer_id,
                PaymentMethod.is_default.is_(True),
            )
            .first()
        )

    def get_default_payment_method(self, customer_id: UUID) -> SavedPaymentMethod | None:
        """Default payment method in the shape the lifecycle service expects."""
        payment_method = self.get_default(customer_id)
        if payment_method is None:
            return None
        return SavedPaymentMethod(
            id=payment_method.id,  # type: ignore[arg-type]
            provider_payment_method_id=str(payment_method.provider_payment_method_id),
        )
