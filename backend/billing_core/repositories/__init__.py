from billing_core.repositories.payment_method_repository import PaymentMethodRepository
from billing_core.repositories.subscription_repository import (
    LifecycleStorage,
    SubscriptionRepository,
)

__all__ = [
    "LifecycleStorage",
    "PaymentMethodRepository",
    "SubscriptionRepository",
]
