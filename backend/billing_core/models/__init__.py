from billing_core.models.payment_method import PaymentMethod
from billing_core.models.subscription import BillingInterval, Subscription, SubscriptionStatus

__all__ = [
    "BillingInterval",
    "PaymentMethod",
    "Subscription",
    "SubscriptionStatus",
]
