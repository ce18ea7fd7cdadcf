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
    SubscriptionResultDetail,
)

__all__ = [
    "LifecycleConfig",
    "LifecycleEvent",
    "LifecycleEventType",
    "OperationResult",
    "PaymentMetadata",
    "PaymentType",
    "ProcessAllResult",
    "ProcessPaymentInput",
    "ProcessPaymentResult",
    "SavedPaymentMethod",
    "SubscriptionResultDetail",
]
