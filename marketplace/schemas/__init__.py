from .payment import (
    CreatePaymentOrderRequest,
    CustomerData,
    OrderItem,
    RefundRequest,
    SubscriptionRequest,
    VerifyPaymentRequest,
)

__all__ = [
    "CreatePaymentOrderRequest",
    "CustomerData",
    "OrderItem",
    "RefundRequest",
    "SubscriptionRequest",
    "VerifyPaymentRequest",
]
