"""Schemas for the application."""

from .billing import (
    CancelSubscriptionRequest,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    Payment,
    PaymentIntentRequest,
    PaymentIntentResponse,
    PaymentRefKind,
    PaymentStatus,
    ProviderSubscriptionStatus,
    Subscription,
    SubscriptionStatus,
    VerificationStatus,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from .health import HealthResponse

__all__ = [
    "CancelSubscriptionRequest",
    "CheckoutSessionRequest",
    "CheckoutSessionResponse",
    "HealthResponse",
    "Payment",
    "PaymentIntentRequest",
    "PaymentIntentResponse",
    "PaymentRefKind",
    "PaymentStatus",
    "ProviderSubscriptionStatus",
    "Subscription",
    "SubscriptionStatus",
    "VerificationStatus",
    "VerifyPaymentRequest",
    "VerifyPaymentResponse",
]
