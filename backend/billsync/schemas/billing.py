"""Billing schemas."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionStatus(str, Enum):
    """Local subscription status. ``cancelled`` is terminal."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Local payment status."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


class PaymentRefKind(str, Enum):
    """Which provider object a payment's external reference points at."""

    CHECKOUT_SESSION = "checkout_session"
    PAYMENT_INTENT = "payment_intent"


class VerificationStatus(str, Enum):
    """Outcome reported to a client polling after checkout."""

    PENDING = "pending"
    COMPLETED = "completed"


class Subscription(BaseModel):
    """Subscription as stored."""

    id: UUID
    organization_id: int
    external_ref: str
    plan_id: str
    status: SubscriptionStatus
    monthly_amount: Decimal
    currency: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    status_event_at: datetime
    created_at: datetime
    modified_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Payment(BaseModel):
    """Payment as stored."""

    id: UUID
    external_ref: str
    ref_kind: PaymentRefKind
    subscription_id: Optional[UUID] = None
    organization_id: Optional[int] = None
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    amount_cents: int
    currency: str
    status: PaymentStatus
    payment_method: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class VerifyPaymentRequest(BaseModel):
    """Client request after returning from hosted checkout."""

    session_id: str = Field(..., min_length=1, description="Checkout session id")


class VerifyPaymentResponse(BaseModel):
    """Either ``pending`` or ``completed`` with the materialized records."""

    status: VerificationStatus
    payment: Optional[Payment] = None
    subscription: Optional[Subscription] = None


class CheckoutSessionRequest(BaseModel):
    """Request to start a hosted checkout for a plan."""

    plan_id: str = Field(..., description="Plan identifier, e.g. 'small_commune'")
    organization_id: int = Field(..., ge=1, le=2**31 - 1)
    user_id: str


class CheckoutSessionResponse(BaseModel):
    """Hosted checkout session handle."""

    id: str
    url: Optional[str] = None
    status: Optional[str] = None


class PaymentIntentRequest(BaseModel):
    """Request to start a one-shot payment."""

    plan_id: str
    organization_id: int = Field(..., ge=1, le=2**31 - 1)
    user_id: str
    amount_cents: int = Field(..., gt=0, description="Amount in the smallest currency unit")


class PaymentIntentResponse(BaseModel):
    """Client secret for confirming a one-shot payment client-side."""

    id: str
    client_secret: Optional[str] = None


class ProviderSubscriptionStatus(BaseModel):
    """Subscription status as reported by the payment provider."""

    id: str
    status: str
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False


class CancelSubscriptionRequest(BaseModel):
    """Request to cancel a subscription at the end of its period."""

    subscription_ref: str = Field(..., min_length=1)
