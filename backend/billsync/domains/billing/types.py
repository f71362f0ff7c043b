"""Billing domain types and shared pure functions.

Typed provider events, the metadata contract every handler depends on, the
subscription state machine and the plan catalog. Nothing in here touches
infrastructure, so the webhook processor, the fallback verifier and the
repositories can all share it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from billsync.domains.billing.exceptions import MissingMetadataError
from billsync.schemas.billing import PaymentRefKind, SubscriptionStatus

# ---------------------------------------------------------------------------
# Event kinds
# ---------------------------------------------------------------------------


class EventKind(str, Enum):
    """Kinds of provider event the reconciliation core acts on."""

    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment.succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment.failed"
    SUBSCRIPTION_DELETED = "subscription.deleted"


# Provider event type -> kind. Types absent here are acknowledged and dropped.
PROVIDER_EVENT_KINDS: dict[str, EventKind] = {
    "checkout.session.completed": EventKind.PAYMENT_SUCCEEDED,
    "checkout.session.async_payment_succeeded": EventKind.PAYMENT_SUCCEEDED,
    "payment_intent.succeeded": EventKind.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": EventKind.PAYMENT_FAILED,
    "checkout.session.async_payment_failed": EventKind.PAYMENT_FAILED,
    "invoice.payment_succeeded": EventKind.INVOICE_PAYMENT_SUCCEEDED,
    "invoice.paid": EventKind.INVOICE_PAYMENT_SUCCEEDED,
    "invoice.payment_failed": EventKind.INVOICE_PAYMENT_FAILED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
}


class ReconcileOutcome(str, Enum):
    """What processing an event did. Every outcome except APPLIED is a no-op."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    TERMINAL = "terminal"
    UNPROCESSABLE = "unprocessable"
    IGNORED = "ignored"
    UNPARSEABLE = "unparseable"


# ---------------------------------------------------------------------------
# Typed events
# ---------------------------------------------------------------------------


@dataclass(frozen=True, kw_only=True)
class _ProviderEvent:
    event_id: Optional[str]
    provider_type: str
    occurred_at: datetime
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, kw_only=True)
class PaymentSucceeded(_ProviderEvent):
    """A one-shot payment or a hosted checkout settled."""

    payment_ref: str
    ref_kind: PaymentRefKind
    subscription_ref: Optional[str]
    amount_cents: int
    currency: str
    payment_method: str = "stripe"

    @property
    def kind(self) -> EventKind:
        return EventKind.PAYMENT_SUCCEEDED


@dataclass(frozen=True, kw_only=True)
class PaymentFailed(_ProviderEvent):
    """A one-shot payment attempt failed."""

    payment_ref: str
    ref_kind: PaymentRefKind
    amount_cents: int
    currency: str
    provider_status: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def kind(self) -> EventKind:
        return EventKind.PAYMENT_FAILED


@dataclass(frozen=True, kw_only=True)
class InvoicePaymentSucceeded(_ProviderEvent):
    """A recurring invoice was paid."""

    invoice_id: str
    subscription_ref: Optional[str]
    payment_intent_ref: Optional[str]
    amount_cents: int
    currency: str
    billing_reason: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    @property
    def kind(self) -> EventKind:
        return EventKind.INVOICE_PAYMENT_SUCCEEDED


@dataclass(frozen=True, kw_only=True)
class InvoicePaymentFailed(_ProviderEvent):
    """A recurring invoice payment attempt failed."""

    invoice_id: str
    subscription_ref: Optional[str]
    payment_intent_ref: Optional[str]

    @property
    def kind(self) -> EventKind:
        return EventKind.INVOICE_PAYMENT_FAILED


@dataclass(frozen=True, kw_only=True)
class SubscriptionDeleted(_ProviderEvent):
    """The provider ended a subscription."""

    subscription_ref: str

    @property
    def kind(self) -> EventKind:
        return EventKind.SUBSCRIPTION_DELETED


@dataclass(frozen=True, kw_only=True)
class UnhandledEvent:
    """A verified event this system deliberately does not act on."""

    event_id: Optional[str]
    provider_type: str
    reason: str = "unhandled event type"


@dataclass(frozen=True, kw_only=True)
class UnparseableEvent:
    """A verified payload whose content could not be decoded."""

    event_id: Optional[str] = None
    provider_type: Optional[str] = None
    reason: str


BillingEvent = Union[
    PaymentSucceeded,
    PaymentFailed,
    InvoicePaymentSucceeded,
    InvoicePaymentFailed,
    SubscriptionDeleted,
    UnhandledEvent,
    UnparseableEvent,
]


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------


class EventMetadata(BaseModel):
    """Validated view over the free-form metadata attached to provider objects.

    Accepts both the snake_case keys set on payment intents and the camelCase
    keys set on checkout sessions.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    # Bounded to the INTEGER column it is stored in
    organization_id: Optional[int] = Field(
        None,
        ge=1,
        le=2**31 - 1,
        validation_alias=AliasChoices(
            "organization_id", "orgId", "org_id", "communeId", "commune_id"
        ),
    )
    user_id: Optional[str] = Field(None, validation_alias=AliasChoices("user_id", "userId"))
    plan_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("plan_id", "planId", "plan_type", "plan")
    )
    amount_monthly: Optional[Decimal] = Field(
        None, validation_alias=AliasChoices("amount_monthly", "amountMonthly")
    )

    @field_validator("organization_id", "user_id", "plan_id", "amount_monthly", mode="before")
    @classmethod
    def _blank_is_missing(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


def parse_metadata(
    raw: Optional[Mapping[str, Any]], *, required: Iterable[str] = ()
) -> EventMetadata:
    """Validate raw metadata in one step.

    Returns a complete EventMetadata, or raises MissingMetadataError naming
    the first required field that is absent or malformed.
    """
    try:
        metadata = EventMetadata.model_validate(dict(raw or {}))
    except ValidationError as e:
        first = e.errors()[0]
        loc = first.get("loc") or ("metadata",)
        raise MissingMetadataError(str(loc[0]), reason="malformed") from e

    for name in required:
        if getattr(metadata, name) is None:
            raise MissingMetadataError(name)
    return metadata


# ---------------------------------------------------------------------------
# Subscription state machine
# ---------------------------------------------------------------------------

# target status -> statuses it may be entered from. Nothing leaves CANCELLED.
ALLOWED_SOURCES: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.ACTIVE: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}),
    SubscriptionStatus.PAST_DUE: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}
    ),
    SubscriptionStatus.CANCELLED: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}
    ),
}


def can_transition(current: Optional[SubscriptionStatus], target: SubscriptionStatus) -> bool:
    """Whether a subscription in ``current`` may move to ``target``.

    ``None`` means no subscription exists yet; only creation as ACTIVE is allowed.
    """
    if current is None:
        return target == SubscriptionStatus.ACTIVE
    return current in ALLOWED_SOURCES[target]


def is_stale(last_applied_at: Optional[datetime], occurred_at: datetime) -> bool:
    """An event older than the one that last set the status must not override it."""
    return last_applied_at is not None and occurred_at < last_applied_at


# ---------------------------------------------------------------------------
# Reconciliation inputs / results
# ---------------------------------------------------------------------------


@dataclass
class SubscriptionFields:
    """Fields a creating event is authoritative for."""

    organization_id: int
    external_ref: str
    plan_id: str
    status: SubscriptionStatus
    monthly_amount: Decimal
    currency: str
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    status_event_at: datetime


@dataclass
class PaymentFields:
    """Fields recorded when a payment is first materialized."""

    ref_kind: PaymentRefKind
    subscription_id: Optional[Any]
    organization_id: Optional[int]
    user_id: Optional[str]
    plan_id: Optional[str]
    amount_cents: int
    currency: str
    status: str
    payment_method: str


@dataclass
class ReconcileResult:
    """Outcome of applying one event, with the records it resolved to."""

    outcome: ReconcileOutcome
    subscription: Optional[Any] = None
    payment: Optional[Any] = None
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Plan catalog
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Plan:
    """A purchasable plan."""

    plan_id: str
    name: str
    monthly_price: Decimal


PLAN_CATALOG: dict[str, Plan] = {
    "small_commune": Plan("small_commune", "Petite commune", Decimal("99")),
    "medium_commune": Plan("medium_commune", "Commune moyenne", Decimal("199")),
    "large_commune": Plan("large_commune", "Grande commune", Decimal("299")),
}


def monthly_amount_for(
    metadata: EventMetadata, plan_id: str, fallback_cents: int
) -> Decimal:
    """Resolve the monthly amount: explicit metadata, then catalog, then what was paid."""
    if metadata.amount_monthly is not None:
        return metadata.amount_monthly
    plan = PLAN_CATALOG.get(plan_id)
    if plan is not None:
        return plan.monthly_price
    return (Decimal(fallback_cents) / 100).quantize(Decimal("0.01"))
