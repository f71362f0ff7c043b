"""Reconciliation core.

Translates typed billing events into idempotent mutations of subscriptions,
payments and the onboarding payment context. The webhook processor and the
fallback verifier both call into this class, so the two paths cannot diverge.

Each mutation is one atomic repository primitive. When a primitive reports
that nothing changed, the row is read back only to name the outcome (duplicate,
stale or terminal); that read never feeds another write.
"""

from datetime import datetime, timedelta
from typing import Any, Awaitable, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from billsync.core.logging import ContextualLogger
from billsync.domains.billing.exceptions import SubscriptionNotFoundError, bounded
from billsync.domains.billing.repository import (
    OnboardingRepositoryProtocol,
    PaymentRepositoryProtocol,
    SubscriptionRepositoryProtocol,
)
from billsync.domains.billing.types import (
    ALLOWED_SOURCES,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    PaymentFailed,
    PaymentFields,
    PaymentSucceeded,
    ReconcileOutcome,
    ReconcileResult,
    SubscriptionDeleted,
    SubscriptionFields,
    monthly_amount_for,
    parse_metadata,
)
from billsync.models import Subscription
from billsync.schemas.billing import PaymentRefKind, PaymentStatus, SubscriptionStatus

T = TypeVar("T")

# First invoice of a subscription: the checkout already recorded that payment
SUBSCRIPTION_CREATE_REASON = "subscription_create"


class BillingReconciler:
    """Apply billing events to local state."""

    def __init__(
        self,
        subscription_repo: SubscriptionRepositoryProtocol,
        payment_repo: PaymentRepositoryProtocol,
        onboarding_repo: OnboardingRepositoryProtocol,
        *,
        db_timeout: float,
        default_plan_id: str = "small_commune",
        period_days: int = 30,
    ) -> None:
        """Initialize with repositories and reconciliation settings."""
        self._subscription_repo = subscription_repo
        self._payment_repo = payment_repo
        self._onboarding_repo = onboarding_repo
        self._db_timeout = db_timeout
        self._default_plan_id = default_plan_id
        self._period_days = period_days

    async def _db(self, awaitable: Awaitable[T], operation: str) -> T:
        return await bounded(awaitable, self._db_timeout, operation)

    # ------------------------------------------------------------------
    # payment.succeeded
    # ------------------------------------------------------------------

    async def apply_payment_succeeded(
        self, db: AsyncSession, event: PaymentSucceeded, log: ContextualLogger
    ) -> ReconcileResult:
        """Create or activate the organization's subscription and record the payment.

        A payment already recorded for the reference means this is a replay:
        nothing is written, so a cancelled subscription is never resurrected.
        """
        metadata = parse_metadata(event.metadata, required=("organization_id",))

        existing = await self._db(
            self._payment_repo.get_by_external_ref(db, external_ref=event.payment_ref),
            "get_payment",
        )
        if existing is not None:
            subscription = None
            if existing.subscription_id is not None:
                subscription = await self._db(
                    self._subscription_repo.get_by_id(db, id=existing.subscription_id),
                    "get_subscription",
                )
            log.info(f"Payment {event.payment_ref} already recorded")
            return ReconcileResult(
                ReconcileOutcome.DUPLICATE, subscription=subscription, payment=existing
            )

        plan_id = metadata.plan_id or self._default_plan_id
        period_start = event.occurred_at
        fields = SubscriptionFields(
            organization_id=metadata.organization_id,
            # One-shot flows have no provider subscription; the payment reference keys the row
            external_ref=event.subscription_ref or event.payment_ref,
            plan_id=plan_id,
            status=SubscriptionStatus.ACTIVE,
            monthly_amount=monthly_amount_for(metadata, plan_id, event.amount_cents),
            currency=event.currency,
            current_period_start=period_start,
            current_period_end=period_start + timedelta(days=self._period_days),
            status_event_at=event.occurred_at,
        )
        subscription, applied = await self._db(
            self._subscription_repo.upsert_subscription(db, fields=fields),
            "upsert_subscription",
        )
        if not applied:
            log.info(
                f"Subscription for organization {metadata.organization_id} "
                "holds a newer status; kept as is"
            )

        payment, was_new = await self._db(
            self._payment_repo.insert_payment_if_absent(
                db,
                external_ref=event.payment_ref,
                fields=PaymentFields(
                    ref_kind=event.ref_kind,
                    subscription_id=subscription.id if subscription is not None else None,
                    organization_id=metadata.organization_id,
                    user_id=metadata.user_id,
                    plan_id=plan_id,
                    amount_cents=event.amount_cents,
                    currency=event.currency,
                    status=PaymentStatus.SUCCEEDED.value,
                    payment_method=event.payment_method,
                ),
            ),
            "insert_payment",
        )

        if not was_new:
            log.info(f"Payment {event.payment_ref} recorded concurrently by another writer")
            return ReconcileResult(
                ReconcileOutcome.DUPLICATE, subscription=subscription, payment=payment
            )

        if metadata.user_id:
            await self._record_onboarding(
                db,
                metadata.user_id,
                {
                    **_json_metadata(event.metadata),
                    "paymentCompleted": True,
                    "stripeData": {
                        "paymentRef": event.payment_ref,
                        "refKind": event.ref_kind.value,
                        "amount": event.amount_cents,
                        "currency": event.currency,
                        "status": PaymentStatus.SUCCEEDED.value,
                    },
                },
                log,
            )

        log.info(
            f"Recorded payment {event.payment_ref} for organization {metadata.organization_id}"
        )
        return ReconcileResult(ReconcileOutcome.APPLIED, subscription=subscription, payment=payment)

    # ------------------------------------------------------------------
    # payment.failed
    # ------------------------------------------------------------------

    async def apply_payment_failed(
        self, db: AsyncSession, event: PaymentFailed, log: ContextualLogger
    ) -> ReconcileResult:
        """Record the failure in the user's onboarding context. Subscriptions are untouched."""
        metadata = parse_metadata(event.metadata, required=("user_id",))

        existing = await self._db(
            self._payment_repo.get_by_external_ref(db, external_ref=event.payment_ref),
            "get_payment",
        )
        if existing is not None and existing.status == PaymentStatus.SUCCEEDED.value:
            return ReconcileResult(
                ReconcileOutcome.STALE,
                payment=existing,
                reason="payment already succeeded",
            )

        recorded = await self._record_onboarding(
            db,
            metadata.user_id,
            {
                "paymentCompleted": False,
                "stripeData": {
                    "paymentRef": event.payment_ref,
                    "refKind": event.ref_kind.value,
                    "amount": event.amount_cents,
                    "currency": event.currency,
                    "status": event.provider_status,
                    "error": event.error_message,
                },
            },
            log,
        )
        if not recorded:
            return ReconcileResult(ReconcileOutcome.IGNORED, reason="no onboarding context")

        log.warning(f"Payment {event.payment_ref} failed: {event.error_message or 'no reason'}")
        return ReconcileResult(ReconcileOutcome.APPLIED)

    # ------------------------------------------------------------------
    # invoice.payment.succeeded
    # ------------------------------------------------------------------

    async def apply_invoice_paid(
        self, db: AsyncSession, event: InvoicePaymentSucceeded, log: ContextualLogger
    ) -> ReconcileResult:
        """Ensure the subscription is active and record the invoice's payment."""
        if not event.subscription_ref:
            raise SubscriptionNotFoundError(None)

        target = SubscriptionStatus.ACTIVE
        subscription = await self._db(
            self._subscription_repo.transition_subscription(
                db,
                external_ref=event.subscription_ref,
                target=target,
                allowed_from=ALLOWED_SOURCES[target],
                occurred_at=event.occurred_at,
                period_start=event.period_start,
                period_end=event.period_end,
            ),
            "transition_subscription",
        )
        outcome = ReconcileOutcome.APPLIED
        if subscription is None:
            subscription, outcome = await self._classify_noop(
                db, event.subscription_ref, target, event.occurred_at
            )

        if event.billing_reason == SUBSCRIPTION_CREATE_REASON:
            return ReconcileResult(outcome, subscription=subscription)

        if not event.payment_intent_ref:
            log.warning(f"Invoice {event.invoice_id} has no payment intent; no payment recorded")
            return ReconcileResult(outcome, subscription=subscription)

        metadata = parse_metadata(event.metadata)
        payment, was_new = await self._db(
            self._payment_repo.insert_payment_if_absent(
                db,
                external_ref=event.payment_intent_ref,
                fields=PaymentFields(
                    ref_kind=PaymentRefKind.PAYMENT_INTENT,
                    subscription_id=subscription.id,
                    organization_id=subscription.organization_id,
                    user_id=metadata.user_id,
                    plan_id=subscription.plan_id,
                    amount_cents=event.amount_cents,
                    currency=event.currency,
                    status=PaymentStatus.SUCCEEDED.value,
                    payment_method="stripe",
                ),
            ),
            "insert_payment",
        )
        if was_new and outcome is not ReconcileOutcome.TERMINAL:
            outcome = ReconcileOutcome.APPLIED
        return ReconcileResult(outcome, subscription=subscription, payment=payment)

    # ------------------------------------------------------------------
    # invoice.payment.failed
    # ------------------------------------------------------------------

    async def apply_invoice_failed(
        self, db: AsyncSession, event: InvoicePaymentFailed, log: ContextualLogger
    ) -> ReconcileResult:
        """Mark the subscription past due unless the invoice was since paid."""
        if not event.subscription_ref:
            raise SubscriptionNotFoundError(None)

        if event.payment_intent_ref:
            paid = await self._db(
                self._payment_repo.get_by_external_ref(
                    db, external_ref=event.payment_intent_ref
                ),
                "get_payment",
            )
            if paid is not None and paid.status == PaymentStatus.SUCCEEDED.value:
                return ReconcileResult(
                    ReconcileOutcome.STALE,
                    payment=paid,
                    reason="invoice payment already succeeded",
                )

        target = SubscriptionStatus.PAST_DUE
        subscription = await self._db(
            self._subscription_repo.transition_subscription(
                db,
                external_ref=event.subscription_ref,
                target=target,
                allowed_from=ALLOWED_SOURCES[target],
                occurred_at=event.occurred_at,
            ),
            "transition_subscription",
        )
        if subscription is None:
            subscription, outcome = await self._classify_noop(
                db, event.subscription_ref, target, event.occurred_at
            )
            return ReconcileResult(outcome, subscription=subscription)

        log.warning(f"Subscription {event.subscription_ref} is past due")
        return ReconcileResult(ReconcileOutcome.APPLIED, subscription=subscription)

    # ------------------------------------------------------------------
    # subscription.deleted
    # ------------------------------------------------------------------

    async def apply_subscription_deleted(
        self, db: AsyncSession, event: SubscriptionDeleted, log: ContextualLogger
    ) -> ReconcileResult:
        """Cancel the subscription. Deletion is final, so event age is irrelevant."""
        target = SubscriptionStatus.CANCELLED
        subscription = await self._db(
            self._subscription_repo.transition_subscription(
                db,
                external_ref=event.subscription_ref,
                target=target,
                allowed_from=ALLOWED_SOURCES[target],
                occurred_at=event.occurred_at,
                check_stale=False,
            ),
            "transition_subscription",
        )
        if subscription is None:
            subscription, outcome = await self._classify_noop(
                db, event.subscription_ref, target, event.occurred_at
            )
            return ReconcileResult(outcome, subscription=subscription)

        log.info(f"Subscription {event.subscription_ref} cancelled")
        return ReconcileResult(ReconcileOutcome.APPLIED, subscription=subscription)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _classify_noop(
        self,
        db: AsyncSession,
        external_ref: str,
        target: SubscriptionStatus,
        occurred_at: datetime,
    ) -> tuple[Subscription, ReconcileOutcome]:
        """Name the reason a conditional transition matched no row."""
        current = await self._db(
            self._subscription_repo.get_by_external_ref(db, external_ref=external_ref),
            "get_subscription",
        )
        if current is None:
            raise SubscriptionNotFoundError(external_ref)
        if current.status == SubscriptionStatus.CANCELLED.value:
            if target == SubscriptionStatus.CANCELLED:
                return current, ReconcileOutcome.DUPLICATE
            return current, ReconcileOutcome.TERMINAL
        if current.status == target.value and current.status_event_at == occurred_at:
            return current, ReconcileOutcome.DUPLICATE
        return current, ReconcileOutcome.STALE

    async def _record_onboarding(
        self, db: AsyncSession, user_id: str, data: dict[str, Any], log: ContextualLogger
    ) -> bool:
        recorded = await self._db(
            self._onboarding_repo.record_payment_outcome(db, user_id=user_id, data=data),
            "record_payment_outcome",
        )
        if not recorded:
            log.warning(f"No onboarding progress for user {user_id}; payment outcome not stored")
        return recorded


def _json_metadata(raw: Any) -> dict[str, Optional[str]]:
    """Provider metadata as plain strings, safe for a JSON column."""
    return {str(k): (None if v is None else str(v)) for k, v in dict(raw or {}).items()}
