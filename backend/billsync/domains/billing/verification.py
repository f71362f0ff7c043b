"""Fallback payment verification.

A client returning from hosted checkout may ask for its result before the
webhook has arrived. This service asks Stripe for the session and, once Stripe
reports it paid, runs the same reconciliation the webhook would. Both paths key
the payment on the session id, so whichever writes first wins and the other
sees a duplicate.

The caller only ever sees ``pending`` or ``completed``. Provider and database
trouble degrades to ``pending`` (the client polls again) unless the payment is
already recorded locally.
"""

from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.core.exceptions import ExternalServiceError
from billsync.core.logging import ContextualLogger, logger
from billsync.core.protocols.payment import PaymentGatewayProtocol
from billsync.domains.billing.event_parser import parse_checkout_session
from billsync.domains.billing.exceptions import (
    BillingNotFoundError,
    MissingMetadataError,
    TransientBillingError,
    UnparseableEventError,
    bounded,
)
from billsync.domains.billing.protocols import PaymentVerificationProtocol
from billsync.domains.billing.reconciler import BillingReconciler
from billsync.domains.billing.repository import (
    PaymentRepositoryProtocol,
    SubscriptionRepositoryProtocol,
)
from billsync.domains.billing.types import PaymentSucceeded
from billsync.schemas.billing import (
    Payment,
    Subscription,
    VerificationStatus,
    VerifyPaymentResponse,
)

VERIFY_PROVIDER_TYPE = "checkout.session.completed"


def _pending() -> VerifyPaymentResponse:
    return VerifyPaymentResponse(status=VerificationStatus.PENDING)


class PaymentVerificationService(PaymentVerificationProtocol):
    """Reconcile a checkout session on the client's request."""

    def __init__(
        self,
        payment_gateway: PaymentGatewayProtocol,
        reconciler: BillingReconciler,
        payment_repo: PaymentRepositoryProtocol,
        subscription_repo: SubscriptionRepositoryProtocol,
        *,
        gateway_timeout: float,
        db_timeout: float,
    ) -> None:
        """Initialize with all required dependencies."""
        self._payment_gateway = payment_gateway
        self._reconciler = reconciler
        self._payment_repo = payment_repo
        self._subscription_repo = subscription_repo
        self._gateway_timeout = gateway_timeout
        self._db_timeout = db_timeout

    async def verify_checkout_session(
        self, db: AsyncSession, session_id: str
    ) -> VerifyPaymentResponse:
        """Report ``pending`` or ``completed`` for a checkout session.

        Raises BillingNotFoundError when Stripe does not know the session.
        """
        log = logger.with_context(checkout_session_id=session_id)

        try:
            session = await bounded(
                self._payment_gateway.get_checkout_session(session_id),
                self._gateway_timeout,
                "get_checkout_session",
            )
        except (TransientBillingError, ExternalServiceError) as e:
            log.warning(f"Checkout session lookup failed: {e}")
            return await self._recorded_or_pending(db, session_id, log)

        if session is None:
            raise BillingNotFoundError(f"Checkout session {session_id} not found")

        try:
            event = parse_checkout_session(
                session, event_id=None, provider_type=VERIFY_PROVIDER_TYPE
            )
        except UnparseableEventError as e:
            log.warning(f"Checkout session unreadable: {e}")
            return await self._recorded_or_pending(db, session_id, log)

        if not isinstance(event, PaymentSucceeded):
            log.info("Checkout session not paid yet")
            return _pending()

        try:
            result = await self._reconciler.apply_payment_succeeded(db, event, log)
        except MissingMetadataError as e:
            log.error(f"Paid checkout session cannot be reconciled: {e}")
            return await self._recorded_or_pending(db, session_id, log)
        except (TransientBillingError, SQLAlchemyError) as e:
            log.warning(f"Reconciliation deferred: {e}")
            await db.rollback()
            return await self._recorded_or_pending(db, session_id, log)

        log.info(f"Checkout session verified ({result.outcome.value})")
        return _completed(result.payment, result.subscription)

    async def _recorded_or_pending(
        self, db: AsyncSession, session_id: str, log: ContextualLogger
    ) -> VerifyPaymentResponse:
        """Completed if the payment is already recorded, pending otherwise."""
        try:
            payment = await bounded(
                self._payment_repo.get_by_external_ref(db, external_ref=session_id),
                self._db_timeout,
                "get_payment",
            )
            if payment is None:
                return _pending()
            subscription = None
            if payment.subscription_id is not None:
                subscription = await bounded(
                    self._subscription_repo.get_by_id(db, id=payment.subscription_id),
                    self._db_timeout,
                    "get_subscription",
                )
        except (TransientBillingError, SQLAlchemyError) as e:
            log.warning(f"Local payment lookup failed: {e}")
            return _pending()

        return _completed(payment, subscription)


def _completed(payment: Any, subscription: Any) -> VerifyPaymentResponse:
    return VerifyPaymentResponse(
        status=VerificationStatus.COMPLETED,
        payment=Payment.model_validate(payment) if payment is not None else None,
        subscription=(
            Subscription.model_validate(subscription) if subscription is not None else None
        ),
    )
