"""Webhook processor for Stripe billing events.

Authenticates the raw payload, decodes it into a typed event and routes it to
exactly one reconciliation handler. Only two things escape as exceptions: a bad
signature (the endpoint answers 400) and a transient failure (the endpoint
answers 500 so Stripe redelivers). Every other outcome is acknowledged.
"""

from typing import Optional, assert_never

from sqlalchemy.ext.asyncio import AsyncSession

from billsync.core.logging import ContextualLogger, logger
from billsync.core.protocols.payment import PaymentGatewayProtocol
from billsync.domains.billing.event_parser import parse_event
from billsync.domains.billing.exceptions import (
    MissingMetadataError,
    SubscriptionNotFoundError,
)
from billsync.domains.billing.protocols import BillingWebhookProtocol
from billsync.domains.billing.reconciler import BillingReconciler
from billsync.domains.billing.types import (
    BillingEvent,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    PaymentFailed,
    PaymentSucceeded,
    ReconcileOutcome,
    ReconcileResult,
    SubscriptionDeleted,
    UnhandledEvent,
    UnparseableEvent,
)


class BillingWebhookProcessor(BillingWebhookProtocol):
    """Process Stripe webhook events for billing."""

    def __init__(
        self,
        payment_gateway: PaymentGatewayProtocol,
        reconciler: BillingReconciler,
    ) -> None:
        """Initialize with all required dependencies."""
        self._payment_gateway = payment_gateway
        self._reconciler = reconciler

    async def process_webhook(
        self, db: AsyncSession, payload: bytes, signature: Optional[str]
    ) -> ReconcileOutcome:
        """Verify webhook signature and process the resulting event.

        Raises InvalidWebhookSignatureError if the signature is invalid.
        """
        try:
            self._payment_gateway.verify_webhook_signature(payload, signature)
        except ValueError as e:
            # Reason only: the payload is untrusted and never logged
            logger.with_context(event_type="webhook_rejected").warning(str(e))
            raise

        event = parse_event(payload)
        return await self.process_event(db, event)

    async def process_event(self, db: AsyncSession, event: BillingEvent) -> ReconcileOutcome:
        """Route an authenticated event to its handler."""
        log = logger.with_context(
            event_type=event.provider_type, stripe_event_id=event.event_id
        )

        try:
            result = await self._route(db, event, log)
        except MissingMetadataError as e:
            log.error(f"Unprocessable event: {e}")
            return ReconcileOutcome.UNPROCESSABLE
        except SubscriptionNotFoundError as e:
            log.warning(f"Unprocessable event: {e.message}")
            return ReconcileOutcome.UNPROCESSABLE
        except Exception as e:
            log.error(f"Error handling {event.provider_type}: {e}", exc_info=True)
            raise

        if result.reason:
            log.info(f"Webhook outcome: {result.outcome.value} ({result.reason})")
        else:
            log.info(f"Webhook outcome: {result.outcome.value}")
        return result.outcome

    async def _route(
        self, db: AsyncSession, event: BillingEvent, log: ContextualLogger
    ) -> ReconcileResult:
        match event:
            case PaymentSucceeded():
                return await self._reconciler.apply_payment_succeeded(db, event, log)
            case PaymentFailed():
                return await self._reconciler.apply_payment_failed(db, event, log)
            case InvoicePaymentSucceeded():
                return await self._reconciler.apply_invoice_paid(db, event, log)
            case InvoicePaymentFailed():
                return await self._reconciler.apply_invoice_failed(db, event, log)
            case SubscriptionDeleted():
                return await self._reconciler.apply_subscription_deleted(db, event, log)
            case UnhandledEvent():
                return ReconcileResult(ReconcileOutcome.IGNORED, reason=event.reason)
            case UnparseableEvent():
                log.warning(f"Unparseable event acknowledged: {event.reason}")
                return ReconcileResult(ReconcileOutcome.UNPARSEABLE, reason=event.reason)
            case _:
                assert_never(event)
