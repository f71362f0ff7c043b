"""Billing domain exceptions."""

import asyncio
import functools
from typing import Awaitable, Optional, TypeVar

from billsync.core.exceptions import ExternalServiceError, InvalidStateError, NotFoundException

T = TypeVar("T")


class InvalidWebhookSignatureError(ValueError):
    """Raised when a webhook payload cannot be authenticated.

    Subclasses ValueError so the webhook endpoint maps it to a 400 without
    knowing about the billing domain.
    """

    def __init__(self, message: str = "Invalid webhook signature"):
        """Initialize with default message."""
        self.message = message
        super().__init__(message)


class UnparseableEventError(ValueError):
    """Raised internally when a verified payload is not a usable event."""


class MissingMetadataError(Exception):
    """Raised when an event lacks metadata a handler needs.

    Retrying cannot help: the metadata will not appear on redelivery.
    """

    def __init__(self, field: str, reason: str = "missing"):
        """Initialize with the offending field name."""
        self.field = field
        self.reason = reason
        super().__init__(f"Event metadata field '{field}' is {reason}")


class SubscriptionNotFoundError(NotFoundException):
    """Raised when a non-creating event references no local subscription."""

    def __init__(self, external_ref: Optional[str]):
        """Initialize with the unresolved reference."""
        self.external_ref = external_ref
        super().__init__(f"No subscription for external reference {external_ref!r}")


class BillingNotFoundError(NotFoundException):
    """Raised when a billing record or provider object is not found."""

    def __init__(self, message: str = "Billing record not found"):
        """Initialize with default message."""
        super().__init__(message)


class InvalidPlanError(InvalidStateError):
    """Raised when a plan identifier is not in the catalog or has no price."""

    def __init__(self, plan_id: str):
        """Initialize with the rejected plan id."""
        self.plan_id = plan_id
        super().__init__(f"Unknown or unpriced plan: {plan_id}")


class BillingNotAvailableError(InvalidStateError):
    """Raised by NullPaymentGateway when billing is not enabled."""

    def __init__(self, message: str = "Billing is not enabled for this instance"):
        """Initialize with default message."""
        super().__init__(message)


class PaymentGatewayError(ExternalServiceError):
    """Wraps ExternalServiceError from the payment adapter at the domain boundary."""

    def __init__(self, message: str = "Payment gateway error"):
        """Initialize with default message."""
        super().__init__(service_name="PaymentGateway", message=message)


class TransientBillingError(Exception):
    """A downstream call timed out or failed in a way a retry may fix.

    The webhook endpoint answers 500 so the provider redelivers the event.
    """

    def __init__(self, operation: str, message: str = "timed out"):
        """Initialize with the failing operation's name."""
        self.operation = operation
        self.message = message
        super().__init__(f"{operation}: {message}")


def wrap_gateway_errors(fn):
    """Decorator: catch ExternalServiceError from payment gateway, wrap as PaymentGatewayError."""

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except PaymentGatewayError:
            raise
        except ExternalServiceError as e:
            raise PaymentGatewayError(message=e.message) from e

    return wrapper


async def bounded(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await with a deadline; a timeout surfaces as TransientBillingError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientBillingError(operation, f"timed out after {timeout}s") from e
