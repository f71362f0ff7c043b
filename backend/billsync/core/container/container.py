"""Dependency Injection Container.

The container is a simple immutable dataclass that holds protocol implementations.
It has no construction logic: that belongs in the factory.

Design principles:
- Container serves, factory builds
- Fail fast: all construction at startup
- Type safety: fields are protocol types
- Testing: construct directly with fakes
"""

from dataclasses import dataclass, replace
from typing import Any

from billsync.core.protocols.payment import PaymentGatewayProtocol
from billsync.domains.billing.protocols import (
    BillingServiceProtocol,
    BillingWebhookProtocol,
    PaymentVerificationProtocol,
)


@dataclass(frozen=True)
class Container:
    """Immutable container holding all protocol implementations.

    Usage:
        # Production: use the global container built by factory
        from billsync.core.container import container
        await container.billing_webhook.process_webhook(db, payload, signature)

        # Testing: construct directly with fakes
        test_container = Container(payment_gateway=FakePaymentGateway(), ...)

        # FastAPI endpoints: use Inject() to pull individual protocols
        from billsync.api.deps import Inject
        async def my_endpoint(service: BillingServiceProtocol = Inject(BillingServiceProtocol)):
    """

    payment_gateway: PaymentGatewayProtocol
    billing_service: BillingServiceProtocol
    billing_webhook: BillingWebhookProtocol
    payment_verification: PaymentVerificationProtocol

    def replace(self, **changes: Any) -> "Container":
        """Create a new container with some dependencies replaced.

        Example:
            modified = container.replace(payment_gateway=FakePaymentGateway())

        Returns:
            New Container with specified dependencies replaced
        """
        return replace(self, **changes)
