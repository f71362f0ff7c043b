"""Core protocols for dependency injection.

Domain-specific protocols (repositories, webhook processing) live in their
respective domains/ directories. This module keeps cross-cutting
infrastructure protocols only.
"""

from billsync.core.protocols.payment import PaymentGatewayProtocol

__all__ = ["PaymentGatewayProtocol"]
