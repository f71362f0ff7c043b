"""Fake payment gateway for testing.

In-memory implementation of PaymentGatewayProtocol.
Records all calls for assertions. No external API calls.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Mapping, Optional
from uuid import uuid4

from billsync.core.protocols.payment import PaymentGatewayProtocol
from billsync.domains.billing.exceptions import InvalidWebhookSignatureError

VALID_SIGNATURE = "t=0,v1=fake"


class FakePaymentGateway(PaymentGatewayProtocol):
    """Test implementation of PaymentGatewayProtocol.

    Usage::

        fake = FakePaymentGateway()
        fake.seed_checkout_session("cs_1", payment_status="paid", metadata={"orgId": "42"})
        session = await fake.get_checkout_session("cs_1")
        assert fake.call_count("get_checkout_session") == 1

    ``verify_webhook_signature`` accepts exactly ``VALID_SIGNATURE``.
    """

    def __init__(
        self,
        price_ids: Optional[dict[str, str]] = None,
        should_raise: Optional[Exception] = None,
        delay: float = 0.0,
    ) -> None:
        """Initialize with optional price IDs, error injection and latency."""
        self._price_ids = (
            price_ids
            if price_ids is not None
            else {
                "small_commune": "price_small",
                "medium_commune": "price_medium",
                "large_commune": "price_large",
            }
        )
        self._should_raise = should_raise
        self.delay = delay
        self._calls: list[tuple[str, tuple, dict]] = []

        # In-memory state
        self._sessions: dict[str, dict] = {}
        self._subscriptions: dict[str, dict] = {}
        self._payment_intents: dict[str, dict] = {}

    async def _record(self, method: str, *args: Any, **kwargs: Any) -> None:
        self._calls.append((method, args, kwargs))
        if self._should_raise:
            raise self._should_raise
        await asyncio.sleep(self.delay)

    # ---- Test helpers ----

    def call_count(self, method: str) -> int:
        """Number of times a method was called."""
        return sum(1 for name, _, _ in self._calls if name == method)

    def calls_for(self, method: str) -> list[tuple[tuple, dict]]:
        """Return (args, kwargs) for each call to *method*."""
        return [(a, k) for name, a, k in self._calls if name == method]

    def seed_checkout_session(
        self,
        session_id: str,
        *,
        payment_status: str = "paid",
        metadata: Optional[dict] = None,
        subscription: Optional[str] = None,
        amount_total: int = 9900,
        currency: str = "eur",
        created: int = 1_700_000_000,
    ) -> dict:
        """Store a checkout session the provider 'knows'."""
        session = {
            "id": session_id,
            "object": "checkout.session",
            "payment_status": payment_status,
            "metadata": metadata or {},
            "subscription": subscription,
            "amount_total": amount_total,
            "currency": currency,
            "created": created,
        }
        self._sessions[session_id] = session
        return session

    def seed_subscription(self, subscription_id: str, **fields: Any) -> dict:
        """Store a subscription the provider 'knows'."""
        sub = {
            "id": subscription_id,
            "status": "active",
            "cancel_at_period_end": False,
            "current_period_end": None,
            **fields,
        }
        self._subscriptions[subscription_id] = sub
        return sub

    # ---- Price / plan mapping ----

    def get_price_for_plan(self, plan_id: str) -> Optional[str]:
        """Return fake price ID for a plan."""
        return self._price_ids.get(plan_id)

    # ---- Queries ----

    async def get_checkout_session(self, session_id: str) -> Optional[Mapping[str, Any]]:
        """Return a seeded session, or None."""
        await self._record("get_checkout_session", session_id)
        return self._sessions.get(session_id)

    async def get_subscription(self, subscription_id: str) -> Optional[Mapping[str, Any]]:
        """Return a seeded subscription, or None."""
        await self._record("get_subscription", subscription_id)
        return self._subscriptions.get(subscription_id)

    # ---- Mutations ----

    async def create_checkout_session(
        self,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Mapping[str, Any]:
        """Create a fake open checkout session."""
        await self._record(
            "create_checkout_session", price_id, success_url, cancel_url, metadata=metadata
        )
        sid = f"cs_{uuid4().hex[:14]}"
        session = self.seed_checkout_session(
            sid, payment_status="unpaid", metadata=dict(metadata or {}), amount_total=0
        )
        session["url"] = "https://checkout.fake/session"
        session["status"] = "open"
        return session

    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Mapping[str, Any]:
        """Create a fake payment intent."""
        await self._record("create_payment_intent", amount_cents, currency, metadata=metadata)
        pid = f"pi_{uuid4().hex[:14]}"
        intent = {
            "id": pid,
            "amount": amount_cents,
            "currency": currency,
            "metadata": dict(metadata or {}),
            "client_secret": f"{pid}_secret_fake",
            "status": "requires_payment_method",
        }
        self._payment_intents[pid] = intent
        return intent

    async def cancel_subscription(
        self, subscription_id: str, at_period_end: bool = True
    ) -> Mapping[str, Any]:
        """Mark a fake subscription as cancelled."""
        await self._record("cancel_subscription", subscription_id, at_period_end=at_period_end)
        sub = self._subscriptions.setdefault(
            subscription_id, {"id": subscription_id, "status": "active"}
        )
        if at_period_end:
            sub["cancel_at_period_end"] = True
        else:
            sub["status"] = "canceled"
        return sub

    # ---- Webhooks ----

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> None:
        """Accept only the well-known fake signature."""
        self._calls.append(("verify_webhook_signature", (payload, signature), {}))
        if signature != VALID_SIGNATURE:
            raise InvalidWebhookSignatureError()
