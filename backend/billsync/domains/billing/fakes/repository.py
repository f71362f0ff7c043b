"""Fake billing repositories for testing.

Each write mirrors the atomic SQL statement of the real repository: the check
and the mutation happen with no await in between, so concurrent tasks on one
event loop see the same all-or-nothing behaviour the database provides. Every
call yields to the loop first so that tests can interleave writers.
"""

import asyncio
from datetime import datetime
from typing import Any, Collection, Optional
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from billsync.domains.billing.types import PaymentFields, SubscriptionFields
from billsync.models import Payment, Subscription
from billsync.models._base import utcnow
from billsync.schemas.billing import SubscriptionStatus


class _FakeRepository:
    def __init__(self, delay: float = 0.0) -> None:
        self._calls: list[tuple] = []
        self.delay = delay

    async def _enter(self, *call: Any) -> None:
        self._calls.append(call)
        await asyncio.sleep(self.delay)

    def call_count(self, method: str) -> int:
        """Number of times a method was called."""
        return sum(1 for call in self._calls if call[0] == method)


class FakeSubscriptionRepository(_FakeRepository):
    """In-memory fake for SubscriptionRepositoryProtocol."""

    def __init__(self, delay: float = 0.0) -> None:
        """Initialize with empty store and call log."""
        super().__init__(delay)
        self._store: dict[UUID, Subscription] = {}

    def seed(
        self,
        *,
        organization_id: int,
        external_ref: str,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        status_event_at: Optional[datetime] = None,
        plan_id: str = "small_commune",
    ) -> Subscription:
        """Populate store with test data."""
        now = utcnow()
        sub = Subscription(
            id=uuid4(),
            organization_id=organization_id,
            external_ref=external_ref,
            plan_id=plan_id,
            status=status.value,
            monthly_amount=0,
            currency="eur",
            current_period_start=None,
            current_period_end=None,
            status_event_at=status_event_at or now,
            created_at=now,
            modified_at=now,
        )
        self._store[sub.id] = sub
        return sub

    def all(self) -> list[Subscription]:
        """Every stored row."""
        return list(self._store.values())

    def _open_for(self, organization_id: int) -> Optional[Subscription]:
        for sub in self._store.values():
            if (
                sub.organization_id == organization_id
                and sub.status != SubscriptionStatus.CANCELLED.value
            ):
                return sub
        return None

    def _by_ref(self, external_ref: str) -> Optional[Subscription]:
        for sub in self._store.values():
            if sub.external_ref == external_ref:
                return sub
        return None

    async def get_by_external_ref(
        self, db: AsyncSession, *, external_ref: str
    ) -> Optional[Subscription]:
        """Get a subscription by the provider's reference."""
        await self._enter("get_by_external_ref", external_ref)
        return self._by_ref(external_ref)

    async def get_by_id(self, db: AsyncSession, *, id: UUID) -> Optional[Subscription]:
        """Get a subscription by internal id."""
        await self._enter("get_by_id", id)
        return self._store.get(id)

    async def get_open_for_organization(
        self, db: AsyncSession, *, organization_id: int
    ) -> Optional[Subscription]:
        """Get the organization's non-cancelled subscription, if any."""
        await self._enter("get_open_for_organization", organization_id)
        return self._open_for(organization_id)

    async def upsert_subscription(
        self, db: AsyncSession, *, fields: SubscriptionFields
    ) -> tuple[Optional[Subscription], bool]:
        """Insert or merge into the organization's open row."""
        await self._enter("upsert_subscription", fields)

        existing = self._open_for(fields.organization_id)
        if existing is None:
            owner = self._by_ref(fields.external_ref)
            if owner is not None:
                return owner, False
            now = utcnow()
            sub = Subscription(
                id=uuid4(),
                organization_id=fields.organization_id,
                external_ref=fields.external_ref,
                plan_id=fields.plan_id,
                status=fields.status.value,
                monthly_amount=fields.monthly_amount,
                currency=fields.currency,
                current_period_start=fields.current_period_start,
                current_period_end=fields.current_period_end,
                status_event_at=fields.status_event_at,
                created_at=now,
                modified_at=now,
            )
            self._store[sub.id] = sub
            return sub, True

        if existing.status_event_at > fields.status_event_at:
            return existing, False

        existing.external_ref = fields.external_ref
        existing.plan_id = fields.plan_id
        existing.status = fields.status.value
        existing.monthly_amount = fields.monthly_amount
        existing.currency = fields.currency
        existing.current_period_start = fields.current_period_start
        existing.current_period_end = fields.current_period_end
        existing.status_event_at = fields.status_event_at
        existing.modified_at = utcnow()
        return existing, True

    async def transition_subscription(
        self,
        db: AsyncSession,
        *,
        external_ref: str,
        target: SubscriptionStatus,
        allowed_from: Collection[SubscriptionStatus],
        occurred_at: datetime,
        check_stale: bool = True,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> Optional[Subscription]:
        """Conditionally move a subscription to ``target``."""
        await self._enter("transition_subscription", external_ref, target)

        sub = self._by_ref(external_ref)
        if sub is None or sub.status not in {s.value for s in allowed_from}:
            return None
        if check_stale and sub.status_event_at > occurred_at:
            return None
        if sub.status == target.value and sub.status_event_at == occurred_at:
            return None

        sub.status = target.value
        sub.status_event_at = occurred_at
        if period_start is not None:
            sub.current_period_start = period_start
        if period_end is not None:
            sub.current_period_end = period_end
        sub.modified_at = utcnow()
        return sub


class FakePaymentRepository(_FakeRepository):
    """In-memory fake for PaymentRepositoryProtocol."""

    def __init__(self, delay: float = 0.0) -> None:
        """Initialize with empty store and call log."""
        super().__init__(delay)
        self._store: dict[str, Payment] = {}

    def all(self) -> list[Payment]:
        """Every stored row."""
        return list(self._store.values())

    async def get_by_external_ref(
        self, db: AsyncSession, *, external_ref: str
    ) -> Optional[Payment]:
        """Get a payment by its deduplication key."""
        await self._enter("get_by_external_ref", external_ref)
        return self._store.get(external_ref)

    async def insert_payment_if_absent(
        self, db: AsyncSession, *, external_ref: str, fields: PaymentFields
    ) -> tuple[Payment, bool]:
        """Insert unless present; a conflict returns the stored row."""
        await self._enter("insert_payment_if_absent", external_ref)

        existing = self._store.get(external_ref)
        if existing is not None:
            return existing, False

        now = utcnow()
        payment = Payment(
            id=uuid4(),
            external_ref=external_ref,
            ref_kind=fields.ref_kind.value,
            subscription_id=fields.subscription_id,
            organization_id=fields.organization_id,
            user_id=fields.user_id,
            plan_id=fields.plan_id,
            amount_cents=fields.amount_cents,
            currency=fields.currency,
            status=fields.status,
            payment_method=fields.payment_method,
            created_at=now,
            modified_at=now,
        )
        self._store[external_ref] = payment
        return payment, True


class FakeOnboardingRepository(_FakeRepository):
    """In-memory fake for OnboardingRepositoryProtocol."""

    def __init__(self, delay: float = 0.0) -> None:
        """Initialize with empty store and call log."""
        super().__init__(delay)
        self._store: dict[str, Optional[dict[str, Any]]] = {}

    def seed(self, user_id: str) -> None:
        """Create an onboarding row with no subscription context."""
        self._store[user_id] = None

    def data_for(self, user_id: str) -> Optional[dict[str, Any]]:
        """Stored subscription context for a user."""
        return self._store.get(user_id)

    async def record_payment_outcome(
        self, db: AsyncSession, *, user_id: str, data: dict[str, Any]
    ) -> bool:
        """Overwrite the user's subscription context."""
        await self._enter("record_payment_outcome", user_id, data)
        if user_id not in self._store:
            return False
        self._store[user_id] = data
        return True
