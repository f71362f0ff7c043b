"""Billing repositories and protocols.

Every write here is a single atomic statement against the database, so two
deliveries of events for the same subscription, or a webhook racing the
fallback verifier, never lose an update or create a duplicate row. Nothing in
the reconciliation path reads a row and then writes it back.
"""

from datetime import datetime
from typing import Any, Collection, Optional, Protocol
from uuid import UUID

from sqlalchemy import or_, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.domains.billing.exceptions import TransientBillingError
from billsync.domains.billing.types import PaymentFields, SubscriptionFields
from billsync.models import OnboardingProgress, Payment, Subscription
from billsync.models._base import utcnow
from billsync.schemas.billing import SubscriptionStatus

_OPEN_SUBSCRIPTION = text("status <> 'cancelled'")


def _dialect_insert(db: AsyncSession):
    """Return the dialect's INSERT construct when it supports ON CONFLICT, else None."""
    match db.get_bind().dialect.name:
        case "postgresql":
            return pg_insert
        case "sqlite":
            return sqlite_insert
        case _:
            return None


class SubscriptionRepositoryProtocol(Protocol):
    """Atomic access to subscription rows."""

    async def get_by_external_ref(
        self, db: AsyncSession, *, external_ref: str
    ) -> Optional[Subscription]:
        """Get a subscription by the provider's reference."""
        ...

    async def get_by_id(self, db: AsyncSession, *, id: UUID) -> Optional[Subscription]:
        """Get a subscription by internal id."""
        ...

    async def get_open_for_organization(
        self, db: AsyncSession, *, organization_id: int
    ) -> Optional[Subscription]:
        """Get the organization's non-cancelled subscription, if any."""
        ...

    async def upsert_subscription(
        self, db: AsyncSession, *, fields: SubscriptionFields
    ) -> tuple[Optional[Subscription], bool]:
        """Insert the organization's open subscription or merge into it.

        Returns ``(row, applied)``. ``applied`` is False when the stored row
        was set by a newer event and was left untouched.
        """
        ...

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
        """Conditionally move a subscription to ``target``.

        Returns the updated row, or None when no row matched (unknown
        reference, disallowed current status, or a newer event already
        applied).
        """
        ...


class PaymentRepositoryProtocol(Protocol):
    """Idempotent access to payment rows."""

    async def get_by_external_ref(
        self, db: AsyncSession, *, external_ref: str
    ) -> Optional[Payment]:
        """Get a payment by its deduplication key."""
        ...

    async def insert_payment_if_absent(
        self, db: AsyncSession, *, external_ref: str, fields: PaymentFields
    ) -> tuple[Payment, bool]:
        """Insert a payment unless one exists for ``external_ref``.

        Returns ``(payment, was_new)``. A uniqueness conflict is success.
        """
        ...


class OnboardingRepositoryProtocol(Protocol):
    """Write access to the onboarding wizard's subscription context."""

    async def record_payment_outcome(
        self, db: AsyncSession, *, user_id: str, data: dict[str, Any]
    ) -> bool:
        """Store the payment outcome for a user. Returns False if the user has no row."""
        ...


class SubscriptionRepository(SubscriptionRepositoryProtocol):
    """SQLAlchemy implementation over the ``subscription`` table."""

    async def get_by_external_ref(
        self, db: AsyncSession, *, external_ref: str
    ) -> Optional[Subscription]:
        """Get a subscription by the provider's reference."""
        result = await db.execute(
            select(Subscription).where(Subscription.external_ref == external_ref)
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, db: AsyncSession, *, id: UUID) -> Optional[Subscription]:
        """Get a subscription by internal id."""
        return await db.get(Subscription, id)

    async def get_open_for_organization(
        self, db: AsyncSession, *, organization_id: int
    ) -> Optional[Subscription]:
        """Get the organization's non-cancelled subscription, if any."""
        result = await db.execute(
            select(Subscription).where(
                Subscription.organization_id == organization_id,
                Subscription.status != SubscriptionStatus.CANCELLED.value,
            )
        )
        return result.scalar_one_or_none()

    async def upsert_subscription(
        self, db: AsyncSession, *, fields: SubscriptionFields
    ) -> tuple[Optional[Subscription], bool]:
        """Insert or merge in one statement.

        The conflict target is the partial unique index on ``organization_id``
        over non-cancelled rows, so a new checkout for an organization with an
        open subscription updates that row instead of duplicating it. The merge
        is skipped when the stored status came from a newer event. Dialects
        without ON CONFLICT take the insert-then-guarded-update path.
        """
        values = {
            "organization_id": fields.organization_id,
            "external_ref": fields.external_ref,
            "plan_id": fields.plan_id,
            "status": fields.status.value,
            "monthly_amount": fields.monthly_amount,
            "currency": fields.currency,
            "current_period_start": fields.current_period_start,
            "current_period_end": fields.current_period_end,
            "status_event_at": fields.status_event_at,
        }
        insert = _dialect_insert(db)
        if insert is None:
            return await self._insert_or_guarded_update(db, fields, values)

        stmt = insert(Subscription).values(**values)
        stmt = (
            stmt.on_conflict_do_update(
                index_elements=[Subscription.organization_id],
                index_where=_OPEN_SUBSCRIPTION,
                set_={
                    **{k: getattr(stmt.excluded, k) for k in values if k != "organization_id"},
                    "modified_at": utcnow(),
                },
                where=Subscription.status_event_at <= stmt.excluded.status_event_at,
            )
            .returning(Subscription)
            .execution_options(populate_existing=True)
        )

        try:
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            await db.commit()
        except IntegrityError:
            # external_ref already belongs to another (typically cancelled) row
            await db.rollback()
            return await self.get_by_external_ref(db, external_ref=fields.external_ref), False

        if row is not None:
            return row, True
        return (
            await self.get_open_for_organization(db, organization_id=fields.organization_id),
            False,
        )

    async def _insert_or_guarded_update(
        self, db: AsyncSession, fields: SubscriptionFields, values: dict[str, Any]
    ) -> tuple[Optional[Subscription], bool]:
        """Upsert for dialects without ON CONFLICT.

        The partial unique index still admits one open row per organization:
        a losing insert falls through to an UPDATE guarded the same way as the
        ON CONFLICT merge.
        """
        try:
            row = Subscription(**values)
            db.add(row)
            await db.commit()
            return row, True
        except IntegrityError:
            await db.rollback()

        try:
            result = await db.execute(
                update(Subscription)
                .where(
                    Subscription.organization_id == fields.organization_id,
                    Subscription.status != SubscriptionStatus.CANCELLED.value,
                    Subscription.status_event_at <= fields.status_event_at,
                )
                .values(
                    **{k: v for k, v in values.items() if k != "organization_id"},
                    modified_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except IntegrityError:
            # external_ref already belongs to another (typically cancelled) row
            await db.rollback()
            return await self.get_by_external_ref(db, external_ref=fields.external_ref), False

        if result.rowcount == 0:
            open_row = await self.get_open_for_organization(
                db, organization_id=fields.organization_id
            )
            if open_row is None:
                return await self.get_by_external_ref(db, external_ref=fields.external_ref), False
            return open_row, False

        merged = await db.execute(
            select(Subscription)
            .where(Subscription.external_ref == fields.external_ref)
            .execution_options(populate_existing=True)
        )
        return merged.scalar_one_or_none(), True

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
        """Single conditional UPDATE .. RETURNING."""
        conditions = [
            Subscription.external_ref == external_ref,
            Subscription.status.in_([s.value for s in allowed_from]),
            # A replay of the event that set the current status matches nothing
            or_(Subscription.status != target.value, Subscription.status_event_at != occurred_at),
        ]
        if check_stale:
            conditions.append(Subscription.status_event_at <= occurred_at)

        values: dict[str, Any] = {
            "status": target.value,
            "status_event_at": occurred_at,
            "modified_at": utcnow(),
        }
        if period_start is not None:
            values["current_period_start"] = period_start
        if period_end is not None:
            values["current_period_end"] = period_end

        stmt = (
            update(Subscription)
            .where(*conditions)
            .values(**values)
            .returning(Subscription)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        result = await db.execute(stmt)
        row = result.scalar_one_or_none()
        await db.commit()
        return row


class PaymentRepository(PaymentRepositoryProtocol):
    """SQLAlchemy implementation over the ``payment`` table."""

    async def get_by_external_ref(
        self, db: AsyncSession, *, external_ref: str
    ) -> Optional[Payment]:
        """Get a payment by its deduplication key."""
        result = await db.execute(select(Payment).where(Payment.external_ref == external_ref))
        return result.scalar_one_or_none()

    async def insert_payment_if_absent(
        self, db: AsyncSession, *, external_ref: str, fields: PaymentFields
    ) -> tuple[Payment, bool]:
        """ON CONFLICT DO NOTHING where supported, unique constraint + catch otherwise."""
        values = {
            "external_ref": external_ref,
            "ref_kind": fields.ref_kind.value,
            "subscription_id": fields.subscription_id,
            "organization_id": fields.organization_id,
            "user_id": fields.user_id,
            "plan_id": fields.plan_id,
            "amount_cents": fields.amount_cents,
            "currency": fields.currency,
            "status": fields.status,
            "payment_method": fields.payment_method,
        }

        insert = _dialect_insert(db)
        if insert is not None:
            stmt = (
                insert(Payment)
                .values(**values)
                .on_conflict_do_nothing(index_elements=[Payment.external_ref])
                .returning(Payment)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            await db.commit()
            if row is not None:
                return row, True
        else:
            try:
                row = Payment(**values)
                db.add(row)
                await db.commit()
                return row, True
            except IntegrityError:
                await db.rollback()

        existing = await self.get_by_external_ref(db, external_ref=external_ref)
        if existing is None:
            # Conflict observed but the winning row is not visible yet
            raise TransientBillingError(
                "insert_payment_if_absent", f"payment {external_ref} not readable after conflict"
            )
        return existing, False


class OnboardingRepository(OnboardingRepositoryProtocol):
    """Writes ``onboarding_progress.subscription_data``."""

    async def record_payment_outcome(
        self, db: AsyncSession, *, user_id: str, data: dict[str, Any]
    ) -> bool:
        """Overwrite the user's subscription context in one UPDATE."""
        result = await db.execute(
            update(OnboardingProgress)
            .where(OnboardingProgress.user_id == user_id)
            .values(subscription_data=data, modified_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount > 0
