"""Unit tests for BillingReconciler.

Handlers are called directly with typed events on in-memory fakes.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from billsync.domains.billing.exceptions import (
    MissingMetadataError,
    SubscriptionNotFoundError,
    TransientBillingError,
)
from billsync.domains.billing.fakes.repository import FakePaymentRepository
from billsync.domains.billing.tests.conftest import (
    DEFAULT_ORG_ID,
    DEFAULT_SESSION_ID,
    DEFAULT_SUBSCRIPTION_REF,
    DEFAULT_USER_ID,
    TEST_LOG,
    _at,
    _make_invoice_failed,
    _make_invoice_paid,
    _make_payment_failed,
    _make_payment_succeeded,
    _make_reconciler,
    _make_subscription_deleted,
    _metadata,
)
from billsync.domains.billing.types import ReconcileOutcome
from billsync.schemas.billing import PaymentRefKind, PaymentStatus, SubscriptionStatus

# ===========================================================================
# payment.succeeded
# ===========================================================================


class TestPaymentSucceeded:
    @pytest.mark.asyncio
    async def test_creates_subscription_and_payment(self, db):
        reconciler, subs, payments, onboarding = _make_reconciler()
        onboarding.seed(DEFAULT_USER_ID)

        result = await reconciler.apply_payment_succeeded(
            db, _make_payment_succeeded(), TEST_LOG
        )

        assert result.outcome == ReconcileOutcome.APPLIED
        [sub] = subs.all()
        assert sub.organization_id == DEFAULT_ORG_ID
        assert sub.external_ref == DEFAULT_SUBSCRIPTION_REF
        assert sub.status == SubscriptionStatus.ACTIVE.value
        assert sub.monthly_amount == Decimal("99")
        assert sub.current_period_end == _at() + timedelta(days=30)
        [payment] = payments.all()
        assert payment.external_ref == DEFAULT_SESSION_ID
        assert payment.subscription_id == sub.id
        assert payment.status == PaymentStatus.SUCCEEDED.value

    @pytest.mark.asyncio
    async def test_records_onboarding_context(self, db):
        reconciler, _, _, onboarding = _make_reconciler()
        onboarding.seed(DEFAULT_USER_ID)

        await reconciler.apply_payment_succeeded(db, _make_payment_succeeded(), TEST_LOG)

        data = onboarding.data_for(DEFAULT_USER_ID)
        assert data["paymentCompleted"] is True
        assert data["orgId"] == "42"
        assert data["stripeData"]["paymentRef"] == DEFAULT_SESSION_ID
        assert data["stripeData"]["status"] == "succeeded"

    @pytest.mark.asyncio
    async def test_missing_org_id_raises_before_any_write(self, db):
        reconciler, subs, payments, _ = _make_reconciler()
        event = _make_payment_succeeded(metadata=_metadata(org_id=None))

        with pytest.raises(MissingMetadataError):
            await reconciler.apply_payment_succeeded(db, event, TEST_LOG)

        assert subs.all() == []
        assert payments.all() == []
        assert payments.call_count("get_by_external_ref") == 0

    @pytest.mark.asyncio
    async def test_default_plan_when_absent(self, db):
        reconciler, subs, _, _ = _make_reconciler()
        event = _make_payment_succeeded(metadata=_metadata(plan_id=None))

        await reconciler.apply_payment_succeeded(db, event, TEST_LOG)

        assert subs.all()[0].plan_id == "small_commune"

    @pytest.mark.asyncio
    async def test_one_shot_payment_keys_subscription_on_payment_ref(self, db):
        reconciler, subs, _, _ = _make_reconciler()
        event = _make_payment_succeeded(
            "pi_42", subscription_ref=None, ref_kind=PaymentRefKind.PAYMENT_INTENT
        )

        await reconciler.apply_payment_succeeded(db, event, TEST_LOG)

        assert subs.all()[0].external_ref == "pi_42"

    @pytest.mark.asyncio
    async def test_replay_is_duplicate_with_no_writes(self, db):
        reconciler, subs, payments, onboarding = _make_reconciler()
        onboarding.seed(DEFAULT_USER_ID)
        event = _make_payment_succeeded()

        await reconciler.apply_payment_succeeded(db, event, TEST_LOG)
        result = await reconciler.apply_payment_succeeded(db, event, TEST_LOG)

        assert result.outcome == ReconcileOutcome.DUPLICATE
        assert result.payment is not None
        assert result.subscription is not None
        assert len(payments.all()) == 1
        assert len(subs.all()) == 1
        assert subs.call_count("upsert_subscription") == 1
        assert onboarding.call_count("record_payment_outcome") == 1

    @pytest.mark.asyncio
    async def test_replay_does_not_resurrect_cancelled(self, db):
        reconciler, subs, _, _ = _make_reconciler()
        event = _make_payment_succeeded()
        await reconciler.apply_payment_succeeded(db, event, TEST_LOG)
        await reconciler.apply_subscription_deleted(
            db, _make_subscription_deleted(occurred_at=_at(60)), TEST_LOG
        )

        result = await reconciler.apply_payment_succeeded(db, event, TEST_LOG)

        assert result.outcome == ReconcileOutcome.DUPLICATE
        assert subs.all()[0].status == SubscriptionStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_new_checkout_merges_into_open_subscription(self, db):
        reconciler, subs, payments, _ = _make_reconciler()
        await reconciler.apply_payment_succeeded(db, _make_payment_succeeded(), TEST_LOG)

        upgrade = _make_payment_succeeded(
            "cs_2",
            subscription_ref="sub_2",
            metadata=_metadata(plan_id="large_commune"),
            occurred_at=_at(3600),
        )
        result = await reconciler.apply_payment_succeeded(db, upgrade, TEST_LOG)

        assert result.outcome == ReconcileOutcome.APPLIED
        [sub] = subs.all()
        assert sub.external_ref == "sub_2"
        assert sub.plan_id == "large_commune"
        assert len(payments.all()) == 2

    @pytest.mark.asyncio
    async def test_older_checkout_does_not_overwrite_newer_status(self, db):
        reconciler, subs, _, _ = _make_reconciler()
        subs.seed(
            organization_id=DEFAULT_ORG_ID,
            external_ref=DEFAULT_SUBSCRIPTION_REF,
            status=SubscriptionStatus.PAST_DUE,
            status_event_at=_at(600),
        )

        result = await reconciler.apply_payment_succeeded(
            db, _make_payment_succeeded(occurred_at=_at()), TEST_LOG
        )

        assert subs.all()[0].status == SubscriptionStatus.PAST_DUE.value
        # The payment itself is still a fact worth recording
        assert result.payment is not None

    @pytest.mark.asyncio
    async def test_no_onboarding_row_still_applies(self, db):
        reconciler, _, payments, onboarding = _make_reconciler()

        result = await reconciler.apply_payment_succeeded(
            db, _make_payment_succeeded(), TEST_LOG
        )

        assert result.outcome == ReconcileOutcome.APPLIED
        assert len(payments.all()) == 1
        assert onboarding.call_count("record_payment_outcome") == 1

    @pytest.mark.asyncio
    async def test_slow_database_surfaces_as_transient(self, db):
        reconciler, _, payments, _ = _make_reconciler(
            payment_repo=FakePaymentRepository(delay=0.2), db_timeout=0.05
        )

        with pytest.raises(TransientBillingError) as exc_info:
            await reconciler.apply_payment_succeeded(db, _make_payment_succeeded(), TEST_LOG)

        assert exc_info.value.operation == "get_payment"
        assert payments.all() == []


# ===========================================================================
# payment.failed
# ===========================================================================


class TestPaymentFailed:
    @pytest.mark.asyncio
    async def test_records_failure_in_onboarding(self, db):
        reconciler, subs, payments, onboarding = _make_reconciler()
        onboarding.seed(DEFAULT_USER_ID)

        result = await reconciler.apply_payment_failed(db, _make_payment_failed(), TEST_LOG)

        assert result.outcome == ReconcileOutcome.APPLIED
        data = onboarding.data_for(DEFAULT_USER_ID)
        assert data["paymentCompleted"] is False
        assert data["stripeData"]["error"] == "Your card was declined."
        assert subs.all() == []
        assert payments.all() == []

    @pytest.mark.asyncio
    async def test_requires_user_id(self, db):
        reconciler, *_ = _make_reconciler()
        event = _make_payment_failed(metadata=_metadata(user_id=None))

        with pytest.raises(MissingMetadataError) as exc_info:
            await reconciler.apply_payment_failed(db, event, TEST_LOG)

        assert exc_info.value.field == "user_id"

    @pytest.mark.asyncio
    async def test_no_onboarding_row_is_ignored(self, db):
        reconciler, *_ = _make_reconciler()

        result = await reconciler.apply_payment_failed(db, _make_payment_failed(), TEST_LOG)

        assert result.outcome == ReconcileOutcome.IGNORED

    @pytest.mark.asyncio
    async def test_after_success_is_stale(self, db):
        reconciler, _, _, onboarding = _make_reconciler()
        onboarding.seed(DEFAULT_USER_ID)
        await reconciler.apply_payment_succeeded(
            db,
            _make_payment_succeeded(
                "pi_1", subscription_ref=None, ref_kind=PaymentRefKind.PAYMENT_INTENT
            ),
            TEST_LOG,
        )

        result = await reconciler.apply_payment_failed(db, _make_payment_failed("pi_1"), TEST_LOG)

        assert result.outcome == ReconcileOutcome.STALE
        assert onboarding.data_for(DEFAULT_USER_ID)["paymentCompleted"] is True


# ===========================================================================
# invoice.payment.succeeded / invoice.payment.failed
# ===========================================================================


def _seed_active(subs, status=SubscriptionStatus.ACTIVE, offset=0):
    return subs.seed(
        organization_id=DEFAULT_ORG_ID,
        external_ref=DEFAULT_SUBSCRIPTION_REF,
        status=status,
        status_event_at=_at(offset),
    )


class TestInvoicePaid:
    @pytest.mark.asyncio
    async def test_reactivates_past_due_and_records_payment(self, db):
        reconciler, subs, payments, _ = _make_reconciler()
        _seed_active(subs, SubscriptionStatus.PAST_DUE)

        result = await reconciler.apply_invoice_paid(
            db,
            _make_invoice_paid(
                occurred_at=_at(60), period_start=_at(60), period_end=_at(60 + 86400)
            ),
            TEST_LOG,
        )

        assert result.outcome == ReconcileOutcome.APPLIED
        sub = subs.all()[0]
        assert sub.status == SubscriptionStatus.ACTIVE.value
        assert sub.current_period_end == _at(60 + 86400)
        [payment] = payments.all()
        assert payment.external_ref == "pi_inv_1"
        assert payment.ref_kind == PaymentRefKind.PAYMENT_INTENT.value

    @pytest.mark.asyncio
    async def test_subscription_create_invoice_records_no_payment(self, db):
        reconciler, subs, payments, _ = _make_reconciler()
        _seed_active(subs)

        await reconciler.apply_invoice_paid(
            db,
            _make_invoice_paid(occurred_at=_at(1), billing_reason="subscription_create"),
            TEST_LOG,
        )

        assert payments.all() == []
        assert subs.all()[0].status == SubscriptionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_without_payment_intent_records_no_payment(self, db):
        reconciler, subs, payments, _ = _make_reconciler()
        _seed_active(subs)

        await reconciler.apply_invoice_paid(
            db, _make_invoice_paid(occurred_at=_at(1), payment_intent_ref=None), TEST_LOG
        )

        assert payments.all() == []

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, db):
        reconciler, *_ = _make_reconciler()

        with pytest.raises(SubscriptionNotFoundError):
            await reconciler.apply_invoice_paid(db, _make_invoice_paid(), TEST_LOG)

    @pytest.mark.asyncio
    async def test_missing_subscription_ref(self, db):
        reconciler, *_ = _make_reconciler()

        with pytest.raises(SubscriptionNotFoundError):
            await reconciler.apply_invoice_paid(
                db, _make_invoice_paid(subscription_ref=None), TEST_LOG
            )

    @pytest.mark.asyncio
    async def test_replay_is_duplicate(self, db):
        reconciler, subs, payments, _ = _make_reconciler()
        _seed_active(subs)
        event = _make_invoice_paid(occurred_at=_at(60))

        await reconciler.apply_invoice_paid(db, event, TEST_LOG)
        result = await reconciler.apply_invoice_paid(db, event, TEST_LOG)

        assert result.outcome == ReconcileOutcome.DUPLICATE
        assert len(payments.all()) == 1

    @pytest.mark.asyncio
    async def test_cancelled_stays_cancelled(self, db):
        reconciler, subs, _, _ = _make_reconciler()
        _seed_active(subs, SubscriptionStatus.CANCELLED)

        result = await reconciler.apply_invoice_paid(
            db, _make_invoice_paid(occurred_at=_at(60)), TEST_LOG
        )

        assert result.outcome == ReconcileOutcome.TERMINAL
        assert subs.all()[0].status == SubscriptionStatus.CANCELLED.value


class TestInvoiceFailed:
    @pytest.mark.asyncio
    async def test_marks_past_due(self, db):
        reconciler, subs, _, _ = _make_reconciler()
        _seed_active(subs)

        result = await reconciler.apply_invoice_failed(
            db, _make_invoice_failed(occurred_at=_at(60)), TEST_LOG
        )

        assert result.outcome == ReconcileOutcome.APPLIED
        assert subs.all()[0].status == SubscriptionStatus.PAST_DUE.value

    @pytest.mark.asyncio
    async def test_older_than_current_status_is_stale(self, db):
        reconciler, subs, _, _ = _make_reconciler()
        _seed_active(subs, offset=600)

        result = await reconciler.apply_invoice_failed(
            db, _make_invoice_failed(occurred_at=_at(60)), TEST_LOG
        )

        assert result.outcome == ReconcileOutcome.STALE
        assert subs.all()[0].status == SubscriptionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_already_paid_invoice_is_stale(self, db):
        reconciler, subs, _, _ = _make_reconciler()
        _seed_active(subs)
        await reconciler.apply_invoice_paid(db, _make_invoice_paid(occurred_at=_at(120)), TEST_LOG)

        result = await reconciler.apply_invoice_failed(
            db, _make_invoice_failed(occurred_at=_at(60)), TEST_LOG
        )

        assert result.outcome == ReconcileOutcome.STALE
        assert subs.all()[0].status == SubscriptionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, db):
        reconciler, *_ = _make_reconciler()

        with pytest.raises(SubscriptionNotFoundError):
            await reconciler.apply_invoice_failed(db, _make_invoice_failed(), TEST_LOG)


# ===========================================================================
# subscription.deleted
# ===========================================================================


class TestSubscriptionDeleted:
    @pytest.mark.asyncio
    async def test_cancels(self, db):
        reconciler, subs, _, _ = _make_reconciler()
        _seed_active(subs, SubscriptionStatus.PAST_DUE)

        result = await reconciler.apply_subscription_deleted(
            db, _make_subscription_deleted(occurred_at=_at(60)), TEST_LOG
        )

        assert result.outcome == ReconcileOutcome.APPLIED
        assert subs.all()[0].status == SubscriptionStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_older_deletion_still_cancels(self, db):
        reconciler, subs, _, _ = _make_reconciler()
        _seed_active(subs, offset=600)

        result = await reconciler.apply_subscription_deleted(
            db, _make_subscription_deleted(occurred_at=_at(60)), TEST_LOG
        )

        assert result.outcome == ReconcileOutcome.APPLIED
        assert subs.all()[0].status == SubscriptionStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_second_deletion_is_duplicate(self, db):
        reconciler, subs, _, _ = _make_reconciler()
        _seed_active(subs, SubscriptionStatus.CANCELLED)

        result = await reconciler.apply_subscription_deleted(
            db, _make_subscription_deleted(occurred_at=_at(60)), TEST_LOG
        )

        assert result.outcome == ReconcileOutcome.DUPLICATE

    @pytest.mark.asyncio
    async def test_cancellation_allows_a_fresh_subscription(self, db):
        reconciler, subs, _, _ = _make_reconciler()
        await reconciler.apply_payment_succeeded(db, _make_payment_succeeded(), TEST_LOG)
        await reconciler.apply_subscription_deleted(
            db, _make_subscription_deleted(occurred_at=_at(60)), TEST_LOG
        )

        await reconciler.apply_payment_succeeded(
            db,
            _make_payment_succeeded("cs_2", subscription_ref="sub_2", occurred_at=_at(120)),
            TEST_LOG,
        )

        statuses = sorted((s.external_ref, s.status) for s in subs.all())
        assert statuses == [
            (DEFAULT_SUBSCRIPTION_REF, SubscriptionStatus.CANCELLED.value),
            ("sub_2", SubscriptionStatus.ACTIVE.value),
        ]


# ===========================================================================
# Concurrency
# ===========================================================================


class TestConcurrentDelivery:
    @pytest.mark.asyncio
    async def test_concurrent_replays_create_one_payment(self, db):
        reconciler, subs, payments, onboarding = _make_reconciler()
        onboarding.seed(DEFAULT_USER_ID)
        event = _make_payment_succeeded()

        results = await asyncio.gather(
            *(reconciler.apply_payment_succeeded(db, event, TEST_LOG) for _ in range(5))
        )

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes.count(ReconcileOutcome.APPLIED.value) == 1
        assert outcomes.count(ReconcileOutcome.DUPLICATE.value) == 4
        assert len(payments.all()) == 1
        assert len(subs.all()) == 1
        assert all(r.payment is not None for r in results)
