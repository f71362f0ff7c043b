"""Decode verified webhook payloads into typed billing events.

Input is the exact byte string whose signature was already checked. Output is
one member of the ``BillingEvent`` union. Parsing never raises: a payload that
cannot be decoded becomes an ``UnparseableEvent`` so the router can acknowledge
it (the provider would otherwise redeliver it forever).

``parse_checkout_session`` is also used by the fallback verifier, so a session
fetched from the provider and a session delivered by webhook are read by the
same code.
"""

import json
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from billsync.domains.billing.exceptions import UnparseableEventError
from billsync.domains.billing.types import (
    BillingEvent,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionDeleted,
    UnhandledEvent,
    UnparseableEvent,
)
from billsync.schemas.billing import PaymentRefKind

PAYMENT_METHOD_TAG = "stripe"


def parse_event(payload: bytes) -> BillingEvent:
    """Parse a verified webhook payload into a typed event."""
    try:
        envelope = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
        return UnparseableEvent(reason=f"payload is not JSON: {e}")

    if not isinstance(envelope, Mapping):
        return UnparseableEvent(reason="payload is not a JSON object")

    event_id = envelope.get("id") if isinstance(envelope.get("id"), str) else None
    provider_type = envelope.get("type")
    if not isinstance(provider_type, str) or not provider_type:
        return UnparseableEvent(event_id=event_id, reason="event type missing")

    parser = _PARSERS.get(provider_type)
    if parser is None:
        return UnhandledEvent(event_id=event_id, provider_type=provider_type)

    try:
        data = _mapping(envelope, "data")
        obj = _mapping(data, "object")
        occurred_at = _timestamp(envelope.get("created"), "created")
        return parser(obj, event_id=event_id, provider_type=provider_type, occurred_at=occurred_at)
    except UnparseableEventError as e:
        return UnparseableEvent(event_id=event_id, provider_type=provider_type, reason=str(e))


def parse_checkout_session(
    session: Mapping[str, Any],
    *,
    event_id: Optional[str],
    provider_type: str,
    occurred_at: Optional[datetime] = None,
) -> BillingEvent:
    """Read a checkout session. Paid sessions become PaymentSucceeded.

    ``occurred_at`` defaults to the session's creation time so that the webhook
    and the fallback verifier derive identical records from the same session.
    """
    session_id = _string(session, "id")
    when = occurred_at or _timestamp(session.get("created"), "created")

    if session.get("payment_status") not in ("paid", "no_payment_required"):
        return UnhandledEvent(
            event_id=event_id,
            provider_type=provider_type,
            reason=f"checkout session {session_id} not paid yet",
        )

    return PaymentSucceeded(
        event_id=event_id,
        provider_type=provider_type,
        occurred_at=when,
        metadata=_metadata(session),
        payment_ref=session_id,
        ref_kind=PaymentRefKind.CHECKOUT_SESSION,
        subscription_ref=_ref(session.get("subscription")) or _ref(session.get("payment_intent")),
        amount_cents=_int(session, "amount_total", default=0),
        currency=_currency(session),
        payment_method=PAYMENT_METHOD_TAG,
    )


# ---------------------------------------------------------------------------
# Per-type parsers
# ---------------------------------------------------------------------------


def _checkout_completed(obj: Mapping[str, Any], **envelope: Any) -> BillingEvent:
    return parse_checkout_session(
        obj,
        event_id=envelope["event_id"],
        provider_type=envelope["provider_type"],
        occurred_at=_optional_timestamp(obj.get("created")) or envelope["occurred_at"],
    )


def _checkout_failed(obj: Mapping[str, Any], **envelope: Any) -> BillingEvent:
    return PaymentFailed(
        **envelope,
        metadata=_metadata(obj),
        payment_ref=_string(obj, "id"),
        ref_kind=PaymentRefKind.CHECKOUT_SESSION,
        amount_cents=_int(obj, "amount_total", default=0),
        currency=_currency(obj),
        provider_status=obj.get("payment_status"),
    )


def _payment_intent_succeeded(obj: Mapping[str, Any], **envelope: Any) -> BillingEvent:
    amount = obj.get("amount_received") or obj.get("amount")
    return PaymentSucceeded(
        event_id=envelope["event_id"],
        provider_type=envelope["provider_type"],
        occurred_at=_optional_timestamp(obj.get("created")) or envelope["occurred_at"],
        metadata=_metadata(obj),
        payment_ref=_string(obj, "id"),
        ref_kind=PaymentRefKind.PAYMENT_INTENT,
        subscription_ref=None,
        amount_cents=_coerce_int(amount, "amount"),
        currency=_currency(obj),
        payment_method=PAYMENT_METHOD_TAG,
    )


def _payment_intent_failed(obj: Mapping[str, Any], **envelope: Any) -> BillingEvent:
    last_error = obj.get("last_payment_error")
    message = last_error.get("message") if isinstance(last_error, Mapping) else None
    return PaymentFailed(
        **envelope,
        metadata=_metadata(obj),
        payment_ref=_string(obj, "id"),
        ref_kind=PaymentRefKind.PAYMENT_INTENT,
        amount_cents=_int(obj, "amount", default=0),
        currency=_currency(obj),
        provider_status=obj.get("status"),
        error_message=message,
    )


def _invoice_paid(obj: Mapping[str, Any], **envelope: Any) -> BillingEvent:
    period_start, period_end = _invoice_period(obj)
    return InvoicePaymentSucceeded(
        **envelope,
        metadata=_invoice_metadata(obj),
        invoice_id=_string(obj, "id"),
        subscription_ref=_invoice_subscription(obj),
        payment_intent_ref=_invoice_payment_intent(obj),
        amount_cents=_int(obj, "amount_paid", default=0),
        currency=_currency(obj),
        billing_reason=obj.get("billing_reason"),
        period_start=period_start,
        period_end=period_end,
    )


def _invoice_failed(obj: Mapping[str, Any], **envelope: Any) -> BillingEvent:
    return InvoicePaymentFailed(
        **envelope,
        metadata=_invoice_metadata(obj),
        invoice_id=_string(obj, "id"),
        subscription_ref=_invoice_subscription(obj),
        payment_intent_ref=_invoice_payment_intent(obj),
    )


def _subscription_deleted(obj: Mapping[str, Any], **envelope: Any) -> BillingEvent:
    return SubscriptionDeleted(
        **envelope,
        metadata=_metadata(obj),
        subscription_ref=_string(obj, "id"),
    )


_PARSERS: dict[str, Callable[..., BillingEvent]] = {
    "checkout.session.completed": _checkout_completed,
    "checkout.session.async_payment_succeeded": _checkout_completed,
    "checkout.session.async_payment_failed": _checkout_failed,
    "payment_intent.succeeded": _payment_intent_succeeded,
    "payment_intent.payment_failed": _payment_intent_failed,
    "invoice.payment_succeeded": _invoice_paid,
    "invoice.paid": _invoice_paid,
    "invoice.payment_failed": _invoice_failed,
    "customer.subscription.deleted": _subscription_deleted,
}


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _mapping(obj: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = obj.get(key)
    if not isinstance(value, Mapping):
        raise UnparseableEventError(f"'{key}' is not an object")
    return value


def _string(obj: Mapping[str, Any], key: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str) or not value:
        raise UnparseableEventError(f"'{key}' missing or not a string")
    return value


def _coerce_int(value: Any, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise UnparseableEventError(f"'{key}' is not an integer")
    return value


def _int(obj: Mapping[str, Any], key: str, *, default: int) -> int:
    value = obj.get(key)
    if value is None:
        return default
    return _coerce_int(value, key)


def _timestamp(value: Any, key: str) -> datetime:
    parsed = _optional_timestamp(value)
    if parsed is None:
        raise UnparseableEventError(f"'{key}' is not a unix timestamp")
    return parsed


def _optional_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    # Naive UTC, matching the DateTime columns
    return parsed.replace(tzinfo=None)


def _ref(value: Any) -> Optional[str]:
    """A provider reference may arrive as an id or as an expanded object."""
    if isinstance(value, str) and value:
        return value
    if isinstance(value, Mapping) and isinstance(value.get("id"), str):
        return value["id"]
    return None


def _currency(obj: Mapping[str, Any]) -> str:
    value = obj.get("currency")
    if value is None:
        return "eur"
    if not isinstance(value, str):
        raise UnparseableEventError("'currency' is not a string")
    return value.lower()


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    value = obj.get("metadata")
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise UnparseableEventError("'metadata' is not an object")
    return dict(value)


def _subscription_details(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    details = obj.get("subscription_details")
    if isinstance(details, Mapping):
        return details
    parent = obj.get("parent")
    if isinstance(parent, Mapping) and isinstance(parent.get("subscription_details"), Mapping):
        return parent["subscription_details"]
    return {}


def _invoice_subscription(obj: Mapping[str, Any]) -> Optional[str]:
    return _ref(obj.get("subscription")) or _ref(_subscription_details(obj).get("subscription"))


def _invoice_metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    """Subscription metadata takes precedence; invoices rarely carry their own."""
    merged = dict(_metadata(obj))
    details_metadata = _subscription_details(obj).get("metadata")
    if isinstance(details_metadata, Mapping):
        merged.update(details_metadata)
    return merged


def _invoice_period(obj: Mapping[str, Any]) -> tuple[Optional[datetime], Optional[datetime]]:
    lines = obj.get("lines")
    if isinstance(lines, Mapping) and isinstance(lines.get("data"), list):
        for line in lines["data"]:
            period = line.get("period") if isinstance(line, Mapping) else None
            if isinstance(period, Mapping):
                start = _optional_timestamp(period.get("start"))
                end = _optional_timestamp(period.get("end"))
                if start and end:
                    return start, end
    return _optional_timestamp(obj.get("period_start")), _optional_timestamp(
        obj.get("period_end")
    )


def _invoice_payment_intent(obj: Mapping[str, Any]) -> Optional[str]:
    """Top-level ``payment_intent`` on older API versions, ``payments.data[]`` on newer ones."""
    ref = _ref(obj.get("payment_intent"))
    if ref:
        return ref
    payments = obj.get("payments")
    if isinstance(payments, Mapping) and isinstance(payments.get("data"), list):
        for entry in payments["data"]:
            payment = entry.get("payment") if isinstance(entry, Mapping) else None
            if isinstance(payment, Mapping):
                ref = _ref(payment.get("payment_intent"))
                if ref:
                    return ref
    return None
