import hmac
import json
from collections.abc import Mapping
from datetime import UTC, datetime

from app.domain.errors import NormalizationError
from app.integrations.providers.base import (
    CanonicalEvent,
    CanonicalEventType,
    ProviderAdapter,
    VerificationResult,
    as_dict,
    clean_email,
    clean_str,
    fallback_idempotency_key,
    header,
    hmac_sha256_hex,
    minor_units_amount,
    parse_timestamp,
    require_object,
    upper_currency,
)

PROVIDER = "stripe"

EVENT_TYPE_MAP = {
    "checkout.session.completed": CanonicalEventType.PURCHASE_APPROVED,
    "checkout.session.async_payment_succeeded": CanonicalEventType.PURCHASE_APPROVED,
    "invoice.paid": CanonicalEventType.PURCHASE_APPROVED,
    "invoice.payment_succeeded": CanonicalEventType.PURCHASE_APPROVED,
    "customer.subscription.created": CanonicalEventType.SUBSCRIPTION_CREATED,
    "invoice.payment_failed": CanonicalEventType.PAYMENT_FAILED,
    "checkout.session.async_payment_failed": CanonicalEventType.PAYMENT_FAILED,
    "charge.refunded": CanonicalEventType.REFUND,
    "charge.dispute.created": CanonicalEventType.CHARGEBACK,
    "customer.subscription.deleted": CanonicalEventType.CANCELLATION,
    "checkout.session.created": CanonicalEventType.CHECKOUT_STARTED,
}


def _parse_signature_header(signature_header: str) -> dict[str, str]:
    parts = {}
    for chunk in signature_header.split(","):
        if "=" not in chunk:
            continue
        key, value = chunk.split("=", 1)
        parts[key.strip()] = value.strip()
    return parts


def verify(
    headers: Mapping[str, str],
    body: bytes,
    secret: str | None,
    *,
    now: datetime,
    tolerance_seconds: int,
) -> VerificationResult:
    if not secret:
        return VerificationResult(verified=False, reason="secret_not_configured")
    signature_header = header(headers, "stripe-signature")
    if not signature_header:
        return VerificationResult(verified=False, reason="missing_signature")

    parts = _parse_signature_header(signature_header)
    timestamp = parts.get("t")
    signature = parts.get("v1")
    if not timestamp or not signature:
        return VerificationResult(verified=False, reason="invalid_signature_header")

    try:
        signed_at = int(timestamp)
    except ValueError:
        return VerificationResult(verified=False, reason="invalid_timestamp")

    age = abs(int(now.timestamp()) - signed_at)
    if age > max(1, tolerance_seconds):
        return VerificationResult(verified=False, reason="stale_timestamp")

    expected = hmac_sha256_hex(secret, f"{timestamp}.".encode("utf-8") + body)
    if not hmac.compare_digest(expected, signature):
        return VerificationResult(verified=False, reason="invalid_signature")
    return VerificationResult(verified=True)


def _data_object(payload: dict) -> dict:
    data = payload.get("data")
    if data is not None and not isinstance(data, dict):
        raise NormalizationError("Stripe 'data' must be an object", error_code="invalid_shape")
    return as_dict(as_dict(data).get("object"))


def _order_id(obj: dict) -> str | None:
    return clean_str(obj.get("payment_intent") or obj.get("invoice") or obj.get("id"))


def _subscription_id(obj: dict) -> str | None:
    if obj.get("object") == "subscription":
        return clean_str(obj.get("id"))
    return clean_str(obj.get("subscription"))


def _plan_identifier(obj: dict) -> str | None:
    metadata = as_dict(obj.get("metadata"))
    explicit = clean_str(metadata.get("plan_slug"))
    if explicit:
        return explicit
    plan = as_dict(obj.get("plan"))
    if plan.get("id"):
        return clean_str(plan.get("id"))
    items = as_dict(obj.get("items")).get("data") or as_dict(obj.get("lines")).get("data") or []
    if items and isinstance(items[0], dict):
        price = as_dict(items[0].get("price"))
        return clean_str(price.get("id"))
    return None


def _amount(obj: dict):
    for field in ("amount_total", "amount_paid", "amount_refunded", "amount"):
        if obj.get(field) is not None:
            return minor_units_amount(obj.get(field))
    return None


def normalize(payload: dict) -> CanonicalEvent:
    payload = require_object(payload)
    obj = _data_object(payload)
    customer_details = as_dict(obj.get("customer_details"))
    billing_details = as_dict(obj.get("billing_details"))

    provider_event_type = str(payload.get("type") or "").strip()
    event_type = EVENT_TYPE_MAP.get(provider_event_type, CanonicalEventType.UNMAPPED)

    return CanonicalEvent(
        event_type=event_type.value,
        provider_event_type=provider_event_type,
        customer_email=clean_email(
            customer_details.get("email")
            or obj.get("customer_email")
            or obj.get("receipt_email")
            or billing_details.get("email")
        ),
        customer_name=clean_str(customer_details.get("name") or billing_details.get("name")),
        external_order_id=_order_id(obj),
        external_subscription_id=_subscription_id(obj),
        plan_identifier=_plan_identifier(obj),
        amount=_amount(obj),
        currency=upper_currency(obj.get("currency")),
        occurred_at=parse_timestamp(payload.get("created")),
    )


def derive_idempotency_key(payload: dict, headers: Mapping[str, str]) -> str:
    payload = require_object(payload)
    event_id = clean_str(payload.get("id"))
    if event_id:
        return event_id
    order_id = _order_id(_data_object(payload))
    if not order_id:
        raise NormalizationError("Stripe payload has no event id or object id", error_code="missing_order_reference")
    return fallback_idempotency_key(order_id, str(payload.get("type") or "unknown"))


def build_test_request(secret: str | None) -> tuple[dict[str, str], bytes]:
    now = datetime.now(UTC)
    stamp = int(now.timestamp())
    payload = {
        "id": f"evt_test_{stamp}",
        "object": "event",
        "type": "checkout.session.completed",
        "created": stamp,
        "data": {
            "object": {
                "id": f"cs_test_{stamp}",
                "object": "checkout.session",
                "payment_intent": f"pi_test_{stamp}",
                "customer_details": {"email": "teste@stripe.com", "name": "Usuario Teste Stripe"},
                "amount_total": 9700,
                "currency": "brl",
                "metadata": {"plan_slug": "vip-mensal"},
            }
        },
    }
    body = json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if secret:
        signature = hmac_sha256_hex(secret, f"{stamp}.".encode("utf-8") + body)
        headers["Stripe-Signature"] = f"t={stamp},v1={signature}"
    return headers, body


ADAPTER = ProviderAdapter(
    provider=PROVIDER,
    verify=verify,
    normalize=normalize,
    derive_idempotency_key=derive_idempotency_key,
    build_test_request=build_test_request,
)
