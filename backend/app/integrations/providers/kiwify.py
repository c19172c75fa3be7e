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
    verify_hmac_hex_signature,
)

PROVIDER = "kiwify"

# Kiwify sends either a webhook_event_type trigger name or only an order_status.
EVENT_TYPE_MAP = {
    "order_approved": CanonicalEventType.PURCHASE_APPROVED,
    "paid": CanonicalEventType.PURCHASE_APPROVED,
    "approved": CanonicalEventType.PURCHASE_APPROVED,
    "subscription_renewed": CanonicalEventType.PURCHASE_APPROVED,
    "subscription_created": CanonicalEventType.SUBSCRIPTION_CREATED,
    "order_refunded": CanonicalEventType.REFUND,
    "refunded": CanonicalEventType.REFUND,
    "chargeback": CanonicalEventType.CHARGEBACK,
    "chargedback": CanonicalEventType.CHARGEBACK,
    "subscription_canceled": CanonicalEventType.CANCELLATION,
    "order_rejected": CanonicalEventType.PAYMENT_FAILED,
    "refused": CanonicalEventType.PAYMENT_FAILED,
    "subscription_late": CanonicalEventType.PAYMENT_FAILED,
    "billet_created": CanonicalEventType.CHECKOUT_STARTED,
    "pix_created": CanonicalEventType.CHECKOUT_STARTED,
    "waiting_payment": CanonicalEventType.CHECKOUT_STARTED,
    "abandoned_cart": CanonicalEventType.CHECKOUT_STARTED,
}


def _provider_event_type(payload: dict) -> str:
    return str(payload.get("webhook_event_type") or payload.get("order_status") or "").strip().lower()


def _order_id(payload: dict) -> str | None:
    return clean_str(payload.get("order_id") or as_dict(payload.get("order")).get("id"))


def verify(
    headers: Mapping[str, str],
    body: bytes,
    secret: str | None,
    *,
    now: datetime,
    tolerance_seconds: int,
) -> VerificationResult:
    return verify_hmac_hex_signature(
        secret=secret,
        signature=header(headers, "x-kiwify-signature", "signature"),
        body=body,
    )


def normalize(payload: dict) -> CanonicalEvent:
    payload = require_object(payload)
    customer = as_dict(payload.get("Customer"))
    product = as_dict(payload.get("Product"))
    commissions = as_dict(payload.get("Commissions"))
    subscription = as_dict(payload.get("Subscription"))
    subscription_plan = as_dict(subscription.get("plan"))

    provider_event_type = _provider_event_type(payload)
    event_type = EVENT_TYPE_MAP.get(provider_event_type, CanonicalEventType.UNMAPPED)

    return CanonicalEvent(
        event_type=event_type.value,
        provider_event_type=provider_event_type,
        customer_email=clean_email(customer.get("email")),
        customer_name=clean_str(customer.get("full_name")),
        external_order_id=_order_id(payload),
        external_subscription_id=clean_str(payload.get("subscription_id") or subscription.get("id")),
        plan_identifier=clean_str(subscription_plan.get("id") or product.get("product_id")),
        amount=minor_units_amount(commissions.get("charge_amount")),
        currency=upper_currency(commissions.get("currency") or commissions.get("product_base_price_currency")),
        occurred_at=parse_timestamp(payload.get("approved_date") or payload.get("created_at")),
    )


def derive_idempotency_key(payload: dict, headers: Mapping[str, str]) -> str:
    payload = require_object(payload)
    order_id = _order_id(payload)
    if not order_id:
        raise NormalizationError("Kiwify payload has no order id", error_code="missing_order_reference")
    return fallback_idempotency_key(order_id, _provider_event_type(payload) or "unknown")


def build_test_request(secret: str | None) -> tuple[dict[str, str], bytes]:
    now = datetime.now(UTC)
    payload = {
        "order_id": f"KW{int(now.timestamp())}",
        "order_status": "paid",
        "webhook_event_type": "order_approved",
        "Product": {"product_id": "prod_123456", "product_name": "Produto Teste Kiwify"},
        "Customer": {"email": "teste@kiwify.com", "full_name": "Usuario Teste Kiwify"},
        "Commissions": {"charge_amount": 9700, "currency": "BRL"},
        "created_at": now.isoformat(),
    }
    body = json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if secret:
        headers["X-Kiwify-Signature"] = hmac_sha256_hex(secret, body)
    return headers, body


ADAPTER = ProviderAdapter(
    provider=PROVIDER,
    verify=verify,
    normalize=normalize,
    derive_idempotency_key=derive_idempotency_key,
    build_test_request=build_test_request,
)
