import json
from collections.abc import Mapping
from datetime import UTC, datetime

from app.domain.errors import NormalizationError, VerificationError
from app.integrations.providers.base import (
    CanonicalEvent,
    CanonicalEventType,
    ProviderAdapter,
    VerificationResult,
    as_dict,
    check_millisecond_timestamp,
    clean_email,
    clean_str,
    decimal_amount,
    fallback_idempotency_key,
    header,
    parse_timestamp,
    require_object,
    upper_currency,
    verify_static_token,
)

PROVIDER = "hotmart"

EVENT_TYPE_MAP = {
    "PURCHASE_APPROVED": CanonicalEventType.PURCHASE_APPROVED,
    "PURCHASE_COMPLETE": CanonicalEventType.PURCHASE_APPROVED,
    "SUBSCRIPTION_CREATED": CanonicalEventType.SUBSCRIPTION_CREATED,
    "PURCHASE_REFUNDED": CanonicalEventType.REFUND,
    "PURCHASE_CHARGEBACK": CanonicalEventType.CHARGEBACK,
    "PURCHASE_PROTEST": CanonicalEventType.CHARGEBACK,
    "PURCHASE_CANCELED": CanonicalEventType.CANCELLATION,
    "SUBSCRIPTION_CANCELLATION": CanonicalEventType.CANCELLATION,
    "PURCHASE_DELAYED": CanonicalEventType.PAYMENT_FAILED,
    "PURCHASE_EXPIRED": CanonicalEventType.PAYMENT_FAILED,
    "PURCHASE_BILLET_PRINTED": CanonicalEventType.CHECKOUT_STARTED,
    "PURCHASE_OUT_OF_SHOPPING_CART": CanonicalEventType.CHECKOUT_STARTED,
}


def verify(
    headers: Mapping[str, str],
    body: bytes,
    secret: str | None,
    *,
    now: datetime,
    tolerance_seconds: int,
) -> VerificationResult:
    # Hotmart does not sign bodies; it echoes the account "hottok" on every call.
    try:
        check_millisecond_timestamp(
            header(headers, "x-hotmart-timestamp"),
            now=now,
            tolerance_seconds=tolerance_seconds,
        )
    except VerificationError as exc:
        return VerificationResult(verified=False, reason=exc.error_code)
    return verify_static_token(secret=secret, provided=header(headers, "x-hotmart-hottok", "hottok"))


def normalize(payload: dict) -> CanonicalEvent:
    payload = require_object(payload)
    data = as_dict(payload.get("data"))
    if payload.get("data") is not None and not isinstance(payload.get("data"), dict):
        raise NormalizationError("Hotmart 'data' must be an object", error_code="invalid_shape")

    purchase = as_dict(data.get("purchase"))
    buyer = as_dict(data.get("buyer"))
    product = as_dict(data.get("product"))
    price = as_dict(purchase.get("price"))
    subscription = as_dict(data.get("subscription"))
    subscriber = as_dict(subscription.get("subscriber"))

    provider_event_type = str(payload.get("event") or "").strip().upper()
    event_type = EVENT_TYPE_MAP.get(provider_event_type, CanonicalEventType.UNMAPPED)

    return CanonicalEvent(
        event_type=event_type.value,
        provider_event_type=provider_event_type,
        customer_email=clean_email(buyer.get("email") or purchase.get("buyer_email")),
        customer_name=clean_str(buyer.get("name")),
        external_order_id=clean_str(purchase.get("transaction")),
        external_subscription_id=clean_str(subscriber.get("code")),
        plan_identifier=clean_str(product.get("id")),
        amount=decimal_amount(price.get("value")),
        currency=upper_currency(price.get("currency_value")),
        occurred_at=parse_timestamp(purchase.get("approved_date") or payload.get("creation_date")),
    )


def derive_idempotency_key(payload: dict, headers: Mapping[str, str]) -> str:
    payload = require_object(payload)
    delivery_id = clean_str(payload.get("id"))
    if delivery_id:
        return delivery_id
    transaction = clean_str(as_dict(as_dict(payload.get("data")).get("purchase")).get("transaction"))
    if not transaction:
        raise NormalizationError("Hotmart payload has no delivery id or transaction", error_code="missing_order_reference")
    return fallback_idempotency_key(transaction, str(payload.get("event") or "unknown"))


def build_test_request(secret: str | None) -> tuple[dict[str, str], bytes]:
    now = datetime.now(UTC)
    transaction = f"HP{int(now.timestamp())}"
    payload = {
        "id": f"test-{transaction}",
        "event": "PURCHASE_APPROVED",
        "version": "2.0.0",
        "creation_date": int(now.timestamp() * 1000),
        "data": {
            "product": {"id": 123456, "name": "Produto Teste Hotmart", "ucode": "test-product-123"},
            "purchase": {
                "transaction": transaction,
                "status": "APPROVED",
                "price": {"value": 97.00, "currency_value": "BRL"},
            },
            "buyer": {"email": "teste@hotmart.com", "name": "Usuario Teste"},
        },
    }
    headers = {
        "Content-Type": "application/json",
        "X-Hotmart-Timestamp": str(int(now.timestamp() * 1000)),
    }
    if secret:
        headers["X-Hotmart-Hottok"] = secret
    return headers, json.dumps(payload).encode("utf-8")


ADAPTER = ProviderAdapter(
    provider=PROVIDER,
    verify=verify,
    normalize=normalize,
    derive_idempotency_key=derive_idempotency_key,
    build_test_request=build_test_request,
)
