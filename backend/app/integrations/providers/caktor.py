import json
from collections.abc import Mapping
from datetime import UTC, datetime

from app.domain.errors import NormalizationError
from app.integrations.providers.base import (
    FLAT_EVENT_TYPE_MAP,
    CanonicalEvent,
    ProviderAdapter,
    VerificationResult,
    as_dict,
    clean_str,
    fallback_idempotency_key,
    header,
    hmac_sha256_hex,
    normalize_flat_payload,
    require_object,
    verify_hmac_hex_signature,
)

PROVIDER = "caktor"


def _provider_event_type(payload: dict) -> str:
    return str(payload.get("event_type") or payload.get("event") or "").strip().lower()


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
        signature=header(headers, "x-caktor-signature"),
        body=body,
    )


def normalize(payload: dict) -> CanonicalEvent:
    payload = require_object(payload)
    return normalize_flat_payload(
        payload,
        provider_event_type=_provider_event_type(payload),
        event_type_map=FLAT_EVENT_TYPE_MAP,
    )


def derive_idempotency_key(payload: dict, headers: Mapping[str, str]) -> str:
    payload = require_object(payload)
    delivery_id = clean_str(payload.get("id"))
    if delivery_id:
        return delivery_id
    order_id = clean_str(as_dict(payload.get("data")).get("order_id"))
    if not order_id:
        raise NormalizationError("Caktor payload has no event id or order id", error_code="missing_order_reference")
    return fallback_idempotency_key(order_id, _provider_event_type(payload) or "unknown")


def build_test_request(secret: str | None) -> tuple[dict[str, str], bytes]:
    now = datetime.now(UTC)
    payload = {
        "event_type": "purchase.completed",
        "id": f"caktor_{int(now.timestamp())}",
        "created_at": now.isoformat(),
        "data": {
            "customer_email": "teste@caktor.com",
            "customer_name": "Usuario Teste Caktor",
            "product_name": "Produto Teste Caktor",
            "product_id": "caktor_prod_123",
            "amount": 97.00,
            "currency": "BRL",
            "order_id": f"CK{int(now.timestamp())}",
        },
    }
    body = json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if secret:
        headers["X-Caktor-Signature"] = f"sha256={hmac_sha256_hex(secret, body)}"
    return headers, body


ADAPTER = ProviderAdapter(
    provider=PROVIDER,
    verify=verify,
    normalize=normalize,
    derive_idempotency_key=derive_idempotency_key,
    build_test_request=build_test_request,
)
