import json
from collections.abc import Mapping
from datetime import UTC, datetime

from app.domain.errors import NormalizationError, VerificationError
from app.integrations.providers.base import (
    FLAT_EVENT_TYPE_MAP,
    CanonicalEvent,
    CanonicalEventType,
    ProviderAdapter,
    VerificationResult,
    as_dict,
    check_millisecond_timestamp,
    clean_str,
    fallback_idempotency_key,
    header,
    normalize_flat_payload,
    require_object,
    verify_static_token,
)

PROVIDER = "generic"

# Generic senders may already speak the canonical vocabulary.
EVENT_TYPE_MAP = {
    **FLAT_EVENT_TYPE_MAP,
    **{member.value: member for member in CanonicalEventType if member is not CanonicalEventType.UNMAPPED},
}


def _provider_event_type(payload: dict) -> str:
    return str(payload.get("event_type") or payload.get("event") or "").strip().lower()


def _bearer_token(headers: Mapping[str, str]) -> str | None:
    authorization = header(headers, "authorization")
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[len("bearer "):].strip() or None
    return None


def verify(
    headers: Mapping[str, str],
    body: bytes,
    secret: str | None,
    *,
    now: datetime,
    tolerance_seconds: int,
) -> VerificationResult:
    try:
        check_millisecond_timestamp(
            header(headers, "x-webhook-timestamp"),
            now=now,
            tolerance_seconds=tolerance_seconds,
        )
    except VerificationError as exc:
        return VerificationResult(verified=False, reason=exc.error_code)
    provided = header(headers, "x-webhook-secret") or _bearer_token(headers)
    return verify_static_token(secret=secret, provided=provided)


def normalize(payload: dict) -> CanonicalEvent:
    payload = require_object(payload)
    return normalize_flat_payload(
        payload,
        provider_event_type=_provider_event_type(payload),
        event_type_map=EVENT_TYPE_MAP,
    )


def derive_idempotency_key(payload: dict, headers: Mapping[str, str]) -> str:
    payload = require_object(payload)
    explicit_key = header(headers, "x-idempotency-key", "idempotency-key")
    if explicit_key:
        return explicit_key
    delivery_id = clean_str(payload.get("id"))
    if delivery_id:
        return delivery_id
    data = as_dict(payload.get("data"))
    order_id = clean_str(data.get("order_id") or data.get("transaction_id") or payload.get("order_id"))
    if not order_id:
        raise NormalizationError("Payload has no idempotency key, event id or order id", error_code="missing_order_reference")
    return fallback_idempotency_key(order_id, _provider_event_type(payload) or "unknown")


def build_test_request(secret: str | None) -> tuple[dict[str, str], bytes]:
    now = datetime.now(UTC)
    payload = {
        "event": "purchase.completed",
        "id": f"generic_{int(now.timestamp())}",
        "timestamp": now.isoformat(),
        "data": {
            "customer_email": "teste@generic.com",
            "customer_name": "Usuario Teste Generic",
            "product_name": "Produto Teste Generic",
            "amount": 97.00,
            "currency": "BRL",
            "order_id": f"GN{int(now.timestamp())}",
        },
    }
    headers = {
        "Content-Type": "application/json",
        "X-Webhook-Timestamp": str(int(now.timestamp() * 1000)),
    }
    if secret:
        headers["X-Webhook-Secret"] = secret
    return headers, json.dumps(payload).encode("utf-8")


ADAPTER = ProviderAdapter(
    provider=PROVIDER,
    verify=verify,
    normalize=normalize,
    derive_idempotency_key=derive_idempotency_key,
    build_test_request=build_test_request,
)
