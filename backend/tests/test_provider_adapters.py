import copy
import hashlib
import json
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from app.domain.errors import NormalizationError, UnknownProviderError
from app.integrations.providers import (
    build_test_request,
    derive_idempotency_key,
    normalize_payload,
    resolve_provider,
    verify_request,
)
from app.integrations.providers.base import hmac_sha256_hex

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _hotmart_payload(**overrides) -> dict:
    payload = {
        "id": "0f7c5f3a-hotmart-delivery",
        "event": "PURCHASE_APPROVED",
        "creation_date": 1772366400000,
        "data": {
            "product": {"id": 123456, "name": "VIP Mensal"},
            "purchase": {
                "transaction": "HP1234567890",
                "approved_date": 1772366400000,
                "price": {"value": 97.0, "currency_value": "brl"},
            },
            "buyer": {"email": " Maria@Example.COM ", "name": "Maria Souza"},
            "subscription": {"subscriber": {"code": "SUB-42"}},
        },
    }
    payload.update(overrides)
    return payload


def _kiwify_payload(**overrides) -> dict:
    payload = {
        "order_id": "kw-order-1",
        "order_status": "paid",
        "webhook_event_type": "order_approved",
        "Product": {"product_id": "prod_123456"},
        "Customer": {"email": "joao@example.com", "full_name": "Joao Lima"},
        "Commissions": {"charge_amount": 9700, "currency": "BRL"},
        "created_at": "2026-03-01T12:00:00Z",
    }
    payload.update(overrides)
    return payload


def _kiwify_headers(body: bytes, secret: str = "kiwify-test-secret") -> dict[str, str]:
    return {"content-type": "application/json", "x-kiwify-signature": hmac_sha256_hex(secret, body)}


def _stripe_headers(body: bytes, *, timestamp: int, secret: str = "whsec_test") -> dict[str, str]:
    signature = hmac_sha256_hex(secret, f"{timestamp}.".encode("utf-8") + body)
    return {"stripe-signature": f"t={timestamp},v1={signature}"}


def test_hotmart_normalizes_decimal_amount_and_identity():
    canonical = normalize_payload("hotmart", _hotmart_payload())

    assert canonical.event_type == "purchase_approved"
    assert canonical.provider_event_type == "PURCHASE_APPROVED"
    assert canonical.customer_email == "maria@example.com"
    assert canonical.customer_name == "Maria Souza"
    assert canonical.external_order_id == "HP1234567890"
    assert canonical.external_subscription_id == "SUB-42"
    assert canonical.plan_identifier == "123456"
    assert canonical.amount == Decimal("97.00")
    assert canonical.currency == "BRL"
    assert canonical.occurred_at == datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def test_kiwify_converts_minor_units_to_currency_amount():
    canonical = normalize_payload("kiwify", _kiwify_payload())

    assert canonical.event_type == "purchase_approved"
    assert canonical.amount == Decimal("97.00")
    assert canonical.plan_identifier == "prod_123456"
    assert canonical.customer_email == "joao@example.com"


def test_stripe_checkout_session_uses_metadata_plan_slug():
    _, body = build_test_request("stripe")
    canonical = normalize_payload("stripe", json.loads(body))

    assert canonical.event_type == "purchase_approved"
    assert canonical.plan_identifier == "vip-mensal"
    assert canonical.amount == Decimal("97.00")
    assert canonical.currency == "BRL"
    assert canonical.customer_email == "teste@stripe.com"
    assert canonical.external_order_id.startswith("pi_test_")


def test_stripe_invoice_falls_back_to_line_price():
    payload = {
        "id": "evt_invoice_1",
        "type": "invoice.paid",
        "created": 1772366400,
        "data": {
            "object": {
                "id": "in_1",
                "object": "invoice",
                "customer_email": "ana@example.com",
                "subscription": "sub_1",
                "amount_paid": 97000,
                "currency": "brl",
                "lines": {"data": [{"price": {"id": "price_vip_anual"}}]},
            }
        },
    }

    canonical = normalize_payload("stripe", payload)

    assert canonical.plan_identifier == "price_vip_anual"
    assert canonical.external_subscription_id == "sub_1"
    assert canonical.external_order_id == "in_1"
    assert canonical.amount == Decimal("970.00")


@pytest.mark.parametrize(
    ("provider", "event_type", "expected"),
    [
        ("caktor", "purchase.refunded", "refund"),
        ("caktor", "chargeback.created", "chargeback"),
        ("generic", "subscription.cancelled", "cancellation"),
        ("generic", "cancellation", "cancellation"),
        ("generic", "checkout.started", "checkout_started"),
        ("caktor", "something.else", "unmapped"),
    ],
)
def test_flat_providers_map_event_vocabulary(provider, event_type, expected):
    payload = {
        "id": "evt-1",
        "event_type": event_type,
        "created_at": "2026-03-01T12:00:00+00:00",
        "data": {"customer_email": "c@example.com", "order_id": "o-1", "amount": "49.9", "plan_slug": "vip-mensal"},
    }

    canonical = normalize_payload(provider, payload)

    assert canonical.event_type == expected
    assert canonical.amount == Decimal("49.90")


def test_normalization_is_pure():
    payload = _hotmart_payload()
    snapshot = copy.deepcopy(payload)

    first = normalize_payload("hotmart", payload)
    second = normalize_payload("hotmart", payload)

    assert first == second
    assert payload == snapshot
    assert first.to_dict() == second.to_dict()


def test_normalization_rejects_wrong_shapes():
    with pytest.raises(NormalizationError) as exc_info:
        normalize_payload("hotmart", _hotmart_payload(data=["not", "an", "object"]))
    assert exc_info.value.error_code == "invalid_shape"

    with pytest.raises(NormalizationError) as exc_info:
        normalize_payload("generic", {"event": "purchase.completed", "data": {"amount": "ninety"}})
    assert exc_info.value.error_code == "invalid_amount"


def test_kiwify_signature_rejects_tampered_body():
    body = json.dumps(_kiwify_payload()).encode("utf-8")
    headers = _kiwify_headers(body)

    assert verify_request("kiwify", headers, body, now=NOW).verified is True

    tampered = body.replace(b"9700", b"100")
    result = verify_request("kiwify", headers, tampered, now=NOW)
    assert result.verified is False
    assert result.reason == "invalid_signature"


def test_verification_requires_configured_secret(pipeline_settings, monkeypatch):
    monkeypatch.setattr(pipeline_settings, "caktor_webhook_secret", None)
    body = b'{"id":"evt-1"}'

    result = verify_request("caktor", {"x-caktor-signature": "sha256=abc"}, body, now=NOW)

    assert result.verified is False
    assert result.reason == "secret_not_configured"


def test_stripe_signature_window_and_header_format():
    body = b'{"id":"evt_1","type":"invoice.paid"}'
    fresh = int(NOW.timestamp())

    assert verify_request("stripe", _stripe_headers(body, timestamp=fresh), body, now=NOW).verified is True

    stale = verify_request("stripe", _stripe_headers(body, timestamp=fresh - 3600), body, now=NOW)
    assert stale.reason == "stale_timestamp"

    malformed = verify_request("stripe", {"stripe-signature": "v1=deadbeef"}, body, now=NOW)
    assert malformed.reason == "invalid_signature_header"

    missing = verify_request("stripe", {}, body, now=NOW)
    assert missing.reason == "missing_signature"


def test_hotmart_token_and_replay_window():
    body = json.dumps(_hotmart_payload()).encode("utf-8")
    now_ms = str(int(NOW.timestamp() * 1000))

    ok = verify_request("hotmart", {"x-hotmart-hottok": "hottok-test", "x-hotmart-timestamp": now_ms}, body, now=NOW)
    assert ok.verified is True

    wrong = verify_request("hotmart", {"x-hotmart-hottok": "nope"}, body, now=NOW)
    assert wrong.reason == "invalid_signature"

    old_ms = str(int((NOW - timedelta(hours=1)).timestamp() * 1000))
    replayed = verify_request("hotmart", {"x-hotmart-hottok": "hottok-test", "x-hotmart-timestamp": old_ms}, body, now=NOW)
    assert replayed.reason == "stale_timestamp"


def test_generic_accepts_bearer_secret():
    body = b'{"event":"purchase.completed","id":"g-1"}'

    assert verify_request("generic", {"Authorization": "Bearer generic-test-secret"}, body, now=NOW).verified is True
    assert verify_request("generic", {"X-Webhook-Secret": "wrong"}, body, now=NOW).verified is False


def test_built_test_requests_verify_for_every_provider():
    for provider in ("hotmart", "kiwify", "caktor", "stripe", "generic"):
        headers, body = build_test_request(provider)
        assert verify_request(provider, headers, body).verified is True, provider


def test_idempotency_key_prefers_delivery_id():
    assert derive_idempotency_key("hotmart", _hotmart_payload(), {}) == "0f7c5f3a-hotmart-delivery"
    assert derive_idempotency_key("stripe", {"id": "evt_123", "type": "invoice.paid"}, {}) == "evt_123"


def test_idempotency_key_falls_back_to_order_and_event_type():
    expected = hashlib.sha256(b"kw-order-1|order_approved").hexdigest()

    assert derive_idempotency_key("kiwify", _kiwify_payload(), {}) == expected
    refunded = derive_idempotency_key("kiwify", _kiwify_payload(webhook_event_type="order_refunded"), {})
    assert refunded != expected


def test_generic_idempotency_header_wins():
    payload = {"id": "payload-id", "event": "purchase.completed", "data": {"order_id": "o-1"}}

    assert derive_idempotency_key("generic", payload, {"X-Idempotency-Key": "header-key"}) == "header-key"
    assert derive_idempotency_key("generic", payload, {}) == "payload-id"


def test_idempotency_key_requires_some_reference():
    with pytest.raises(NormalizationError) as exc_info:
        derive_idempotency_key("caktor", {"event_type": "purchase.completed", "data": {}}, {})
    assert exc_info.value.error_code == "missing_order_reference"


def test_unknown_provider_is_rejected():
    with pytest.raises(UnknownProviderError):
        resolve_provider("paypal")
    assert resolve_provider(" Stripe ").value == "stripe"
