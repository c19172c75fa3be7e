import asyncio
import hashlib
import hmac
import json
from datetime import UTC, datetime
from uuid import uuid4

import httpx
import pytest

from app.application.services.outbound_dispatch_service import (
    DeliveryRequest,
    RetryPolicyConfig,
    build_delivery_body,
    build_delivery_headers,
    compute_retry_delay_seconds,
    default_retry_policy,
    send_delivery,
    sign_payload,
)
from app.core.config import Settings
from app.domain.errors import DeliveryError
from app.domain.models.domain_event import DomainEvent


def _policy(strategy: str, *, base: int = 10, cap: int = 300, max_attempts: int = 5) -> RetryPolicyConfig:
    return RetryPolicyConfig(
        max_attempts=max_attempts,
        backoff_strategy=strategy,
        retry_delay_seconds=base,
        max_delay_seconds=cap,
    )


@pytest.mark.parametrize(
    ("strategy", "expected"),
    [
        ("linear", [10, 20, 30, 40, 50]),
        ("exponential", [10, 20, 40, 80, 160]),
        ("fixed", [10, 10, 10, 10, 10]),
    ],
)
def test_retry_delay_grows_per_strategy(strategy, expected):
    policy = _policy(strategy)
    assert [compute_retry_delay_seconds(policy, attempt) for attempt in range(1, 6)] == expected


def test_retry_delay_is_capped():
    policy = _policy("exponential", base=30, cap=100)
    assert compute_retry_delay_seconds(policy, 1) == 30
    assert compute_retry_delay_seconds(policy, 3) == 100
    assert compute_retry_delay_seconds(policy, 12) == 100


def test_shipped_retry_defaults_follow_doubling_schedule():
    fields = Settings.model_fields
    policy = RetryPolicyConfig(
        max_attempts=fields["outbound_max_attempts"].default,
        backoff_strategy=fields["outbound_backoff_strategy"].default,
        retry_delay_seconds=fields["outbound_retry_base_seconds"].default,
        max_delay_seconds=fields["outbound_retry_max_delay_seconds"].default,
    )

    assert policy.backoff_strategy == "exponential"
    assert policy.max_attempts == 5
    assert [compute_retry_delay_seconds(policy, attempt) for attempt in range(1, 5)] == [1, 2, 4, 8]
    assert compute_retry_delay_seconds(policy, 20) == 300


def test_default_policy_falls_back_to_exponential(pipeline_settings, monkeypatch):
    monkeypatch.setattr(pipeline_settings, "outbound_backoff_strategy", "random")
    monkeypatch.setattr(pipeline_settings, "outbound_max_attempts", 0)

    policy = default_retry_policy()

    assert policy.backoff_strategy == "exponential"
    assert policy.max_attempts == 1


def test_signature_header_matches_body_hmac():
    body = b'{"event_id":"abc"}'
    expected = hmac.new(b"receiver-secret", body, hashlib.sha256).hexdigest()

    assert sign_payload("receiver-secret", body) == f"sha256={expected}"

    signed = build_delivery_headers(domain_event_id=uuid4(), attempt=2, body=body, secret="receiver-secret")
    assert signed["X-Webhook-Signature"] == f"sha256={expected}"
    assert signed["X-Webhook-Attempt"] == "2"

    unsigned = build_delivery_headers(domain_event_id=uuid4(), attempt=1, body=body, secret=None)
    assert "X-Webhook-Signature" not in unsigned


def test_delivery_body_carries_stable_event_id():
    domain_event = DomainEvent(
        id=uuid4(),
        event_type="plan.activated",
        inbound_event_id=uuid4(),
        profile_id=uuid4(),
        data={"billing": {"plan": "vip"}},
        created_at=datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
    )

    body = build_delivery_body(domain_event)
    decoded = json.loads(body)

    assert body == build_delivery_body(domain_event)
    assert decoded["event_id"] == str(domain_event.id)
    assert decoded["event_type"] == "plan.activated"
    assert decoded["profile_id"] == str(domain_event.profile_id)
    assert decoded["occurred_at"] == "2026-03-01T12:00:00+00:00"


def _request(body: bytes = b"{}") -> DeliveryRequest:
    return DeliveryRequest(
        delivery_id=uuid4(),
        domain_event_id=uuid4(),
        subscription_id=uuid4(),
        attempt=1,
        target_url="https://receiver.example.com/hook",
        body=body,
        headers={"Content-Type": "application/json"},
    )


def _send(handler) -> httpx.Response:
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await send_delivery(client, _request())

    return asyncio.run(run())


def test_non_2xx_answer_raises_delivery_error():
    with pytest.raises(DeliveryError) as exc_info:
        _send(lambda request: httpx.Response(503, text="maintenance"))

    assert exc_info.value.status_code == 503
    assert exc_info.value.response_body == "maintenance"
    assert str(exc_info.value) == "HTTP 503"
    assert _send(lambda request: httpx.Response(204)).status_code == 204


def test_timeout_raises_delivery_error_without_status():
    def slow(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(DeliveryError) as exc_info:
        _send(slow)

    assert exc_info.value.status_code is None
    assert str(exc_info.value).startswith("Timed out after")
