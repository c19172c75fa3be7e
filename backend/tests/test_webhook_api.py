import asyncio
import json
import time
from uuid import uuid4

import httpx
from redis.exceptions import ConnectionError as RedisConnectionError

from app.application.services.inbound_event_service import IngestResult
from app.integrations.providers.base import hmac_sha256_hex
from app.interfaces.api import health, webhooks
from main import app


def _kiwify_body(order_id: str = "kw-api-1") -> bytes:
    return json.dumps(
        {
            "order_id": order_id,
            "webhook_event_type": "order_approved",
            "Product": {"product_id": "prod_123456"},
            "Customer": {"email": "api@example.com"},
            "Commissions": {"charge_amount": 9700, "currency": "BRL"},
        }
    ).encode("utf-8")


def _post_kiwify(client, body: bytes, *, secret: str = "kiwify-test-secret"):
    return client.post(
        "/webhooks/kiwify",
        content=body,
        headers={"Content-Type": "application/json", "X-Kiwify-Signature": hmac_sha256_hex(secret, body)},
    )


def test_signed_delivery_is_acknowledged_once(client, enqueued):
    body = _kiwify_body()

    first = _post_kiwify(client, body)
    second = _post_kiwify(client, body)

    assert first.status_code == 200
    assert first.json()["received"] is True
    assert first.json()["duplicate"] is False
    assert first.json()["status"] == "received"
    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    assert second.json()["event_id"] == first.json()["event_id"]
    assert [str(event_id) for event_id in enqueued["inbound"]] == [first.json()["event_id"]]


def test_unverified_delivery_is_still_acknowledged(client):
    response = _post_kiwify(client, _kiwify_body("kw-api-unsigned"), secret="not-the-secret")

    assert response.status_code == 200
    assert response.json()["duplicate"] is False


def test_malformed_json_is_rejected_with_trace_id(client):
    response = client.post(
        "/webhooks/generic",
        content=b"{broken",
        headers={"Content-Type": "application/json", "X-Request-ID": "trace-123"},
    )

    assert response.status_code == 400
    assert response.json() == {
        "error_code": "invalid_payload",
        "message": "Request body is not valid JSON",
        "trace_id": "trace-123",
    }
    assert response.headers["X-Request-ID"] == "trace-123"


def test_delivery_without_any_reference_is_rejected(client):
    response = client.post("/webhooks/caktor", json={"event_type": "purchase.completed", "data": {}})

    assert response.status_code == 400
    assert response.json()["error_code"] == "missing_order_reference"


def test_unknown_provider_is_not_found(client):
    response = client.post("/webhooks/paypal", json={"id": "evt-1"})

    assert response.status_code == 404
    assert response.json()["error_code"] == "unknown_provider"
    assert response.json()["trace_id"]


def test_responses_carry_security_headers(client):
    response = client.post("/webhooks/paypal", json={})

    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["Cache-Control"] == "no-store"


class DownRedis:
    def ping(self):
        raise RedisConnectionError("redis unavailable")

    def exists(self, *args):
        raise RedisConnectionError("redis unavailable")


def test_health_reports_pipeline_backlog(client, session_factory, monkeypatch):
    monkeypatch.setattr(health, "SessionLocal", session_factory)
    monkeypatch.setattr(health, "get_redis_client", lambda: DownRedis())
    _post_kiwify(client, _kiwify_body("kw-api-backlog"))

    response = client.get("/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "degraded"
    assert payload["services"]["database"] == "up"
    assert payload["services"]["redis"] == "down"
    assert payload["backlog"] == {"inbound_received": 1, "outbound_pending": 0, "dead_letters_open": 0}

    ready = client.get("/ready")
    assert ready.status_code == 503
    assert ready.json()["status"] == "not_ready"


def test_inbound_deliveries_are_recorded_concurrently(client, monkeypatch):
    def slow_ingest(db, *, provider, headers, body):
        time.sleep(0.4)
        return IngestResult(event_id=uuid4(), is_new=True, status="received", verified=True, verification_reason=None)

    monkeypatch.setattr(webhooks, "ingest_webhook", slow_ingest)

    async def run() -> tuple[list[httpx.Response], float]:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
            started = time.perf_counter()
            responses = await asyncio.gather(
                *(http.post("/webhooks/generic", json={"id": f"evt-{index}"}) for index in range(4))
            )
            return list(responses), time.perf_counter() - started

    responses, elapsed = asyncio.run(run())

    assert [response.status_code for response in responses] == [200, 200, 200, 200]
    assert elapsed < 1.2
