import json
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.application.services.inbound_event_service import ingest_webhook
from app.application.services.plan_catalog_service import seed_plan_catalog
from app.application.services.webhook_processing_service import (
    find_resumable_inbound_events,
    process_inbound_event,
    reprocess_inbound_event,
)
from app.domain.errors import InvalidStateTransition
from app.domain.models.domain_event import DomainEvent
from app.domain.models.inbound_event import InboundEvent
from app.domain.models.plan import Plan
from app.domain.models.platform_product import PlatformProduct
from app.domain.models.profile import Profile
from app.integrations.providers.base import hmac_sha256_hex

OCCURRED_AT = datetime.now(UTC).replace(microsecond=0) - timedelta(days=2)


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def _kiwify(db_session, *, order_id: str = "kw-vip-1", email: str = "maria@example.com", tamper: bool = False):
    body = json.dumps(
        {
            "order_id": order_id,
            "order_status": "paid",
            "webhook_event_type": "order_approved",
            "Product": {"product_id": "prod_123456"},
            "Customer": {"email": email, "full_name": "Maria Souza"},
            "Commissions": {"charge_amount": 9700, "currency": "BRL"},
            "created_at": OCCURRED_AT.isoformat(),
        }
    ).encode("utf-8")
    headers = {"x-kiwify-signature": hmac_sha256_hex("kiwify-test-secret", body)}
    if tamper:
        body = body.replace(b"9700", b"1")
    return ingest_webhook(db_session, provider="kiwify", headers=headers, body=body)


def _generic(db_session, *, delivery_id: str, event: str, email: str = "maria@example.com", occurred_at=OCCURRED_AT, **data):
    payload = {
        "id": delivery_id,
        "event": event,
        "created_at": occurred_at.isoformat(),
        "data": {"customer_email": email, "order_id": f"order-{delivery_id}", "plan_slug": "vip-mensal", **data},
    }
    body = json.dumps(payload).encode("utf-8")
    return ingest_webhook(db_session, provider="generic", headers={"x-webhook-secret": "generic-test-secret"}, body=body)


def _profile(db_session, email: str = "maria@example.com") -> Profile | None:
    return db_session.execute(select(Profile).where(Profile.email == email)).scalar_one_or_none()


def _domain_events(db_session) -> list[DomainEvent]:
    return list(db_session.execute(select(DomainEvent).order_by(DomainEvent.created_at.asc())).scalars().all())


def test_vip_monthly_purchase_activates_profile(db_session, plan_catalog, enqueued):
    ingested = _kiwify(db_session)

    outcome = process_inbound_event(db_session, ingested.event_id)

    assert outcome.status == "processed"
    event = db_session.get(InboundEvent, ingested.event_id)
    assert event.status == "processed"
    assert event.processing_attempts == 1
    assert event.canonical_event["amount"] == "97.00"
    assert Decimal(event.canonical_event["amount"]) == Decimal("97.00")
    assert event.canonical_event["event_type"] == "purchase_approved"

    profile = _profile(db_session)
    assert profile.plan == "vip"
    assert profile.plan_status == "active"
    assert profile.auto_renewal is True
    assert _utc(profile.plan_start_date) == OCCURRED_AT
    assert _utc(profile.plan_end_date) == OCCURRED_AT + timedelta(days=30)

    domain_events = _domain_events(db_session)
    assert len(domain_events) == 1
    assert domain_events[0].event_type == "plan.activated"
    assert domain_events[0].inbound_event_id == ingested.event_id
    assert domain_events[0].data["billing"]["plan"] == "vip"
    assert domain_events[0].data["reapplied"] is False
    assert enqueued["domain_events"] == [domain_events[0].id]


def test_processing_a_terminal_event_again_is_a_no_op(db_session, plan_catalog, enqueued):
    ingested = _kiwify(db_session)
    process_inbound_event(db_session, ingested.event_id)
    end_before = _utc(_profile(db_session).plan_end_date)

    again = process_inbound_event(db_session, ingested.event_id)

    assert again.skipped is True
    assert again.status == "processed"
    assert db_session.get(InboundEvent, ingested.event_id).processing_attempts == 1
    assert _utc(_profile(db_session).plan_end_date) == end_before
    assert len(_domain_events(db_session)) == 1
    assert len(enqueued["domain_events"]) == 1


def test_resent_event_under_new_id_reapplies_without_changing_state(db_session, plan_catalog):
    first = _generic(db_session, delivery_id="gen-1", event="purchase.completed")
    process_inbound_event(db_session, first.event_id)
    end_before = _utc(_profile(db_session).plan_end_date)

    second = _generic(db_session, delivery_id="gen-2", event="purchase.completed")
    outcome = process_inbound_event(db_session, second.event_id)

    assert outcome.status == "processed"
    assert _utc(_profile(db_session).plan_end_date) == end_before
    assert len(_domain_events(db_session)) == 2
    resent = db_session.execute(
        select(DomainEvent).where(DomainEvent.inbound_event_id == second.event_id)
    ).scalar_one()
    assert resent.data["reapplied"] is True


def test_tampered_body_is_never_applied(db_session, plan_catalog, enqueued):
    ingested = _kiwify(db_session, tamper=True)

    outcome = process_inbound_event(db_session, ingested.event_id)

    assert outcome.status == "discarded"
    event = db_session.get(InboundEvent, ingested.event_id)
    assert event.verified is False
    assert event.error_message == "verification_failed:invalid_signature"
    assert event.canonical_event is None
    assert _profile(db_session) is None
    assert _domain_events(db_session) == []
    assert enqueued["domain_events"] == []


def test_sandbox_override_processes_unverified_events(db_session, plan_catalog, pipeline_settings, monkeypatch):
    monkeypatch.setattr(pipeline_settings, "webhook_allow_unverified", True)
    ingested = _kiwify(db_session, tamper=True)

    outcome = process_inbound_event(db_session, ingested.event_id)

    assert outcome.status == "processed"
    assert _profile(db_session).plan == "vip"


def test_unknown_plan_fails_then_reprocesses_after_mapping(db_session, enqueued):
    ingested = _kiwify(db_session)

    failed = process_inbound_event(db_session, ingested.event_id)

    assert failed.status == "failed"
    assert failed.reason == "plan_not_found"
    event = db_session.get(InboundEvent, ingested.event_id)
    db_session.refresh(event)
    assert event.status == "failed"
    assert event.processing_attempts == 1
    assert event.error_message.startswith("plan_not_found")
    assert event.canonical_event["plan_identifier"] == "prod_123456"
    assert _profile(db_session) is None
    assert ingested.event_id in find_resumable_inbound_events(db_session)

    seed_plan_catalog(db_session)
    outcome = reprocess_inbound_event(db_session, ingested.event_id)

    assert outcome.status == "processed"
    db_session.refresh(event)
    assert event.status == "processed"
    assert event.processing_attempts == 2
    assert event.error_message is None
    assert _profile(db_session).plan == "vip"
    assert ingested.event_id not in find_resumable_inbound_events(db_session)


def test_reprocess_is_only_allowed_from_failed(db_session, plan_catalog):
    ingested = _kiwify(db_session)
    process_inbound_event(db_session, ingested.event_id)

    with pytest.raises(InvalidStateTransition):
        reprocess_inbound_event(db_session, ingested.event_id)


def test_event_without_billing_effect_is_discarded(db_session, plan_catalog):
    ingested = _generic(db_session, delivery_id="gen-checkout", event="checkout.started")

    outcome = process_inbound_event(db_session, ingested.event_id)

    assert outcome.status == "discarded"
    assert outcome.reason == "no_billing_effect"
    event = db_session.get(InboundEvent, ingested.event_id)
    assert event.canonical_event["event_type"] == "checkout_started"
    assert _profile(db_session) is None


def test_billing_event_without_email_is_discarded(db_session, plan_catalog):
    ingested = _generic(db_session, delivery_id="gen-no-email", event="purchase.completed", email="")

    outcome = process_inbound_event(db_session, ingested.event_id)

    assert outcome.status == "discarded"
    assert outcome.reason == "missing_customer_email"


def test_refund_suspends_and_downgrades_profile(db_session, plan_catalog):
    activation = _generic(db_session, delivery_id="gen-buy", event="purchase.completed")
    process_inbound_event(db_session, activation.event_id)

    refund = _generic(db_session, delivery_id="gen-refund", event="purchase.refunded")
    outcome = process_inbound_event(db_session, refund.event_id)

    assert outcome.status == "processed"
    profile = _profile(db_session)
    assert profile.plan == "free"
    assert profile.plan_status == "suspended"
    assert profile.auto_renewal is False
    assert _domain_events(db_session)[-1].event_type == "plan.revoked"


def test_cancellation_expires_plan_at_event_time(db_session, plan_catalog):
    activation = _generic(db_session, delivery_id="gen-sub", event="subscription.created")
    process_inbound_event(db_session, activation.event_id)

    cancelled_at = OCCURRED_AT + timedelta(days=10)
    cancellation = _generic(db_session, delivery_id="gen-cancel", event="subscription.canceled", occurred_at=cancelled_at)
    process_inbound_event(db_session, cancellation.event_id)

    profile = _profile(db_session)
    assert profile.plan_status == "expired"
    assert _utc(profile.plan_end_date) == cancelled_at


def test_revocation_for_unknown_customer_fails(db_session, plan_catalog):
    ingested = _generic(db_session, delivery_id="gen-chargeback", event="chargeback.created", email="ghost@example.com")

    outcome = process_inbound_event(db_session, ingested.event_id)

    assert outcome.status == "failed"
    assert outcome.reason == "profile_not_found"
    assert _domain_events(db_session) == []


def test_plan_resolves_through_provider_price_mapping(db_session):
    plan = Plan(name="VIP Anual", slug="vip-anual", tier="vip", price_cents=97000, interval="annual")
    db_session.add(plan)
    db_session.flush()
    db_session.add(PlatformProduct(plan_id=plan.id, platform="stripe", product_id="prod_vip_anual", price_id="price_vip_anual"))
    db_session.commit()

    payload = {
        "id": "evt_invoice_annual",
        "type": "invoice.paid",
        "created": int(OCCURRED_AT.timestamp()),
        "data": {
            "object": {
                "id": "in_annual",
                "object": "invoice",
                "customer_email": "ana@example.com",
                "amount_paid": 97000,
                "currency": "brl",
                "lines": {"data": [{"price": {"id": "price_vip_anual"}}]},
            }
        },
    }
    body = json.dumps(payload).encode("utf-8")
    stamp = int(datetime.now(UTC).timestamp())
    signature = hmac_sha256_hex("whsec_test", f"{stamp}.".encode("utf-8") + body)
    ingested = ingest_webhook(
        db_session,
        provider="stripe",
        headers={"stripe-signature": f"t={stamp},v1={signature}"},
        body=body,
    )

    process_inbound_event(db_session, ingested.event_id)

    profile = _profile(db_session, "ana@example.com")
    assert profile.plan == "vip"
    assert _utc(profile.plan_end_date) == OCCURRED_AT + timedelta(days=365)


def test_stalled_received_events_are_resumable(db_session):
    ingested = _generic(db_session, delivery_id="gen-stalled", event="purchase.completed")
    now = datetime.now(UTC)

    assert ingested.event_id not in find_resumable_inbound_events(db_session, now=now)
    assert ingested.event_id in find_resumable_inbound_events(db_session, now=now + timedelta(hours=1))


def test_plan_catalog_seed_is_idempotent(db_session):
    first = seed_plan_catalog(db_session)
    second = seed_plan_catalog(db_session)

    assert first["plans_created"] == 3
    assert second == {"plans_created": 0, "platform_products_created": 0}
    assert db_session.execute(select(func.count(Plan.id))).scalar_one() == 3


def test_late_activation_starts_at_processing_time(db_session, plan_catalog):
    purchased_at = OCCURRED_AT - timedelta(days=45)
    now = datetime.now(UTC).replace(microsecond=0)
    ingested = _generic(db_session, delivery_id="gen-late", event="purchase.completed", occurred_at=purchased_at)

    outcome = process_inbound_event(db_session, ingested.event_id, now=now)

    assert outcome.status == "processed"
    profile = _profile(db_session)
    assert profile.plan_status == "active"
    assert _utc(profile.plan_start_date) == now
    assert _utc(profile.plan_end_date) == now + timedelta(days=30)

    resent = _generic(db_session, delivery_id="gen-late-resend", event="purchase.completed", occurred_at=purchased_at)
    process_inbound_event(db_session, resent.event_id, now=now + timedelta(hours=6))

    assert _utc(_profile(db_session).plan_end_date) == now + timedelta(days=30)
    domain_event = db_session.execute(
        select(DomainEvent).where(DomainEvent.inbound_event_id == resent.event_id)
    ).scalar_one()
    assert domain_event.data["reapplied"] is True
