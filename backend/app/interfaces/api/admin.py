from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.application.services.dead_letter_service import list_dead_letters, replay_dead_letter
from app.application.services.inbound_event_service import list_inbound_events
from app.application.services.outbound_dispatch_service import list_domain_events, list_outbound_deliveries
from app.application.services.provider_test_event_service import run_test_event
from app.application.services.webhook_processing_service import reprocess_inbound_event
from app.domain.errors import InvalidStateTransition
from app.domain.models.dead_letter_entry import DeadLetterEntry
from app.domain.models.domain_event import DomainEvent
from app.domain.models.inbound_event import InboundEvent
from app.domain.models.outbound_delivery import OutboundDelivery
from app.domain.models.outbound_subscription import OutboundSubscription
from app.interfaces.api.deps import require_admin_token
from app.infrastructure.db.session import get_db

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])

URL_PATTERN = r"^https?://\S+$"


class OutboundSubscriptionCreateRequest(BaseModel):
    target_url: str = Field(min_length=8, max_length=2048, pattern=URL_PATTERN)
    secret: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=1000)
    active: bool = True


class OutboundSubscriptionUpdateRequest(BaseModel):
    target_url: str | None = Field(default=None, min_length=8, max_length=2048, pattern=URL_PATTERN)
    secret: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=1000)
    active: bool | None = None


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def _serialize_subscription(subscription: OutboundSubscription) -> dict:
    return {
        "id": str(subscription.id),
        "target_url": subscription.target_url,
        "has_secret": bool(subscription.secret),
        "description": subscription.description,
        "active": subscription.active,
        "failures_count": subscription.failures_count,
        "backoff_state": subscription.backoff_state or {},
        "last_delivery_at": _iso(subscription.last_delivery_at),
        "created_at": _iso(subscription.created_at),
        "updated_at": _iso(subscription.updated_at),
    }


def _serialize_inbound_event(event: InboundEvent, *, include_payload: bool = False) -> dict:
    payload = {
        "id": str(event.id),
        "provider": event.provider,
        "idempotency_key": event.idempotency_key,
        "verified": event.verified,
        "verification_reason": event.verification_reason,
        "status": event.status,
        "error_message": event.error_message,
        "processing_attempts": event.processing_attempts,
        "received_at": _iso(event.received_at),
        "processed_at": _iso(event.processed_at),
    }
    if include_payload:
        payload["raw_headers"] = event.raw_headers or {}
        payload["raw_payload"] = event.raw_payload or {}
        payload["canonical_event"] = event.canonical_event
    return payload


def _serialize_domain_event(domain_event: DomainEvent) -> dict:
    return {
        "id": str(domain_event.id),
        "event_type": domain_event.event_type,
        "inbound_event_id": str(domain_event.inbound_event_id),
        "profile_id": str(domain_event.profile_id) if domain_event.profile_id else None,
        "data": domain_event.data or {},
        "status": domain_event.status,
        "retry_count": domain_event.retry_count,
        "error_message": domain_event.error_message,
        "created_at": _iso(domain_event.created_at),
        "dispatched_at": _iso(domain_event.dispatched_at),
    }


def _serialize_delivery(delivery: OutboundDelivery) -> dict:
    return {
        "id": str(delivery.id),
        "domain_event_id": str(delivery.domain_event_id),
        "subscription_id": str(delivery.subscription_id),
        "attempt": delivery.attempt,
        "status": delivery.status,
        "response_code": delivery.response_code,
        "response_body": delivery.response_body,
        "next_retry_at": _iso(delivery.next_retry_at),
        "created_at": _iso(delivery.created_at),
        "delivered_at": _iso(delivery.delivered_at),
    }


def _serialize_dead_letter(entry: DeadLetterEntry) -> dict:
    return {
        "id": str(entry.id),
        "kind": entry.kind,
        "reference_id": str(entry.reference_id),
        "reason": entry.reason,
        "payload": entry.payload or {},
        "error_message": entry.error_message,
        "created_at": _iso(entry.created_at),
        "replayed_at": _iso(entry.replayed_at),
    }


def _get_subscription_or_404(db: Session, subscription_id: UUID) -> OutboundSubscription:
    subscription = db.get(OutboundSubscription, subscription_id)
    if subscription is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Outbound subscription not found")
    return subscription


@router.get("/outbound-subscriptions", status_code=status.HTTP_200_OK)
def list_outbound_subscriptions(
    active: bool | None = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = select(OutboundSubscription).order_by(OutboundSubscription.created_at.asc())
    if active is not None:
        query = query.where(OutboundSubscription.active.is_(active))
    rows = db.execute(query).scalars().all()
    return {"items": [_serialize_subscription(item) for item in rows]}


@router.post("/outbound-subscriptions", status_code=status.HTTP_201_CREATED)
def create_outbound_subscription(payload: OutboundSubscriptionCreateRequest, db: Session = Depends(get_db)) -> dict:
    subscription = OutboundSubscription(
        target_url=payload.target_url,
        secret=payload.secret or None,
        description=payload.description,
        active=payload.active,
        failures_count=0,
        backoff_state={},
    )
    db.add(subscription)
    db.commit()
    db.refresh(subscription)
    return _serialize_subscription(subscription)


@router.patch("/outbound-subscriptions/{subscription_id}", status_code=status.HTTP_200_OK)
def update_outbound_subscription(
    subscription_id: UUID,
    payload: OutboundSubscriptionUpdateRequest,
    db: Session = Depends(get_db),
) -> dict:
    subscription = _get_subscription_or_404(db, subscription_id)
    changes = payload.model_dump(exclude_unset=True)
    for field_name, value in changes.items():
        if field_name == "secret":
            value = value or None
        setattr(subscription, field_name, value)
    db.add(subscription)
    db.commit()
    db.refresh(subscription)
    return _serialize_subscription(subscription)


@router.delete("/outbound-subscriptions/{subscription_id}", status_code=status.HTTP_200_OK)
def deactivate_outbound_subscription(subscription_id: UUID, db: Session = Depends(get_db)) -> dict:
    # Delivery history references the subscription, so it is deactivated rather than removed.
    subscription = _get_subscription_or_404(db, subscription_id)
    subscription.active = False
    db.add(subscription)
    db.commit()
    db.refresh(subscription)
    return _serialize_subscription(subscription)


@router.post("/outbound-subscriptions/{subscription_id}/reset-failures", status_code=status.HTTP_200_OK)
def reset_outbound_subscription_failures(subscription_id: UUID, db: Session = Depends(get_db)) -> dict:
    subscription = _get_subscription_or_404(db, subscription_id)
    subscription.failures_count = 0
    subscription.backoff_state = {}
    db.add(subscription)
    db.commit()
    db.refresh(subscription)
    return _serialize_subscription(subscription)


@router.get("/inbound-events", status_code=status.HTTP_200_OK)
def list_inbound_events_endpoint(
    status_filter: str | None = Query(default=None, alias="status"),
    provider: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> dict:
    rows = list_inbound_events(db, status=status_filter, provider=provider, limit=limit)
    return {"items": [_serialize_inbound_event(item) for item in rows]}


@router.get("/inbound-events/{event_id}", status_code=status.HTTP_200_OK)
def get_inbound_event(event_id: UUID, db: Session = Depends(get_db)) -> dict:
    event = db.get(InboundEvent, event_id)
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Inbound event not found")
    return _serialize_inbound_event(event, include_payload=True)


@router.post("/inbound-events/{event_id}/reprocess", status_code=status.HTTP_200_OK)
def reprocess_inbound_event_endpoint(event_id: UUID, db: Session = Depends(get_db)) -> dict:
    try:
        outcome = reprocess_inbound_event(db, event_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return {
        "event_id": str(outcome.event_id),
        "status": outcome.status,
        "reason": outcome.reason,
        "domain_event_id": str(outcome.domain_event_id) if outcome.domain_event_id else None,
    }


@router.get("/domain-events", status_code=status.HTTP_200_OK)
def list_domain_events_endpoint(
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> dict:
    rows = list_domain_events(db, status=status_filter, limit=limit)
    return {"items": [_serialize_domain_event(item) for item in rows]}


@router.get("/outbound-deliveries", status_code=status.HTTP_200_OK)
def list_outbound_deliveries_endpoint(
    status_filter: str | None = Query(default=None, alias="status"),
    subscription_id: UUID | None = Query(default=None),
    domain_event_id: UUID | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> dict:
    rows = list_outbound_deliveries(
        db,
        status=status_filter,
        subscription_id=subscription_id,
        domain_event_id=domain_event_id,
        limit=limit,
    )
    return {"items": [_serialize_delivery(item) for item in rows]}


@router.get("/dead-letters", status_code=status.HTTP_200_OK)
def list_dead_letters_endpoint(
    kind: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> dict:
    rows = list_dead_letters(db, kind=kind, limit=limit)
    return {"items": [_serialize_dead_letter(item) for item in rows]}


@router.post("/dead-letters/{entry_id}/replay", status_code=status.HTTP_200_OK)
def replay_dead_letter_endpoint(entry_id: UUID, db: Session = Depends(get_db)) -> dict:
    try:
        deliveries = replay_dead_letter(db, entry_id=entry_id)
    except LookupError as exc:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidStateTransition:
        db.rollback()
        raise
    db.commit()
    return {"entry_id": str(entry_id), "deliveries": [_serialize_delivery(item) for item in deliveries]}


@router.post("/test-events/{provider}", status_code=status.HTTP_200_OK)
def run_provider_test_event(provider: str) -> dict:
    return run_test_event(provider)
