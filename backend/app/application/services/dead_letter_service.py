from __future__ import annotations

import logging
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.domain.errors import InvalidStateTransition
from app.domain.models.dead_letter_entry import DeadLetterEntry, DeadLetterKind
from app.domain.models.domain_event import DomainEvent, DomainEventStatus
from app.domain.models.outbound_delivery import DeliveryStatus, OutboundDelivery
from app.domain.models.outbound_subscription import OutboundSubscription
from app.infrastructure.observability.metrics import record_dead_letter

logger = logging.getLogger(__name__)


def record_dead_letter_entry(
    db: Session,
    *,
    kind: str,
    reference_id: UUID,
    reason: str,
    payload: dict,
    error_message: str | None = None,
) -> DeadLetterEntry:
    entry = DeadLetterEntry(
        kind=DeadLetterKind(kind).value,
        reference_id=reference_id,
        reason=reason,
        payload=payload,
        error_message=error_message,
    )
    db.add(entry)
    record_dead_letter(entry.kind)
    logger.warning(
        "dead_letter_recorded kind=%s reference_id=%s reason=%s",
        entry.kind,
        reference_id,
        reason,
    )
    return entry


def list_dead_letters(db: Session, *, kind: str | None = None, limit: int = 100) -> list[DeadLetterEntry]:
    query = select(DeadLetterEntry)
    if kind:
        query = query.where(DeadLetterEntry.kind == kind)
    return list(
        db.execute(query.order_by(DeadLetterEntry.created_at.desc()).limit(max(1, min(limit, 500)))).scalars().all()
    )


def _next_attempt(db: Session, *, domain_event_id: UUID, subscription_id: UUID) -> int:
    current = db.execute(
        select(func.max(OutboundDelivery.attempt)).where(
            OutboundDelivery.domain_event_id == domain_event_id,
            OutboundDelivery.subscription_id == subscription_id,
        )
    ).scalar_one_or_none()
    return int(current or 0) + 1


def _pair_is_settled(db: Session, *, domain_event_id: UUID, subscription_id: UUID) -> bool:
    """True when the pair already has a queued attempt or a successful one."""
    return (
        db.execute(
            select(OutboundDelivery.id)
            .where(
                OutboundDelivery.domain_event_id == domain_event_id,
                OutboundDelivery.subscription_id == subscription_id,
                OutboundDelivery.status.in_([DeliveryStatus.PENDING.value, DeliveryStatus.SUCCESS.value]),
            )
            .limit(1)
        ).scalar_one_or_none()
        is not None
    )


def _requeue_delivery(db: Session, *, domain_event_id: UUID, subscription_id: UUID) -> OutboundDelivery | None:
    if _pair_is_settled(db, domain_event_id=domain_event_id, subscription_id=subscription_id):
        logger.info(
            "dead_letter_replay_skipped domain_event_id=%s subscription_id=%s",
            domain_event_id,
            subscription_id,
        )
        return None
    subscription = db.get(OutboundSubscription, subscription_id)
    if subscription is None or not subscription.active:
        raise InvalidStateTransition(f"Subscription {subscription_id} is not active", error_code="subscription_inactive")
    delivery = OutboundDelivery(
        domain_event_id=domain_event_id,
        subscription_id=subscription_id,
        attempt=_next_attempt(db, domain_event_id=domain_event_id, subscription_id=subscription_id),
        status=DeliveryStatus.PENDING.value,
        next_retry_at=None,
    )
    db.add(delivery)
    db.flush()
    return delivery


def _reopen_domain_event(db: Session, domain_event_id: UUID) -> None:
    db.execute(
        update(DomainEvent)
        .where(DomainEvent.id == domain_event_id)
        .values(status=DomainEventStatus.PENDING.value, error_message=None, dispatched_at=None)
        .execution_options(synchronize_session=False)
    )


def replay_dead_letter(db: Session, *, entry_id: UUID, now: datetime | None = None) -> list[OutboundDelivery]:
    """Manual replay: queue a fresh attempt after the highest attempt number already used.

    A ``delivery`` entry re-queues that one (event, subscription) pair; a
    ``domain_event`` entry re-queues every pair whose last attempt failed. Pairs
    that already have a pending or successful attempt are left alone, so the
    sibling entries of one exhausted delivery never queue it twice.
    """
    now = now or datetime.now(UTC)
    entry = db.get(DeadLetterEntry, entry_id)
    if entry is None:
        raise LookupError(f"Dead-letter entry {entry_id} not found")
    if entry.replayed_at is not None:
        raise InvalidStateTransition("Dead-letter entry was already replayed", error_code="already_replayed")

    created: list[OutboundDelivery] = []
    if entry.kind == DeadLetterKind.DELIVERY.value:
        delivery = db.get(OutboundDelivery, entry.reference_id)
        if delivery is None:
            raise LookupError(f"Delivery {entry.reference_id} not found")
        requeued = _requeue_delivery(db, domain_event_id=delivery.domain_event_id, subscription_id=delivery.subscription_id)
        if requeued is not None:
            created.append(requeued)
            _reopen_domain_event(db, delivery.domain_event_id)
    else:
        domain_event = db.get(DomainEvent, entry.reference_id)
        if domain_event is None:
            raise LookupError(f"Domain event {entry.reference_id} not found")
        failed_pairs = db.execute(
            select(OutboundDelivery.subscription_id)
            .where(
                OutboundDelivery.domain_event_id == domain_event.id,
                OutboundDelivery.status == DeliveryStatus.FAILED.value,
            )
            .distinct()
        ).scalars().all()
        if not failed_pairs:
            raise InvalidStateTransition("Domain event has no failed deliveries to replay", error_code="nothing_to_replay")
        for subscription_id in failed_pairs:
            requeued = _requeue_delivery(db, domain_event_id=domain_event.id, subscription_id=subscription_id)
            if requeued is not None:
                created.append(requeued)
        if created:
            _reopen_domain_event(db, domain_event.id)

    entry.replayed_at = now
    db.add(entry)
    db.flush()
    logger.info("dead_letter_replayed entry_id=%s kind=%s deliveries=%s", entry_id, entry.kind, len(created))
    return created
