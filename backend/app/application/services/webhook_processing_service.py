from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.domain.errors import ApplicationError, InvalidStateTransition, NormalizationError
from app.domain.models.domain_event import DomainEvent, DomainEventStatus, DomainEventType
from app.domain.models.inbound_event import InboundEvent, InboundEventStatus, TERMINAL_INBOUND_STATUSES
from app.domain.models.plan import PLAN_INTERVAL_DAYS, Plan, PlanInterval
from app.domain.models.platform_product import PlatformProduct
from app.domain.models.profile import PlanStatus, Profile
from app.integrations.providers import CanonicalEvent, CanonicalEventType, normalize_payload
from app.integrations.providers.base import ACTIVATION_EVENT_TYPES, BILLING_EVENT_TYPES
from app.infrastructure.observability.metrics import record_inbound_outcome

logger = logging.getLogger(__name__)

REVOCATION_PLAN_STATUS = {
    CanonicalEventType.REFUND.value: PlanStatus.SUSPENDED.value,
    CanonicalEventType.CHARGEBACK.value: PlanStatus.SUSPENDED.value,
    CanonicalEventType.CANCELLATION.value: PlanStatus.EXPIRED.value,
}


@dataclass(frozen=True)
class BillingApplication:
    profile_id: UUID
    changed: bool
    plan: str
    plan_status: str
    plan_start_date: datetime | None
    plan_end_date: datetime | None
    auto_renewal: bool

    def to_dict(self) -> dict:
        return {
            "plan": self.plan,
            "plan_status": self.plan_status,
            "plan_start_date": self.plan_start_date.isoformat() if self.plan_start_date else None,
            "plan_end_date": self.plan_end_date.isoformat() if self.plan_end_date else None,
            "auto_renewal": self.auto_renewal,
        }


@dataclass(frozen=True)
class ProcessingOutcome:
    event_id: UUID
    status: str
    reason: str | None = None
    domain_event_id: UUID | None = None
    skipped: bool = False


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def resolve_plan(db: Session, *, provider: str, plan_identifier: str | None) -> Plan:
    """Explicit plan slug first, then the provider product/price mapping."""
    if not plan_identifier:
        raise ApplicationError("Canonical event carries no plan identifier", error_code="plan_not_found")

    plan = db.execute(
        select(Plan).where(Plan.slug == plan_identifier, Plan.active.is_(True))
    ).scalar_one_or_none()
    if plan is not None:
        return plan

    plan = db.execute(
        select(Plan)
        .join(PlatformProduct, PlatformProduct.plan_id == Plan.id)
        .where(
            PlatformProduct.platform == provider,
            PlatformProduct.active.is_(True),
            Plan.active.is_(True),
            or_(PlatformProduct.product_id == plan_identifier, PlatformProduct.price_id == plan_identifier),
        )
    ).scalars().first()
    if plan is None:
        raise ApplicationError(
            f"No active plan mapped for {provider} identifier '{plan_identifier}'",
            error_code="plan_not_found",
        )
    return plan


def compute_billing_period(plan: Plan, *, starts_at: datetime) -> tuple[datetime, datetime | None]:
    days = PLAN_INTERVAL_DAYS.get(plan.interval)
    start = _as_utc(starts_at)
    if days is None:
        return start, None
    return start, start + timedelta(days=days)


def activation_period(plan: Plan, *, occurred_at: datetime, now: datetime) -> tuple[datetime, datetime | None, bool]:
    """Anchor the period on the provider event time while it still ends in the future.

    Late deliveries and late reprocessing fall back to ``now`` so an activation
    never lands already expired. The third value reports that fallback.
    """
    start, end = compute_billing_period(plan, starts_at=occurred_at)
    if end is None or end > _as_utc(now):
        return start, end, False
    start, end = compute_billing_period(plan, starts_at=now)
    return start, end, True


def _get_profile(db: Session, email: str) -> Profile | None:
    return db.execute(select(Profile).where(Profile.email == email)).scalar_one_or_none()


def _snapshot(profile: Profile, *, changed: bool) -> BillingApplication:
    return BillingApplication(
        profile_id=profile.id,
        changed=changed,
        plan=profile.plan,
        plan_status=profile.plan_status,
        plan_start_date=_as_utc(profile.plan_start_date),
        plan_end_date=_as_utc(profile.plan_end_date),
        auto_renewal=profile.auto_renewal,
    )


def _apply_activation(
    db: Session, *, provider: str, canonical: CanonicalEvent, effective_at: datetime, now: datetime
) -> BillingApplication:
    plan = resolve_plan(db, provider=provider, plan_identifier=canonical.plan_identifier)
    start, end, late = activation_period(plan, occurred_at=effective_at, now=now)
    auto_renewal = plan.interval != PlanInterval.ONE_TIME.value

    profile = _get_profile(db, canonical.customer_email)
    if profile is None:
        profile = Profile(email=canonical.customer_email, full_name=canonical.customer_name)
        db.add(profile)
        db.flush()
    elif (
        profile.plan == plan.tier
        and profile.plan_status == PlanStatus.ACTIVE.value
        and _as_utc(profile.plan_start_date) == start
        and _as_utc(profile.plan_end_date) == end
    ):
        return _snapshot(profile, changed=False)
    elif (
        late
        and profile.plan == plan.tier
        and profile.plan_status == PlanStatus.ACTIVE.value
        and profile.plan_start_date is not None
        and _as_utc(profile.plan_start_date) >= _as_utc(effective_at)
        and (profile.plan_end_date is None or _as_utc(profile.plan_end_date) > _as_utc(now))
    ):
        # A late copy of a purchase whose period is already running.
        return _snapshot(profile, changed=False)

    profile.plan = plan.tier
    profile.plan_status = PlanStatus.ACTIVE.value
    profile.plan_start_date = start
    profile.plan_end_date = end
    profile.auto_renewal = auto_renewal
    if not profile.full_name and canonical.customer_name:
        profile.full_name = canonical.customer_name
    db.add(profile)
    db.flush()
    return _snapshot(profile, changed=True)


def _apply_revocation(db: Session, *, canonical: CanonicalEvent, effective_at: datetime) -> BillingApplication:
    profile = _get_profile(db, canonical.customer_email)
    if profile is None:
        raise ApplicationError(
            f"No profile found for {canonical.customer_email}",
            error_code="profile_not_found",
        )

    target_status = REVOCATION_PLAN_STATUS[canonical.event_type]
    target_plan = settings.billing_free_plan_tier if settings.billing_downgrade_on_revoke else profile.plan
    target_end = _as_utc(profile.plan_end_date)
    if canonical.event_type == CanonicalEventType.CANCELLATION.value:
        effective_at = _as_utc(effective_at)
        if target_end is None or target_end > effective_at:
            target_end = effective_at

    if (
        profile.plan_status == target_status
        and profile.plan == target_plan
        and _as_utc(profile.plan_end_date) == target_end
        and not profile.auto_renewal
    ):
        return _snapshot(profile, changed=False)

    profile.plan_status = target_status
    profile.plan = target_plan
    profile.plan_end_date = target_end
    profile.auto_renewal = False
    db.add(profile)
    db.flush()
    return _snapshot(profile, changed=True)


def apply_billing(
    db: Session,
    *,
    provider: str,
    canonical: CanonicalEvent,
    effective_at: datetime,
    now: datetime | None = None,
) -> BillingApplication:
    """Write the canonical event onto the customer's billing state.

    Re-applying an event whose outcome is already in place returns ``changed=False``.
    """
    if canonical.event_type in ACTIVATION_EVENT_TYPES:
        return _apply_activation(
            db, provider=provider, canonical=canonical, effective_at=effective_at, now=now or datetime.now(UTC)
        )
    return _apply_revocation(db, canonical=canonical, effective_at=effective_at)


def _emit_domain_event(
    db: Session,
    *,
    event: InboundEvent,
    canonical: CanonicalEvent,
    billing: BillingApplication,
) -> DomainEvent:
    existing = db.execute(
        select(DomainEvent).where(DomainEvent.inbound_event_id == event.id)
    ).scalar_one_or_none()
    if existing is not None:
        return existing

    event_type = (
        DomainEventType.PLAN_ACTIVATED.value
        if canonical.event_type in ACTIVATION_EVENT_TYPES
        else DomainEventType.PLAN_REVOKED.value
    )
    domain_event = DomainEvent(
        event_type=event_type,
        inbound_event_id=event.id,
        profile_id=billing.profile_id,
        status=DomainEventStatus.PENDING.value,
        data={
            "provider": event.provider,
            "inbound_event_id": str(event.id),
            "customer_email": canonical.customer_email,
            "canonical_event": canonical.to_dict(),
            "billing": billing.to_dict(),
            "reapplied": not billing.changed,
        },
    )
    db.add(domain_event)
    db.flush()
    return domain_event


def _load_for_update(db: Session, event_id: UUID) -> InboundEvent | None:
    return db.execute(
        select(InboundEvent).where(InboundEvent.id == event_id).with_for_update()
    ).scalar_one_or_none()


def _finish(db: Session, event: InboundEvent, *, status: str, error_message: str | None, now: datetime) -> None:
    event.status = status
    event.error_message = error_message
    if status in TERMINAL_INBOUND_STATUSES:
        event.processed_at = now
    db.add(event)


def _mark_failed_after_rollback(
    db: Session,
    *,
    event_id: UUID,
    error_message: str,
    canonical_event: dict | None = None,
) -> None:
    # The rollback also discards this run's attempt increment, so it is re-applied here.
    db.rollback()
    values = {
        "status": InboundEventStatus.FAILED.value,
        "error_message": error_message[:2000],
        "processing_attempts": InboundEvent.processing_attempts + 1,
    }
    if canonical_event is not None:
        values["canonical_event"] = canonical_event
    db.execute(
        update(InboundEvent)
        .where(InboundEvent.id == event_id, InboundEvent.status.not_in(TERMINAL_INBOUND_STATUSES))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def process_inbound_event(
    db: Session,
    event_id: UUID,
    *,
    now: datetime | None = None,
    allowed_statuses: set[str] | None = None,
) -> ProcessingOutcome:
    """Run one inbound event through ``received|failed -> processed|failed|discarded``.

    Terminal events are left untouched. Billing effects, the domain event and the
    status write share one transaction, so a failure anywhere leaves the event
    ``failed`` and safe to re-run.
    """
    now = now or datetime.now(UTC)
    allowed = allowed_statuses or {InboundEventStatus.RECEIVED.value, InboundEventStatus.FAILED.value}

    event = _load_for_update(db, event_id)
    if event is None:
        logger.warning("inbound_event_missing event_id=%s", event_id)
        return ProcessingOutcome(event_id=event_id, status="missing", skipped=True)
    if event.status not in allowed:
        db.rollback()
        logger.info("inbound_event_skip event_id=%s status=%s", event_id, event.status)
        return ProcessingOutcome(event_id=event_id, status=event.status, reason="not_processable", skipped=True)

    db.execute(
        update(InboundEvent)
        .where(InboundEvent.id == event_id)
        .values(processing_attempts=InboundEvent.processing_attempts + 1)
    )

    if not event.verified and not settings.webhook_allow_unverified:
        reason = f"verification_failed:{event.verification_reason or 'unverified'}"
        _finish(db, event, status=InboundEventStatus.DISCARDED.value, error_message=reason, now=now)
        db.commit()
        record_inbound_outcome(InboundEventStatus.DISCARDED.value)
        logger.warning("inbound_event_discarded event_id=%s provider=%s reason=%s", event_id, event.provider, reason)
        return ProcessingOutcome(event_id=event_id, status=InboundEventStatus.DISCARDED.value, reason=reason)

    try:
        canonical = normalize_payload(event.provider, event.raw_payload)
        if canonical.event_type in BILLING_EVENT_TYPES and not canonical.customer_email:
            raise NormalizationError("Billing event has no customer email", error_code="missing_customer_email")
    except NormalizationError as exc:
        reason = f"{exc.error_code}: {exc}"
        _finish(db, event, status=InboundEventStatus.DISCARDED.value, error_message=reason, now=now)
        db.commit()
        record_inbound_outcome(InboundEventStatus.DISCARDED.value)
        logger.warning("inbound_event_discarded event_id=%s provider=%s reason=%s", event_id, event.provider, reason)
        return ProcessingOutcome(event_id=event_id, status=InboundEventStatus.DISCARDED.value, reason=exc.error_code)

    event.canonical_event = canonical.to_dict()
    if canonical.event_type not in BILLING_EVENT_TYPES:
        _finish(db, event, status=InboundEventStatus.DISCARDED.value, error_message="no_billing_effect", now=now)
        db.commit()
        record_inbound_outcome(InboundEventStatus.DISCARDED.value)
        logger.info(
            "inbound_event_discarded event_id=%s provider=%s reason=no_billing_effect event_type=%s",
            event_id,
            event.provider,
            canonical.event_type,
        )
        return ProcessingOutcome(event_id=event_id, status=InboundEventStatus.DISCARDED.value, reason="no_billing_effect")

    effective_at = canonical.occurred_at or _as_utc(event.received_at) or now
    try:
        billing = apply_billing(db, provider=event.provider, canonical=canonical, effective_at=effective_at, now=now)
        domain_event = _emit_domain_event(db, event=event, canonical=canonical, billing=billing)
        _finish(db, event, status=InboundEventStatus.PROCESSED.value, error_message=None, now=now)
        db.commit()
    except ApplicationError as exc:
        error_message = f"{exc.error_code}: {exc}"
        _mark_failed_after_rollback(
            db,
            event_id=event_id,
            error_message=error_message,
            canonical_event=canonical.to_dict(),
        )
        record_inbound_outcome(InboundEventStatus.FAILED.value)
        logger.warning("inbound_event_failed event_id=%s error=%s", event_id, error_message)
        return ProcessingOutcome(event_id=event_id, status=InboundEventStatus.FAILED.value, reason=exc.error_code)
    except (IntegrityError, SQLAlchemyError) as exc:
        logger.exception("inbound_event_storage_error event_id=%s", event_id)
        _mark_failed_after_rollback(db, event_id=event_id, error_message=f"storage_error: {exc}")
        record_inbound_outcome(InboundEventStatus.FAILED.value)
        return ProcessingOutcome(event_id=event_id, status=InboundEventStatus.FAILED.value, reason="storage_error")

    record_inbound_outcome(InboundEventStatus.PROCESSED.value)
    logger.info(
        "inbound_event_processed event_id=%s provider=%s event_type=%s profile_id=%s changed=%s domain_event_id=%s",
        event_id,
        event.provider,
        canonical.event_type,
        billing.profile_id,
        billing.changed,
        domain_event.id,
    )
    fan_out_domain_event_async(domain_event.id)
    return ProcessingOutcome(
        event_id=event_id,
        status=InboundEventStatus.PROCESSED.value,
        domain_event_id=domain_event.id,
    )


def reprocess_inbound_event(db: Session, event_id: UUID) -> ProcessingOutcome:
    event = db.get(InboundEvent, event_id)
    if event is None:
        raise LookupError(f"Inbound event {event_id} not found")
    if event.status != InboundEventStatus.FAILED.value:
        raise InvalidStateTransition(f"Only failed events can be reprocessed (status={event.status})")
    logger.info("inbound_event_reprocess_requested event_id=%s", event_id)
    return process_inbound_event(db, event_id, allowed_statuses={InboundEventStatus.FAILED.value})


def fan_out_domain_event_async(domain_event_id: UUID) -> None:
    from workers.tasks import fan_out_domain_event  # local import to avoid import cycle

    try:
        fan_out_domain_event.apply_async(kwargs={"domain_event_id": str(domain_event_id)})
    except Exception:
        # fan_out_pending_domain_events sweeps pending events without deliveries.
        logger.exception("domain_event_enqueue_failed domain_event_id=%s", domain_event_id)
        return
    logger.info("domain_event_enqueued domain_event_id=%s", domain_event_id)


def find_resumable_inbound_events(db: Session, *, now: datetime | None = None, limit: int = 200) -> list[UUID]:
    """Events stuck in ``received`` past the stall threshold plus retry-eligible ``failed`` ones."""
    now = now or datetime.now(UTC)
    stalled_before = now - timedelta(seconds=max(1, settings.inbound_stall_seconds))
    rows = db.execute(
        select(InboundEvent.id)
        .where(
            or_(
                (InboundEvent.status == InboundEventStatus.RECEIVED.value) & (InboundEvent.received_at <= stalled_before),
                (InboundEvent.status == InboundEventStatus.FAILED.value)
                & (InboundEvent.processing_attempts < settings.inbound_max_processing_attempts),
            )
        )
        .order_by(InboundEvent.received_at.asc())
        .limit(limit)
    ).scalars().all()
    return list(rows)
