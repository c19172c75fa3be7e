from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.domain.models.domain_event import DomainEvent
from app.domain.models.profile import Profile


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def get_billing_outcome(db: Session, *, email: str) -> dict | None:
    """Processed billing state for one customer, as collaborators apply it to a profile."""
    profile = db.execute(select(Profile).where(Profile.email == email.strip().lower())).scalar_one_or_none()
    if profile is None:
        return None

    last_event = db.execute(
        select(DomainEvent)
        .where(DomainEvent.profile_id == profile.id)
        .order_by(DomainEvent.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()

    return {
        "profile_id": str(profile.id),
        "email": profile.email,
        "full_name": profile.full_name,
        "plan": profile.plan,
        "plan_status": profile.plan_status,
        "plan_start_date": _iso(profile.plan_start_date),
        "plan_end_date": _iso(profile.plan_end_date),
        "auto_renewal": profile.auto_renewal,
        "last_domain_event": (
            {
                "id": str(last_event.id),
                "event_type": last_event.event_type,
                "created_at": _iso(last_event.created_at),
            }
            if last_event is not None
            else None
        ),
    }
