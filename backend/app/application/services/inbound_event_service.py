from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.domain.errors import NormalizationError
from app.domain.models.inbound_event import InboundEvent, InboundEventStatus
from app.integrations.providers import derive_idempotency_key, resolve_provider, verify_request
from app.integrations.providers.base import VerificationResult
from app.infrastructure.observability.metrics import record_webhook_received

logger = logging.getLogger(__name__)

# Shared secrets never reach the ledger; everything else is kept for diagnosis.
REDACTED_HEADERS = {"authorization", "x-webhook-secret", "x-hotmart-hottok", "hottok", "cookie"}


@dataclass(frozen=True)
class LedgerRecordResult:
    is_new: bool
    event_id: UUID
    status: str


@dataclass(frozen=True)
class IngestResult:
    event_id: UUID
    is_new: bool
    status: str
    verified: bool
    verification_reason: str | None


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {
        str(key).lower(): ("[redacted]" if str(key).lower() in REDACTED_HEADERS else str(value))
        for key, value in headers.items()
    }


def parse_json_body(body: bytes) -> dict:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise NormalizationError("Request body is not valid JSON", error_code="invalid_payload") from exc
    if not isinstance(payload, dict):
        raise NormalizationError("Request body must be a JSON object", error_code="invalid_payload")
    return payload


def get_inbound_event_by_key(db: Session, *, provider: str, idempotency_key: str) -> InboundEvent | None:
    return db.execute(
        select(InboundEvent).where(
            InboundEvent.provider == provider,
            InboundEvent.idempotency_key == idempotency_key,
        )
    ).scalar_one_or_none()


def record_if_new(
    db: Session,
    *,
    provider: str,
    idempotency_key: str,
    raw_headers: dict,
    raw_payload: dict,
    verification: VerificationResult | None = None,
) -> LedgerRecordResult:
    """Insert the inbound event unless ``(provider, idempotency_key)`` already exists.

    The unique constraint is the arbiter: a concurrent writer that loses the race
    gets an IntegrityError inside its savepoint and reports the winner's row.
    The caller owns the surrounding transaction and must commit.
    """
    existing = get_inbound_event_by_key(db, provider=provider, idempotency_key=idempotency_key)
    if existing is not None:
        return LedgerRecordResult(is_new=False, event_id=existing.id, status=existing.status)

    event = InboundEvent(
        provider=provider,
        idempotency_key=idempotency_key,
        raw_headers=raw_headers,
        raw_payload=raw_payload,
        verified=bool(verification and verification.verified),
        verification_reason=verification.reason if verification else None,
        status=InboundEventStatus.RECEIVED.value,
        processing_attempts=0,
    )
    try:
        with db.begin_nested():
            db.add(event)
            db.flush()
    except IntegrityError:
        existing = get_inbound_event_by_key(db, provider=provider, idempotency_key=idempotency_key)
        if existing is None:
            raise
        logger.info(
            "inbound_event_duplicate_race provider=%s idempotency_key=%s event_id=%s",
            provider,
            idempotency_key,
            existing.id,
        )
        return LedgerRecordResult(is_new=False, event_id=existing.id, status=existing.status)

    return LedgerRecordResult(is_new=True, event_id=event.id, status=event.status)


def ingest_webhook(
    db: Session,
    *,
    provider: str,
    headers: Mapping[str, str],
    body: bytes,
    now: datetime | None = None,
) -> IngestResult:
    """Verify, key and durably record one provider delivery, then hand it to the workers.

    Malformed bodies raise NormalizationError before anything is written.
    Verification failures are recorded (and later discarded) rather than rejected.
    """
    resolved = resolve_provider(provider)
    payload = parse_json_body(body)
    idempotency_key = derive_idempotency_key(resolved, payload, headers)
    verification = verify_request(resolved, headers, body, now=now or datetime.now(UTC))

    result = record_if_new(
        db,
        provider=resolved.value,
        idempotency_key=idempotency_key,
        raw_headers=redact_headers(headers),
        raw_payload=payload,
        verification=verification,
    )
    db.commit()

    record_webhook_received(resolved.value, "new" if result.is_new else "duplicate")
    logger.info(
        "webhook_received provider=%s event_id=%s idempotency_key=%s is_new=%s verified=%s",
        resolved.value,
        result.event_id,
        idempotency_key,
        result.is_new,
        verification.verified,
        extra={"provider": resolved.value, "event_id": result.event_id},
    )
    if result.is_new:
        process_inbound_event_async(result.event_id)

    return IngestResult(
        event_id=result.event_id,
        is_new=result.is_new,
        status=result.status,
        verified=verification.verified,
        verification_reason=verification.reason,
    )


def process_inbound_event_async(event_id: UUID, countdown: int | None = None) -> None:
    from workers.tasks import process_inbound_event  # local import to avoid import cycle

    try:
        process_inbound_event.apply_async(kwargs={"event_id": str(event_id)}, countdown=countdown)
    except Exception:
        # The row is durable; resume_stalled_inbound_events picks it up later.
        logger.exception("inbound_event_enqueue_failed event_id=%s", event_id)
        return
    logger.info(
        "inbound_event_enqueued event_id=%s countdown=%s",
        event_id,
        countdown if countdown is not None else 0,
    )


def list_inbound_events(
    db: Session,
    *,
    status: str | None = None,
    provider: str | None = None,
    limit: int = 100,
) -> list[InboundEvent]:
    query = select(InboundEvent)
    if status:
        query = query.where(InboundEvent.status == status)
    if provider:
        query = query.where(InboundEvent.provider == provider.strip().lower())
    return list(
        db.execute(query.order_by(InboundEvent.received_at.desc()).limit(max(1, min(limit, 500)))).scalars().all()
    )
