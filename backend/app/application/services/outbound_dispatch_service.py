from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from time import perf_counter
from uuid import UUID, uuid4

import httpx
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.application.services.dead_letter_service import record_dead_letter_entry
from app.core.config import settings
from app.domain.errors import DeliveryError
from app.domain.models.dead_letter_entry import DeadLetterKind
from app.domain.models.domain_event import DomainEvent, DomainEventStatus
from app.domain.models.outbound_delivery import DeliveryStatus, OutboundDelivery
from app.domain.models.outbound_subscription import OutboundSubscription, RetryBackoffStrategy
from app.infrastructure.db.session import SessionLocal
from app.infrastructure.observability.metrics import measure_redis, record_delivery_attempt

logger = logging.getLogger(__name__)

RESPONSE_BODY_LIMIT = 1000
SUBSCRIPTION_LOCK_TTL_SECONDS = 60


@dataclass(frozen=True)
class RetryPolicyConfig:
    max_attempts: int
    backoff_strategy: str
    retry_delay_seconds: int
    max_delay_seconds: int


@dataclass(frozen=True)
class DeliveryRequest:
    delivery_id: UUID
    domain_event_id: UUID
    subscription_id: UUID
    attempt: int
    target_url: str
    body: bytes
    headers: dict[str, str]


@dataclass(frozen=True)
class DeliveryOutcome:
    delivery_id: UUID
    subscription_id: UUID
    status: str
    attempt: int
    response_code: int | None = None
    next_retry_at: datetime | None = None
    dead_lettered: bool = False
    error: str | None = None


@dataclass
class DispatchSummary:
    selected: int = 0
    attempted: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    expired: int = 0
    skipped: int = 0
    outcomes: list[DeliveryOutcome] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "selected": self.selected,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "retried": self.retried,
            "failed": self.failed,
            "expired": self.expired,
            "skipped": self.skipped,
        }


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def default_retry_policy() -> RetryPolicyConfig:
    strategy = settings.outbound_backoff_strategy
    if strategy not in {member.value for member in RetryBackoffStrategy}:
        strategy = RetryBackoffStrategy.EXPONENTIAL.value
    return RetryPolicyConfig(
        max_attempts=max(1, int(settings.outbound_max_attempts)),
        backoff_strategy=strategy,
        retry_delay_seconds=max(1, int(settings.outbound_retry_base_seconds)),
        max_delay_seconds=max(1, int(settings.outbound_retry_max_delay_seconds)),
    )


def compute_retry_delay_seconds(policy: RetryPolicyConfig, attempt: int) -> int:
    normalized_attempt = max(1, attempt)
    if policy.backoff_strategy == RetryBackoffStrategy.LINEAR.value:
        delay = policy.retry_delay_seconds * normalized_attempt
    elif policy.backoff_strategy == RetryBackoffStrategy.FIXED.value:
        delay = policy.retry_delay_seconds
    else:
        delay = policy.retry_delay_seconds * (2 ** (normalized_attempt - 1))
    return min(delay, policy.max_delay_seconds)


def sign_payload(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def build_delivery_body(domain_event: DomainEvent) -> bytes:
    created_at = _as_utc(domain_event.created_at)
    payload = {
        "event_id": str(domain_event.id),
        "event_type": domain_event.event_type,
        "profile_id": str(domain_event.profile_id) if domain_event.profile_id else None,
        "data": domain_event.data or {},
        "occurred_at": created_at.isoformat() if created_at else None,
    }
    return json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")


def build_delivery_headers(*, domain_event_id: UUID, attempt: int, body: bytes, secret: str | None) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "User-Agent": settings.outbound_user_agent,
        "X-Webhook-Event-Id": str(domain_event_id),
        "X-Webhook-Attempt": str(attempt),
    }
    if secret:
        headers["X-Webhook-Signature"] = sign_payload(secret, body)
    return headers


def fan_out_domain_event(db: Session, domain_event_id: UUID) -> int:
    """Create the attempt-1 delivery for every active subscription; returns rows created."""
    domain_event = db.get(DomainEvent, domain_event_id)
    if domain_event is None:
        logger.warning("fan_out_domain_event_missing domain_event_id=%s", domain_event_id)
        return 0
    if domain_event.status != DomainEventStatus.PENDING.value:
        return 0

    subscription_ids = db.execute(
        select(OutboundSubscription.id).where(OutboundSubscription.active.is_(True))
    ).scalars().all()
    already_targeted = set(
        db.execute(
            select(OutboundDelivery.subscription_id).where(OutboundDelivery.domain_event_id == domain_event_id)
        ).scalars().all()
    )

    created = 0
    for subscription_id in subscription_ids:
        if subscription_id in already_targeted:
            continue
        try:
            with db.begin_nested():
                db.add(
                    OutboundDelivery(
                        domain_event_id=domain_event_id,
                        subscription_id=subscription_id,
                        attempt=1,
                        status=DeliveryStatus.PENDING.value,
                    )
                )
                db.flush()
            created += 1
        except IntegrityError:
            logger.info(
                "fan_out_delivery_exists domain_event_id=%s subscription_id=%s",
                domain_event_id,
                subscription_id,
            )

    if not subscription_ids and not already_targeted:
        domain_event.status = DomainEventStatus.DISPATCHED.value
        domain_event.dispatched_at = datetime.now(UTC)
        db.add(domain_event)
    db.commit()
    logger.info(
        "fan_out_domain_event_completed domain_event_id=%s deliveries_created=%s subscriptions=%s",
        domain_event_id,
        created,
        len(subscription_ids),
    )
    return created


def find_unfanned_domain_events(db: Session, *, limit: int = 200) -> list[UUID]:
    has_delivery = select(OutboundDelivery.id).where(OutboundDelivery.domain_event_id == DomainEvent.id).exists()
    return list(
        db.execute(
            select(DomainEvent.id)
            .where(DomainEvent.status == DomainEventStatus.PENDING.value, ~has_delivery)
            .order_by(DomainEvent.created_at.asc())
            .limit(limit)
        ).scalars().all()
    )


def select_due_deliveries(db: Session, *, now: datetime, limit: int) -> list[tuple[UUID, UUID]]:
    """Head-of-line pending delivery per active subscription, if it is due.

    Within one subscription deliveries go out in domain event creation order, so a
    backing-off head blocks only its own subscription.
    """
    position = func.row_number().over(
        partition_by=OutboundDelivery.subscription_id,
        order_by=(DomainEvent.created_at.asc(), DomainEvent.id.asc(), OutboundDelivery.attempt.asc()),
    )
    ranked = (
        select(
            OutboundDelivery.id.label("delivery_id"),
            OutboundDelivery.subscription_id.label("subscription_id"),
            OutboundDelivery.next_retry_at.label("next_retry_at"),
            DomainEvent.created_at.label("event_created_at"),
            position.label("position"),
        )
        .join(DomainEvent, DomainEvent.id == OutboundDelivery.domain_event_id)
        .join(OutboundSubscription, OutboundSubscription.id == OutboundDelivery.subscription_id)
        .where(
            OutboundDelivery.status == DeliveryStatus.PENDING.value,
            OutboundSubscription.active.is_(True),
        )
        .subquery()
    )
    rows = db.execute(
        select(ranked.c.delivery_id, ranked.c.subscription_id)
        .where(
            ranked.c.position == 1,
            or_(ranked.c.next_retry_at.is_(None), ranked.c.next_retry_at <= now),
        )
        .order_by(ranked.c.event_created_at.asc())
        .limit(max(1, limit))
    ).all()
    return [(row.delivery_id, row.subscription_id) for row in rows]


def _delivery_snapshot(delivery: OutboundDelivery, subscription: OutboundSubscription | None) -> dict:
    return {
        "delivery_id": str(delivery.id),
        "domain_event_id": str(delivery.domain_event_id),
        "subscription_id": str(delivery.subscription_id),
        "target_url": subscription.target_url if subscription is not None else None,
        "attempt": delivery.attempt,
        "response_code": delivery.response_code,
        "response_body": delivery.response_body,
    }


def expire_undeliverable(db: Session, *, now: datetime) -> int:
    """Dead-letter pending deliveries that are too old or whose subscription was deactivated."""
    max_age_cutoff = now - timedelta(seconds=max(1, settings.outbound_max_event_age_seconds))
    rows = db.execute(
        select(OutboundDelivery, OutboundSubscription, DomainEvent)
        .join(DomainEvent, DomainEvent.id == OutboundDelivery.domain_event_id)
        .join(OutboundSubscription, OutboundSubscription.id == OutboundDelivery.subscription_id)
        .where(
            OutboundDelivery.status == DeliveryStatus.PENDING.value,
            or_(DomainEvent.created_at < max_age_cutoff, OutboundSubscription.active.is_(False)),
        )
        .limit(500)
    ).all()

    affected_events: set[UUID] = set()
    for delivery, subscription, domain_event in rows:
        reason = "max_age_exceeded" if subscription.active else "subscription_inactive"
        delivery.status = DeliveryStatus.FAILED.value
        delivery.next_retry_at = None
        db.add(delivery)
        record_dead_letter_entry(
            db,
            kind=DeadLetterKind.DELIVERY.value,
            reference_id=delivery.id,
            reason=reason,
            payload=_delivery_snapshot(delivery, subscription),
            error_message=f"Delivery abandoned without attempt: {reason}",
        )
        affected_events.add(domain_event.id)
    db.commit()

    for domain_event_id in affected_events:
        refresh_domain_event_status(db, domain_event_id, now=now)
    return len(rows)


def prepare_delivery_request(db: Session, delivery_id: UUID) -> DeliveryRequest | None:
    delivery = db.get(OutboundDelivery, delivery_id)
    if delivery is None or delivery.status != DeliveryStatus.PENDING.value:
        return None
    subscription = db.get(OutboundSubscription, delivery.subscription_id)
    domain_event = db.get(DomainEvent, delivery.domain_event_id)
    if subscription is None or domain_event is None or not subscription.active:
        return None
    body = build_delivery_body(domain_event)
    return DeliveryRequest(
        delivery_id=delivery.id,
        domain_event_id=domain_event.id,
        subscription_id=subscription.id,
        attempt=delivery.attempt,
        target_url=subscription.target_url,
        body=body,
        headers=build_delivery_headers(
            domain_event_id=domain_event.id,
            attempt=delivery.attempt,
            body=body,
            secret=subscription.secret,
        ),
    )


def record_delivery_outcome(
    db: Session,
    request: DeliveryRequest,
    *,
    response_code: int | None,
    response_body: str | None,
    error: str | None,
    policy: RetryPolicyConfig,
    now: datetime,
) -> DeliveryOutcome:
    delivery = db.get(OutboundDelivery, request.delivery_id)
    if delivery is None or delivery.status != DeliveryStatus.PENDING.value:
        # Another dispatcher run already settled this attempt.
        return DeliveryOutcome(
            delivery_id=request.delivery_id,
            subscription_id=request.subscription_id,
            status=delivery.status if delivery is not None else "missing",
            attempt=request.attempt,
        )

    success = response_code is not None and 200 <= response_code < 300
    delivery.response_code = response_code
    delivery.response_body = (response_body or error or "")[:RESPONSE_BODY_LIMIT] or None

    if success:
        delivery.status = DeliveryStatus.SUCCESS.value
        delivery.delivered_at = now
        delivery.next_retry_at = None
        db.add(delivery)
        db.execute(
            update(OutboundSubscription)
            .where(OutboundSubscription.id == request.subscription_id)
            .values(
                failures_count=0,
                last_delivery_at=now,
                backoff_state={"last_attempt": request.attempt, "last_status": response_code, "delay_seconds": 0},
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        logger.info(
            "outbound_delivery_succeeded delivery_id=%s subscription_id=%s attempt=%s status_code=%s",
            request.delivery_id,
            request.subscription_id,
            request.attempt,
            response_code,
        )
        refresh_domain_event_status(db, request.domain_event_id, now=now)
        return DeliveryOutcome(
            delivery_id=request.delivery_id,
            subscription_id=request.subscription_id,
            status=DeliveryStatus.SUCCESS.value,
            attempt=request.attempt,
            response_code=response_code,
        )

    failures_count_expr = OutboundSubscription.failures_count + 1
    if request.attempt < policy.max_attempts:
        delay_seconds = compute_retry_delay_seconds(policy, request.attempt)
        next_retry_at = now + timedelta(seconds=delay_seconds)
        delivery.status = DeliveryStatus.RETRY.value
        delivery.next_retry_at = next_retry_at
        db.add(delivery)
        db.add(
            OutboundDelivery(
                domain_event_id=request.domain_event_id,
                subscription_id=request.subscription_id,
                attempt=request.attempt + 1,
                status=DeliveryStatus.PENDING.value,
                next_retry_at=next_retry_at,
            )
        )
        db.execute(
            update(DomainEvent)
            .where(DomainEvent.id == request.domain_event_id)
            .values(retry_count=DomainEvent.retry_count + 1)
            .execution_options(synchronize_session=False)
        )
        db.execute(
            update(OutboundSubscription)
            .where(OutboundSubscription.id == request.subscription_id)
            .values(
                failures_count=failures_count_expr,
                backoff_state={
                    "last_attempt": request.attempt,
                    "last_status": response_code,
                    "delay_seconds": delay_seconds,
                    "next_retry_at": next_retry_at.isoformat(),
                },
            )
            .execution_options(synchronize_session=False)
        )
        _maybe_deactivate_subscription(db, request.subscription_id)
        db.commit()
        logger.warning(
            "outbound_delivery_retry_scheduled delivery_id=%s subscription_id=%s attempt=%s status_code=%s delay=%s error=%s",
            request.delivery_id,
            request.subscription_id,
            request.attempt,
            response_code,
            delay_seconds,
            error,
        )
        return DeliveryOutcome(
            delivery_id=request.delivery_id,
            subscription_id=request.subscription_id,
            status=DeliveryStatus.RETRY.value,
            attempt=request.attempt,
            response_code=response_code,
            next_retry_at=next_retry_at,
            error=error,
        )

    delivery.status = DeliveryStatus.FAILED.value
    delivery.next_retry_at = None
    db.add(delivery)
    db.execute(
        update(OutboundSubscription)
        .where(OutboundSubscription.id == request.subscription_id)
        .values(
            failures_count=failures_count_expr,
            backoff_state={"last_attempt": request.attempt, "last_status": response_code, "exhausted": True},
        )
        .execution_options(synchronize_session=False)
    )
    subscription = db.get(OutboundSubscription, request.subscription_id)
    record_dead_letter_entry(
        db,
        kind=DeadLetterKind.DELIVERY.value,
        reference_id=delivery.id,
        reason="max_attempts_exceeded",
        payload=_delivery_snapshot(delivery, subscription),
        error_message=error or f"HTTP {response_code}",
    )
    _maybe_deactivate_subscription(db, request.subscription_id)
    db.commit()
    logger.error(
        "outbound_delivery_exhausted delivery_id=%s subscription_id=%s attempt=%s status_code=%s error=%s",
        request.delivery_id,
        request.subscription_id,
        request.attempt,
        response_code,
        error,
        extra={"delivery_id": request.delivery_id, "subscription_id": request.subscription_id},
    )
    refresh_domain_event_status(db, request.domain_event_id, now=now)
    return DeliveryOutcome(
        delivery_id=request.delivery_id,
        subscription_id=request.subscription_id,
        status=DeliveryStatus.FAILED.value,
        attempt=request.attempt,
        response_code=response_code,
        dead_lettered=True,
        error=error,
    )


def _maybe_deactivate_subscription(db: Session, subscription_id: UUID) -> None:
    threshold = int(settings.outbound_auto_deactivate_after_failures or 0)
    if threshold <= 0:
        return
    result = db.execute(
        update(OutboundSubscription)
        .where(
            OutboundSubscription.id == subscription_id,
            OutboundSubscription.active.is_(True),
            OutboundSubscription.failures_count >= threshold,
        )
        .values(active=False)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.warning(
            "outbound_subscription_auto_deactivated subscription_id=%s threshold=%s",
            subscription_id,
            threshold,
        )


def refresh_domain_event_status(db: Session, domain_event_id: UUID, *, now: datetime | None = None) -> str | None:
    """Settle a pending domain event once none of its deliveries is still pending."""
    now = now or datetime.now(UTC)
    pending = db.execute(
        select(func.count(OutboundDelivery.id)).where(
            OutboundDelivery.domain_event_id == domain_event_id,
            OutboundDelivery.status == DeliveryStatus.PENDING.value,
        )
    ).scalar_one()
    if pending:
        return None

    succeeded = db.execute(
        select(func.count(OutboundDelivery.id)).where(
            OutboundDelivery.domain_event_id == domain_event_id,
            OutboundDelivery.status == DeliveryStatus.SUCCESS.value,
        )
    ).scalar_one()
    target_status = DomainEventStatus.DISPATCHED.value if succeeded else DomainEventStatus.FAILED.value
    values = {"status": target_status}
    if succeeded:
        values["dispatched_at"] = now
    else:
        values["error_message"] = "All subscriptions exhausted delivery attempts"

    result = db.execute(
        update(DomainEvent)
        .where(DomainEvent.id == domain_event_id, DomainEvent.status == DomainEventStatus.PENDING.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        db.rollback()
        return None

    if target_status == DomainEventStatus.FAILED.value:
        domain_event = db.get(DomainEvent, domain_event_id)
        record_dead_letter_entry(
            db,
            kind=DeadLetterKind.DOMAIN_EVENT.value,
            reference_id=domain_event_id,
            reason="all_deliveries_failed",
            payload={
                "domain_event_id": str(domain_event_id),
                "event_type": domain_event.event_type if domain_event is not None else None,
                "data": domain_event.data if domain_event is not None else {},
            },
            error_message=values["error_message"],
        )
    db.commit()
    logger.info("domain_event_settled domain_event_id=%s status=%s", domain_event_id, target_status)
    return target_status


def acquire_subscription_lock(redis_client, *, subscription_id: UUID) -> str | None:
    lock_key = f"lock:outbound:{subscription_id}"
    token = str(uuid4())
    with measure_redis("outbound_lock_acquire"):
        acquired = redis_client.set(lock_key, token, nx=True, ex=SUBSCRIPTION_LOCK_TTL_SECONDS)
    if not acquired:
        return None
    return token


def release_subscription_lock(redis_client, *, subscription_id: UUID, token: str) -> None:
    lock_key = f"lock:outbound:{subscription_id}"
    try:
        with measure_redis("outbound_lock_release"):
            redis_client.eval(
                """
                if redis.call("get", KEYS[1]) == ARGV[1] then
                    return redis.call("del", KEYS[1])
                else
                    return 0
                end
                """,
                1,
                lock_key,
                token,
            )
    except Exception:
        logger.exception("outbound_lock_release_failed subscription_id=%s", subscription_id)


async def send_delivery(client: httpx.AsyncClient, request: DeliveryRequest) -> httpx.Response:
    """POST one attempt; anything but a 2xx answer within the timeout raises DeliveryError."""
    try:
        response = await asyncio.wait_for(
            client.post(request.target_url, content=request.body, headers=request.headers),
            timeout=settings.outbound_timeout_seconds,
        )
    except (TimeoutError, httpx.TimeoutException) as exc:
        raise DeliveryError(f"Timed out after {settings.outbound_timeout_seconds}s") from exc
    except httpx.HTTPError as exc:
        raise DeliveryError(f"{exc.__class__.__name__}: {exc}") from exc
    if not 200 <= response.status_code < 300:
        raise DeliveryError(
            f"HTTP {response.status_code}",
            status_code=response.status_code,
            response_body=response.text,
        )
    return response


async def _attempt_delivery(
    *,
    delivery_id: UUID,
    client: httpx.AsyncClient,
    semaphore: asyncio.Semaphore,
    policy: RetryPolicyConfig,
    session_factory: Callable[[], Session],
    now: datetime,
) -> DeliveryOutcome | None:
    async with semaphore:
        # No transaction stays open across the network call.
        with session_factory() as db:
            request = prepare_delivery_request(db, delivery_id)
        if request is None:
            return None

        started_at = perf_counter()
        response_code: int | None = None
        response_body: str | None = None
        error: str | None = None
        try:
            response = await send_delivery(client, request)
            response_code = response.status_code
            response_body = response.text
        except DeliveryError as exc:
            response_code = exc.status_code
            response_body = exc.response_body
            error = str(exc)
        record_delivery_attempt(success=error is None, duration_seconds=perf_counter() - started_at)

        with session_factory() as db:
            return record_delivery_outcome(
                db,
                request,
                response_code=response_code,
                response_body=response_body,
                error=error,
                policy=policy,
                now=now,
            )


async def dispatch_due_deliveries(
    session_factory: Callable[[], Session] = SessionLocal,
    *,
    now: datetime | None = None,
    policy: RetryPolicyConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    redis_client=None,
) -> DispatchSummary:
    """One dispatcher pass: expire undeliverable rows, then attempt every due head-of-line delivery.

    With a Redis client each subscription is locked for the pass, so overlapping
    runs never send two deliveries to the same subscription at once.
    """
    now = now or datetime.now(UTC)
    policy = policy or default_retry_policy()
    summary = DispatchSummary()

    with session_factory() as db:
        summary.expired = expire_undeliverable(db, now=now)
        due = select_due_deliveries(db, now=now, limit=settings.outbound_batch_size)
    summary.selected = len(due)

    lock_tokens: dict[UUID, str] = {}
    runnable: list[UUID] = []
    for delivery_id, subscription_id in due:
        if redis_client is not None:
            token = acquire_subscription_lock(redis_client, subscription_id=subscription_id)
            if token is None:
                summary.skipped += 1
                continue
            lock_tokens[subscription_id] = token
        runnable.append(delivery_id)

    try:
        if runnable:
            semaphore = asyncio.Semaphore(max(1, settings.outbound_max_concurrency))
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(settings.outbound_timeout_seconds),
                transport=transport,
                follow_redirects=False,
            ) as client:
                results = await asyncio.gather(
                    *[
                        _attempt_delivery(
                            delivery_id=delivery_id,
                            client=client,
                            semaphore=semaphore,
                            policy=policy,
                            session_factory=session_factory,
                            now=now,
                        )
                        for delivery_id in runnable
                    ]
                )
        else:
            results = []
    finally:
        for subscription_id, token in lock_tokens.items():
            release_subscription_lock(redis_client, subscription_id=subscription_id, token=token)

    for outcome in results:
        if outcome is None:
            summary.skipped += 1
            continue
        summary.attempted += 1
        summary.outcomes.append(outcome)
        if outcome.status == DeliveryStatus.SUCCESS.value:
            summary.succeeded += 1
        elif outcome.status == DeliveryStatus.RETRY.value:
            summary.retried += 1
        elif outcome.status == DeliveryStatus.FAILED.value:
            summary.failed += 1

    logger.info(
        "outbound_dispatch_completed selected=%s attempted=%s succeeded=%s retried=%s failed=%s expired=%s skipped=%s",
        summary.selected,
        summary.attempted,
        summary.succeeded,
        summary.retried,
        summary.failed,
        summary.expired,
        summary.skipped,
    )
    return summary


def list_outbound_deliveries(
    db: Session,
    *,
    status: str | None = None,
    subscription_id: UUID | None = None,
    domain_event_id: UUID | None = None,
    limit: int = 100,
) -> list[OutboundDelivery]:
    query = select(OutboundDelivery)
    if status:
        query = query.where(OutboundDelivery.status == status)
    if subscription_id:
        query = query.where(OutboundDelivery.subscription_id == subscription_id)
    if domain_event_id:
        query = query.where(OutboundDelivery.domain_event_id == domain_event_id)
    return list(
        db.execute(
            query.order_by(OutboundDelivery.created_at.desc(), OutboundDelivery.attempt.desc()).limit(max(1, min(limit, 500)))
        ).scalars().all()
    )


def list_domain_events(db: Session, *, status: str | None = None, limit: int = 100) -> list[DomainEvent]:
    query = select(DomainEvent)
    if status:
        query = query.where(DomainEvent.status == status)
    return list(db.execute(query.order_by(DomainEvent.created_at.desc()).limit(max(1, min(limit, 500)))).scalars().all())
