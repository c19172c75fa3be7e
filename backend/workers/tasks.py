import asyncio
import logging
from datetime import UTC, datetime
from uuid import UUID

from celery.exceptions import MaxRetriesExceededError
from sqlalchemy.exc import SQLAlchemyError

from app.application.services.inbound_event_service import process_inbound_event_async
from app.application.services.outbound_dispatch_service import (
    dispatch_due_deliveries,
    fan_out_domain_event as fan_out_domain_event_service,
    find_unfanned_domain_events,
)
from app.application.services.webhook_processing_service import (
    fan_out_domain_event_async,
    find_resumable_inbound_events,
    process_inbound_event as process_inbound_event_service,
)
from app.core.config import settings
from app.infrastructure.cache.redis_client import get_redis_client
from app.infrastructure.db.session import SessionLocal
from app.infrastructure.logging.context import reset_correlation_id, set_correlation_id
from app.infrastructure.observability.metrics import measure_redis
from workers.celery_app import celery_app

logger = logging.getLogger(__name__)

INBOUND_TASK_MAX_RETRIES = 5


def _storage_retry_countdown(attempt: int) -> int:
    return min(300, 10 * (2 ** (attempt - 1)))


@celery_app.task(name="workers.tasks.ping")
def ping() -> str:
    return "pong"


@celery_app.task(name="workers.tasks.worker_heartbeat")
def worker_heartbeat() -> dict:
    redis_client = get_redis_client()
    now = datetime.now(UTC).isoformat()
    with measure_redis("worker_heartbeat_set"):
        redis_client.set(
            settings.worker_heartbeat_key,
            now,
            ex=max(15, settings.worker_heartbeat_ttl_seconds),
        )
    return {"heartbeat_at": now}


@celery_app.task(
    bind=True,
    name="workers.tasks.process_inbound_event",
    max_retries=INBOUND_TASK_MAX_RETRIES,
    acks_late=True,
)
def process_inbound_event(self, event_id: str) -> dict:
    attempt = self.request.retries + 1
    correlation_token = set_correlation_id(event_id)
    try:
        with SessionLocal() as db:
            outcome = process_inbound_event_service(db, UUID(event_id))
        return {
            "status": outcome.status,
            "reason": outcome.reason,
            "domain_event_id": str(outcome.domain_event_id) if outcome.domain_event_id else None,
            "skipped": outcome.skipped,
        }
    except SQLAlchemyError as exc:
        # Could not even read or settle the row; the resume sweep is the fallback.
        countdown = _storage_retry_countdown(attempt)
        logger.warning(
            "process_inbound_event_retry event_id=%s attempt=%s countdown=%s error=%s",
            event_id,
            attempt,
            countdown,
            str(exc),
        )
        try:
            raise self.retry(exc=exc, countdown=countdown)
        except MaxRetriesExceededError:
            logger.exception("process_inbound_event_max_retries event_id=%s", event_id)
            return {"status": "error", "error": str(exc)}
    finally:
        reset_correlation_id(correlation_token)


@celery_app.task(name="workers.tasks.fan_out_domain_event", acks_late=True)
def fan_out_domain_event(domain_event_id: str) -> dict:
    correlation_token = set_correlation_id(domain_event_id)
    try:
        with SessionLocal() as db:
            created = fan_out_domain_event_service(db, UUID(domain_event_id))
    finally:
        reset_correlation_id(correlation_token)
    if created:
        dispatch_outbound_deliveries.delay()
    return {"deliveries_created": created}


@celery_app.task(name="workers.tasks.dispatch_outbound_deliveries")
def dispatch_outbound_deliveries() -> dict:
    summary = asyncio.run(
        dispatch_due_deliveries(
            SessionLocal,
            redis_client=get_redis_client(),
        )
    )
    return summary.to_dict()


@celery_app.task(name="workers.tasks.resume_stalled_inbound_events")
def resume_stalled_inbound_events() -> dict:
    with SessionLocal() as db:
        event_ids = find_resumable_inbound_events(db)
    for event_id in event_ids:
        process_inbound_event_async(event_id)
    if event_ids:
        logger.info("inbound_resume_enqueued count=%s", len(event_ids))
    return {"enqueued": len(event_ids)}


@celery_app.task(name="workers.tasks.fan_out_pending_domain_events")
def fan_out_pending_domain_events() -> dict:
    with SessionLocal() as db:
        domain_event_ids = find_unfanned_domain_events(db)
    for domain_event_id in domain_event_ids:
        fan_out_domain_event_async(domain_event_id)
    if domain_event_ids:
        logger.info("domain_event_fan_out_enqueued count=%s", len(domain_event_ids))
    return {"enqueued": len(domain_event_ids)}
