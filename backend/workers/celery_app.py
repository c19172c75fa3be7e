from celery import Celery
from celery.schedules import schedule
from kombu import Queue

from app.core.config import settings

celery_app = Celery(
    "membership_billing",
    broker=settings.cache_redis_url,
    backend=settings.cache_redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_default_queue="inbound",
    task_queues=(
        Queue("inbound"),
        Queue("outbound"),
        Queue("scheduler"),
    ),
    task_routes={
        "workers.tasks.process_inbound_event": {"queue": "inbound"},
        "workers.tasks.fan_out_domain_event": {"queue": "outbound"},
        "workers.tasks.dispatch_outbound_deliveries": {"queue": "outbound"},
        "workers.tasks.resume_stalled_inbound_events": {"queue": "scheduler"},
        "workers.tasks.fan_out_pending_domain_events": {"queue": "scheduler"},
        "workers.tasks.worker_heartbeat": {"queue": "scheduler"},
    },
    beat_schedule={
        "outbound-dispatch-every-10s": {
            "task": "workers.tasks.dispatch_outbound_deliveries",
            "schedule": schedule(10.0),
            "options": {"queue": "outbound"},
        },
        "inbound-resume-every-60s": {
            "task": "workers.tasks.resume_stalled_inbound_events",
            "schedule": schedule(60.0),
            "options": {"queue": "scheduler"},
        },
        "domain-event-fan-out-every-30s": {
            "task": "workers.tasks.fan_out_pending_domain_events",
            "schedule": schedule(30.0),
            "options": {"queue": "scheduler"},
        },
        "worker-heartbeat-every-15s": {
            "task": "workers.tasks.worker_heartbeat",
            "schedule": schedule(15.0),
            "options": {"queue": "scheduler"},
        },
    },
)

celery_app.autodiscover_tasks(["workers"])
