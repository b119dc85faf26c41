from celery import Celery
from kombu import Exchange, Queue
from .config import settings


broker_url = settings.CELERY_BROKER_URL
result_backend = settings.CELERY_RESULT_BACKEND or None

celery_app = Celery(
    "nudge",
    broker=broker_url,
    backend=result_backend,
)

exchange = Exchange("nudge", type="direct", durable=True)

celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.WORKER_CONCURRENCY,
    task_default_queue="reminders",
    task_default_exchange="nudge",
    task_default_routing_key="reminders",
    include=["nudge.reminders.tasks"],
    task_queues=(
        Queue("reminders", exchange=exchange, routing_key="reminders", durable=True),
    ),
)

# Celery Beat schedule for the periodic jobs
celery_app.conf.beat_schedule = {
    "dispatch-due": {
        "task": "reminders.dispatch_due",
        "schedule": settings.SCHEDULER_SCAN_INTERVAL_SECONDS,
    },
    "reconcile-queue": {
        "task": "reminders.reconcile_queue",
        "schedule": settings.RECONCILE_INTERVAL_SECONDS,
    },
    "generate-routines": {
        "task": "reminders.generate_routines",
        "schedule": settings.ROUTINE_GENERATION_INTERVAL_SECONDS,
    },
}
