from celery import Celery

from app.core.config import get_settings

SIDE_EFFECTS_QUEUE = "q_side_effects"
RECONCILIATION_QUEUE = "q_reconciliation"

settings = get_settings()

celery_app = Celery(
    "paid_access",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "app.workers.tasks.side_effects",
        "app.workers.tasks.access_reconciliation",
    ],
)

celery_app.conf.update(
    task_default_queue=SIDE_EFFECTS_QUEUE,
    task_routes={
        "app.workers.tasks.side_effects.*": {"queue": SIDE_EFFECTS_QUEUE},
        "app.workers.tasks.access_reconciliation.*": {"queue": RECONCILIATION_QUEUE},
    },
    # Side-effect jobs are at-least-once; a worker crash redelivers them.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    result_expires=86400,
    timezone="UTC",
    enable_utc=True,
)
