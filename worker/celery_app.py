from celery import Celery

from app.core.config import settings
from app.core.logging import configure_logging

configure_logging(settings.log_level)

celery = Celery(
    "domainvault-worker",
    broker=settings.rabbitmq_url,
    backend=settings.redis_url,
    include=["worker.tasks"],
)

celery.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_routes={
        "worker.tasks.expire_stale_sales": {"queue": "settlement"},
        "worker.tasks.replay_webhook_event": {"queue": "settlement"},
    },
    beat_schedule={
        "expire-stale-sales": {
            "task": "worker.tasks.expire_stale_sales",
            "schedule": 300.0,
        },
    },
)
