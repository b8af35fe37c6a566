"""
Celery configuration for background tasks
"""
from celery import Celery
import logging

from invoicepay.core.config import settings

logger = logging.getLogger(__name__)

celery_app = Celery(
    "invoicepay",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "invoicepay.modules.payments.tasks",
    ]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=10 * 60,
    task_soft_time_limit=8 * 60,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    result_expires=3600,  # 1 hour

    task_routes={
        "invoicepay.modules.payments.tasks.*": {"queue": "payments"},
    },

    # Crypto payments are also confirmed by polling, racing the provider webhook
    beat_schedule={
        "poll-pending-crypto-payments": {
            "task": "invoicepay.modules.payments.tasks.poll_pending_crypto_payments_task",
            "schedule": settings.CRYPTO_POLL_INTERVAL_SECONDS,
        },
    }
)


if __name__ == "__main__":
    celery_app.start()
