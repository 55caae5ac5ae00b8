"""Celery application configuration."""

from celery import Celery

from app.core.config import settings

celery_app = Celery(
    "cryptrac_billing",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=900,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "run-subscription-scheduler": {
            "task": "billing.run_subscription_scheduler",
            "schedule": settings.SCHEDULER_INTERVAL_MINUTES * 60.0,
        },
        "refresh-pending-payments": {
            "task": "payments.refresh_pending_transactions",
            "schedule": settings.PAYMENT_POLL_INTERVAL_MINUTES * 60.0,
        },
    },
)

celery_app.autodiscover_tasks(["app.modules.billing", "app.modules.payment_gateway"])
