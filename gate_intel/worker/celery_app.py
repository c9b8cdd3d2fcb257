"""
Celery app for scheduled gate derivation

Pipeline runs go to their own ``gates`` queue so a long clustering run
never delays other work. The hard time limit leaves room for the
clustering timeout plus the persistence transaction.
"""
from celery import Celery
from gate_intel.config import settings

celery_app = Celery(
    "gate_intel_worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["gate_intel.worker.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_default_queue="gates",
    task_soft_time_limit=int(settings.PIPELINE_TIMEOUT_SEC) + 60,
    task_time_limit=settings.PIPELINE_LOCK_TTL_SEC,
    # One pipeline run per worker process at a time
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Scheduled run tokens are hourly; older results are never replayed from here
    result_expires=3600,
)

celery_app.conf.task_routes = {
    "gate_intel.worker.tasks.run_gate_pipeline": {"queue": "gates"},
}
