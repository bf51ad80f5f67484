from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "leadcrm_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.compliance.tasks"],
)
celery_app.conf.task_acks_late = True
celery_app.conf.worker_prefetch_multiplier = 1

