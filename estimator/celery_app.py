# estimator/celery_app.py
from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from estimator.core.logging_config import setup_logging
from estimator.core.settings import get_settings

settings = get_settings()

celery_app = Celery(
    "estimator",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["estimator.tasks"],
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
    # one job per worker slot; a redelivered message must not run twice in parallel
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
)


@celery_setup_logging.connect
def _configure_worker_logging(**kwargs):
    # keeps celery from installing its own root handlers
    setup_logging()
