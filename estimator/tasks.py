# estimator/tasks.py
from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict

from celery.utils.log import get_task_logger

from estimator.celery_app import celery_app
from estimator.core.errors import ExtractionRateLimited, PersistenceFailure, QuoteNotFound
from estimator.core.settings import get_settings
from estimator.db import make_engine, make_session_factory
from estimator.engine.runner import QuotePipeline
from estimator.schemas.jobs import QuoteJob
from estimator.services.email import QuoteNotifier
from estimator.services.inference import InferenceClient
from estimator.services.quote_store import QuoteStore

logger = get_task_logger(__name__)


def backoff_delay(retry_count: int, base_delay: int) -> int:
    """Exponential backoff in seconds: base, 2x base, 4x base, ..."""
    return base_delay * (2 ** retry_count)


@lru_cache()
def build_pipeline() -> QuotePipeline:
    settings = get_settings()
    if not settings.inference_configured:
        logger.warning("INFERENCE_API_URL not set - quotes with photos will be priced from form inputs only")
    store = QuoteStore(make_session_factory(make_engine(settings.database_url)))
    return QuotePipeline(store, InferenceClient(), QuoteNotifier(settings))


@celery_app.task(bind=True, name="estimator.process_quote")
def process_quote_task(self, message: Dict[str, Any]) -> Dict[str, Any]:
    """Price one quote. `message` is the decoded queue payload (QuoteJob fields)."""
    settings = get_settings()
    retries = self.request.retries or 0
    job = QuoteJob.model_validate({**message, "retry_count": retries})
    final_attempt = retries >= settings.max_retries
    pipeline = build_pipeline()

    logger.info(f"Processing quote {job.quote_id} (attempt {retries + 1})")

    try:
        result = pipeline.run(job, final_attempt=final_attempt)
    except ExtractionRateLimited as e:
        countdown = e.retry_after or settings.rate_limit_retry_delay
        logger.warning(f"Inference rate limited for quote {job.quote_id}, retrying in {countdown}s")
        raise self.retry(exc=e, countdown=countdown, max_retries=settings.max_retries)

    if result.success or not result.retryable:
        if not result.success:
            logger.error(f"Quote {job.quote_id} failed permanently at {result.failure_step}: {result.error}")
        return result.model_dump(mode="json")

    if final_attempt:
        logger.error(f"Quote {job.quote_id} failed after {retries + 1} attempts: {result.error}")
        try:
            pipeline.store.mark_status(job.quote_id, "failed", result.error)
        except (PersistenceFailure, QuoteNotFound) as e:
            logger.error(f"Could not mark quote {job.quote_id} as failed: {e}")
        return result.model_dump(mode="json")

    countdown = backoff_delay(retries, settings.base_retry_delay)
    logger.warning(f"Retrying quote {job.quote_id} in {countdown}s: {result.error}")
    raise self.retry(countdown=countdown, max_retries=settings.max_retries)
