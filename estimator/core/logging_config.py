# estimator/core/logging_config.py
import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog

from estimator.core.settings import get_settings


def setup_logging(level: Optional[str] = None, json: Optional[bool] = None) -> None:
    """
    Configure structlog + standard logging.
    Worker logs go to stdout, JSON by default so the log shipper can index fields.
    """
    settings = get_settings()
    level_name = (level or settings.log_level).upper()
    render_json = settings.log_json if json is None else json

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if render_json
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@contextmanager
def job_log_context(
    quote_id: str,
    tenant_id: Optional[str] = None,
    retry_count: int = 0,
) -> Iterator[None]:
    """Bind job identifiers to every log line emitted during a pipeline run."""
    structlog.contextvars.bind_contextvars(
        quote_id=quote_id,
        tenant_id=tenant_id,
        retry_count=retry_count,
    )
    try:
        yield
    finally:
        structlog.contextvars.unbind_contextvars("quote_id", "tenant_id", "retry_count")
