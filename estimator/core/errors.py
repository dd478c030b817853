# estimator/core/errors.py
from __future__ import annotations

from typing import Any, Dict, Optional


class EstimatorError(Exception):
    """Base class for pipeline errors. Carries a stable code plus meta for logs."""

    code = "ESTIMATOR_ERROR"

    def __init__(self, message: str, *, meta: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.meta = meta or {}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ExtractionError(EstimatorError):
    code = "EXTRACTION_FAILED"


class ExtractionUnavailable(ExtractionError):
    """Inference collaborator is down or not configured."""

    code = "EXTRACTION_UNAVAILABLE"


class ExtractionRateLimited(ExtractionError):
    code = "EXTRACTION_RATE_LIMITED"

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[int] = None,
        meta: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, meta=meta)
        self.retry_after = retry_after


class ExtractionParseFailed(ExtractionError):
    """The model answered but the payload could not be parsed."""

    code = "EXTRACTION_PARSE_FAILED"


class ConfigurationMissing(EstimatorError):
    code = "CONFIGURATION_MISSING"


class InvalidPricingConfig(EstimatorError):
    code = "INVALID_PRICING_CONFIG"


class PersistenceFailure(EstimatorError):
    code = "PERSISTENCE_FAILURE"


class QuoteNotFound(EstimatorError):
    code = "QUOTE_NOT_FOUND"
