# estimator/schemas/jobs.py
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict


class QuoteJob(BaseModel):
    """Decoded queue message for one pricing run."""

    model_config = ConfigDict(extra="ignore")

    quote_id: str
    quote_request_id: str
    tenant_id: str
    retry_count: int = 0
    timestamp: Optional[str] = None
    quote_token: Optional[str] = None


class JobResult(BaseModel):
    success: bool
    error: Optional[str] = None
    retryable: bool = False
    failure_step: Optional[str] = None
    status: Optional[str] = None
    price: Optional[Dict[str, Any]] = None
    trace: Optional[Dict[str, Any]] = None
