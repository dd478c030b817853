# estimator/engine/context.py
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import List

from estimator.schemas.jobs import QuoteJob


@dataclass(frozen=True)
class JobContext:
    quote_id: str
    quote_request_id: str
    tenant_id: str
    retry_count: int = 0
    trace_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    @classmethod
    def from_job(cls, job: QuoteJob) -> "JobContext":
        return cls(
            quote_id=job.quote_id,
            quote_request_id=job.quote_request_id,
            tenant_id=job.tenant_id,
            retry_count=job.retry_count,
        )


@dataclass
class PipelineState:
    """
    Mutable state bag during one run.
    `notes` collects every degraded-path explanation for the business-facing record.
    """

    context: JobContext
    notes: List[str] = field(default_factory=list)

    def note(self, message: str) -> None:
        if message and message not in self.notes:
            self.notes.append(message)
