# estimator/services/quote_store.py
"""
Persistence collaborator: reads everything a pricing run needs and writes
one complete result per quote.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from estimator.core.errors import (
    ConfigurationMissing,
    InvalidPricingConfig,
    PersistenceFailure,
    QuoteNotFound,
)
from estimator.db import models
from estimator.engine.config import load_pricing_config
from estimator.core.settings import get_settings
from estimator.schemas.pricing_config import FallbackPolicyConfig
from estimator.schemas.service import (
    ExpectedSignal,
    FormAnswer,
    OtherService,
    ServiceScope,
    WidgetField,
)
from estimator.services.tax import TaxConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantInfo:
    id: str
    name: str
    currency: str
    tax: TaxConfig


@dataclass(frozen=True)
class ServiceInfo:
    id: str
    name: str
    scope: ServiceScope
    policy: FallbackPolicyConfig
    widget_fields: List[WidgetField] = field(default_factory=list)
    expected_signals: List[ExpectedSignal] = field(default_factory=list)


@dataclass(frozen=True)
class RequestInfo:
    id: str
    customer_name: str
    customer_email: Optional[str]
    description: Optional[str]
    answers: List[FormAnswer]
    job_quantity: Optional[float]
    asset_urls: List[str]


@dataclass(frozen=True)
class QuoteContext:
    quote_id: str
    quote_token: str
    tenant: TenantInfo
    service: ServiceInfo
    request: RequestInfo
    pricing_raw: Optional[Dict[str, Any]]
    other_services: List[OtherService] = field(default_factory=list)


@dataclass(frozen=True)
class QuoteRecord:
    status: str
    price_breakdown: Dict[str, Any]
    pricing_trace: Dict[str, Any]
    signals_snapshot: Dict[str, Any]


class QuoteStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def _session(self, action: str) -> Iterator[Session]:
        db: Session = self.session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceFailure(f"{action} failed: {type(e).__name__}", meta={"action": action}) from e
        finally:
            db.close()

    def load_context(self, quote_id: str) -> QuoteContext:
        with self._session("load_context") as db:
            quote = db.get(models.Quote, quote_id)
            if quote is None:
                raise QuoteNotFound(f"quote {quote_id} not found")
            request = db.get(models.QuoteRequest, quote.quote_request_id)
            if request is None:
                raise QuoteNotFound(f"quote request {quote.quote_request_id} not found")
            tenant = db.get(models.Tenant, quote.tenant_id)
            service = db.get(models.Service, request.service_id)
            if tenant is None or service is None:
                raise QuoteNotFound(f"tenant or service missing for quote {quote_id}")

            rules = db.scalar(
                select(models.PricingRules).where(models.PricingRules.service_id == service.id)
            )
            others = db.scalars(
                select(models.Service).where(
                    models.Service.tenant_id == tenant.id,
                    models.Service.id != service.id,
                    models.Service.active.is_(True),
                )
            ).all()
            other_rules = {
                r.service_id: r.config
                for r in db.scalars(
                    select(models.PricingRules).where(
                        models.PricingRules.service_id.in_([o.id for o in others])
                    )
                )
            }

            return QuoteContext(
                quote_id=quote.id,
                quote_token=quote.quote_token,
                tenant=_tenant_info(tenant),
                service=_service_info(service),
                request=_request_info(request),
                pricing_raw=rules.config if rules is not None else None,
                other_services=[_other_service(o, other_rules.get(o.id)) for o in others],
            )

    def mark_status(self, quote_id: str, status: str, error: Optional[str] = None) -> None:
        with self._session("mark_status") as db:
            quote = db.get(models.Quote, quote_id)
            if quote is None:
                raise QuoteNotFound(f"quote {quote_id} not found")
            quote.status = status
            quote.error = error

    def save_result(self, quote_id: str, record: QuoteRecord) -> None:
        """All result columns are written in one transaction or not at all."""
        with self._session("save_result") as db:
            quote = db.get(models.Quote, quote_id)
            if quote is None:
                raise QuoteNotFound(f"quote {quote_id} not found")
            quote.status = record.status
            quote.price_breakdown = record.price_breakdown
            quote.pricing_trace = record.pricing_trace
            quote.signals_snapshot = record.signals_snapshot
            quote.error = None
            if record.status == "sent":
                quote.sent_at = datetime.now(timezone.utc)
        logger.info("Saved pricing result for quote %s (status=%s)", quote_id, record.status)


def _tenant_info(row: models.Tenant) -> TenantInfo:
    return TenantInfo(
        id=row.id,
        name=row.name,
        currency=row.currency or "USD",
        tax=TaxConfig(
            enabled=bool(row.tax_enabled),
            rate=Decimal(str(row.tax_rate)) if row.tax_rate is not None else Decimal("0"),
            label=row.tax_label,
        ),
    )


def _service_info(row: models.Service) -> ServiceInfo:
    return ServiceInfo(
        id=row.id,
        name=row.name,
        scope=ServiceScope(
            name=row.name,
            scope_includes=list(row.scope_includes or []),
            scope_excludes=list(row.scope_excludes or []),
        ),
        policy=FallbackPolicyConfig(
            low_confidence_mode=row.low_confidence_mode or "show_range",
            confidence_threshold=(
                row.confidence_threshold
                if row.confidence_threshold is not None
                else get_settings().default_confidence_threshold
            ),
            high_value_threshold=row.high_value_threshold,
        ),
        widget_fields=[WidgetField.model_validate(w) for w in (row.widget_fields or [])],
        expected_signals=[ExpectedSignal.model_validate(e) for e in (row.expected_signals or [])],
    )


def _request_info(row: models.QuoteRequest) -> RequestInfo:
    return RequestInfo(
        id=row.id,
        customer_name=row.customer_name or "",
        customer_email=row.customer_email,
        description=row.description,
        answers=[FormAnswer.model_validate(a) for a in (row.answers or [])],
        job_quantity=row.job_quantity,
        asset_urls=list(row.asset_urls or []),
    )


def _other_service(row: models.Service, raw_rules: Optional[Dict[str, Any]]) -> OtherService:
    try:
        pricing = load_pricing_config(raw_rules, service_id=row.id)
    except (ConfigurationMissing, InvalidPricingConfig) as e:
        logger.warning("Cross-service %s has no usable pricing: %s", row.id, e)
        pricing = None
    return OtherService(
        id=row.id,
        name=row.name,
        detection_keywords=list(row.detection_keywords or []),
        pricing=pricing,
    )
