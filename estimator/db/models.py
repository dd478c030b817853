# estimator/db/models.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from estimator.db import Base


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    tax_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    tax_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 3), nullable=True)  # percent
    tax_label: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)


class Service(Base):
    __tablename__ = "services"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id"), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    scope_includes: Mapped[Any] = mapped_column(JSON, default=list)
    scope_excludes: Mapped[Any] = mapped_column(JSON, default=list)
    detection_keywords: Mapped[Any] = mapped_column(JSON, default=list)
    widget_fields: Mapped[Any] = mapped_column(JSON, default=list)
    expected_signals: Mapped[Any] = mapped_column(JSON, default=list)

    low_confidence_mode: Mapped[str] = mapped_column(String(50), default="show_range", nullable=False)
    confidence_threshold: Mapped[float] = mapped_column(Float, default=0.7, nullable=False)
    high_value_threshold: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)


class PricingRules(Base):
    __tablename__ = "pricing_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    service_id: Mapped[str] = mapped_column(ForeignKey("services.id"), unique=True, nullable=False)
    config: Mapped[Any] = mapped_column(JSON, nullable=False)


class QuoteRequest(Base):
    __tablename__ = "quote_requests"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id"), index=True, nullable=False)
    service_id: Mapped[str] = mapped_column(ForeignKey("services.id"), nullable=False)

    customer_name: Mapped[str] = mapped_column(String(200), default="", nullable=False)
    customer_email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    answers: Mapped[Any] = mapped_column(JSON, default=list)  # [{"field_id": ..., "value": ...}]
    job_quantity: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    asset_urls: Mapped[Any] = mapped_column(JSON, default=list)


class Quote(Base):
    __tablename__ = "quotes"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id"), index=True, nullable=False)
    quote_request_id: Mapped[str] = mapped_column(ForeignKey("quote_requests.id"), nullable=False)
    quote_token: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[str] = mapped_column(String(50), nullable=False, server_default="queued")
    price_breakdown: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    pricing_trace: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    signals_snapshot: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<Quote id={self.id} tenant={self.tenant_id} status={self.status}>"
