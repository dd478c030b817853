import os

# broker/backend must not need redis during tests
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("LOG_JSON", "false")

from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import yaml

from estimator.db import Base, make_engine, make_session_factory
from estimator.db import models
from estimator.engine.config import load_pricing_config_file
from estimator.pricing.signals import FusedSignals, Signal
from estimator.services.inference import ExtractionResult
from estimator.services.quote_store import QuoteStore

FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture
def fixed_now():
    return datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def window_config():
    return load_pricing_config_file(FIXTURES / "window_cleaning.yaml")


@pytest.fixture
def window_config_raw() -> Dict[str, Any]:
    with (FIXTURES / "window_cleaning.yaml").open("r", encoding="utf-8") as f:
        return yaml.safe_load(f)


@pytest.fixture
def signals_of():
    """Build a FusedSignals directly from (key, value, confidence, source) tuples."""

    def _make(*items, legacy: Optional[float] = None) -> FusedSignals:
        signals = {}
        for key, value, confidence, source in items:
            signals[key] = Signal(key, value, confidence, source)
        return FusedSignals(signals=signals, legacy_confidence=legacy)

    return _make


# --- persistence ---


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'estimator.db'}")
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return QuoteStore(session_factory)


@pytest.fixture
def seed_quote(session_factory, window_config_raw):
    """Insert tenant, service, rules, request and a queued quote. Returns the quote id."""

    def _seed(
        *,
        answers: Optional[List[Dict[str, Any]]] = None,
        asset_urls: Optional[List[str]] = None,
        pricing: Optional[Dict[str, Any]] = window_config_raw,
        mode: str = "show_range",
        tax_rate: Optional[Decimal] = None,
        description: str = "Please clean all windows",
        other_services: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        with session_factory() as db:
            db.add(
                models.Tenant(
                    id="t1",
                    name="Sparkle Co",
                    currency="USD",
                    tax_enabled=tax_rate is not None,
                    tax_rate=tax_rate,
                    tax_label="Sales tax" if tax_rate is not None else None,
                )
            )
            db.add(
                models.Service(
                    id="svc_windows",
                    tenant_id="t1",
                    name="Window Cleaning",
                    scope_includes=["glass cleaning"],
                    scope_excludes=[],
                    detection_keywords=["windows"],
                    widget_fields=[{"field_id": "area", "label": "Window area (sqft)", "type": "number"}],
                    expected_signals=[{"signal_key": "area", "type": "number"}],
                    low_confidence_mode=mode,
                    confidence_threshold=0.7,
                )
            )
            if pricing is not None:
                db.add(models.PricingRules(service_id="svc_windows", config=pricing))
            for other in other_services or []:
                db.add(
                    models.Service(
                        id=other["id"],
                        tenant_id="t1",
                        name=other["name"],
                        detection_keywords=other.get("detection_keywords", []),
                    )
                )
                if other.get("pricing"):
                    db.add(models.PricingRules(service_id=other["id"], config=other["pricing"]))
            db.add(
                models.QuoteRequest(
                    id="qr1",
                    tenant_id="t1",
                    service_id="svc_windows",
                    customer_name="Alex",
                    customer_email="alex@example.com",
                    description=description,
                    answers=answers if answers is not None else [{"field_id": "area", "value": 120}],
                    asset_urls=asset_urls or [],
                )
            )
            db.add(
                models.Quote(
                    id="q1",
                    tenant_id="t1",
                    quote_request_id="qr1",
                    quote_token="tok123",
                    status="queued",
                )
            )
            db.commit()
        return "q1"

    return _seed


# --- collaborator fakes ---


class FakeInference:
    def __init__(self, result: Optional[ExtractionResult] = None, error: Optional[Exception] = None):
        self.result = result or ExtractionResult()
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def extract(self, images, context):
        self.calls.append({"images": list(images), "context": context})
        if self.error is not None:
            raise self.error
        return self.result


class FakeNotifier:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.sent: List[Any] = []

    def quote_url(self, quote_token: str) -> str:
        return f"https://quotes.example.com/q/{quote_token}"

    def send_quote_ready(self, message, *, quote_id: str) -> str:
        if self.error is not None:
            raise self.error
        self.sent.append((quote_id, message))
        return "msg-1"


@pytest.fixture
def fake_inference():
    return FakeInference


@pytest.fixture
def fake_notifier():
    return FakeNotifier
