from decimal import Decimal

import pytest

from estimator.core.errors import PersistenceFailure, QuoteNotFound
from estimator.db import models
from estimator.services.quote_store import QuoteRecord


def test_load_context(store, seed_quote):
    seed_quote(tax_rate=Decimal("20"), other_services=[
        {"id": "svc_gutters", "name": "Gutter Cleaning", "pricing": {"base_fee": 80}},
        {"id": "svc_broken", "name": "Broken", "pricing": {"base_fee": -1}},
    ])
    qc = store.load_context("q1")

    assert qc.quote_token == "tok123"
    assert qc.tenant.currency == "USD"
    assert qc.tenant.tax.applies is True
    assert qc.tenant.tax.rate == Decimal("20")
    assert qc.service.scope.scope_includes == ["glass cleaning"]
    assert qc.service.policy.low_confidence_mode == "show_range"
    assert qc.service.widget_fields[0].type == "number"
    assert qc.request.answers[0].field_id == "area"
    assert qc.pricing_raw["base_fee"] == 50

    others = {o.id: o for o in qc.other_services}
    assert others["svc_gutters"].pricing.base_fee == 80
    assert others["svc_broken"].pricing is None


def test_load_missing_quote(store):
    with pytest.raises(QuoteNotFound):
        store.load_context("nope")


def test_save_result_writes_all_columns(store, seed_quote, session_factory):
    seed_quote()
    record = QuoteRecord(
        status="pending_review",
        price_breakdown={"total": "10.00"},
        pricing_trace={"steps": []},
        signals_snapshot={"signals": []},
    )
    store.save_result("q1", record)

    with session_factory() as db:
        quote = db.get(models.Quote, "q1")
        assert quote.status == "pending_review"
        assert quote.price_breakdown == {"total": "10.00"}
        assert quote.pricing_trace == {"steps": []}
        assert quote.signals_snapshot == {"signals": []}
        assert quote.sent_at is None


def test_mark_status(store, seed_quote, session_factory):
    seed_quote()
    store.mark_status("q1", "failed", "db down")
    with session_factory() as db:
        quote = db.get(models.Quote, "q1")
        assert (quote.status, quote.error) == ("failed", "db down")


def test_database_errors_become_persistence_failures(store, session_factory):
    models.Base.metadata.drop_all(bind=session_factory.kw["bind"])
    with pytest.raises(PersistenceFailure):
        store.load_context("q1")
