from decimal import Decimal

import pytest

from estimator.pricing import fallback
from estimator.pricing.fallback import (
    FallbackPolicy,
    FallbackTrigger,
    decide,
    evaluate_trigger,
    get_policy,
    price_range,
    register,
    site_visit_reason,
)
from estimator.schemas.pricing_config import FallbackPolicyConfig, SiteVisitRules

TRIGGERED = FallbackTrigger(triggered=True, overall_confidence=0.4, reason="x")


def policy_config(**kw) -> FallbackPolicyConfig:
    return FallbackPolicyConfig.model_validate(kw)


@pytest.mark.parametrize(
    "mode, status, first_note",
    [
        ("require_review", "pending_review", "This estimate requires business owner review before sending."),
        ("recommend_site_visit", "sent", "We recommend a site visit for a more accurate assessment."),
        ("request_more_info", "sent", "Additional information may be needed for a precise quote."),
        ("show_range", "sent", "Final price will be confirmed upon assessment."),
    ],
)
def test_policies(mode, status, first_note):
    outcome = get_policy(mode).decide(TRIGGERED)
    assert outcome.status_override == status
    assert outcome.notes[0] == first_note


def test_missing_mode_uses_default():
    assert get_policy(None).mode == "show_range"


def test_unknown_mode():
    with pytest.raises(ValueError, match="Unknown fallback mode"):
        get_policy("call_me_maybe")


def test_registry_rejects_duplicates_and_missing_mode():
    class Clash(FallbackPolicy):
        mode = "show_range"

    class Nameless(FallbackPolicy):
        pass

    with pytest.raises(ValueError, match="Duplicate"):
        register(Clash)
    with pytest.raises(ValueError, match="no mode"):
        register(Nameless)
    assert fallback.policy_registry["show_range"] is fallback.ShowRangePolicy


def test_low_confidence_referenced_signal_triggers(signals_of):
    signals = signals_of(("area", 80, 0.5, "vision"), ("paint_color", "red", 0.2, "vision"))
    trigger = evaluate_trigger(policy_config(), signals, Decimal("500"), referenced_keys=["area"])

    assert trigger.triggered is True
    assert trigger.low_confidence_keys == ("area",)
    assert trigger.reason == "Low confidence for: area"


def test_unreferenced_low_signal_only_counts_through_overall(signals_of):
    signals = signals_of(("area", 100, 1.0, "form"), ("paint_color", "red", 0.6, "vision"))
    trigger = evaluate_trigger(policy_config(), signals, Decimal("500"), referenced_keys=["area"])

    assert trigger.low_confidence_keys == ()
    assert trigger.triggered is False


def test_global_keys_are_always_referenced(signals_of):
    signals = signals_of(("area", 100, 1.0, "form"), ("condition_rating", "poor", 0.3, "vision"))
    trigger = evaluate_trigger(policy_config(), signals, Decimal("500"))
    assert trigger.low_confidence_keys == ("condition_rating",)


def test_overall_confidence_reason(signals_of):
    signals = signals_of(("paint_color", "red", 0.5, "vision"))
    trigger = evaluate_trigger(policy_config(), signals, Decimal("500"))
    assert trigger.reason == "Overall confidence (50%) below threshold"


def test_high_value_reasons(signals_of):
    cfg = policy_config(high_value_threshold=1000)
    sure = signals_of(("area", 100, 1.0, "form"))
    trigger = evaluate_trigger(cfg, sure, Decimal("1500"))
    assert trigger.high_value is True
    assert trigger.reason == "Estimate exceeds $1,000.00 threshold"

    unsure = signals_of(("area", 100, 0.5, "vision"))
    trigger = evaluate_trigger(cfg, unsure, Decimal("1500"), referenced_keys=["area"])
    assert trigger.reason == "Low confidence signals (area) and high value ($1,500.00)"


def test_no_signals_means_zero_confidence(signals_of):
    trigger = evaluate_trigger(policy_config(), signals_of(), Decimal("100"))
    assert trigger.overall_confidence == 0.0
    assert trigger.triggered is True


def test_legacy_confidence_used_when_no_signals(signals_of):
    trigger = evaluate_trigger(policy_config(), signals_of(legacy=0.9), Decimal("100"))
    assert trigger.triggered is False


@pytest.mark.parametrize(
    "confidence, expected",
    [
        (0.5, (Decimal("850.00"), Decimal("1150.00"))),
        (0.3, (Decimal("700.00"), Decimal("1300.00"))),
        (0.7, None),
    ],
)
def test_price_range(confidence, expected):
    rng = price_range(Decimal("1000"), confidence)
    assert (None if rng is None else (rng.low, rng.high)) == expected


def test_site_visit_rules():
    assert site_visit_reason(SiteVisitRules(always_recommend=True), 0.9, Decimal("10")) == (
        "Site visit recommended for accurate quote"
    )
    assert site_visit_reason(
        SiteVisitRules(recommend_when_confidence_below=0.6), 0.5, Decimal("10")
    ) == "Site visit recommended due to limited information"
    assert site_visit_reason(
        SiteVisitRules(recommend_when_estimate_above=Decimal("2000")), 0.9, Decimal("2500")
    ) == "Site visit recommended for jobs above $2,000.00"
    assert site_visit_reason(SiteVisitRules(), 0.9, Decimal("10"), hint="Roof access unclear") == (
        "Roof access unclear"
    )
    assert site_visit_reason(None, 0.9, Decimal("10")) is None


def test_decide_require_review(signals_of):
    signals = signals_of(("area", 80, 0.4, "vision"))
    decision = decide(
        policy_config(low_confidence_mode="require_review"), signals, Decimal("1000"), ["area"]
    )

    assert decision.triggered is True
    assert decision.status_override == "pending_review"
    assert decision.price_range.low == Decimal("850.00")
    assert decision.notes == (
        "This estimate requires business owner review before sending.",
        "Price shown as range due to limited information",
    )
    assert decision.to_dict()["low_confidence_signal_keys"] == ["area"]


def test_decide_confident_quote_is_sent(signals_of):
    decision = decide(None, signals_of(("area", 120, 1.0, "form")), Decimal("1250"), ["area"])

    assert decision.triggered is False
    assert decision.mode == "show_range"
    assert decision.status_override == "sent"
    assert decision.notes == ()
    assert decision.price_range is None
    assert decision.site_visit_recommended is False


def test_decide_with_site_visit(signals_of):
    decision = decide(
        None,
        signals_of(("area", 120, 1.0, "form")),
        Decimal("1250"),
        site_visit_rules=SiteVisitRules(always_recommend=True),
    )
    assert decision.site_visit_recommended is True
    assert decision.notes == ("Site visit recommended for accurate quote",)
