import pytest

from estimator.pricing.resolver import evaluate_condition, resolve_step
from estimator.schemas.pricing_config import WorkStep


def step(**kw) -> WorkStep:
    base = {"id": "s1", "name": "Step", "cost_type": "per_unit", "default_cost": 10}
    base.update(kw)
    return WorkStep.model_validate(base)


def test_form_field_quantity_is_trusted(signals_of):
    s = step(quantity_source={"type": "form_field", "field_id": "area"})
    res = resolve_step(s, signals_of(), {"area": "120"})

    assert res.triggered is True
    assert res.quantity == 120
    assert res.source == "form_field"
    assert res.trusted is True
    assert res.signals_used == (("area", "120"),)


def test_form_field_falls_back_to_fused_signal(signals_of):
    s = step(quantity_source={"type": "form_field", "field_id": "area"})
    res = resolve_step(s, signals_of(("area", 80, 0.6, "vision")), {})

    assert res.quantity == 80
    assert res.trusted is False


def test_unanswered_form_field_resolves_to_zero_with_note(signals_of):
    s = step(name="Gutter run", quantity_source={"type": "form_field", "field_id": "gutter_ft"})
    res = resolve_step(s, signals_of(), {})

    assert res.triggered is True
    assert res.quantity == 0
    assert any("was not answered" in n for n in res.notes)


@pytest.mark.parametrize("value, expected", [(None, 1.0), (3, 3.0)])
def test_constant_quantity(signals_of, value, expected):
    s = step(quantity_source={"type": "constant", "value": value})
    res = resolve_step(s, signals_of(), {})
    assert res.quantity == expected
    assert res.source == "constant"
    assert res.trusted is True


def test_ai_signal_quantity_is_untrusted(signals_of):
    s = step(name="Panels", quantity_source={"type": "ai_signal", "signal_key": "panel_count"})
    res = resolve_step(s, signals_of(("panel_count", 6, 0.8, "vision")), {})

    assert res.quantity == 6
    assert res.source == "ai_signal"
    assert res.trusted is False
    assert res.notes == ('"Panels" quantity from AI signal (lower confidence)',)


def test_fixed_step_has_unit_quantity(signals_of):
    res = resolve_step(step(cost_type="fixed"), signals_of(), {})
    assert (res.triggered, res.quantity, res.source, res.trusted) == (True, 1.0, "constant", True)


@pytest.mark.parametrize("count, triggered", [(5, True), (3, False), (2, False)])
def test_optional_step_with_numeric_condition(signals_of, count, triggered):
    s = step(
        optional=True,
        trigger_signal="item_count",
        trigger_condition={"operator": "gt", "value": 3},
        quantity_source={"type": "constant", "value": 1},
    )
    res = resolve_step(s, signals_of(("item_count", count, 0.9, "vision")), {})
    assert res.triggered is triggered


def test_optional_step_without_condition_needs_truthy_value(signals_of):
    s = step(cost_type="fixed", optional=True, trigger_signal="has_moss_growth")
    assert resolve_step(s, signals_of(("has_moss_growth", True, 0.8, "vision")), {}).triggered is True
    assert resolve_step(s, signals_of(("has_moss_growth", False, 0.8, "vision")), {}).triggered is False
    assert resolve_step(s, signals_of(), {}).triggered is False


def test_trigger_signal_is_reported_as_used(signals_of):
    s = step(cost_type="fixed", optional=True, trigger_signal="has_moss_growth")
    res = resolve_step(s, signals_of(("has_moss_growth", True, 0.8, "vision")), {})
    assert res.signals_used == (("has_moss_growth", True),)


def test_implicit_trigger_from_quantity_source(signals_of):
    s = step(optional=True, quantity_source={"type": "form_field", "field_id": "extra_rooms"})
    assert resolve_step(s, signals_of(), {"extra_rooms": 0}).triggered is False
    res = resolve_step(s, signals_of(), {"extra_rooms": 4})
    assert res.triggered is True
    assert res.quantity == 4


def test_optional_step_without_any_trigger_never_fires(signals_of):
    s = step(optional=True)
    assert resolve_step(s, signals_of(("item_count", 9, 1.0, "form")), {}).triggered is False


def test_legacy_hours_from_complexity(signals_of):
    s = step(name="Labour", cost_type="per_hour", default_cost=40)
    res = resolve_step(s, signals_of(("complexity_level", "high", 0.7, "vision")), {})

    assert res.quantity == 2.0
    assert res.source == "legacy_fallback"
    assert res.legacy is True
    assert res.trusted is False
    assert "legacy quantity estimation" in res.notes[0]


def test_legacy_unit_scan_for_quantity_like_key(signals_of):
    s = step(name="Roof wash")
    res = resolve_step(
        s,
        signals_of(("paint_color", "red", 0.9, "vision"), ("roof_sqft", 950, 0.6, "vision")),
        {},
    )
    assert res.quantity == 950
    assert res.signals_used == (("roof_sqft", 950),)


@pytest.mark.parametrize(
    "condition, value, expected",
    [
        ({"operator": "exists"}, "x", True),
        ({"operator": "exists"}, None, False),
        ({"operator": "not_exists"}, None, True),
        ({"operator": "equals", "value": 5}, "5", True),
        ({"operator": "equals", "value": "Heavy"}, "heavy", True),
        ({"operator": "not_equals", "value": "heavy"}, "light", True),
        ({"operator": "gte", "value": 2}, 2, True),
        ({"operator": "lt", "value": 2}, "1,5", False),
        ({"operator": "lte", "value": 10}, "not a number", False),
        ({"operator": "contains", "value": "BRICK"}, "red brick wall", True),
    ],
)
def test_evaluate_condition(condition, value, expected):
    s = step(optional=True, trigger_signal="x", trigger_condition=condition)
    assert evaluate_condition(s.trigger_condition, value) is expected
