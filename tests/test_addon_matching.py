from decimal import Decimal

import pytest

from estimator.pricing.matching import (
    DetectedItem,
    active_suppressor,
    build_searchable_text,
    detect_cross_services,
    find_keyword,
    is_negated,
    match_addon,
    match_catalog_items,
    scope_conflict,
)
from estimator.schemas.pricing_config import Addon, ItemCatalogEntry
from estimator.schemas.service import OtherService, ServiceScope


def addon(**kw) -> Addon:
    base = {"id": "rust_treatment", "name": "Rust treatment", "price": 60}
    base.update(kw)
    return Addon.model_validate(base)


@pytest.mark.parametrize(
    "text, negated",
    [
        ("no rust please", True),
        ("there's no visible rust", True),
        ("don't worry about rust", True),
        ("dont bother with the rust", False),
        ("without any rust", True),
        ("please skip rust", True),
        ("there is rust on the gate", False),
        ("not much of the old rust", False),
    ],
)
def test_negation_window(text, negated):
    assert is_negated(text, "rust") is negated


@pytest.mark.parametrize(
    "text, rule",
    [
        ("please no extras", "no_extras"),
        ("i don't want any extras", "dont_want_extras"),
        ("we are budget conscious", "budget"),
        ("keep it simple", "keep_it_simple"),
        ("nothing extra thanks", "nothing_extra"),
        ("just the basics", "basics_only"),
        ("no add-ons", "no_addons"),
        ("no additional work", "no_additional"),
        ("the rust is bad", None),
    ],
)
def test_global_suppressors(text, rule):
    assert active_suppressor(text) == rule


def test_find_keyword_skips_negated_matches():
    assert find_keyword("no rust, but heavy paint flaking", ["rust", "paint"]) == "paint"
    assert find_keyword("rusty railing", ["rust"]) is None


def test_keyword_match_recommends(signals_of):
    m = match_addon(addon(trigger_keywords=["rust"]), signals_of(), {}, "Gate has rust spots")
    assert (m.applies, m.auto_recommended, m.source) == (True, True, "keyword")
    assert m.reason == 'Recommended based on "rust" in your description'


def test_suppressor_voids_keyword_match(signals_of):
    m = match_addon(addon(trigger_keywords=["rust"]), signals_of(), {}, "Rust on gate. Keep it simple.")
    assert m.applies is False


def test_selection_beats_suppressor(signals_of):
    m = match_addon(
        addon(trigger_keywords=["rust"]), signals_of(), {"extras": ["rust_treatment"]}, "no extras"
    )
    assert (m.applies, m.auto_recommended, m.reason) == (True, False, "Selected by customer")


@pytest.mark.parametrize("answer", [True, "yes", "rust_treatment"])
def test_direct_selection_values(signals_of, answer):
    assert match_addon(addon(), signals_of(), {"rust_treatment": answer}, "").applies is True


def test_already_detected_id(signals_of):
    m = match_addon(addon(), signals_of(), {}, "", already_detected_ids=["rust_treatment"])
    assert m.reason == "Detected from your description"
    assert m.auto_recommended is True


def test_condition_detected_in_photos(signals_of):
    a = addon(trigger_conditions=["rust_stains"])
    m = match_addon(a, signals_of(("has_rust_stains", True, 0.8, "vision")), {}, "")
    assert m.reason == "Detected in photos: Rust Stains"
    assert m.source == "image_signal"
    assert match_addon(a, signals_of(("has_rust_stains", False, 0.8, "vision")), {}, "").applies is False


@pytest.mark.parametrize(
    "rule, key, value, applies",
    [
        ({"field": "materials", "contains": "wood"}, "materials", ["Wood", "glass"], True),
        ({"field": "complexity", "equals": "high"}, "complexity_level", "High", True),
        ({"field": "condition", "equals": "poor"}, "condition_rating", "fair", False),
    ],
)
def test_signal_match_rule(signals_of, rule, key, value, applies):
    a = addon(id="deck_seal", name="Deck seal", signal_match=rule)
    m = match_addon(a, signals_of((key, value, 0.7, "vision")), {}, "")
    assert m.applies is applies
    if applies:
        assert m.reason == f"Based on {rule['field']} analysis"


def test_scope_clash_discards_recommendation(signals_of):
    scope = ServiceScope(name="Rust removal", scope_includes=["metal prep"])
    m = match_addon(addon(trigger_keywords=["rust"]), signals_of(), {}, "rust everywhere", scope=scope)
    assert m.applies is False


def test_scope_exclusion_discards_photo_match(signals_of):
    scope = ServiceScope(name="Fence painting", scope_excludes=["rust repair"])
    a = addon(trigger_conditions=["rust_stains"])
    m = match_addon(a, signals_of(("has_rust_stains", True, 0.8, "vision")), {}, "", scope=scope)
    assert m.applies is False


def test_scope_keyword_inside_longer_word_is_no_clash(signals_of):
    scope = ServiceScope(name="Boiler service", scope_includes=["annual boiler check"])
    a = addon(id="oil_stain_removal", name="Oil stain removal", trigger_keywords=["oil"])
    m = match_addon(a, signals_of(), {}, "oil on the driveway", scope=scope)
    assert m.applies is True


@pytest.mark.parametrize(
    "keywords, scope, clash",
    [
        (["oil"], ServiceScope(name="Boiler service"), False),
        (["oil"], ServiceScope(name="Oil tank cleaning"), True),
        (["rust"], ServiceScope(name="Fence painting", scope_excludes=["rust-proofing"]), True),
        (["rust"], ServiceScope(name="Fence painting", scope_excludes=["trust fund"]), False),
    ],
)
def test_scope_conflict_matches_whole_words(keywords, scope, clash):
    assert (scope_conflict(keywords, scope) is not None) is clash


def test_scope_does_not_block_customer_selection(signals_of):
    scope = ServiceScope(name="Rust removal")
    assert match_addon(addon(), signals_of(), {"rust_treatment": True}, "", scope=scope).applies is True


def test_searchable_text_collects_free_text_answers():
    text = build_searchable_text(
        "Front fence",
        {"extra_notes": "Don’t forget the gate", "_project_description": "Old paint", "height": "6"},
    )
    assert text == "front fence don't forget the gate old paint"


def test_cross_service_detection():
    services = [
        OtherService(id="gut", name="Gutter Cleaning", detection_keywords=["gutters", "downspout"]),
        OtherService(id="pw", name="Pressure Washing", detection_keywords=["driveway"]),
        OtherService(id="roof", name="Roof Repair", detection_keywords=["shingles"]),
    ]
    matches = detect_cross_services(
        "Also the gutters are full. Skip the driveway though.", services
    )
    assert [(m.service_id, m.reason) for m in matches] == [("gut", 'You mentioned "gutters"')]


def test_cross_service_detection_on_empty_text():
    assert detect_cross_services("", [OtherService(id="a", name="A")]) == []


def test_catalog_matching_by_name_and_alias():
    catalog = [
        ItemCatalogEntry(id="sofa", name="Sofa", price_per_unit=Decimal("45"), aliases=["couch"]),
        ItemCatalogEntry(id="mattress", name="Mattress", price_per_unit=Decimal("30")),
    ]
    detected = [
        DetectedItem("Leather couch", 1, 0.9),
        DetectedItem("mattress", 2, 0.7),
        DetectedItem("lamp", 3, 0.9),
        DetectedItem("sofa", 0, 0.9),
    ]
    matched = match_catalog_items(detected, catalog)
    assert [(m.catalog_id, m.quantity) for m in matched] == [("sofa", 1), ("mattress", 2)]
