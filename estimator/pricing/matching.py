# estimator/pricing/matching.py
"""
Keyword, negation and condition matching for addons, cross-service
suggestions and catalog items.

Phrase handling is table driven: NEGATION_RULES void a single keyword,
GLOBAL_SUPPRESSORS void every keyword-triggered addon of the run. New
phrases are additions to these tables.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Literal, Mapping, Optional, Pattern, Sequence, Tuple

import structlog

from estimator.pricing.signals import FusedSignals, coerce_number, is_truthy
from estimator.schemas.pricing_config import Addon, ItemCatalogEntry
from estimator.schemas.service import OtherService, ServiceScope

logger = structlog.get_logger(__name__)

VOID_KEYWORD = "void_keyword"
SUPPRESS_ALL_KEYWORDS = "suppress_all_keywords"

NEGATION_WORDS: Tuple[str, ...] = (
    "no", "don't", "dont", "won't", "wont", "not",
    "without", "skip", "avoid", "exclude", "never",
)


def normalize_text(text: Optional[str]) -> str:
    return (text or "").replace("’", "'").lower()


@dataclass(frozen=True)
class NegationRule:
    """Negation word followed by at most `max_gap` words, then the keyword."""

    words: Tuple[str, ...]
    max_gap: int = 2
    effect: str = VOID_KEYWORD

    @property
    def _words_re(self) -> str:
        return "|".join(re.escape(w) for w in self.words)

    def pattern_for(self, keyword: str) -> Pattern[str]:
        return re.compile(
            rf"\b(?:{self._words_re})\s+(?:[\w'-]+\s+){{0,{self.max_gap}}}{re.escape(keyword)}\b"
        )

    def negates(self, text: str, keyword: str) -> bool:
        return self.pattern_for(keyword.lower()).search(text) is not None

    def negates_before(self, text: str, position: int) -> bool:
        tail = re.compile(rf"\b(?:{self._words_re})\s+(?:[\w'-]+\s+){{0,{self.max_gap}}}$")
        return tail.search(text[:position]) is not None


@dataclass(frozen=True)
class SuppressorRule:
    name: str
    pattern: Pattern[str]
    effect: str = SUPPRESS_ALL_KEYWORDS


NEGATION_RULES: Tuple[NegationRule, ...] = (NegationRule(NEGATION_WORDS),)

GLOBAL_SUPPRESSORS: Tuple[SuppressorRule, ...] = (
    SuppressorRule("no_extras", re.compile(r"\b(?:please )?no extras?\b")),
    SuppressorRule("dont_want_extras", re.compile(r"\bdon'?t (?:want|need|add) (?:any )?extras?\b")),
    SuppressorRule("budget", re.compile(r"\bbudget (?:only|focused|conscious)\b")),
    SuppressorRule("keep_it_simple", re.compile(r"\bkeep it (?:simple|basic|minimal)\b")),
    SuppressorRule("nothing_extra", re.compile(r"\bnothing extra\b")),
    SuppressorRule("basics_only", re.compile(r"\bjust the basics?\b")),
    SuppressorRule("no_addons", re.compile(r"\bno add[- ]?ons?\b")),
    SuppressorRule("no_additional", re.compile(r"\bno additional\b")),
)

# Words that identify what an addon does, read from its id.
ADDON_KEYWORD_VOCABULARY: Tuple[str, ...] = (
    "paint", "scratch", "dent", "rust", "polish", "wax", "seal", "buff", "clear", "coat",
)

# Legacy signal_match field -> fused signal key
SIGNAL_MATCH_FIELDS = {
    "category": "category",
    "materials": "materials",
    "complexity": "complexity_level",
    "condition": "condition_rating",
}

DESCRIPTION_FIELD_HINTS = ("description", "notes", "details")


def is_negated(text: str, keyword: str) -> bool:
    return any(rule.negates(text, keyword) for rule in NEGATION_RULES)


def is_negated_at(text: str, position: int) -> bool:
    return any(rule.negates_before(text, position) for rule in NEGATION_RULES)


def active_suppressor(text: str) -> Optional[str]:
    for rule in GLOBAL_SUPPRESSORS:
        if rule.pattern.search(text):
            return rule.name
    return None


def keyword_present(text: str, keyword: str) -> bool:
    kw = keyword.strip().lower()
    if not kw:
        return False
    return re.search(rf"\b{re.escape(kw)}\b", text) is not None


def find_keyword(text: str, keywords: Iterable[str]) -> Optional[str]:
    """First keyword present in `text` and not negated."""
    for keyword in keywords:
        kw = keyword.strip().lower()
        if not keyword_present(text, kw):
            continue
        if is_negated(text, kw):
            logger.debug("keyword_negated", keyword=kw)
            continue
        return kw
    return None


def build_searchable_text(description: Optional[str], answers: Mapping[str, Any]) -> str:
    """Project description plus free-text answers, lowercased."""
    parts: List[str] = []
    if description:
        parts.append(description)
    for field_id, value in answers.items():
        fid = field_id.lower()
        if fid == "_project_description" or any(h in fid for h in DESCRIPTION_FIELD_HINTS):
            if isinstance(value, str) and value.strip():
                parts.append(value)
    return normalize_text(" ".join(parts))


AddonSource = Literal["selection", "keyword", "image_signal", "signal_match", "none"]


@dataclass(frozen=True)
class AddonMatch:
    applies: bool
    auto_recommended: bool = False
    reason: Optional[str] = None
    source: AddonSource = "none"


NO_MATCH = AddonMatch(applies=False)


def inferred_addon_keywords(addon: Addon, matched: Optional[str] = None) -> List[str]:
    addon_id = addon.id.lower()
    words = [w for w in ADDON_KEYWORD_VOCABULARY if w in addon_id]
    if matched and matched not in words:
        words.append(matched)
    return words


def scope_conflict(keywords: Sequence[str], scope: Optional[ServiceScope]) -> Optional[str]:
    """Why an auto-recommended addon clashes with the service scope, if it does."""
    if scope is None:
        return None
    name = scope.name.lower()
    includes = [s.lower() for s in scope.scope_includes]
    excludes = [s.lower() for s in scope.scope_excludes]
    for kw in keywords:
        if keyword_present(name, kw) or any(keyword_present(s, kw) for s in includes):
            return f'"{kw}" is already part of {scope.name}'
        if any(keyword_present(s, kw) for s in excludes):
            return f'"{kw}" is excluded from {scope.name}'
    return None


def _explicitly_selected(addon: Addon, answers: Mapping[str, Any]) -> bool:
    direct = answers.get(addon.id)
    if direct is not None and (direct is True or is_truthy(direct) or direct == addon.id):
        return True
    for value in answers.values():
        if value == addon.id:
            return True
        if isinstance(value, (list, tuple)) and addon.id in value:
            return True
    return False


def _signal_field_match(addon: Addon, signals: FusedSignals) -> bool:
    rule = addon.signal_match
    if rule is None:
        return False
    raw = signals.value(SIGNAL_MATCH_FIELDS[rule.field])
    if raw is None:
        return False
    value = ", ".join(map(str, raw)) if isinstance(raw, (list, tuple)) else str(raw)
    value = value.lower()
    if rule.contains and rule.contains.lower() in value:
        return True
    if rule.equals and rule.equals.lower() == value:
        return True
    return False


def match_addon(
    addon: Addon,
    signals: FusedSignals,
    answers: Mapping[str, Any],
    free_text: str,
    already_detected_ids: Iterable[str] = (),
    scope: Optional[ServiceScope] = None,
) -> AddonMatch:
    """
    Decide whether an addon applies.

    Priority: customer selection, then keyword in free text, then a condition
    seen in photos, then the legacy signal-field rule. Auto-recommended
    matches are dropped when the addon clashes with the service scope.
    """
    if _explicitly_selected(addon, answers):
        return AddonMatch(True, False, "Selected by customer", "selection")

    text = normalize_text(free_text)
    detected = set(already_detected_ids)

    candidate: Optional[AddonMatch] = None
    matched_kw: Optional[str] = None

    if addon.id in detected:
        candidate = AddonMatch(True, True, "Detected from your description", "keyword")
    elif addon.trigger_keywords and text:
        suppressor = active_suppressor(text)
        if suppressor:
            logger.debug("addon_keywords_suppressed", addon_id=addon.id, rule=suppressor)
        else:
            matched_kw = find_keyword(text, addon.trigger_keywords)
            if matched_kw:
                candidate = AddonMatch(
                    True, True, f'Recommended based on "{matched_kw}" in your description', "keyword"
                )

    if candidate is None:
        for condition in addon.trigger_conditions:
            if is_truthy(signals.value(f"has_{condition}")):
                title = condition.replace("_", " ").title()
                candidate = AddonMatch(True, True, f"Detected in photos: {title}", "image_signal")
                break

    if candidate is None and _signal_field_match(addon, signals):
        candidate = AddonMatch(
            True, True, f"Based on {addon.signal_match.field} analysis", "signal_match"
        )

    if candidate is None:
        return NO_MATCH

    clash = scope_conflict(inferred_addon_keywords(addon, matched_kw), scope)
    if clash:
        logger.info("addon_discarded_scope", addon_id=addon.id, reason=clash)
        return NO_MATCH
    return candidate


@dataclass(frozen=True)
class CrossServiceMatch:
    service_id: str
    service_name: str
    matched_keyword: str
    reason: str


def detect_cross_services(text: str, other_services: Sequence[OtherService]) -> List[CrossServiceMatch]:
    """At most one match per other service, by name first then detection keywords."""
    text = normalize_text(text)
    if not text:
        return []
    matches: List[CrossServiceMatch] = []
    for service in other_services:
        hit = find_keyword(text, [service.name] + list(service.detection_keywords))
        if hit:
            matches.append(
                CrossServiceMatch(
                    service_id=service.id,
                    service_name=service.name,
                    matched_keyword=hit,
                    reason=f'You mentioned "{hit}"',
                )
            )
    return matches


@dataclass(frozen=True)
class DetectedItem:
    name: str
    quantity: float = 1
    confidence: float = 0.5


@dataclass(frozen=True)
class MatchedItem:
    catalog_id: str
    name: str
    quantity: float
    price_per_unit: Any
    confidence: float


def match_catalog_items(
    detected: Sequence[DetectedItem], catalog: Sequence[ItemCatalogEntry]
) -> List[MatchedItem]:
    """Match detected item names to catalog entries by name or alias (word boundaries)."""
    out: List[MatchedItem] = []
    for item in detected:
        name = normalize_text(item.name)
        qty = coerce_number(item.quantity)
        if not name or not qty or qty <= 0:
            continue
        for entry in catalog:
            terms = [entry.name] + list(entry.aliases)
            if any(keyword_present(name, t) or keyword_present(t.lower(), name) for t in terms):
                out.append(MatchedItem(entry.id, entry.name, qty, entry.price_per_unit, item.confidence))
                break
    return out
