# estimator/pricing/fusion.py
"""
Signal fusion: vision/inferred signals, customer form answers and phrases in
the customer's notes become one canonical signal per key.

Trust order: form answers always win. Among the other sources the higher
confidence wins. Every override is recorded as a SignalConflict.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Pattern, Sequence, Set, Tuple

import structlog

from estimator.pricing.matching import is_negated_at, normalize_text
from estimator.pricing.signals import (
    FusedSignals,
    Signal,
    SignalConflict,
    SignalValue,
    clamp_confidence,
    coerce_number,
    is_truthy,
)
from estimator.schemas.service import ExpectedSignal, FormAnswer, WidgetField

logger = structlog.get_logger(__name__)

FORM_CONFIDENCE = 1.0
TEXT_CONFIDENCE = 0.9

CONDITION_LEVELS: Dict[str, int] = {
    "excellent": 4, "new": 4, "like new": 4, "perfect": 4,
    "good": 3, "fine": 3, "okay": 3, "ok": 3, "decent": 3,
    "fair": 2, "average": 2, "moderate": 2, "used": 2,
    "poor": 1, "bad": 1, "damaged": 1, "worn": 1, "deteriorated": 1, "terrible": 1,
}
CONDITION_KEY_HINTS = ("condition", "state", "quality")
CONDITION_LEVEL_GAP = 2
NUMERIC_RELATIVE_GAP = 0.15

AMBIGUOUS_VALUES = frozenset({
    "maybe", "possibly", "perhaps", "tbd", "not sure", "unsure", "idk", "don't know", "dont know",
})

# canonical key -> form field fragments that mean the same thing
SEMANTIC_ALIASES: Dict[str, Tuple[str, ...]] = {
    "condition_rating": ("condition", "state", "quality"),
    "item_count": ("count", "quantity", "number_of_items"),
    "surface_area": ("area", "sqft", "square_footage", "square_feet"),
}

BOOLEAN_WIDGETS = frozenset({"checkbox", "boolean", "toggle", "switch"})
NUMBER_WIDGETS = frozenset({"number", "range", "slider"})

_NUMERIC_TEXT = re.compile(r"^-?\d[\d,]*(\.\d+)?$")


@dataclass(frozen=True)
class TextSignalRule:
    """Phrase in the customer's own words implying a signal value."""

    pattern: Pattern[str]
    key: str
    value: SignalValue


TEXT_SIGNAL_RULES: Tuple[TextSignalRule, ...] = (
    TextSignalRule(re.compile(r"\b(?:easy|good|clear) access\b"), "access_difficulty", "easy"),
    TextSignalRule(re.compile(r"\bground floor\b"), "access_difficulty", "easy"),
    TextSignalRule(re.compile(r"\b(?:difficult|hard|tight|narrow|limited) access\b"), "access_difficulty", "difficult"),
    TextSignalRule(re.compile(r"\bno parking\b"), "access_difficulty", "difficult"),
    TextSignalRule(re.compile(r"\bsteep (?:stairs|staircase|driveway|roof)\b"), "access_difficulty", "difficult"),
)


def normalize_key(key: str) -> str:
    return re.sub(r"[\s_\-]+", "", key.lower())


def key_tokens(key: str) -> List[str]:
    return [t for t in re.split(r"[\s_\-]+", key.lower()) if t]


def _has_token_run(tokens: Sequence[str], run: Sequence[str]) -> bool:
    """Whole-word match: `run` appears as consecutive tokens of `tokens`."""
    n = len(run)
    return n > 0 and any(list(tokens[i:i + n]) == list(run) for i in range(len(tokens) - n + 1))


def _singular_plural(key: str) -> List[str]:
    k = normalize_key(key)
    variants = [k + "s", k + "es"]
    if k.endswith("ies"):
        variants.append(k[:-3] + "y")
    if k.endswith("es"):
        variants.append(k[:-2])
    if k.endswith("s"):
        variants.append(k[:-1])
    if k.endswith("y"):
        variants.append(k[:-1] + "ies")
    return variants


def resolve_signal_key(
    field_id: str,
    widget: Optional[WidgetField],
    known_keys: Iterable[str],
) -> str:
    """Canonical signal key for a form field."""
    if widget is not None and widget.maps_to_signal:
        return widget.maps_to_signal

    known = list(known_keys)
    if field_id in known:
        return field_id

    normalized = {normalize_key(k): k for k in known}
    norm = normalize_key(field_id)
    if norm in normalized:
        return normalized[norm]

    for variant in _singular_plural(field_id):
        if variant in normalized:
            return normalized[variant]

    tokens = key_tokens(field_id)
    for canonical, fragments in SEMANTIC_ALIASES.items():
        if canonical in known and any(_has_token_run(tokens, key_tokens(f)) for f in fragments):
            return canonical

    return field_id


def condition_level(value: Any) -> Optional[int]:
    if not isinstance(value, str):
        return None
    v = value.strip().lower()
    if v in CONDITION_LEVELS:
        return CONDITION_LEVELS[v]
    for term in sorted(CONDITION_LEVELS, key=len, reverse=True):
        if re.search(rf"\b{re.escape(term)}\b", v):
            return CONDITION_LEVELS[term]
    return None


def is_condition_key(key: str) -> bool:
    k = key.lower()
    return any(h in k for h in CONDITION_KEY_HINTS)


def is_material_disagreement(key: str, new: Any, old: Any) -> bool:
    """Category-specific test for whether two values really disagree."""
    if is_condition_key(key):
        a, b = condition_level(new), condition_level(old)
        if a is not None and b is not None:
            return abs(a - b) >= CONDITION_LEVEL_GAP

    numeric_types = (int, float)
    if (
        isinstance(new, numeric_types) and not isinstance(new, bool)
        and isinstance(old, numeric_types) and not isinstance(old, bool)
    ):
        base = max(abs(new), abs(old))
        if base == 0:
            return False
        return abs(new - old) / base > NUMERIC_RELATIVE_GAP

    return str(new).strip().lower() != str(old).strip().lower()


def is_ambiguous(value: Any) -> bool:
    return isinstance(value, str) and value.strip().lower() in AMBIGUOUS_VALUES


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple)):
        return len(value) == 0
    return False


def _tidy_number(n: Optional[float]) -> Optional[SignalValue]:
    if n is None:
        return None
    return int(n) if float(n).is_integer() else n


def _as_text(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value).strip()


def typed_value(
    raw: Any,
    expected: Optional[ExpectedSignal] = None,
    widget: Optional[WidgetField] = None,
) -> Optional[SignalValue]:
    """Coerce a form answer to the declared (or inferred) signal type."""
    declared = expected.type if expected is not None else None
    widget_type = (widget.type if widget is not None else "").lower()

    if declared == "number" or (declared is None and widget_type in NUMBER_WIDGETS):
        return _tidy_number(coerce_number(raw))
    if declared == "boolean" or (declared is None and widget_type in BOOLEAN_WIDGETS):
        return is_truthy(raw)
    if declared in ("string", "enum"):
        return _as_text(raw)

    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return _tidy_number(float(raw))
    if isinstance(raw, (list, tuple)):
        nums = [coerce_number(v) for v in raw]
        if nums and all(n is not None for n in nums):
            return _tidy_number(sum(nums))
        return _as_text(raw)
    if isinstance(raw, str):
        s = raw.strip()
        lowered = s.lower()
        if lowered in ("true", "yes"):
            return True
        if lowered in ("false", "no"):
            return False
        compact = re.sub(r"\s*,\s*", ",", s)
        if _NUMERIC_TEXT.match(compact):
            return _tidy_number(coerce_number(compact))
        return s
    return _as_text(raw)


def _record_vision(fused: FusedSignals, raw: Signal) -> None:
    source = raw.source if raw.source in ("vision", "inferred") else "vision"
    signal = Signal(
        key=raw.key,
        value=raw.value,
        confidence=clamp_confidence(raw.confidence),
        source=source,
        evidence=raw.evidence,
    )
    if is_ambiguous(signal.value):
        fused.excluded_keys.append(signal.key)
        return
    existing = fused.signals.get(signal.key)
    if existing is None:
        fused.signals[signal.key] = signal
        return

    wins = signal.confidence > existing.confidence
    winner = signal if wins else existing
    if existing.source != signal.source and is_material_disagreement(signal.key, signal.value, existing.value):
        fused.conflicts.append(
            SignalConflict(
                key=signal.key,
                form_value=signal.value,
                vision_value=existing.value,
                resolved_source=winner.source,
                resolution=f"Higher-confidence {winner.source} value kept",
            )
        )
    if wins:
        fused.signals[signal.key] = signal


def _record_form(fused: FusedSignals, key: str, value: SignalValue, label: str) -> None:
    existing = fused.signals.get(key)
    override_reason = None
    if existing is not None and existing.source != "form":
        material = is_material_disagreement(key, value, existing.value)
        override_reason = (
            f'Overrode {existing.source} value "{existing.value}" '
            f"(confidence: {existing.confidence:.2f})"
        )
        fused.conflicts.append(
            SignalConflict(
                key=key,
                form_value=value,
                vision_value=existing.value,
                resolved_source="form",
                resolution="Customer answer takes precedence over photo analysis",
                material=material,
            )
        )
        if material and is_condition_key(key):
            fused.notes.append(
                f'Customer described condition as "{value}" but photos suggest '
                f'"{existing.value}" - using customer\'s assessment'
            )
        logger.info(
            "signal_form_override",
            key=key,
            form_value=value,
            previous_value=existing.value,
            previous_source=existing.source,
            material=material,
        )
    fused.signals[key] = Signal(
        key=key,
        value=value,
        confidence=FORM_CONFIDENCE,
        source="form",
        evidence=f"Customer-provided: {label}",
        override_reason=override_reason,
    )


def _record_text(fused: FusedSignals, rule: TextSignalRule, phrase: str) -> None:
    existing = fused.signals.get(rule.key)
    if existing is not None and existing.source in ("form", "text"):
        return
    evidence = f'Customer wrote "{phrase}"'
    if existing is None:
        fused.signals[rule.key] = Signal(rule.key, rule.value, TEXT_CONFIDENCE, "text", evidence)
        return

    material = is_material_disagreement(rule.key, rule.value, existing.value)
    text_wins = TEXT_CONFIDENCE > existing.confidence
    if material or text_wins:
        fused.conflicts.append(
            SignalConflict(
                key=rule.key,
                form_value=rule.value,
                vision_value=existing.value,
                resolved_source="text" if text_wins else existing.source,
                resolution=(
                    "Customer description preferred over lower-confidence photo analysis"
                    if text_wins
                    else "Photo analysis confidence exceeds description"
                ),
                material=material,
            )
        )
    if text_wins:
        fused.signals[rule.key] = Signal(
            rule.key,
            rule.value,
            TEXT_CONFIDENCE,
            "text",
            evidence,
            override_reason=(
                f'Overrode {existing.source} value "{existing.value}" '
                f"(confidence: {existing.confidence:.2f})"
            ),
        )


def text_signals(notes: str) -> List[Tuple[TextSignalRule, str]]:
    """Rules fired by the customer's notes, in table order, skipping negated phrases."""
    text = normalize_text(notes)
    fired: List[Tuple[TextSignalRule, str]] = []
    for rule in TEXT_SIGNAL_RULES:
        m = rule.pattern.search(text)
        if m and not is_negated_at(text, m.start()):
            fired.append((rule, m.group(0)))
    return fired


def fuse(
    vision_signals: Sequence[Signal],
    form_answers: Sequence[FormAnswer],
    widget_field_defs: Sequence[WidgetField] = (),
    expected_signal_defs: Sequence[ExpectedSignal] = (),
    customer_notes: Optional[str] = None,
    legacy_confidence: Optional[float] = None,
) -> FusedSignals:
    fused = FusedSignals(legacy_confidence=legacy_confidence)

    for raw in vision_signals:
        _record_vision(fused, raw)

    widgets: Mapping[str, WidgetField] = {w.field_id: w for w in widget_field_defs}
    expected: Mapping[str, ExpectedSignal] = {e.signal_key: e for e in expected_signal_defs}

    for answer in form_answers:
        if answer.field_id.startswith("_") or _is_empty(answer.value):
            continue
        widget = widgets.get(answer.field_id)
        known: Set[str] = set(fused.signals) | set(expected)
        key = resolve_signal_key(answer.field_id, widget, known)

        if is_ambiguous(answer.value):
            fused.excluded_keys.append(key)
            logger.info("signal_excluded_ambiguous", key=key, value=answer.value)
            continue

        value = typed_value(answer.value, expected.get(key), widget)
        if value is None:
            logger.warning("form_answer_not_coercible", field_id=answer.field_id, key=key)
            continue
        label = widget.label if widget is not None and widget.label else answer.field_id
        _record_form(fused, key, value, label)

    if customer_notes:
        for rule, phrase in text_signals(customer_notes):
            _record_text(fused, rule, phrase)

    logger.debug(
        "signals_fused",
        count=len(fused),
        conflicts=len(fused.conflicts),
        excluded=len(fused.excluded_keys),
    )
    return fused
