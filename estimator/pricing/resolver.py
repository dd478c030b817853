# estimator/pricing/resolver.py
"""Decides per work step whether it activates and which quantity to bill."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Literal, Mapping, Optional, Tuple

import structlog

from estimator.pricing.signals import FusedSignals, coerce_number, is_truthy
from estimator.schemas.pricing_config import (
    AISignalSource,
    ConstantSource,
    ContainsCondition,
    EqualityCondition,
    ExistenceCondition,
    FormFieldSource,
    NumericCondition,
    TriggerCondition,
    WorkStep,
)

logger = structlog.get_logger(__name__)

QuantitySourceKind = Literal["form_field", "constant", "ai_signal", "legacy_fallback"]

LEGACY_QUANTITY_HINTS: Tuple[str, ...] = ("sqft", "area", "count", "quantity", "size", "footage")
LEGACY_HOURS_BY_COMPLEXITY = {"low": 0.5, "medium": 1.0, "high": 2.0}


@dataclass(frozen=True)
class StepResolution:
    triggered: bool
    quantity: float = 0.0
    source: QuantitySourceKind = "constant"
    trusted: bool = True
    signals_used: Tuple[Tuple[str, Any], ...] = ()
    notes: Tuple[str, ...] = ()

    @property
    def legacy(self) -> bool:
        return self.source == "legacy_fallback"


@dataclass
class _Quantity:
    value: float
    source: QuantitySourceKind
    trusted: bool
    signals_used: List[Tuple[str, Any]] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)


def _same(a: Any, b: Any) -> bool:
    na, nb = coerce_number(a), coerce_number(b)
    if na is not None and nb is not None and not isinstance(a, bool) and not isinstance(b, bool):
        return na == nb
    if isinstance(a, bool) or isinstance(b, bool):
        return is_truthy(a) == is_truthy(b)
    return str(a).strip().lower() == str(b).strip().lower()


def evaluate_condition(condition: Optional[TriggerCondition], value: Any) -> bool:
    """Evaluate a trigger condition against a (possibly absent) signal value."""
    present = value is not None and value != ""

    if condition is None:
        if isinstance(value, str):
            return present
        return present and is_truthy(value)
    if isinstance(condition, ExistenceCondition):
        return present if condition.operator == "exists" else not present
    if not present:
        return False
    if isinstance(condition, EqualityCondition):
        equal = _same(value, condition.value)
        return equal if condition.operator == "equals" else not equal
    if isinstance(condition, NumericCondition):
        n = coerce_number(value)
        if n is None or isinstance(value, bool):
            return False
        target = condition.value
        return {
            "gt": n > target,
            "gte": n >= target,
            "lt": n < target,
            "lte": n <= target,
        }[condition.operator]
    if isinstance(condition, ContainsCondition):
        return condition.value.lower() in str(value).lower()
    raise TypeError(f"Unsupported trigger condition: {condition!r}")


def _positive(n: Optional[float]) -> bool:
    return n is not None and n > 0


def _form_field_quantity(
    step: WorkStep, src: FormFieldSource, signals: FusedSignals, answers: Mapping[str, Any]
) -> _Quantity:
    raw = answers.get(src.field_id)
    n = coerce_number(raw)
    if _positive(n):
        return _Quantity(n, "form_field", True, [(src.field_id, raw)])

    signal = signals.get(src.field_id)
    if signal is not None and _positive(signal.numeric):
        return _Quantity(signal.numeric, "form_field", signal.source == "form", [(signal.key, signal.value)])

    return _Quantity(0.0, "form_field", True, notes=[f'"{step.name}" skipped - "{src.field_id}" was not answered'])


def _ai_signal_quantity(step: WorkStep, src: AISignalSource, signals: FusedSignals) -> _Quantity:
    signal = signals.get(src.signal_key)
    n = signal.numeric if signal is not None else None
    if _positive(n):
        return _Quantity(
            n,
            "ai_signal",
            False,
            [(signal.key, signal.value)],
            [f'"{step.name}" quantity from AI signal (lower confidence)'],
        )
    return _Quantity(0.0, "ai_signal", False)


def _legacy_quantity(step: WorkStep, signals: FusedSignals) -> _Quantity:
    note = f'"{step.name}" uses legacy quantity estimation - consider configuring explicit quantity source'
    used: List[Tuple[str, Any]] = []
    qty: Optional[float] = None

    if step.cost_type == "per_hour":
        complexity = signals.value("complexity_level")
        if isinstance(complexity, str) and complexity.lower() in LEGACY_HOURS_BY_COMPLEXITY:
            qty = LEGACY_HOURS_BY_COMPLEXITY[complexity.lower()]
            used.append(("complexity_level", complexity))
    else:
        if step.trigger_signal and _positive(signals.numeric(step.trigger_signal)):
            qty = signals.numeric(step.trigger_signal)
            used.append((step.trigger_signal, signals.value(step.trigger_signal)))
        else:
            for signal in signals:
                key = signal.key.lower()
                if any(h in key for h in LEGACY_QUANTITY_HINTS) and _positive(signal.numeric):
                    qty = signal.numeric
                    used.append((signal.key, signal.value))
                    break
        if qty is None and _positive(signals.numeric("item_count")):
            qty = signals.numeric("item_count")
            used.append(("item_count", signals.value("item_count")))

    return _Quantity(qty if qty is not None else 1.0, "legacy_fallback", False, used, [note])


def _quantity(step: WorkStep, signals: FusedSignals, answers: Mapping[str, Any]) -> _Quantity:
    if step.cost_type == "fixed":
        return _Quantity(1.0, "constant", True)

    src = step.quantity_source
    if isinstance(src, FormFieldSource):
        return _form_field_quantity(step, src, signals, answers)
    if isinstance(src, ConstantSource):
        return _Quantity(src.value if src.value is not None else 1.0, "constant", True)
    if isinstance(src, AISignalSource):
        return _ai_signal_quantity(step, src, signals)
    return _legacy_quantity(step, signals)


def resolve_step(step: WorkStep, signals: FusedSignals, answers: Mapping[str, Any]) -> StepResolution:
    """
    Trigger rules:
      - non-optional steps always trigger
      - optional + trigger_signal: the condition decides (no condition = truthy value)
      - optional + quantity_source only: triggers when the quantity is > 0
    """
    trigger_used: List[Tuple[str, Any]] = []

    if step.optional:
        if step.trigger_signal:
            value = signals.value(step.trigger_signal)
            if not evaluate_condition(step.trigger_condition, value):
                logger.debug("step_not_triggered", step_id=step.id, signal=step.trigger_signal)
                return StepResolution(triggered=False)
            if value is not None:
                trigger_used.append((step.trigger_signal, value))
        elif step.quantity_source is None:
            logger.debug("step_not_triggered", step_id=step.id, reason="no_trigger")
            return StepResolution(triggered=False)

    q = _quantity(step, signals, answers)

    if step.optional and not step.trigger_signal and not _positive(q.value):
        return StepResolution(triggered=False, source=q.source, trusted=q.trusted)

    used = trigger_used + [u for u in q.signals_used if u not in trigger_used]
    return StepResolution(
        triggered=True,
        quantity=q.value,
        source=q.source,
        trusted=q.trusted,
        signals_used=tuple(used),
        notes=tuple(q.notes),
    )
