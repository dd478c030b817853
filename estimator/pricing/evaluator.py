# estimator/pricing/evaluator.py
"""
Deterministic pricing evaluation.

Stage order is fixed: base fee, work steps, inventory, measurement, addons,
multipliers (then the complexity multiplier), minimum charge, tax. Every
stage writes cents-rounded entries into the PricingTrace; the running total
of the trace is the price.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

import structlog

from estimator.pricing.matching import MatchedItem, match_addon
from estimator.pricing.resolver import resolve_step
from estimator.pricing.signals import FusedSignals, coerce_number, is_truthy
from estimator.pricing.trace import PricingTrace, TraceKind, TraceSummary
from estimator.schemas.pricing_config import FieldPredicate, PricingConfiguration
from estimator.schemas.service import OtherService, ServiceScope
from estimator.services.tax import D, TaxConfig, calc_tax, format_money, format_number, qmoney

logger = structlog.get_logger(__name__)

ZERO = Decimal("0.00")

UNIT_LABELS = {
    "sqft": "sqft",
    "sqm": "sqm",
    "room": "rooms",
    "item": "items",
    "hour": "hours",
    "linear_ft": "linear ft",
    "linear_m": "linear m",
}

COMPLEXITY_MULTIPLIERS: Dict[str, Tuple[Decimal, str]] = {
    "low": (Decimal("0.9"), "Simple job discount"),
    "medium": (Decimal("1.0"), "Standard complexity"),
    "high": (Decimal("1.25"), "High complexity"),
}

ESTIMATED_ITEM_CONFIDENCE = 0.8
CROSS_SERVICE_ESTIMATE_CONFIDENCE = 0.8
MULTIPLIER_LABEL_VALUE_MAX = 40


@dataclass(frozen=True)
class JobData:
    """Quantities and items the evaluator needs beyond signals and answers."""

    form_quantity: Optional[float] = None
    customer_stated_quantity: Optional[float] = None
    estimated_quantity: Optional[float] = None
    estimated_is_estimate: bool = True
    matched_items: Tuple[MatchedItem, ...] = ()


@dataclass(frozen=True)
class AddonContext:
    free_text: str = ""
    already_detected_ids: Tuple[str, ...] = ()
    scope: Optional[ServiceScope] = None


@dataclass(frozen=True)
class BreakdownLine:
    label: str
    amount: Decimal
    auto_recommended: bool = False
    recommendation_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"label": self.label, "amount": str(self.amount)}
        if self.auto_recommended:
            out["auto_recommended"] = True
            out["recommendation_reason"] = self.recommendation_reason
        return out


@dataclass(frozen=True)
class RecommendedAddon:
    id: str
    name: str
    price: Decimal
    reason: Optional[str]
    source: str


@dataclass
class PricingResult:
    currency: str
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    breakdown: List[BreakdownLine] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    recommended_addons: List[RecommendedAddon] = field(default_factory=list)
    tax_label: Optional[str] = None
    tax_rate: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currency": self.currency,
            "subtotal": str(self.subtotal),
            "tax_label": self.tax_label,
            "tax_rate": str(self.tax_rate) if self.tax_rate is not None else None,
            "tax_amount": str(self.tax_amount),
            "total": str(self.total),
            "breakdown": [line.to_dict() for line in self.breakdown],
            "notes": list(self.notes),
            "recommended_addons": [
                {"id": a.id, "name": a.name, "price": str(a.price), "reason": a.reason, "source": a.source}
                for a in self.recommended_addons
            ],
        }


@dataclass(frozen=True)
class Evaluation:
    price: PricingResult
    trace: PricingTrace


def _singular(unit: str) -> str:
    if unit.endswith("s") and len(unit) > 1:
        return unit[:-1]
    return unit


def _normalize_choice(s: str) -> str:
    s = s.lower().replace("_", " ")
    s = re.sub(r"[()<>]", "", s)
    return re.sub(r"\s+", " ", s).strip()


def _loose_equals(answer: Any, expected: Any) -> bool:
    if isinstance(answer, (list, tuple)):
        return any(str(a).strip().lower() == str(expected).strip().lower() for a in answer)
    if isinstance(answer, bool):
        return answer == (expected if isinstance(expected, bool) else is_truthy(str(expected)))
    if isinstance(expected, bool):
        return is_truthy(answer) == expected
    if isinstance(answer, (int, float)):
        n = coerce_number(expected)
        return n is not None and float(answer) == n
    a, e = str(answer).strip().lower(), str(expected).strip().lower()
    return a == e or _normalize_choice(a) == _normalize_choice(e)


def predicate_matches(predicate: FieldPredicate, answer: Any) -> bool:
    """Field-comparison predicate of a multiplier, evaluated against one form answer."""
    if answer is None or answer == "":
        return False
    op = predicate.operator
    if op == "equals":
        return _loose_equals(answer, predicate.value)
    if op == "not_equals":
        return not _loose_equals(answer, predicate.value)
    if op == "contains":
        needle = str(predicate.value).lower()
        if isinstance(answer, (list, tuple)):
            return any(needle in str(a).lower() for a in answer)
        return needle in str(answer).lower()

    a, e = coerce_number(answer), coerce_number(predicate.value)
    if a is None or e is None:
        return False
    return {"gt": a > e, "gte": a >= e, "lt": a < e, "lte": a <= e}[op]


class PricingEvaluator:
    """One evaluation run. Not reusable: build a new one per quote."""

    def __init__(
        self,
        config: PricingConfiguration,
        signals: FusedSignals,
        answers: Mapping[str, Any],
        job: JobData,
        tax: TaxConfig,
        currency: str,
        addon_context: Optional[AddonContext] = None,
    ):
        self.config = config
        self.signals = signals
        self.answers = answers
        self.job = job
        self.tax = tax
        self.currency = currency
        self.addon_context = addon_context or AddonContext()

        self.trace = PricingTrace()
        self.breakdown: List[BreakdownLine] = []
        self.notes: List[str] = []
        self.recommended: List[RecommendedAddon] = []
        self.tax_amount = ZERO

    def money(self, amount: Any) -> str:
        return format_money(amount, self.currency)

    # --- stages ---

    def base_fee(self) -> None:
        fee = qmoney(self.config.base_fee)
        if fee > 0:
            self.trace.add(TraceKind.BASE_FEE, "Base fee", self.money(fee), fee)
            self.breakdown.append(BreakdownLine("Base fee", fee))

    def work_steps(self) -> None:
        for step in self.config.work_steps:
            res = resolve_step(step, self.signals, self.answers)
            if not res.triggered:
                continue
            self.notes.extend(n for n in res.notes if n not in self.notes)

            cost = D(step.default_cost)
            qty = D(res.quantity)
            if step.cost_type == "fixed":
                amount = qmoney(cost)
                calculation = f"Fixed cost {self.money(amount)}"
            elif step.cost_type == "per_unit":
                amount = qmoney(qty * cost)
                unit = step.unit_label or "units"
                calculation = (
                    f"{format_number(qty)} {unit} × {self.money(cost)}/{_singular(unit)}"
                    f" = {self.money(amount)}"
                )
            else:
                amount = qmoney(qty * cost)
                calculation = (
                    f"{format_number(qty)} hours × {self.money(cost)}/hour = {self.money(amount)}"
                )

            if amount <= 0:
                logger.debug("work_step_zero", step_id=step.id, quantity=res.quantity)
                continue

            self.trace.add(
                TraceKind.WORK_STEP,
                step.name,
                calculation,
                amount,
                id=step.id,
                signals_used=res.signals_used,
                quantity_source=res.source,
                quantity_trusted=res.trusted,
                legacy=res.legacy,
            )
            self.breakdown.append(BreakdownLine(step.name, amount))

    def inventory(self) -> None:
        items = self.job.matched_items
        for item in items:
            qty = D(item.quantity)
            price = D(item.price_per_unit)
            amount = qmoney(qty * price)
            if amount <= 0:
                continue
            label = f"{item.name} ×{format_number(qty)}"
            self.trace.add(
                TraceKind.INVENTORY,
                label,
                f"{format_number(qty)} × {self.money(price)} = {self.money(amount)}",
                amount,
                id=item.catalog_id,
                signals_used=((f"item:{item.catalog_id}", item.quantity),),
            )
            self.breakdown.append(BreakdownLine(label, amount))
        if any(i.confidence < ESTIMATED_ITEM_CONFIDENCE for i in items):
            self.notes.append("Some item quantities are estimated from photos")

    def measurement(self) -> None:
        model = self.config.measurement_model
        if model is None or model.type != "per_unit" or model.price_per_unit <= 0:
            return

        unit_label = model.unit_label or UNIT_LABELS.get(model.unit, model.unit)
        job = self.job
        stated, form_qty, estimated = (
            job.customer_stated_quantity,
            job.form_quantity,
            job.estimated_quantity,
        )

        qty: Optional[float] = None
        source = ""
        if stated and stated > 0:
            qty, source = stated, "customer_stated"
            if estimated and estimated > 0 and estimated != stated:
                self.notes.append(
                    f"Customer mentioned {format_number(stated)} {unit_label}, photos show "
                    f"{format_number(estimated)} - using customer's count"
                )
        elif form_qty and form_qty > 0:
            qty, source = form_qty, "form"
        elif estimated and estimated > 0:
            qty, source = estimated, "vision"
            if job.estimated_is_estimate:
                self.notes.append("Quantity is estimated from photos")

        if qty is None:
            self.notes.append("Per-unit pricing requires quantity - using base fee only")
            return

        price = D(model.price_per_unit)
        amount = qmoney(D(qty) * price)
        label = f"{format_number(qty)} {unit_label} @ {self.money(price)}/{model.unit}"
        self.trace.add(
            TraceKind.MEASUREMENT,
            label,
            f"{format_number(qty)} × {self.money(price)} = {self.money(amount)}",
            amount,
            signals_used=((f"quantity:{source}", qty),),
            quantity_source=source,
            quantity_trusted=source != "vision",
        )
        self.breakdown.append(BreakdownLine(label, amount))

    def addons(self) -> None:
        ctx = self.addon_context
        for addon in self.config.addons:
            match = match_addon(
                addon,
                self.signals,
                self.answers,
                ctx.free_text,
                ctx.already_detected_ids,
                ctx.scope,
            )
            if not match.applies:
                continue
            amount = qmoney(addon.price)
            if amount <= 0:
                continue
            calculation = self.money(amount)
            if match.reason:
                calculation = f"{calculation} ({match.reason})"
            self.trace.add(TraceKind.ADDON, addon.name, calculation, amount, id=addon.id)
            self.breakdown.append(
                BreakdownLine(
                    addon.name,
                    amount,
                    auto_recommended=match.auto_recommended,
                    recommendation_reason=match.reason if match.auto_recommended else None,
                )
            )
            if match.auto_recommended:
                self.recommended.append(
                    RecommendedAddon(addon.id, addon.name, amount, match.reason, match.source)
                )

    def _apply_multiplier(
        self,
        factor: Decimal,
        label: str,
        *,
        id: Optional[str] = None,
        signals_used: Tuple[Tuple[str, Any], ...] = (),
    ) -> None:
        before = self.trace.running_total
        adjustment = qmoney(before * (factor - 1))
        if adjustment == 0:
            return
        step = self.trace.add(
            TraceKind.MULTIPLIER,
            label,
            f"{self.money(before)} × {format_number(factor)} = {self.money(before + adjustment)}",
            adjustment,
            id=id,
            signals_used=signals_used,
        )
        self.breakdown.append(BreakdownLine(step.description, adjustment))

    def multipliers(self) -> None:
        for mult in self.config.multipliers:
            answer = self.answers.get(mult.when.field_id)
            if not predicate_matches(mult.when, answer):
                continue
            label = mult.label or self._multiplier_label(mult.when.field_id, answer, mult.multiplier)
            self._apply_multiplier(
                D(mult.multiplier),
                label,
                id=mult.id,
                signals_used=((mult.when.field_id, answer),),
            )

        level = self.signals.value("complexity_level")
        if isinstance(level, str) and level.lower() in COMPLEXITY_MULTIPLIERS:
            factor, label = COMPLEXITY_MULTIPLIERS[level.lower()]
            self._apply_multiplier(
                factor, label, id="complexity", signals_used=(("complexity_level", level),)
            )

    @staticmethod
    def _multiplier_label(field_id: str, answer: Any, factor: Decimal) -> str:
        value = ", ".join(map(str, answer)) if isinstance(answer, (list, tuple)) else str(answer)
        value = " ".join(value.replace("_", " ").split())
        if len(value) > MULTIPLIER_LABEL_VALUE_MAX:
            value = value[: MULTIPLIER_LABEL_VALUE_MAX - 3].rstrip() + "..."
        label = f"{value[:1].upper()}{value[1:]} {field_id.replace('_', ' ').lower()}"
        if factor < 1:
            label += " discount"
        return label

    def minimum_charge(self) -> None:
        minimum = qmoney(self.config.minimum_charge)
        subtotal = self.trace.running_total
        if minimum <= 0 or subtotal >= minimum:
            return
        diff = minimum - subtotal
        self.trace.add(
            TraceKind.MINIMUM,
            "Minimum charge",
            f"{self.money(minimum)} minimum - {self.money(subtotal)} calculated = {self.money(diff)}",
            diff,
        )
        # itemized lines no longer describe the charged amount
        self.breakdown = [BreakdownLine("Minimum charge", minimum)]
        self.notes.append(f"Minimum charge of {self.money(minimum)} applied")

    def apply_tax(self) -> None:
        if not self.tax.applies:
            return
        subtotal = self.trace.running_total
        tb = calc_tax(subtotal, self.tax.rate)
        self.tax_amount = tb.tax_amount
        self.trace.add(
            TraceKind.TAX,
            self.tax.label or "Tax",
            f"{self.money(subtotal)} × {format_number(self.tax.rate)}% = {self.money(tb.tax_amount)}",
            tb.tax_amount,
        )

    # --- driver ---

    def _finish(self, now: Optional[datetime]) -> Evaluation:
        subtotal = qmoney(self.trace.running_total - self.tax_amount)
        summary: TraceSummary = self.trace.freeze(tax_amount=self.tax_amount, subtotal=subtotal, now=now)
        price = PricingResult(
            currency=self.currency,
            subtotal=subtotal,
            tax_amount=self.tax_amount,
            total=summary.total,
            breakdown=list(self.breakdown),
            notes=list(self.notes),
            recommended_addons=list(self.recommended),
            tax_label=(self.tax.label or "Tax") if self.tax.applies else None,
            tax_rate=self.tax.rate if self.tax.applies else None,
        )
        logger.info(
            "pricing_evaluated",
            subtotal=str(subtotal),
            tax=str(self.tax_amount),
            total=str(summary.total),
            entries=len(self.trace),
            minimum_applied=summary.minimum_applied,
        )
        return Evaluation(price=price, trace=self.trace)

    def run(self, now: Optional[datetime] = None) -> Evaluation:
        self.base_fee()
        self.work_steps()
        self.inventory()
        self.measurement()
        self.addons()
        self.multipliers()
        self.minimum_charge()
        self.apply_tax()
        self._warn_unused_numeric_answers()
        return self._finish(now)

    def run_basic(self, now: Optional[datetime] = None) -> Evaluation:
        """Base fee, measurement, minimum and tax only (cross-service estimates)."""
        self.base_fee()
        self.measurement()
        self.minimum_charge()
        self.apply_tax()
        return self._finish(now)

    def _warn_unused_numeric_answers(self) -> None:
        referenced = set()
        for step in self.config.work_steps:
            src = step.quantity_source
            if src is not None and src.type == "form_field":
                referenced.add(src.field_id)
            if step.trigger_signal:
                referenced.add(step.trigger_signal)
        referenced.update(m.when.field_id for m in self.config.multipliers)
        for field_id, value in self.answers.items():
            if field_id.startswith("_") or field_id in referenced or isinstance(value, bool):
                continue
            if isinstance(value, (int, float)):
                logger.warning("numeric_answer_unused", field_id=field_id, value=value)


def evaluate(
    config: PricingConfiguration,
    signals: FusedSignals,
    answers: Mapping[str, Any],
    job: JobData,
    tax: TaxConfig,
    currency: str,
    addon_context: Optional[AddonContext] = None,
    now: Optional[datetime] = None,
) -> Evaluation:
    return PricingEvaluator(config, signals, answers, job, tax, currency, addon_context).run(now)


@dataclass(frozen=True)
class CrossServiceEstimate:
    service_id: str
    service_name: str
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    is_estimate: bool
    note: str
    breakdown: Tuple[BreakdownLine, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service_id": self.service_id,
            "service_name": self.service_name,
            "subtotal": str(self.subtotal),
            "tax_amount": str(self.tax_amount),
            "total": str(self.total),
            "is_estimate": self.is_estimate,
            "note": self.note,
            "breakdown": [b.to_dict() for b in self.breakdown],
        }


def evaluate_cross_service(
    service: OtherService,
    confidence: float,
    estimated_quantity: Optional[float],
    tax: TaxConfig,
    currency: str,
) -> Optional[CrossServiceEstimate]:
    """Rough price for another service the customer mentioned; None when nothing to charge."""
    config = service.pricing or PricingConfiguration.empty()
    evaluator = PricingEvaluator(
        config,
        FusedSignals(),
        {},
        JobData(estimated_quantity=estimated_quantity, estimated_is_estimate=True),
        tax,
        currency,
    )
    result = evaluator.run_basic()
    if result.price.total <= 0:
        return None
    is_estimate = confidence < CROSS_SERVICE_ESTIMATE_CONFIDENCE
    note = (
        "Estimate based on your description. Final price confirmed after assessment."
        if is_estimate
        else "Based on details provided."
    )
    return CrossServiceEstimate(
        service_id=service.id,
        service_name=service.name,
        subtotal=result.price.subtotal,
        tax_amount=result.price.tax_amount,
        total=result.price.total,
        is_estimate=is_estimate,
        note=note,
        breakdown=tuple(result.price.breakdown),
    )
