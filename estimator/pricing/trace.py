# estimator/pricing/trace.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from estimator.services.tax import qmoney

TRACE_CONFIG_VERSION = "v1"


class TraceKind(str, Enum):
    BASE_FEE = "base_fee"
    WORK_STEP = "work_step"
    INVENTORY = "inventory"
    MEASUREMENT = "measurement"
    ADDON = "addon"
    MULTIPLIER = "multiplier"
    MINIMUM = "minimum"
    TAX = "tax"


def _validate_description(description: str) -> str:
    if not isinstance(description, str):
        raise TypeError("trace description must be str")
    # single line keeps it render-safe for dashboard and mail
    d = " ".join(description.split())
    if not d:
        raise ValueError("trace description must be non-empty")
    return d


@dataclass(frozen=True)
class TraceStep:
    type: TraceKind
    description: str
    calculation: str
    amount: Decimal
    running_total: Decimal
    id: Optional[str] = None
    signals_used: Tuple[Tuple[str, Any], ...] = ()
    quantity_source: Optional[str] = None
    quantity_trusted: Optional[bool] = None
    legacy: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "type": self.type.value,
            "id": self.id,
            "description": self.description,
            "signals_used": [{"key": k, "value": v} for k, v in self.signals_used],
            "calculation": self.calculation,
            "amount": str(self.amount),
            "running_total": str(self.running_total),
        }
        if self.quantity_source is not None:
            out["quantity_source"] = self.quantity_source
            out["quantity_trusted"] = self.quantity_trusted
        if self.legacy:
            out["legacy"] = True
        return out


@dataclass(frozen=True)
class TraceSummary:
    base_fee: Decimal
    work_steps_total: Decimal
    inventory_total: Decimal
    measurement_total: Decimal
    addons_total: Decimal
    multiplier_adjustment: Decimal
    minimum_applied: bool
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    calculated_at: str
    config_version: str = TRACE_CONFIG_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_fee": str(self.base_fee),
            "work_steps_total": str(self.work_steps_total),
            "inventory_total": str(self.inventory_total),
            "measurement_total": str(self.measurement_total),
            "addons_total": str(self.addons_total),
            "multiplier_adjustment": str(self.multiplier_adjustment),
            "minimum_applied": self.minimum_applied,
            "subtotal": str(self.subtotal),
            "tax_amount": str(self.tax_amount),
            "total": str(self.total),
            "calculated_at": self.calculated_at,
            "config_version": self.config_version,
        }


@dataclass
class PricingTrace:
    """
    Append-only record of every pricing stage.

    Entries carry cents-rounded amounts and the running total after the entry,
    so the final total can be re-derived from the trace alone. Once frozen the
    trace refuses further writes.
    """

    _steps: List[TraceStep] = field(default_factory=list)
    _running: Decimal = Decimal("0.00")
    _frozen: bool = False
    summary: Optional[TraceSummary] = None

    @property
    def steps(self) -> List[TraceStep]:
        return list(self._steps)

    @property
    def running_total(self) -> Decimal:
        return self._running

    def __iter__(self) -> Iterator[TraceStep]:
        return iter(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    def of_type(self, kind: TraceKind) -> List[TraceStep]:
        return [s for s in self._steps if s.type == kind]

    def stage_total(self, kind: TraceKind) -> Decimal:
        return qmoney(sum((s.amount for s in self.of_type(kind)), Decimal("0")))

    def add(
        self,
        kind: TraceKind,
        description: str,
        calculation: str,
        amount: Decimal,
        *,
        id: Optional[str] = None,
        signals_used: Tuple[Tuple[str, Any], ...] = (),
        quantity_source: Optional[str] = None,
        quantity_trusted: Optional[bool] = None,
        legacy: bool = False,
    ) -> TraceStep:
        if self._frozen:
            raise RuntimeError("pricing trace is frozen")
        amt = qmoney(amount)
        self._running = qmoney(self._running + amt)
        step = TraceStep(
            type=kind,
            id=id,
            description=_validate_description(description),
            signals_used=tuple(signals_used),
            calculation=calculation,
            amount=amt,
            running_total=self._running,
            quantity_source=quantity_source,
            quantity_trusted=quantity_trusted,
            legacy=legacy,
        )
        self._steps.append(step)
        return step

    def freeze(self, *, tax_amount: Decimal, subtotal: Decimal, now: Optional[datetime] = None) -> TraceSummary:
        if self._frozen:
            raise RuntimeError("pricing trace is frozen")
        now = now or datetime.now(timezone.utc)
        minimum = self.of_type(TraceKind.MINIMUM)
        self.summary = TraceSummary(
            base_fee=self.stage_total(TraceKind.BASE_FEE),
            work_steps_total=self.stage_total(TraceKind.WORK_STEP),
            inventory_total=self.stage_total(TraceKind.INVENTORY),
            measurement_total=self.stage_total(TraceKind.MEASUREMENT),
            addons_total=self.stage_total(TraceKind.ADDON),
            multiplier_adjustment=self.stage_total(TraceKind.MULTIPLIER),
            minimum_applied=bool(minimum),
            subtotal=qmoney(subtotal),
            tax_amount=qmoney(tax_amount),
            total=self._running,
            calculated_at=now.isoformat(),
        )
        self._frozen = True
        return self.summary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "steps": [s.to_dict() for s in self._steps],
            "summary": self.summary.to_dict() if self.summary else None,
        }
