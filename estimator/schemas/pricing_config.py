# estimator/schemas/pricing_config.py
"""
Tenant-authored pricing configuration.

Stored as JSON per service and validated here once per run. Every model is
frozen: the pipeline reads configuration, it never edits it.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class _Frozen(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


# --- quantity sources (tagged by "type") ---

class FormFieldSource(_Frozen):
    type: Literal["form_field"] = "form_field"
    field_id: str


class ConstantSource(_Frozen):
    type: Literal["constant"] = "constant"
    value: Optional[float] = None


class AISignalSource(_Frozen):
    type: Literal["ai_signal"] = "ai_signal"
    signal_key: str


QuantitySource = Annotated[
    Union[FormFieldSource, ConstantSource, AISignalSource],
    Field(discriminator="type"),
]


# --- trigger conditions (tagged by "operator") ---

class ExistenceCondition(_Frozen):
    operator: Literal["exists", "not_exists"]


class EqualityCondition(_Frozen):
    operator: Literal["equals", "not_equals"]
    value: Union[bool, int, float, str]


class NumericCondition(_Frozen):
    operator: Literal["gt", "gte", "lt", "lte"]
    value: float


class ContainsCondition(_Frozen):
    operator: Literal["contains"]
    value: str


TriggerCondition = Annotated[
    Union[ExistenceCondition, EqualityCondition, NumericCondition, ContainsCondition],
    Field(discriminator="operator"),
]


CostType = Literal["fixed", "per_unit", "per_hour"]


class WorkStep(_Frozen):
    id: str
    name: str
    cost_type: CostType
    default_cost: Decimal = Field(Decimal("0"), ge=0)
    optional: bool = False
    trigger_signal: Optional[str] = None
    trigger_condition: Optional[TriggerCondition] = None
    quantity_source: Optional[QuantitySource] = None
    unit_label: Optional[str] = None
    description: Optional[str] = None


class SignalMatch(_Frozen):
    """Legacy addon trigger on a coarse image-analysis field."""

    field: Literal["category", "materials", "complexity", "condition"]
    contains: Optional[str] = None
    equals: Optional[str] = None


class Addon(_Frozen):
    id: str
    name: str
    price: Decimal = Field(Decimal("0"), ge=0)
    description: Optional[str] = None
    trigger_keywords: List[str] = Field(default_factory=list)
    trigger_conditions: List[str] = Field(default_factory=list)
    signal_match: Optional[SignalMatch] = None


ComparisonOperator = Literal["equals", "not_equals", "contains", "gt", "gte", "lt", "lte"]


class FieldPredicate(_Frozen):
    field_id: str
    operator: ComparisonOperator = "equals"
    value: Union[bool, int, float, str, None] = None


class Multiplier(_Frozen):
    id: Optional[str] = None
    label: Optional[str] = None
    multiplier: Decimal = Field(..., gt=0)
    when: FieldPredicate


class MeasurementModel(_Frozen):
    type: Literal["per_unit", "fixed", "per_hour"] = "per_unit"
    unit: str = "item"
    unit_label: Optional[str] = None
    price_per_unit: Decimal = Field(Decimal("0"), ge=0)


class SiteVisitRules(_Frozen):
    always_recommend: bool = False
    recommend_when_confidence_below: Optional[float] = Field(None, ge=0, le=1)
    recommend_when_estimate_above: Optional[Decimal] = None


class ItemCatalogEntry(_Frozen):
    id: str
    name: str
    price_per_unit: Decimal = Field(..., ge=0)
    aliases: List[str] = Field(default_factory=list)


class PricingConfiguration(_Frozen):
    base_fee: Decimal = Field(Decimal("0"), ge=0)
    minimum_charge: Decimal = Field(Decimal("0"), ge=0)
    work_steps: List[WorkStep] = Field(default_factory=list)
    addons: List[Addon] = Field(default_factory=list)
    multipliers: List[Multiplier] = Field(default_factory=list)
    measurement_model: Optional[MeasurementModel] = None
    site_visit_rules: Optional[SiteVisitRules] = None
    item_catalog: List[ItemCatalogEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_ids(self) -> "PricingConfiguration":
        for kind, items in (("work step", self.work_steps), ("addon", self.addons)):
            seen = set()
            for item in items:
                if item.id in seen:
                    raise ValueError(f"Duplicate {kind} id: {item.id}")
                seen.add(item.id)
        return self

    @classmethod
    def empty(cls) -> "PricingConfiguration":
        """Zero-valued configuration used when a service has no pricing rules."""
        return cls()


FallbackMode = Literal["require_review", "recommend_site_visit", "request_more_info", "show_range"]


class FallbackPolicyConfig(_Frozen):
    low_confidence_mode: FallbackMode = "show_range"
    confidence_threshold: float = Field(0.7, ge=0, le=1)
    high_value_threshold: Optional[Decimal] = None
