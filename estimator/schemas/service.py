# estimator/schemas/service.py
from __future__ import annotations

from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from estimator.schemas.pricing_config import PricingConfiguration


class WidgetField(BaseModel):
    """A question on the customer-facing quote form."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    field_id: str
    label: str = ""
    type: str = "text"
    maps_to_signal: Optional[str] = None


SignalType = Literal["number", "boolean", "string", "enum"]


class ExpectedSignal(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    signal_key: str
    type: SignalType = "string"
    description: Optional[str] = None
    possible_values: List[str] = Field(default_factory=list)


class FormAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    field_id: str
    value: Any = None


class ServiceScope(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    scope_includes: List[str] = Field(default_factory=list)
    scope_excludes: List[str] = Field(default_factory=list)


class OtherService(BaseModel):
    """Another service of the same tenant, candidate for cross-service suggestions."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    detection_keywords: List[str] = Field(default_factory=list)
    pricing: Optional[PricingConfiguration] = None


def answers_by_field(answers: List[FormAnswer]) -> dict:
    return {a.field_id: a.value for a in answers}
