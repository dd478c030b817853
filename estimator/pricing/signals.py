# estimator/pricing/signals.py
from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterator, List, Literal, Optional, Union

SignalSource = Literal["form", "vision", "text", "inferred"]
SignalValue = Union[str, float, int, bool]

TRUTHY_STRINGS = frozenset({"true", "yes", "1", "on"})

_GROUPED_NUMBER = re.compile(r"^-?\d{1,3}(,\d{3})+(\.\d+)?$")
_LEADING_NUMBER = re.compile(r"^-?\d+(\.\d+)?")


def clamp_confidence(value: Any, default: float = 0.5) -> float:
    try:
        c = float(value)
    except (TypeError, ValueError):
        return default
    if c != c:  # NaN
        return default
    return max(0.0, min(1.0, c))


def _parse_number_string(s: str) -> Optional[float]:
    s = s.strip()
    if not s:
        return None
    if _GROUPED_NUMBER.match(s):
        return float(s.replace(",", ""))
    if "," in s:
        parts = [_parse_number_string(p) for p in s.split(",")]
        nums = [p for p in parts if p is not None]
        return sum(nums) if nums else None
    m = _LEADING_NUMBER.match(s)
    return float(m.group(0)) if m else None


def coerce_number(value: Any) -> Optional[float]:
    """
    Best-effort numeric reading of an answer or signal value.

    "2,400" is one number; "130, 95" and lists are summed; booleans are not numbers.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if value == value else None
    if isinstance(value, (list, tuple)):
        nums = [n for n in (coerce_number(v) for v in value) if n is not None]
        return sum(nums) if nums else None
    if isinstance(value, str):
        return _parse_number_string(value)
    return None


def is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_STRINGS
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    return value is not None


@dataclass(frozen=True)
class Signal:
    key: str
    value: SignalValue
    confidence: float
    source: SignalSource
    evidence: Optional[str] = None
    override_reason: Optional[str] = None

    @property
    def numeric(self) -> Optional[float]:
        return coerce_number(self.value)


@dataclass(frozen=True)
class SignalConflict:
    key: str
    form_value: Any
    vision_value: Any
    resolved_source: SignalSource
    resolution: str
    material: bool = True


@dataclass
class FusedSignals:
    """Canonical, conflict-annotated signal set for one run. One signal per key."""

    signals: Dict[str, Signal] = field(default_factory=dict)
    conflicts: List[SignalConflict] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    excluded_keys: List[str] = field(default_factory=list)
    legacy_confidence: Optional[float] = None

    def __contains__(self, key: str) -> bool:
        return key in self.signals

    def __iter__(self) -> Iterator[Signal]:
        return iter(self.signals.values())

    def __len__(self) -> int:
        return len(self.signals)

    def get(self, key: str) -> Optional[Signal]:
        return self.signals.get(key)

    def value(self, key: str, default: Any = None) -> Any:
        s = self.signals.get(key)
        return s.value if s is not None else default

    def numeric(self, key: str) -> Optional[float]:
        s = self.signals.get(key)
        return s.numeric if s is not None else None

    @property
    def overall_confidence(self) -> float:
        if self.signals:
            total = sum(s.confidence for s in self.signals.values())
            return total / len(self.signals)
        if self.legacy_confidence is not None:
            return self.legacy_confidence
        return 0.0

    def snapshot(self) -> Dict[str, Any]:
        return {
            "signals": [asdict(s) for s in self.signals.values()],
            "conflicts": [asdict(c) for c in self.conflicts],
            "notes": list(self.notes),
            "excluded_keys": list(self.excluded_keys),
            "overall_confidence": round(self.overall_confidence, 4),
        }
