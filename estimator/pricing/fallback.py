# estimator/pricing/fallback.py
"""
Confidence & fallback policy.

`decide` works out whether the estimate is trustworthy enough (overall
confidence, low-confidence signals that pricing actually used, high value)
and hands the trigger state to the tenant's policy. Policies are small pure
classes registered by mode name.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, Type

import structlog

from estimator.pricing.signals import FusedSignals
from estimator.schemas.pricing_config import FallbackPolicyConfig, SiteVisitRules
from estimator.services.tax import D, format_money, qmoney

logger = structlog.get_logger(__name__)

STATUS_PENDING_REVIEW = "pending_review"
STATUS_SENT = "sent"

DEFAULT_MODE = "show_range"

# Keys that matter to every quote, whether or not a work step names them.
GLOBAL_REFERENCED_KEYS: FrozenSet[str] = frozenset(
    {"condition_rating", "complexity_level", "access_difficulty"}
)

RANGE_CONFIDENCE_THRESHOLD = 0.7
WIDE_RANGE_BELOW = 0.4
WIDE_RANGE_VARIANCE = Decimal("0.3")
NARROW_RANGE_VARIANCE = Decimal("0.15")


@dataclass(frozen=True)
class FallbackTrigger:
    triggered: bool
    overall_confidence: float
    low_confidence_keys: Tuple[str, ...] = ()
    high_value: bool = False
    reason: Optional[str] = None


@dataclass(frozen=True)
class PolicyOutcome:
    status_override: str
    notes: Tuple[str, ...] = ()


class FallbackPolicy:
    """Maps a trigger state to a status and customer-facing notes. No I/O."""

    mode: str = "base"

    def decide(self, trigger: FallbackTrigger) -> PolicyOutcome:
        raise NotImplementedError


policy_registry: Dict[str, Type[FallbackPolicy]] = {}


def register(policy_cls: Type[FallbackPolicy]) -> Type[FallbackPolicy]:
    """
    Decorator to register a policy by its mode.
    Fails fast on duplicate registrations.
    """
    key = getattr(policy_cls, "mode", None)
    if not key or key == "base":
        raise ValueError(f"Policy class {policy_cls.__name__} has no mode")

    if key in policy_registry and policy_registry[key] is not policy_cls:
        raise ValueError(
            f"Duplicate policy registration for mode '{key}': "
            f"{policy_registry[key].__name__} vs {policy_cls.__name__}"
        )

    policy_registry[key] = policy_cls
    return policy_cls


def get_policy(mode: Optional[str]) -> FallbackPolicy:
    key = mode or DEFAULT_MODE
    try:
        return policy_registry[key]()
    except KeyError:
        raise ValueError(f"Unknown fallback mode: {key}") from None


@register
class RequireReviewPolicy(FallbackPolicy):
    mode = "require_review"

    def decide(self, trigger: FallbackTrigger) -> PolicyOutcome:
        return PolicyOutcome(
            STATUS_PENDING_REVIEW,
            ("This estimate requires business owner review before sending.",),
        )


@register
class RecommendSiteVisitPolicy(FallbackPolicy):
    mode = "recommend_site_visit"

    def decide(self, trigger: FallbackTrigger) -> PolicyOutcome:
        return PolicyOutcome(
            STATUS_SENT,
            (
                "We recommend a site visit for a more accurate assessment.",
                "This estimate is based on limited information and actual costs may vary.",
            ),
        )


@register
class RequestMoreInfoPolicy(FallbackPolicy):
    mode = "request_more_info"

    def decide(self, trigger: FallbackTrigger) -> PolicyOutcome:
        return PolicyOutcome(
            STATUS_SENT,
            (
                "Additional information may be needed for a precise quote.",
                "Please contact us to discuss your specific requirements.",
            ),
        )


@register
class ShowRangePolicy(FallbackPolicy):
    mode = "show_range"

    def decide(self, trigger: FallbackTrigger) -> PolicyOutcome:
        return PolicyOutcome(STATUS_SENT, ("Final price will be confirmed upon assessment.",))


@dataclass(frozen=True)
class PriceRange:
    low: Decimal
    high: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {"low": str(self.low), "high": str(self.high)}


@dataclass(frozen=True)
class FallbackDecision:
    triggered: bool
    mode: str
    reason: Optional[str]
    low_confidence_signal_keys: Tuple[str, ...]
    status_override: str
    notes: Tuple[str, ...]
    overall_confidence: float
    price_range: Optional[PriceRange] = None
    site_visit_recommended: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "triggered": self.triggered,
            "mode": self.mode,
            "reason": self.reason,
            "low_confidence_signal_keys": list(self.low_confidence_signal_keys),
            "status_override": self.status_override,
            "notes": list(self.notes),
            "overall_confidence": round(self.overall_confidence, 4),
            "price_range": self.price_range.to_dict() if self.price_range else None,
            "site_visit_recommended": self.site_visit_recommended,
        }


def low_confidence_keys(
    signals: FusedSignals, threshold: float, referenced_keys: Iterable[str]
) -> Tuple[str, ...]:
    """Below-threshold signals that pricing actually depends on."""
    relevant = set(referenced_keys) | GLOBAL_REFERENCED_KEYS
    return tuple(s.key for s in signals if s.key in relevant and s.confidence < threshold)


def evaluate_trigger(
    config: FallbackPolicyConfig,
    signals: FusedSignals,
    price_total: Decimal,
    referenced_keys: Iterable[str] = (),
    currency: str = "USD",
) -> FallbackTrigger:
    overall = signals.overall_confidence
    threshold = config.confidence_threshold
    low_keys = low_confidence_keys(signals, threshold, referenced_keys)
    high_value = (
        config.high_value_threshold is not None
        and D(price_total) > D(config.high_value_threshold)
    )
    overall_low = overall < threshold

    reason: Optional[str] = None
    if low_keys and high_value:
        reason = (
            f"Low confidence signals ({', '.join(low_keys)}) and high value "
            f"({format_money(price_total, currency)})"
        )
    elif low_keys:
        reason = f"Low confidence for: {', '.join(low_keys)}"
    elif overall_low:
        reason = f"Overall confidence ({round(overall * 100)}%) below threshold"
    elif high_value:
        reason = f"Estimate exceeds {format_money(config.high_value_threshold, currency)} threshold"

    return FallbackTrigger(
        triggered=bool(low_keys) or overall_low or high_value,
        overall_confidence=overall,
        low_confidence_keys=low_keys,
        high_value=high_value,
        reason=reason,
    )


def price_range(total: Decimal, confidence: float) -> Optional[PriceRange]:
    if confidence >= RANGE_CONFIDENCE_THRESHOLD:
        return None
    variance = WIDE_RANGE_VARIANCE if confidence < WIDE_RANGE_BELOW else NARROW_RANGE_VARIANCE
    total = D(total)
    return PriceRange(low=qmoney(total * (1 - variance)), high=qmoney(total * (1 + variance)))


def site_visit_reason(
    rules: Optional[SiteVisitRules],
    confidence: float,
    total: Decimal,
    hint: Optional[str] = None,
    currency: str = "USD",
) -> Optional[str]:
    """Why a site visit is recommended, or None."""
    if rules is not None:
        if rules.always_recommend:
            return "Site visit recommended for accurate quote"
        if (
            rules.recommend_when_confidence_below is not None
            and confidence < rules.recommend_when_confidence_below
        ):
            return "Site visit recommended due to limited information"
        if (
            rules.recommend_when_estimate_above is not None
            and D(total) > D(rules.recommend_when_estimate_above)
        ):
            return (
                "Site visit recommended for jobs above "
                f"{format_money(rules.recommend_when_estimate_above, currency)}"
            )
    return hint


def decide(
    config: Optional[FallbackPolicyConfig],
    signals: FusedSignals,
    price_total: Decimal,
    referenced_keys: Iterable[str] = (),
    site_visit_rules: Optional[SiteVisitRules] = None,
    site_visit_hint: Optional[str] = None,
    currency: str = "USD",
) -> FallbackDecision:
    config = config or FallbackPolicyConfig()
    policy = get_policy(config.low_confidence_mode)
    trigger = evaluate_trigger(config, signals, price_total, referenced_keys, currency)

    notes: List[str] = []
    status = STATUS_SENT
    if trigger.triggered:
        outcome = policy.decide(trigger)
        status = outcome.status_override
        notes.extend(outcome.notes)
        logger.info(
            "fallback_triggered",
            mode=policy.mode,
            reason=trigger.reason,
            low_confidence_keys=list(trigger.low_confidence_keys),
            status=status,
        )

    rng = price_range(price_total, trigger.overall_confidence)
    if rng is not None:
        notes.append("Price shown as range due to limited information")

    visit = site_visit_reason(
        site_visit_rules, trigger.overall_confidence, price_total, site_visit_hint, currency
    )
    if visit:
        notes.append(visit)

    return FallbackDecision(
        triggered=trigger.triggered,
        mode=policy.mode,
        reason=trigger.reason,
        low_confidence_signal_keys=trigger.low_confidence_keys,
        status_override=status,
        notes=tuple(notes),
        overall_confidence=trigger.overall_confidence,
        price_range=rng,
        site_visit_recommended=visit is not None,
    )
