# estimator/services/inference.py
"""
HTTP client for the vision/text extraction service.

The service receives photo URLs plus the quote context and answers with
structured signals. Transport failures are mapped onto the extraction error
kinds; `extract_or_default` turns them into documented no-signal defaults.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional, Sequence, Union

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from estimator.core.errors import (
    ExtractionParseFailed,
    ExtractionRateLimited,
    ExtractionUnavailable,
)
from estimator.core.settings import get_settings
from estimator.pricing.matching import DetectedItem
from estimator.pricing.signals import Signal, clamp_confidence

logger = logging.getLogger(__name__)

NO_IMAGES_CONFIDENCE = 0.3
NO_IMAGES_WARNING = "No images provided - pricing based on form inputs only"
PARSE_FAILED_WARNING = "Failed to parse AI response"

DETECTABLE_CONDITIONS = frozenset({
    "oil_stains", "rust_stains", "weed_growth", "moss_growth", "mold_mildew", "graffiti",
    "chewing_gum", "paint_overspray", "concrete_damage", "wood_rot", "heavy_soiling",
    "algae_buildup", "efflorescence", "pest_damage", "water_damage", "sun_damage",
})

DIMENSION_SIGNAL_KEYS = {
    "item": "item_count",
    "items": "item_count",
    "sqft": "surface_area",
    "sqm": "surface_area",
    "m2": "surface_area",
    "linear_ft": "linear_distance",
    "linear_m": "linear_distance",
}


class ExtractedSignal(BaseModel):
    model_config = ConfigDict(extra="ignore")

    key: str
    value: Union[bool, int, float, str]
    confidence: float = 0.5
    source: Literal["vision", "inferred"] = "vision"
    evidence: Optional[str] = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> float:
        return clamp_confidence(v)


class Dimensions(BaseModel):
    model_config = ConfigDict(extra="ignore")

    value: float
    unit: str = "item"
    is_estimate: bool = True


class ExtractedItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    quantity: float = 1
    confidence: float = 0.5


class ExtractionResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    signals: List[ExtractedSignal] = Field(default_factory=list)
    overall_confidence: float = 0.0
    low_confidence_keys: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    customer_stated_quantity: Optional[float] = None
    dimensions: Optional[Dimensions] = None
    detected_items: List[ExtractedItem] = Field(default_factory=list)
    detected_addon_ids: List[str] = Field(default_factory=list)
    detected_conditions: List[str] = Field(default_factory=list)

    # coarse fields from older extraction payloads
    condition: Optional[str] = None
    complexity: Optional[Literal["low", "medium", "high"]] = None
    access: Optional[str] = None

    site_visit_recommended: bool = False
    site_visit_reason: Optional[str] = None

    @field_validator("overall_confidence", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> float:
        return clamp_confidence(v, default=0.0)

    @classmethod
    def no_images(cls) -> "ExtractionResult":
        return cls(
            overall_confidence=NO_IMAGES_CONFIDENCE,
            warnings=[NO_IMAGES_WARNING],
            site_visit_recommended=True,
            site_visit_reason="Site visit recommended - no photos were provided",
        )

    @classmethod
    def failed(cls, reason: str) -> "ExtractionResult":
        return cls(overall_confidence=0.0, warnings=[reason])

    def to_signals(self) -> List[Signal]:
        """Structured signals plus signals derived from the coarse fields."""
        out: Dict[str, Signal] = {
            s.key: Signal(s.key, s.value, s.confidence, s.source, s.evidence) for s in self.signals
        }

        def legacy(key: str, value: Any, confidence: float, evidence: str) -> None:
            if key not in out:
                out[key] = Signal(key, value, confidence, "vision", evidence)

        if self.dimensions is not None and self.dimensions.value > 0:
            key = DIMENSION_SIGNAL_KEYS.get(self.dimensions.unit.lower())
            if key:
                legacy(
                    key,
                    self.dimensions.value,
                    0.6 if self.dimensions.is_estimate else 0.8,
                    f"Measured from photos ({self.dimensions.unit})",
                )
        if self.condition:
            conf = 0.3 if self.condition.lower() == "unknown" else 0.75
            legacy("condition_rating", self.condition, conf, "Condition assessed from photos")
        if self.complexity:
            legacy("complexity_level", self.complexity, 0.7, "Complexity assessed from photos")
        if self.access:
            legacy("access_difficulty", self.access, 0.7, "Access assessed from photos")
        for condition in self.detected_conditions:
            if condition in DETECTABLE_CONDITIONS:
                legacy(f"has_{condition}", True, 0.8, f"Detected in photos: {condition}")
        return list(out.values())

    def to_detected_items(self) -> List[DetectedItem]:
        return [DetectedItem(i.name, i.quantity, clamp_confidence(i.confidence)) for i in self.detected_items]


class ExtractionContext(BaseModel):
    service_name: str
    description: Optional[str] = None
    form_answers: Dict[str, Any] = Field(default_factory=dict)
    expected_signals: List[Dict[str, Any]] = Field(default_factory=list)
    addon_ids: List[str] = Field(default_factory=list)
    catalog_item_names: List[str] = Field(default_factory=list)


class InferenceClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.inference_api_url or "").rstrip("/")
        self.api_key = api_key or settings.inference_api_key
        self.timeout = timeout if timeout is not None else settings.inference_timeout_seconds
        self.session = session or requests.Session()

    def extract(self, images: Sequence[str], context: ExtractionContext) -> ExtractionResult:
        """
        Returns an ExtractionResult.
        Raises ExtractionUnavailable / ExtractionRateLimited / ExtractionParseFailed.
        """
        if not self.base_url:
            raise ExtractionUnavailable("inference_not_configured: INFERENCE_API_URL missing")

        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {"images": list(images), "context": context.model_dump()}

        try:
            r = self.session.post(
                f"{self.base_url}/extract",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise ExtractionUnavailable(f"inference_timeout:{e}") from e
        except requests.RequestException as e:
            raise ExtractionUnavailable(f"inference_network_error:{type(e).__name__}:{e}") from e

        if r.status_code == 429:
            retry_after = r.headers.get("Retry-After")
            raise ExtractionRateLimited(
                "inference_rate_limited",
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if r.status_code >= 300:
            raise ExtractionUnavailable(
                f"inference_failed:{r.status_code}", meta={"body": r.text[:500]}
            )

        try:
            data = r.json()
        except ValueError as e:
            raise ExtractionParseFailed(PARSE_FAILED_WARNING) from e
        try:
            return ExtractionResult.model_validate(data)
        except ValidationError as e:
            raise ExtractionParseFailed(PARSE_FAILED_WARNING, meta={"errors": e.error_count()}) from e


def extract_or_default(
    client: InferenceClient,
    images: Sequence[str],
    context: ExtractionContext,
    *,
    raise_rate_limited: bool = True,
) -> ExtractionResult:
    """
    Never blocks a quote on the AI call: failures degrade to zero-confidence defaults.
    Rate limiting is re-raised (when asked) so the worker can retry later.
    """
    if not images:
        return ExtractionResult.no_images()
    try:
        return client.extract(images, context)
    except ExtractionRateLimited as e:
        if raise_rate_limited:
            raise
        logger.warning("Extraction rate limited on final attempt: %s", e)
        return ExtractionResult.failed("Photo analysis temporarily unavailable (rate limited)")
    except ExtractionParseFailed as e:
        logger.warning("Extraction parse failed: %s", e)
        return ExtractionResult.failed(PARSE_FAILED_WARNING)
    except ExtractionUnavailable as e:
        logger.warning("Extraction unavailable: %s", e)
        return ExtractionResult.failed("Photo analysis unavailable - pricing based on form inputs only")
