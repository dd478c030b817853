# estimator/engine/config.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import ValidationError

from estimator.core.errors import ConfigurationMissing, InvalidPricingConfig
from estimator.schemas.pricing_config import PricingConfiguration

CONFIG_MISSING_NOTE = "No pricing rules configured for this service - using zero-valued defaults"
CONFIG_INVALID_NOTE = "Pricing rules for this service could not be read - using zero-valued defaults"


def load_pricing_config(raw: Optional[Dict[str, Any]], *, service_id: str = "") -> PricingConfiguration:
    """Validate stored pricing rules. Raises ConfigurationMissing / InvalidPricingConfig."""
    if not raw:
        raise ConfigurationMissing(f"no pricing rules for service {service_id}", meta={"service_id": service_id})
    try:
        return PricingConfiguration.model_validate(raw)
    except ValidationError as e:
        raise InvalidPricingConfig(
            f"pricing rules for service {service_id} failed validation",
            meta={"service_id": service_id, "errors": e.errors(include_url=False)},
        ) from e


def load_pricing_config_file(path: Union[str, Path]) -> PricingConfiguration:
    """Pricing rules authored as YAML (seed data, fixtures)."""
    config_path = Path(path)
    with config_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    return load_pricing_config(raw, service_id=config_path.stem)
