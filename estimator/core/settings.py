# estimator/core/settings.py
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_env: str = "local"  # local | development | production

    # === Database ===
    database_url: str = "sqlite:///./estimator.db"

    # === Celery / Background ===
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/0"
    max_retries: int = 3
    base_retry_delay: int = Field(30, description="Seconds, doubled per retry")
    rate_limit_retry_delay: int = Field(120, description="Seconds to wait after a 429")

    # === Inference ===
    inference_api_url: Optional[str] = None
    inference_api_key: Optional[str] = None
    inference_timeout_seconds: float = 60.0

    # === Pricing policy ===
    default_confidence_threshold: float = 0.7

    # === E-mail ===
    postmark_server_token: Optional[str] = None
    postmark_from: Optional[str] = None
    postmark_reply_to: Optional[str] = None
    public_quote_base_url: str = "http://localhost:3000"

    # === Logging ===
    log_level: str = "INFO"
    log_json: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def inference_configured(self) -> bool:
        return bool(self.inference_api_url)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
