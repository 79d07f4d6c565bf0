"""
Centralized configuration for the dealership lead routing service.

All settings are loaded from environment variables via .env file.
"""

from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # API
    api_title: str = Field(default="Dealership Lead Routing API")
    api_version: str = Field(default="1.0.0")
    cors_origins: str = Field(default="*")

    # Logging
    log_level: str = Field(default="INFO")
    debug: bool = Field(default=False)

    # Database
    database_url: Optional[str] = Field(default=None)
    db_pool_size: int = Field(default=5)
    db_max_overflow: int = Field(default=10)

    # Lead scoring
    score_engagement_max: int = Field(default=40, ge=0, le=100)
    score_intent_max: int = Field(default=30, ge=0, le=100)
    score_completeness_max: int = Field(default=30, ge=0, le=100)
    lead_score_threshold_hot: int = Field(default=70, ge=0, le=100)
    lead_score_threshold_warm: int = Field(default=40, ge=0, le=100)

    # Round robin
    round_robin_max_attempts: int = Field(default=3, ge=1)
    round_robin_auto_reset: bool = Field(default=True)
    business_timezone: str = Field(default="America/Sao_Paulo")

    # Pipeline
    transition_max_retries: int = Field(default=3, ge=1)

    # Timeouts (seconds)
    collaborator_timeout_seconds: float = Field(default=5.0, gt=0)
    dispatch_timeout_seconds: float = Field(default=10.0, gt=0)

    # Sales service (sale creation + commissions)
    sales_service_url: Optional[str] = Field(default=None)
    sales_service_api_key: Optional[str] = Field(default=None)

    # WhatsApp (Meta Cloud API) for agent notifications
    whatsapp_api_token: Optional[str] = Field(default=None)
    whatsapp_phone_number_id: Optional[str] = Field(default=None)

    @model_validator(mode="after")
    def _check_scoring(self) -> "Settings":
        total = self.score_engagement_max + self.score_intent_max + self.score_completeness_max
        if total > 100:
            raise ValueError(f"scoring maxima must sum to at most 100, got {total}")
        if self.lead_score_threshold_warm > self.lead_score_threshold_hot:
            raise ValueError("warm threshold cannot exceed hot threshold")
        return self

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def whatsapp_configured(self) -> bool:
        return bool(self.whatsapp_api_token and self.whatsapp_phone_number_id)


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
