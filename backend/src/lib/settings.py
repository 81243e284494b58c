"""
Application settings loaded from environment variables.
Uses pydantic-settings for validation and .env file support.
"""
from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./audience.db",
        description="SQLAlchemy connection string (PostgreSQL in production)"
    )

    # OpenAI (natural-language segment rules, message suggestions)
    openai_api_key: str = Field(
        default="",
        description="OpenAI API key for rule and template generation"
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="Chat model used for rule and template generation"
    )
    openai_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-request timeout for OpenAI calls"
    )

    # Delivery provider
    delivery_provider: Literal["simulated", "http"] = Field(
        default="simulated",
        description="Delivery provider: simulated (in-process) or http (vendor API)"
    )
    vendor_api_url: str = Field(
        default="http://localhost:8001/vendor",
        description="Base URL of the vendor messaging API"
    )
    vendor_callback_url: str = Field(
        default="http://localhost:8000/vendor/delivery-receipt",
        description="URL the vendor posts delivery receipts to"
    )
    vendor_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Per-request timeout for vendor API calls"
    )
    simulated_success_rate: float = Field(
        default=0.9,
        ge=0.0,
        le=1.0,
        description="Share of messages the simulated vendor accepts"
    )
    simulated_receipt_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Delay before the simulated vendor emits a delivery receipt"
    )

    # Dispatch and reconciliation
    dispatch_concurrency: int = Field(
        default=20,
        ge=1,
        le=500,
        description="Maximum in-flight provider calls per campaign dispatch"
    )
    receipt_timeout_seconds: int = Field(
        default=3600,  # 1 hour
        ge=1,
        description="Messages left 'sent' longer than this are forced to 'failed'"
    )
    receipt_sweep_interval_minutes: int = Field(
        default=5,
        ge=1,
        description="How often the receipt-timeout sweep runs"
    )
    preview_sample_size: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Number of sample customers returned by segment preview"
    )

    # Application
    app_name: str = Field(default="Audience Campaigns Backend", description="Application name")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Root log level; debug=true forces DEBUG")
    log_json: bool = Field(default=True, description="Emit JSON log lines; plain text when false")
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
        description="Browser origins allowed to call the API (JSON list in the environment)"
    )
    enable_scheduler: bool = Field(
        default=True,
        description="Start the background scheduler with the API process"
    )


# Global settings instance
settings = Settings()
