"""
Configuration management for Stock League using Pydantic Settings.

Loads configuration from environment variables with type validation and sane defaults.
"""

from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: str = Field(default="development", description="Environment: development, staging, production")
    debug: bool = Field(default=False, description="Debug mode")
    api_title: str = Field(default="Stock League API", description="OpenAPI title")
    api_version: str = Field(default="1.0.0", description="API version")
    allowed_origins: str = Field(default="http://localhost:3000,http://localhost:5173", description="CORS allowed origins (comma-separated)")

    # Database
    database_url: str = Field(default="sqlite:///./stockleague.db", description="SQLAlchemy connection URL")

    # Logging
    log_level: str = Field(default="INFO", description="Log level: DEBUG, INFO, WARNING, ERROR")
    log_format: str = Field(default="text", description="Log format: json or text")
    log_file: str = Field(default="logs/stockleague.log", description="Log file path (empty disables file logging)")

    # Scheduler
    scheduler_enabled: bool = Field(default=True, description="Enable background scheduler")
    live_cycle_interval_seconds: int = Field(default=5, description="Seconds between live scoring cycles")
    settlement_cooldown_seconds: int = Field(default=60, description="Minimum seconds between settlement scans")

    # Scoring
    volume_ema_alpha: float = Field(default=0.2, description="Smoothing factor for the volume EMA")

    # Daily screener reset
    market_timezone: str = Field(default="Asia/Kolkata", description="Wall-clock timezone for the daily reset")
    daily_reset_hour: int = Field(default=9, description="Local hour of the daily screener reset")
    daily_reset_minute: int = Field(default=0, description="Local minute of the daily screener reset")

    # Rate Limiting
    rate_limit_default: str = Field(default="120/minute", description="Default per-client limit for read endpoints")

    @field_validator("allowed_origins")
    @classmethod
    def parse_allowed_origins(cls, v: str) -> List[str]:
        """Parse comma-separated allowed origins into a list."""
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    @field_validator("volume_ema_alpha")
    @classmethod
    def check_alpha(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("volume_ema_alpha must be in (0, 1]")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.app_env == "development"


# Global settings instance
settings = Settings()
