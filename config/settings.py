"""
Configuration settings for the application
"""
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Stripe billing configuration
    stripe_secret_key: Optional[str] = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_webhook_tolerance_seconds: int = Field(default=300, alias="STRIPE_WEBHOOK_TOLERANCE_SECONDS")
    stripe_max_network_retries: int = Field(default=0, alias="STRIPE_MAX_NETWORK_RETRIES")

    # Price IDs for each paid tier
    stripe_price_week: Optional[str] = Field(default=None, alias="STRIPE_PRICE_WEEK")
    stripe_price_month: Optional[str] = Field(default=None, alias="STRIPE_PRICE_MONTH")
    stripe_price_year: Optional[str] = Field(default=None, alias="STRIPE_PRICE_YEAR")

    # Upper bound for a single synchronous gateway call made by a user command
    gateway_timeout_seconds: float = Field(default=10.0, alias="GATEWAY_TIMEOUT_SECONDS")

    # Read-modify-write attempts before a profile update gives up
    reconcile_max_attempts: int = Field(default=3, alias="RECONCILE_MAX_ATTEMPTS")

    # Core authentication and security
    jwt_secret_key: Optional[str] = Field(default=None, alias="JWT_SECRET_KEY")

    # Infrastructure configuration
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./sql_app.db", alias="DATABASE_URL")

    # Frontend configuration
    frontend_url: Optional[str] = Field(default="http://localhost:3000", alias="FRONTEND_URL")

    # Render.com deployment configuration
    render: Optional[str] = Field(default=None, alias="RENDER")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    logs_dir: Path = Field(default=Path("./logs"), alias="LOGS_DIR")


# Instantiate settings object
settings = Settings()

# Determine if we're in production mode
IS_PRODUCTION = bool(settings.render) or bool(settings.env and settings.env.lower() == "production")
