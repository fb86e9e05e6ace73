"""
Configuration Management for Clarity

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All tunable thresholds live here.
The capture pipeline itself never hard-codes an acceptance threshold
or a default payment method; it reads them from AppSettings.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GeminiSettings(BaseSettings):
    """Gemini LLM configuration (used for spending tips)."""

    model_config = SettingsConfigDict(
        env_prefix="GEMINI_",
        extra="ignore"
    )

    api_key: Optional[str] = Field(
        default=None,
        description="Gemini API key. Without it tips fall back to rules."
    )
    model_name: str = Field(
        default="gemini-1.5-flash",
        description="Gemini model to use"
    )
    max_tokens: int = Field(
        default=1024,
        ge=100,
        le=8192,
        description="Maximum tokens in response"
    )
    temperature: float = Field(
        default=0.4,
        ge=0.0,
        le=1.0,
        description="Model temperature (lower = more deterministic)"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from CLARITY_* environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_prefix="CLARITY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # Capture pipeline
    acceptance_threshold: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Minimum confidence for a resolved field to skip confirmation"
    )
    default_payment_method: str = Field(
        default="Tarjeta",
        description="Payment method assumed when the utterance names none"
    )
    default_currency: str = Field(
        default="EUR",
        min_length=3,
        max_length=3,
        description="Currency amounts are recorded in"
    )
    learned_pattern_window: int = Field(
        default=100,
        ge=0,
        description="How many recent expenses feed the learned keyword patterns"
    )

    # Validation thresholds
    max_expense_amount: float = Field(
        default=100000.0,
        description="Maximum reasonable expense amount (for sanity checking)"
    )
    future_date_tolerance_days: int = Field(
        default=1,
        description="How many days in the future an expense date can be"
    )

    # Budget reporting
    small_expense_limit: float = Field(
        default=10.0,
        ge=0.0,
        description="Expenses below this amount count as 'small' in summaries"
    )
    budget_alert_thresholds: str = Field(
        default="80,90,100",
        description="Comma-separated percentage thresholds for budget alerts"
    )

    @field_validator('default_currency')
    @classmethod
    def uppercase_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator('default_payment_method')
    @classmethod
    def validate_payment_method(cls, v: str) -> str:
        """Payment method must be one of the known labels."""
        allowed = {"Tarjeta", "Efectivo", "Transferencia", "Bizum"}
        if v not in allowed:
            raise ValueError(f"Unsupported payment method: {v}. Allowed: {allowed}")
        return v

    @property
    def alert_thresholds_list(self) -> list[int]:
        """Get budget alert thresholds as a sorted list."""
        return sorted(
            int(part.strip())
            for part in self.budget_alert_thresholds.split(",")
            if part.strip()
        )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings are loaded lazily to allow partial configuration

    @property
    def gemini(self) -> GeminiSettings:
        return GeminiSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    try:
        gemini = settings.gemini
        results["gemini"] = gemini.api_key is not None
        if gemini.api_key is None:
            results["gemini_error"] = "GEMINI_API_KEY not set; tips use rules only"
    except Exception as e:
        results["gemini"] = False
        results["gemini_error"] = str(e)

    try:
        _ = settings.app
        results["app"] = True
    except Exception as e:
        results["app"] = False
        results["app_error"] = str(e)

    return results
