"""Application configuration with Pydantic Settings.

This module provides centralized configuration management using pydantic-settings.
Settings are loaded from environment variables and .env files.

Examples:
    >>> from tryon.config import get_settings
    >>> settings = get_settings()
    >>> settings.MAX_ATTEMPTS_PER_CANDIDATE
    3

    >>> settings.get_candidates()
    [Candidate(provider=<ProviderType.GOOGLE: 'google'>, model='gemini-2.5-flash-image'), ...]

Tests:
    - tests/unit/test_config.py::TestSettings
    - tests/unit/test_config.py::TestCandidateParsing
    - tests/unit/test_config.py::TestPlanCatalog
"""

from enum import Enum
from functools import lru_cache
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderType(str, Enum):
    """Supported image-synthesis providers."""

    GOOGLE = "google"
    OPENROUTER = "openrouter"


class Plan(str, Enum):
    """Subscription tiers a store can be on."""

    TRIAL = "trial"
    STARTER = "starter"
    GROWTH = "growth"
    PRO = "pro"


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Locale(str, Enum):
    """Languages for user-facing messages."""

    PT_BR = "pt-BR"
    EN = "en"


# Plan catalog: display name and credits granted on every renewal.
# Trial credits are granted once at onboarding (see Settings.TRIAL_CREDITS).
PLAN_CATALOG: dict[Plan, dict[str, Any]] = {
    Plan.TRIAL: {"name": "Trial Grátis", "monthly_credits": 0},
    Plan.STARTER: {"name": "Starter", "monthly_credits": 100},
    Plan.GROWTH: {"name": "Growth", "monthly_credits": 300},
    Plan.PRO: {"name": "Pro", "monthly_credits": 800},
}

# Purchasable, non-expiring extra credit packages
EXTRA_CREDIT_PACKAGES: dict[str, int] = {
    "small": 50,
    "medium": 100,
    "large": 300,
}


def get_plan_name(plan: Plan | str) -> str:
    """Get the display name for a plan.

    Args:
        plan: Plan enum or raw plan string.

    Returns:
        Display name, or the raw value for unknown plans.
    """
    try:
        return PLAN_CATALOG[Plan(plan)]["name"]
    except ValueError:
        return str(plan)


class Candidate(BaseModel):
    """A (provider, model) pair the orchestrator may attempt."""

    provider: ProviderType
    model: str

    @classmethod
    def parse(cls, value: str) -> "Candidate":
        """Parse a ``provider:model`` string.

        Args:
            value: e.g. ``"google:gemini-2.5-flash-image"``.

        Returns:
            Candidate

        Raises:
            ValueError: If the string is malformed or the provider is unknown.
        """
        provider, sep, model = value.strip().partition(":")
        if not sep or not model:
            raise ValueError(f"Candidate must be 'provider:model', got {value!r}")
        return cls(provider=ProviderType(provider.strip()), model=model.strip())

    def __str__(self) -> str:
        return f"{self.provider.value}:{self.model}"


class Settings(BaseSettings):
    """Application settings with provider and credit configuration.

    Settings are loaded from environment variables and .env file.
    At least one provider API key (GOOGLE_API_KEY or OPENROUTER_API_KEY) is required.

    Attributes:
        DATABASE_URL: Database connection string (SQLite or PostgreSQL)
        GOOGLE_API_KEY: Google AI API key for Gemini image models
        OPENROUTER_API_KEY: OpenRouter API key for multi-model access
        TRYON_CANDIDATES: Priority-ranked ``provider:model`` list, comma separated
        CAPTION_MODEL: Model for the short result caption (Google only)
        MAX_ATTEMPTS_PER_CANDIDATE: Attempt budget per candidate
        BACKOFF_BASE_SECONDS: Delay unit; attempt k waits base * (k - 1)
        CORS_ORIGINS: Origins allowed when DEBUG is off, comma separated
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Database
    DATABASE_URL: str = Field(
        default="sqlite+aiosqlite:///./tryon.db",
        description="Database connection string",
    )

    # Provider API Keys
    GOOGLE_API_KEY: str | None = Field(
        default=None,
        description="Google AI API key",
    )
    OPENROUTER_API_KEY: str | None = Field(
        default=None,
        description="OpenRouter API key",
    )
    OPENROUTER_BASE_URL: str = Field(
        default="https://openrouter.ai/api/v1",
        description="OpenRouter API base URL",
    )

    # Generation
    TRYON_CANDIDATES: str = Field(
        default=(
            "google:gemini-2.5-flash-image,"
            "openrouter:google/gemini-2.5-flash-image-preview"
        ),
        description="Priority-ranked provider:model candidates",
    )
    CAPTION_MODEL: str = Field(
        default="gemini-2.5-flash",
        description="Model for the result caption",
    )
    MAX_ATTEMPTS_PER_CANDIDATE: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per candidate before falling through",
    )
    BACKOFF_BASE_SECONDS: float = Field(
        default=2.0,
        ge=0,
        description="Backoff unit between attempts (base * attempt index)",
    )
    PROVIDER_TIMEOUT_SECONDS: float = Field(
        default=120.0,
        gt=0,
        description="HTTP timeout for a single provider call",
    )

    # Credits
    TRIAL_DAYS: int = Field(default=7, ge=1, description="Trial length in days")
    TRIAL_CREDITS: int = Field(default=10, ge=0, description="Credits granted at onboarding")
    LOW_CREDITS_THRESHOLD: int = Field(
        default=20,
        ge=0,
        description="Balance at or below which a store is warned",
    )

    # Application Settings
    LOCALE: Locale = Field(
        default=Locale.PT_BR,
        description="Language for user-facing messages",
    )
    ENVIRONMENT: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment",
    )
    DEBUG: bool = Field(
        default=True,
        description="Enable debug mode",
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Root log level",
    )
    CORS_ORIGINS: str = Field(
        default="",
        description="Comma-separated origins allowed when DEBUG is off",
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate database URL format."""
        valid_prefixes = ("sqlite", "postgresql", "postgres")
        if not any(v.startswith(prefix) for prefix in valid_prefixes):
            raise ValueError(
                f"DATABASE_URL must start with one of: {valid_prefixes}"
            )
        return v

    @field_validator("TRYON_CANDIDATES")
    @classmethod
    def validate_candidates(cls, v: str) -> str:
        """Ensure the candidate list parses and is not empty."""
        entries = [item for item in v.split(",") if item.strip()]
        if not entries:
            raise ValueError("TRYON_CANDIDATES must name at least one candidate")
        for entry in entries:
            Candidate.parse(entry)
        return v

    @model_validator(mode="after")
    def validate_providers(self) -> "Settings":
        """Ensure at least one provider API key is configured."""
        if not self.GOOGLE_API_KEY and not self.OPENROUTER_API_KEY:
            raise ValueError(
                "At least one provider API key is required "
                "(GOOGLE_API_KEY or OPENROUTER_API_KEY)"
            )
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT == Environment.PRODUCTION

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.DATABASE_URL.startswith("sqlite")

    def has_provider(self, provider: ProviderType) -> bool:
        """Check if a specific provider is configured.

        Args:
            provider: The provider to check.

        Returns:
            bool: True if the provider's API key is configured.
        """
        if provider == ProviderType.GOOGLE:
            return bool(self.GOOGLE_API_KEY)
        elif provider == ProviderType.OPENROUTER:
            return bool(self.OPENROUTER_API_KEY)
        return False

    def get_api_key(self, provider: ProviderType) -> str:
        """Get API key for a specific provider.

        Args:
            provider: The provider to get the key for.

        Returns:
            str: The API key.

        Raises:
            ValueError: If the provider's API key is not configured.
        """
        if provider == ProviderType.GOOGLE:
            if not self.GOOGLE_API_KEY:
                raise ValueError("GOOGLE_API_KEY not configured")
            return self.GOOGLE_API_KEY
        elif provider == ProviderType.OPENROUTER:
            if not self.OPENROUTER_API_KEY:
                raise ValueError("OPENROUTER_API_KEY not configured")
            return self.OPENROUTER_API_KEY
        raise ValueError(f"Unknown provider: {provider}")

    def get_cors_origins(self) -> list[str]:
        """Get the origins allowed by CORS.

        Any origin is allowed in debug mode; otherwise only ``CORS_ORIGINS``.
        """
        if self.DEBUG:
            return ["*"]
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    def get_candidates(self) -> list[Candidate]:
        """Get the priority-ranked candidate list.

        Returns:
            list[Candidate]: Candidates in the order they should be attempted.
        """
        return [
            Candidate.parse(item)
            for item in self.TRYON_CANDIDATES.split(",")
            if item.strip()
        ]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings: The application settings.
    """
    return Settings()
