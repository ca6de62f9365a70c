"""
Configuration Management for Ledger Assistant

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Heuristic constants (similarity floor, injection threshold, quotas) live
here too, so they can be tuned per deployment instead of being buried in code.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMSettings(BaseSettings):
    """Language model provider configuration (OpenRouter-compatible API)."""

    model_config = SettingsConfigDict(
        env_prefix="OPENROUTER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    api_key: Optional[str] = Field(
        default=None,
        description="Provider API key. AI commands are unavailable without it."
    )
    model: str = Field(
        default="anthropic/claude-sonnet-4",
        description="Model identifier sent with every request"
    )
    api_url: str = Field(
        default="https://openrouter.ai/api/v1/chat/completions",
        description="Chat completions endpoint"
    )
    referer: str = Field(
        default="https://ledger-assistant.local",
        description="Value for the HTTP-Referer header"
    )
    app_title: str = Field(
        default="Ledger Assistant",
        description="Value for the X-Title header"
    )

    # Retry policy
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries after the first attempt"
    )
    initial_retry_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="First backoff delay; doubles on every retry"
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        le=300.0,
        description="Per-attempt timeout"
    )

    # Generation
    temperature: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Model temperature (lower = more deterministic)"
    )
    max_tokens: int = Field(
        default=1024,
        ge=64,
        le=8192,
        description="Maximum tokens in response"
    )


class GuardrailSettings(BaseSettings):
    """Limits and heuristics applied around the model."""

    model_config = SettingsConfigDict(
        env_prefix="GUARDRAIL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    max_prompt_length: int = Field(
        default=500,
        ge=1,
        description="Prompts are truncated to this many characters"
    )
    injection_block_threshold: int = Field(
        default=2,
        ge=1,
        description="Distinct injection patterns needed to block a prompt"
    )
    max_transactions_per_command: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Hard cap on records a single command may touch"
    )
    category_similarity_threshold: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Trigram similarity a category name must exceed to match"
    )
    command_expiry_seconds: int = Field(
        default=300,
        ge=1,
        description="How long a staged command can be confirmed"
    )

    # Abuse heuristics
    abuse_window_seconds: int = Field(
        default=300,
        ge=1,
        description="Trailing window inspected by the abuse detector"
    )
    abuse_injection_threshold: int = Field(
        default=3,
        ge=1,
        description="Injection events in the window that flag a user"
    )
    abuse_validation_failure_threshold: int = Field(
        default=5,
        ge=1,
        description="Validation failures in the window that flag a user"
    )


class RateLimitSettings(BaseSettings):
    """Per-user quota for AI command creation."""

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    max_requests: int = Field(
        default=10,
        ge=1,
        description="Requests allowed per window"
    )
    window_seconds: int = Field(
        default=60,
        ge=1,
        description="Window length in seconds"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    default_currency: str = Field(
        default="USD",
        max_length=10,
        description="Currency shown to the model when the user has none set"
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
    def llm(self) -> LLMSettings:
        return LLMSettings()

    @property
    def guardrails(self) -> GuardrailSettings:
        return GuardrailSettings()

    @property
    def rate_limit(self) -> RateLimitSettings:
        return RateLimitSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, object]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid} plus an "<name>_error"
    entry for every section that failed to load. Useful for startup checks.
    """
    results: dict[str, object] = {}
    settings = get_settings()

    for name in ("llm", "guardrails", "rate_limit", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    # The key is optional at load time but required for AI commands
    if results.get("llm") is True:
        results["llm_api_key_configured"] = bool(settings.llm.api_key)

    return results
