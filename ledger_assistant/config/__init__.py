"""Configuration package."""

from ledger_assistant.config.settings import (
    AppSettings,
    GuardrailSettings,
    LLMSettings,
    RateLimitSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "GuardrailSettings",
    "LLMSettings",
    "RateLimitSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
