"""
Guardrails Package

Everything that stands between untrusted text (the user's prompt, the
model's reply, stored category names) and the user's data.
"""

from ledger_assistant.guardrails.output_validator import (
    AIValidationResult,
    parse_model_json,
    strip_code_fences,
    validate_ai_output,
)
from ledger_assistant.guardrails.prompt_builder import (
    build_system_prompt,
    sanitize_context_text,
)
from ledger_assistant.guardrails.sanitizer import (
    INJECTION_PATTERNS,
    InjectionCheck,
    SanitizeResult,
    detect_injection,
    sanitize_prompt,
)
from ledger_assistant.guardrails.scope import (
    OwnershipCheck,
    enforce_user_scope,
    validate_category_ownership,
)

__all__ = [
    "AIValidationResult",
    "parse_model_json",
    "strip_code_fences",
    "validate_ai_output",
    "build_system_prompt",
    "sanitize_context_text",
    "INJECTION_PATTERNS",
    "InjectionCheck",
    "SanitizeResult",
    "detect_injection",
    "sanitize_prompt",
    "OwnershipCheck",
    "enforce_user_scope",
    "validate_category_ownership",
]
