"""
Prompt Sanitizer and Injection Detector

The user's instruction is the one piece of free text that reaches the model
unmodified in meaning. Before it does, we:

1. Strip control characters (they can hide instructions from reviewers)
2. Collapse whitespace and truncate to a fixed maximum length
3. Screen it against known injection / jailbreak / SQL patterns

DESIGN DECISION: Screening has two strengths.
- sanitize_prompt() REPORTS matching patterns but never blocks. A single
  incidental match ("show me my coffee purchases") must not stop a user.
- detect_injection() BLOCKS only when several distinct patterns match.

CRITICAL: These patterns are heuristics, not a security boundary. The real
boundary is the closed output schema and the user scoping that follow.
"""

import re
from typing import Optional

from pydantic import BaseModel, Field

from ledger_assistant.config import get_settings


# C0 controls except tab/newline/carriage return, DEL and C1 controls
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F-\x9F]")
WHITESPACE_RUNS = re.compile(r"\s+")

INJECTION_PATTERNS: list[re.Pattern] = [
    # Instruction override
    re.compile(r"ignore\s+(all\s+)?(previous|prior|above)\s+(instructions?|rules?|prompts?)", re.IGNORECASE),
    re.compile(r"disregard\s+(all\s+)?(previous|prior|above)", re.IGNORECASE),
    re.compile(r"forget\s+(all\s+)?(previous|prior|above)", re.IGNORECASE),
    re.compile(r"new\s+instructions?:", re.IGNORECASE),
    re.compile(r"system\s*prompt", re.IGNORECASE),

    # Role-play / jailbreak markers
    re.compile(r"\bDAN\b", re.IGNORECASE),
    re.compile(r"jailbreak", re.IGNORECASE),
    re.compile(r"bypass\s+(security|restrictions?|rules?|filters?)", re.IGNORECASE),
    re.compile(r"act\s+as\s+(if\s+)?(you\s+)?(are|were)\s+(a|an|the)", re.IGNORECASE),
    re.compile(r"pretend\s+(you\s+)?(are|were)", re.IGNORECASE),
    re.compile(r"roleplay", re.IGNORECASE),
    re.compile(r"\bsudo\b", re.IGNORECASE),
    re.compile(r"admin\s*mode", re.IGNORECASE),
    re.compile(r"developer\s*mode", re.IGNORECASE),
    re.compile(r"debug\s*mode", re.IGNORECASE),

    # Prompt disclosure
    re.compile(r"reveal\s+(your\s+)?(system|instructions?|prompt)", re.IGNORECASE),
    re.compile(r"show\s+(me\s+)?(your\s+)?(system|instructions?|prompt)", re.IGNORECASE),
    re.compile(r"what\s+(are|is)\s+your\s+(system|instructions?|prompt)", re.IGNORECASE),
    re.compile(r"repeat\s+(your\s+)?(system|instructions?)", re.IGNORECASE),

    # Raw SQL
    re.compile(r"DELETE\s+FROM", re.IGNORECASE),
    re.compile(r"DROP\s+TABLE", re.IGNORECASE),
    re.compile(r"INSERT\s+INTO", re.IGNORECASE),
    re.compile(r"UPDATE\s+.*\s+SET", re.IGNORECASE),
    re.compile(r";\s*--"),

    # Reaching for another user's data
    re.compile(r"user_id\s*[=:]", re.IGNORECASE),
    re.compile(r"other\s*user", re.IGNORECASE),
]


class SanitizeResult(BaseModel):
    """Outcome of sanitizing a prompt."""

    sanitized: str
    was_modified: bool
    blocked_patterns: list[str] = Field(default_factory=list)


class InjectionCheck(BaseModel):
    """Outcome of the blocking injection check."""

    blocked: bool
    reasons: list[str] = Field(default_factory=list)


def matching_patterns(text: str) -> list[str]:
    """Source of every injection pattern found in text, in list order."""
    return [p.pattern for p in INJECTION_PATTERNS if p.search(text)]


def sanitize_prompt(
    prompt: str,
    max_length: Optional[int] = None,
) -> SanitizeResult:
    """
    Clean a raw user prompt.

    Args:
        prompt: Untrusted user text
        max_length: Override for the configured maximum prompt length

    Returns:
        SanitizeResult whose sanitized text has no control characters,
        no whitespace runs and at most max_length characters.
    """
    if max_length is None:
        max_length = get_settings().guardrails.max_prompt_length

    cleaned = CONTROL_CHARS.sub("", prompt)
    cleaned = WHITESPACE_RUNS.sub(" ", cleaned).strip()
    if len(cleaned) > max_length:
        cleaned = cleaned[:max_length]

    return SanitizeResult(
        sanitized=cleaned,
        was_modified=cleaned != prompt,
        blocked_patterns=matching_patterns(cleaned),
    )


def detect_injection(
    prompt: str,
    threshold: Optional[int] = None,
) -> InjectionCheck:
    """
    Decide whether a prompt should be refused outright.

    Blocked only when at least `threshold` distinct patterns match;
    a single match is never enough.
    """
    if threshold is None:
        threshold = get_settings().guardrails.injection_block_threshold

    reasons = [f"Matches pattern: {p}" for p in matching_patterns(prompt)]
    return InjectionCheck(
        blocked=len(reasons) >= threshold,
        reasons=reasons,
    )
