"""
Command Interpreter Agent

Turns a natural-language instruction into a validated Action.

CRITICAL BOUNDARIES:
- CAN: Propose ONE update_transactions action with filters and changes
- CANNOT: Choose whose data is affected (scoping happens after this)
- CANNOT: Apply anything (commands are staged and confirmed by the user)
- CANNOT: Create or delete records

The LLM is a TRANSLATOR, not an OPERATOR.
Its reply is treated as untrusted input and validated like any other.

Pipeline:
    sanitize → audit prompt → injection check → system prompt + model call
    → parse JSON → validate against the closed schema → InterpretationResult
"""

from typing import Any, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from ledger_assistant.agents.llm_client import (
    LLMClient,
    LLMError,
    extract_message_content,
)
from ledger_assistant.audit import AuditLogger
from ledger_assistant.guardrails.output_validator import (
    parse_model_json,
    validate_ai_output,
)
from ledger_assistant.guardrails.prompt_builder import build_system_prompt
from ledger_assistant.guardrails.sanitizer import detect_injection, sanitize_prompt
from ledger_assistant.models.command import Action
from ledger_assistant.models.transaction import Category

logger = structlog.get_logger()


class CommandValidationError(Exception):
    """
    The prompt or the model's reply was refused by a guardrail.

    details holds guardrail reasons or schema errors. It never holds the
    raw model text.
    """

    def __init__(self, message: str, details: Optional[list[str]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []


class InterpretationResult(BaseModel):
    """A validated interpretation of one prompt."""

    prompt: str = Field(description="The sanitized prompt that was interpreted")
    interpretation: str
    action: Action
    sanitized_fields: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class CommandInterpreter:
    """
    Interprets prompts with the model, behind every input/output guardrail.

    Every step that can fail is audited before the error is raised.
    """

    def __init__(self, llm_client: LLMClient, audit_logger: AuditLogger):
        self._llm = llm_client
        self._audit = audit_logger

    async def interpret_prompt(
        self,
        prompt: str,
        categories: list[Category],
        currency: str,
        user_id: UUID,
    ) -> InterpretationResult:
        """
        Interpret one user prompt.

        Args:
            prompt: Raw user text
            categories: The user's own categories (shown to the model)
            currency: The user's currency code
            user_id: Authenticated caller, for auditing only

        Returns:
            InterpretationResult with a schema-valid action

        Raises:
            CommandValidationError: Empty prompt, injection, or invalid reply
            LLMError: Provider failure after retries
        """
        sanitized = sanitize_prompt(prompt)
        await self._audit.log_prompt_received(
            user_id, sanitized.sanitized, sanitized.blocked_patterns
        )

        if not sanitized.sanitized:
            await self._audit.log_validation_failed(
                user_id, sanitized.sanitized, ["Prompt is empty after sanitization"]
            )
            raise CommandValidationError("Prompt is empty after sanitization")

        injection = detect_injection(sanitized.sanitized)
        if injection.blocked:
            await self._audit.log_injection_detected(
                user_id, sanitized.sanitized, injection.reasons
            )
            raise CommandValidationError(
                "Request blocked: potential prompt injection detected",
                details=injection.reasons,
            )

        messages = [
            {"role": "system", "content": build_system_prompt(categories, currency)},
            {"role": "user", "content": sanitized.sanitized},
        ]
        try:
            response = await self._llm.chat(messages)
        except LLMError as e:
            await self._audit.log_upstream_failed(user_id, sanitized.sanitized, e)
            raise

        try:
            content = extract_message_content(response)
        except LLMError as e:
            await self._audit.log_validation_failed(
                user_id, sanitized.sanitized, [str(e)]
            )
            raise CommandValidationError(str(e)) from e

        try:
            parsed: Any = parse_model_json(content)
        except ValueError as e:
            logger.warning(
                "model_output_unparseable",
                user_id=str(user_id),
                response_length=len(content),
            )
            await self._audit.log_validation_failed(
                user_id, sanitized.sanitized, ["Invalid JSON"], llm_response=content
            )
            raise CommandValidationError("Invalid JSON in model response") from e

        validation = validate_ai_output(parsed)
        if not validation.valid:
            await self._audit.log_validation_failed(
                user_id, sanitized.sanitized, validation.errors, llm_response=content
            )
            raise CommandValidationError(
                "Response failed security validation",
                details=validation.errors,
            )

        if validation.sanitized_fields:
            await self._audit.log_scope_field_stripped(
                user_id, sanitized.sanitized, validation.sanitized_fields
            )

        return InterpretationResult(
            prompt=sanitized.sanitized,
            interpretation=validation.interpretation,
            action=validation.action,
            sanitized_fields=validation.sanitized_fields,
            warnings=validation.errors,
        )
