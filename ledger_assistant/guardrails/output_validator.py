"""
Model Output Validation

CRITICAL: The model's reply is untrusted input, exactly like the user's
prompt. It is decoded into closed schemas (models/command.py) and nothing
that fails them ever reaches the matching engine.

Order of operations:
1. Reject anything that is not a JSON object
2. Strip user identifiers from the filters (defused, not fatal)
3. Reject any action type other than update_transactions
4. Strict schema validation (unknown fields are errors)

DESIGN DECISION: A user_id in the filters is the worst case (an attempt to
reach another user's data), but it is removed and recorded rather than
failing the whole command. Scoping never reads it anyway, and the event is
audited through sanitized_fields.

IMPORTANT: Error strings name the location and the rule that failed. They
never contain the offending value, which is attacker-controlled text.
"""

import copy
import json
import re
from decimal import Decimal
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError

from ledger_assistant.models.command import (
    UPDATE_TRANSACTIONS,
    Action,
    Interpretation,
)

logger = structlog.get_logger()

USER_ID_KEYS = ("user_id", "userId")
CODE_FENCES = re.compile(r"```json\n?|\n?```")


class AIValidationResult(BaseModel):
    """Outcome of validating one model reply."""

    valid: bool
    action: Optional[Action] = None
    interpretation: Optional[str] = None
    errors: list[str] = Field(default_factory=list)
    sanitized_fields: list[str] = Field(default_factory=list)


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences models like to wrap JSON in."""
    return CODE_FENCES.sub("", text).strip()


def parse_model_json(text: str) -> Any:
    """
    Decode the model's text body.

    Markdown fences are stripped first. Floats become Decimal so amounts
    never pass through binary floating point.

    Raises:
        ValueError: If the body is not valid JSON
    """
    try:
        return json.loads(strip_code_fences(text), parse_float=Decimal)
    except json.JSONDecodeError as e:
        raise ValueError(f"Model response is not valid JSON (line {e.lineno}, column {e.colno})") from e


def _strip_user_ids(node: Any, path: str, removed: list[str]) -> None:
    """Delete user identifier keys at any depth, recording dotted paths."""
    if isinstance(node, dict):
        for key in USER_ID_KEYS:
            if key in node:
                del node[key]
                removed.append(f"{path}.{key}")
        for key, value in node.items():
            _strip_user_ids(value, f"{path}.{key}", removed)
    elif isinstance(node, list):
        for index, item in enumerate(node):
            _strip_user_ids(item, f"{path}.{index}", removed)


def format_validation_errors(exc: ValidationError) -> list[str]:
    """
    Render pydantic errors as "<loc>: <message>" without input values.

    An unknown key is reported at its parent location only, since the key
    name itself came from the model.
    """
    errors = []
    for error in exc.errors(include_input=False, include_url=False):
        if error["type"] == "extra_forbidden":
            parent = ".".join(str(part) for part in error["loc"][:-1])
            errors.append(f"{parent}: unknown field" if parent else "unknown field")
            continue
        location = ".".join(str(part) for part in error["loc"])
        errors.append(f"{location}: {error['msg']}" if location else error["msg"])
    return errors


def validate_ai_output(output: Any) -> AIValidationResult:
    """
    Validate a decoded model reply against the closed action schema.

    Works on a deep copy; the caller's object is never modified.

    Returns:
        AIValidationResult. When valid, errors may still hold non-fatal
        entries (removed user identifiers).
    """
    if not isinstance(output, dict):
        return AIValidationResult(valid=False, errors=["Output is not an object"])

    payload = copy.deepcopy(output)
    errors: list[str] = []
    sanitized_fields: list[str] = []

    action = payload.get("action")
    if isinstance(action, dict):
        filters = action.get("filters")
        if isinstance(filters, (dict, list)):
            _strip_user_ids(filters, "filters", sanitized_fields)
            for field_path in sanitized_fields:
                key = field_path.rsplit(".", 1)[-1]
                errors.append(f"Attempted to specify {key} in filters (removed)")
            if sanitized_fields:
                logger.warning(
                    "user_scope_field_stripped",
                    fields=sanitized_fields,
                )

        action_type = action.get("type")
        if action_type is not None and action_type != UPDATE_TRANSACTIONS:
            return AIValidationResult(
                valid=False,
                errors=[f"Invalid action type. Only '{UPDATE_TRANSACTIONS}' is allowed."],
                sanitized_fields=sanitized_fields,
            )

    try:
        parsed = Interpretation.model_validate(payload)
    except ValidationError as e:
        return AIValidationResult(
            valid=False,
            errors=format_validation_errors(e),
            sanitized_fields=sanitized_fields,
        )

    return AIValidationResult(
        valid=True,
        action=parsed.action,
        interpretation=parsed.interpretation,
        errors=errors,
        sanitized_fields=sanitized_fields,
    )
