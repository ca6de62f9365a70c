"""
HTTP API for Ledger Assistant

This is the surface the web client (and agents acting for a user) talk to.

DESIGN PRINCIPLES:
1. Two-step changes: POST /command only PREVIEWS; nothing changes until
   POST /command/{id}/confirm
2. Clear, specific errors ("already confirmed", "expired"), never a
   generic failure
3. Error bodies never echo model output or attacker-controlled text
4. The caller's identity comes from the authentication layer in front of
   us, as the X-User-Id header. Nothing in a body can change it.

Run with:
    uvicorn app.main:app
"""

from typing import Any, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ledger_assistant.agents import (
    CommandValidationError,
    LLMConfigError,
    LLMError,
    LLMTimeoutError,
)
from ledger_assistant.config import validate_all_settings
from ledger_assistant.models.command import Command, CommandStatus
from ledger_assistant.models.rule import RuleTransactionInput
from ledger_assistant.models.transaction import TransactionCreate
from ledger_assistant.orchestrator import (
    AppComponents,
    CommandError,
    CommandNotFoundError,
    InvalidTargetCategoryError,
    NoMatchFoundError,
    RateLimitedError,
    RuleNotFoundError,
    create_app_components,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/api")


# =============================================================================
# REQUESTS
# =============================================================================

class CreateCommandRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    prompt: str = Field(..., min_length=1, max_length=500)


class RuleTestRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    rule_id: UUID = Field(..., alias="ruleId")
    transaction: RuleTransactionInput


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_components(request: Request) -> AppComponents:
    return request.app.state.components


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> UUID:
    """Trusted user id set by the authentication layer."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Authentication required")


# =============================================================================
# SERIALIZATION
# =============================================================================

def _preview_dict(command: Command) -> dict[str, Any]:
    return {
        "matchCount": len(command.preview),
        "records": [record.model_dump(mode="json") for record in command.preview],
    }


def _result_dict(command: Command) -> Optional[dict[str, Any]]:
    if command.result is None:
        return None
    return {
        "success": command.result.success,
        "updatedCount": command.result.updated_count,
        "updatedAt": command.result.updated_at.isoformat(),
    }


# =============================================================================
# AI COMMANDS
# =============================================================================

@router.post("/ai/command", status_code=201)
async def create_command(
    body: CreateCommandRequest,
    user_id: UUID = Depends(get_user_id),
    components: AppComponents = Depends(get_components),
) -> dict[str, Any]:
    """Interpret a prompt and stage the resulting command for review."""
    staged = await components.command_flow.create_command(user_id, body.prompt)
    return {
        "commandId": str(staged.command.id),
        "interpretation": staged.command.interpretation,
        "preview": _preview_dict(staged.command),
        "expiresIn": staged.expires_in,
    }


@router.get("/ai/command/{command_id}")
async def get_command(
    command_id: UUID,
    user_id: UUID = Depends(get_user_id),
    components: AppComponents = Depends(get_components),
) -> dict[str, Any]:
    """Read a staged command. A stale pending command is reported expired."""
    staged = await components.command_flow.get_command(user_id, command_id)
    command = staged.command
    return {
        "commandId": str(command.id),
        "status": command.status.value,
        "prompt": command.prompt,
        "interpretation": command.interpretation,
        "preview": _preview_dict(command),
        "expiresIn": staged.expires_in,
        "createdAt": command.created_at.isoformat(),
        "executedAt": command.executed_at.isoformat() if command.executed_at else None,
        "result": _result_dict(command),
    }


@router.post("/ai/command/{command_id}/confirm")
async def confirm_command(
    command_id: UUID,
    user_id: UUID = Depends(get_user_id),
    components: AppComponents = Depends(get_components),
) -> dict[str, Any]:
    """Apply a pending command to the records it previewed."""
    result = await components.command_flow.confirm_command(user_id, command_id)
    return {
        "commandId": str(result.command_id),
        "status": CommandStatus.CONFIRMED.value,
        "updatedCount": result.updated_count,
        "transactions": [t.to_api_dict() for t in result.transactions],
        "message": result.message,
    }


@router.post("/ai/command/{command_id}/cancel")
async def cancel_command(
    command_id: UUID,
    user_id: UUID = Depends(get_user_id),
    components: AppComponents = Depends(get_components),
) -> dict[str, Any]:
    """Cancel a pending command. Transactions are never touched."""
    command = await components.command_flow.cancel_command(user_id, command_id)
    return {
        "commandId": str(command.id),
        "status": command.status.value,
    }


# =============================================================================
# TRANSACTIONS & RULES
# =============================================================================

@router.post("/transactions", status_code=201)
async def create_transaction(
    body: TransactionCreate,
    user_id: UUID = Depends(get_user_id),
    components: AppComponents = Depends(get_components),
) -> dict[str, Any]:
    """Create a transaction; without a category, rules may assign one."""
    transaction = await components.transaction_flow.create_transaction(user_id, body)
    return transaction.to_api_dict()


@router.post("/rules/test")
async def test_rule(
    body: RuleTestRequest,
    user_id: UUID = Depends(get_user_id),
    components: AppComponents = Depends(get_components),
) -> dict[str, Any]:
    """Show how one rule evaluates against a sample transaction."""
    result = await components.transaction_flow.test_rule(
        user_id, body.rule_id, body.transaction
    )
    return {
        "matches": result.matches,
        "conditionResults": [r.model_dump(mode="json") for r in result.condition_results],
    }


@router.post("/rules/{rule_id}/apply")
async def apply_rule(
    rule_id: UUID,
    user_id: UUID = Depends(get_user_id),
    components: AppComponents = Depends(get_components),
) -> dict[str, Any]:
    """Categorize the user's uncategorized transactions with one rule."""
    result = await components.transaction_flow.apply_rule(user_id, rule_id)
    return {
        "ruleId": str(result.rule_id),
        "appliedCount": result.applied_count,
        "matchCount": result.match_count,
    }


@router.get("/health")
async def health() -> dict[str, Any]:
    """Configuration status of every settings section."""
    return {"status": "ok", "settings": validate_all_settings()}


# =============================================================================
# ERROR MAPPING
# =============================================================================

def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        f"{'.'.join(str(part) for part in e['loc'])}: {e['msg']}"
        for e in exc.errors()
    ]
    return _error(400, "Invalid request", details=details)


async def handle_rate_limited(request: Request, exc: RateLimitedError) -> JSONResponse:
    response = _error(429, exc.message, retryAfter=exc.retry_after)
    response.headers["Retry-After"] = str(exc.retry_after)
    return response


async def handle_no_match(request: Request, exc: NoMatchFoundError) -> JSONResponse:
    return _error(404, exc.message, interpretation=exc.interpretation, filters=exc.filters)


async def handle_command_not_found(request: Request, exc: CommandNotFoundError) -> JSONResponse:
    return _error(404, exc.message)


async def handle_command_error(request: Request, exc: CommandError) -> JSONResponse:
    # Not pending, expired, invalid target category
    return _error(400, exc.message)


async def handle_rule_not_found(request: Request, exc: RuleNotFoundError) -> JSONResponse:
    return _error(404, "Rule not found")


async def handle_command_validation(request: Request, exc: CommandValidationError) -> JSONResponse:
    return _error(400, "Failed to interpret command", details=exc.message, errors=exc.details)


async def handle_llm_error(request: Request, exc: LLMError) -> JSONResponse:
    if isinstance(exc, LLMConfigError):
        return _error(503, "AI features are not configured")
    if isinstance(exc, LLMTimeoutError):
        return _error(504, "AI service timed out")
    logger.error("llm_request_failed", error_type=type(exc).__name__)
    return _error(502, "AI service unavailable")


def create_app(components: Optional[AppComponents] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        components: Wired flows and storage. Defaults to in-memory
                    components from create_app_components().
    """
    app = FastAPI(title="Ledger Assistant")
    app.state.components = components or create_app_components()
    app.include_router(router)

    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(RateLimitedError, handle_rate_limited)
    app.add_exception_handler(NoMatchFoundError, handle_no_match)
    app.add_exception_handler(CommandNotFoundError, handle_command_not_found)
    app.add_exception_handler(InvalidTargetCategoryError, handle_command_error)
    app.add_exception_handler(CommandError, handle_command_error)
    app.add_exception_handler(RuleNotFoundError, handle_rule_not_found)
    app.add_exception_handler(CommandValidationError, handle_command_validation)
    app.add_exception_handler(LLMError, handle_llm_error)

    return app


app = create_app()
