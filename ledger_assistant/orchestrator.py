"""
Main Orchestrator for Ledger Assistant

This module ties together all the components and defines the
end-to-end flows for:
1. AI Command (prompt → interpret → preview → stage → confirm | cancel)
2. Transaction creation with rule-based auto-categorization

DESIGN DECISION: The orchestrator enforces the boundaries:
- Nothing is changed without explicit confirmation inside the window
- A confirm applies exactly the records the user previewed
- Every step is scoped to the authenticated user_id
- Every outcome is audited

This is the "glue" that ensures the system works correctly
even when individual components (the model above all) misbehave.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from ledger_assistant.agents import (
    CommandInterpreter,
    LLMClient,
    LLMConfigError,
    create_llm_client,
)
from ledger_assistant.audit import AuditLogger
from ledger_assistant.config import get_settings
from ledger_assistant.guardrails import (
    enforce_user_scope,
    sanitize_prompt,
    validate_category_ownership,
)
from ledger_assistant.matching import MatchingEngine
from ledger_assistant.models.command import (
    Command,
    CommandResult,
    CommandStatus,
)
from ledger_assistant.models.rule import RuleTestResult, RuleTransactionInput
from ledger_assistant.models.transaction import (
    Transaction,
    TransactionCreate,
    utc_now,
)
from ledger_assistant.rules import RuleMatchingEngine
from ledger_assistant.services import (
    CategoryStorageInterface,
    CommandStorageInterface,
    InMemoryAuditStorage,
    InMemoryCategoryStorage,
    InMemoryCommandStorage,
    InMemoryRuleStorage,
    InMemoryTransactionStorage,
    RateLimiter,
    RuleStorageInterface,
    TransactionStorageInterface,
)

logger = structlog.get_logger()


# =============================================================================
# EXCEPTIONS
# =============================================================================

class CommandError(Exception):
    """Base exception for command workflow errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NoMatchFoundError(CommandError):
    """The interpreted filters matched no transactions."""

    def __init__(self, interpretation: str, filters: dict):
        super().__init__("No transactions match the specified criteria")
        self.interpretation = interpretation
        self.filters = filters


class InvalidTargetCategoryError(CommandError):
    """A change targets a category the user does not own."""
    pass


class RateLimitedError(CommandError):
    """The user exceeded the AI command quota."""

    def __init__(self, retry_after: int):
        super().__init__("Rate limit exceeded")
        self.retry_after = retry_after


class CommandNotFoundError(CommandError):
    """No such command for this user (missing and not-owned look the same)."""

    def __init__(self):
        super().__init__("Command not found")


class CommandNotPendingError(CommandError):
    """The command already reached a terminal state."""

    def __init__(self, status: CommandStatus):
        super().__init__(f"Command is already {status.value}")
        self.status = status


class CommandExpiredError(CommandError):
    """The confirmation window has closed."""

    def __init__(self):
        super().__init__("Command has expired")


class RuleNotFoundError(Exception):
    """No such rule for this user."""
    pass


# =============================================================================
# RESULTS
# =============================================================================

class StagedCommand(BaseModel):
    """A command as shown to its owner, with seconds left to confirm."""

    command: Command
    match_count: int
    expires_in: int


class ConfirmResult(BaseModel):
    """Outcome of a successful confirm."""

    command_id: UUID
    updated_count: int
    transactions: list[Transaction] = Field(default_factory=list)
    message: str


class ApplyRuleResult(BaseModel):
    """Outcome of applying one rule to uncategorized transactions."""

    rule_id: UUID
    applied_count: int
    match_count: int


# =============================================================================
# FLOWS
# =============================================================================

class CommandFlow:
    """
    Orchestrates the AI command flow.

    Flow:
    1. Rate limit → refuse early, before any model cost
    2. Interpret → sanitize, injection check, model call, validate
    3. Scope → bind to user_id, cap at max_transactions
    4. Match → concrete record set (empty → NoMatchFoundError)
    5. Check → target category must belong to the user
    6. Stage → persist as pending with expires_at
    7. Confirm (atomic claim) or Cancel → terminal state

    Human confirmation (step 7) is MANDATORY.
    The system NEVER applies a command on its own.
    """

    def __init__(
        self,
        command_storage: CommandStorageInterface,
        transaction_storage: TransactionStorageInterface,
        category_storage: CategoryStorageInterface,
        audit_logger: AuditLogger,
        interpreter: Optional[CommandInterpreter] = None,
        rate_limiter: Optional[RateLimiter] = None,
        matching_engine: Optional[MatchingEngine] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            interpreter: Model-backed interpreter. When None, one is built
                         on first use from settings (LLMConfigError if the
                         API key is missing).
            clock: Source of "now"; tests move it forward to expire commands
        """
        self._commands = command_storage
        self._transactions = transaction_storage
        self._categories = category_storage
        self._audit = audit_logger
        self._interpreter = interpreter
        self._rate_limiter = rate_limiter or RateLimiter()
        self._matching = matching_engine or MatchingEngine()
        self._clock = clock
        self._settings = get_settings()

    def _get_interpreter(self) -> CommandInterpreter:
        if self._interpreter is None:
            self._interpreter = CommandInterpreter(create_llm_client(), self._audit)
        return self._interpreter

    @property
    def expiry_seconds(self) -> int:
        return self._settings.guardrails.command_expiry_seconds

    async def create_command(
        self,
        user_id: UUID,
        prompt: str,
        currency: Optional[str] = None,
    ) -> StagedCommand:
        """
        Interpret a prompt and stage the resulting command.

        Returns:
            StagedCommand with the preview and expires_in

        Raises:
            RateLimitedError: Over quota
            CommandValidationError: Guardrail refused the prompt or reply
            LLMError: Provider failure (LLMConfigError if not configured)
            NoMatchFoundError: Filters matched nothing
            InvalidTargetCategoryError: Target category not the user's
        """
        decision = self._rate_limiter.check(user_id)
        if not decision.allowed:
            await self._audit.log_rate_limited(user_id, decision.retry_after)
            raise RateLimitedError(decision.retry_after)

        abuse = await self._audit.detect_abuse_pattern(user_id)
        if abuse.suspicious:
            logger.warning(
                "abuse_pattern_detected",
                user_id=str(user_id),
                reason=abuse.reason,
            )

        try:
            interpreter = self._get_interpreter()
        except LLMConfigError as e:
            await self._audit.log_upstream_failed(
                user_id, sanitize_prompt(prompt).sanitized, e
            )
            raise

        categories = await self._categories.list_categories(user_id)
        result = await interpreter.interpret_prompt(
            prompt,
            categories,
            currency or self._settings.app.default_currency,
            user_id,
        )

        scoped = enforce_user_scope(result.action, user_id)
        transactions = await self._transactions.list_transactions(user_id)
        matches = self._matching.find_matching_transactions(scoped, transactions, categories)

        if not matches:
            filters = result.action.filters.model_dump(mode="json", exclude_none=True)
            await self._audit.log_no_match_found(user_id, result.prompt, filters)
            raise NoMatchFoundError(result.interpretation, filters)

        target_id = result.action.changes.category_id
        if target_id is not None:
            target = await self._categories.get_category(target_id)
            ownership = validate_category_ownership(
                target_id, user_id, [target] if target else []
            )
            if not ownership.valid:
                await self._audit.log_validation_failed(
                    user_id, result.prompt, [ownership.error]
                )
                raise InvalidTargetCategoryError(
                    "Target category not found or does not belong to user"
                )

        preview = self._matching.build_preview(matches, result.action.changes, categories)

        now = self._clock()
        command = await self._commands.create_command(Command(
            user_id=user_id,
            prompt=result.prompt,
            interpretation=result.interpretation,
            action=result.action,
            preview=preview,
            created_at=now,
            expires_at=now + timedelta(seconds=self.expiry_seconds),
        ))

        logger.info(
            "command_staged",
            user_id=str(user_id),
            command_id=str(command.id),
            match_count=len(preview),
        )

        return StagedCommand(
            command=command,
            match_count=len(preview),
            expires_in=self.expiry_seconds,
        )

    async def _expire(self, command: Command) -> bool:
        """Persist expired for a stale pending command (once)."""
        if await self._commands.mark_expired(command.id, command.user_id):
            await self._audit.log_command_expired(command.user_id, command.id)
            return True
        return False

    async def get_command(self, user_id: UUID, command_id: UUID) -> StagedCommand:
        """
        Read a command, expiring it if its window has closed.

        Raises:
            CommandNotFoundError: Missing or owned by someone else
        """
        command = await self._commands.get_command(command_id, user_id)
        if command is None:
            raise CommandNotFoundError()

        now = self._clock()
        if command.status == CommandStatus.PENDING and command.is_expired(now):
            await self._expire(command)
            command = await self._commands.get_command(command_id, user_id)
            if command is None:
                raise CommandNotFoundError()

        expires_in = command.expires_in(now) if command.status == CommandStatus.PENDING else 0
        return StagedCommand(
            command=command,
            match_count=len(command.preview),
            expires_in=expires_in,
        )

    async def confirm_command(self, user_id: UUID, command_id: UUID) -> ConfirmResult:
        """
        Apply a pending command to exactly the records it previewed.

        CRITICAL: The claim (pending → confirmed) happens BEFORE any
        record is touched. Of two concurrent confirms only one can claim.

        Raises:
            CommandNotFoundError: Missing or owned by someone else
            CommandNotPendingError: Already confirmed, cancelled or expired
            CommandExpiredError: Window closed (status is persisted)
        """
        now = self._clock()
        claimed = await self._commands.claim_pending(command_id, user_id, now)

        if claimed is None:
            command = await self._commands.get_command(command_id, user_id)
            if command is None:
                error: CommandError = CommandNotFoundError()
            elif command.status != CommandStatus.PENDING:
                error = CommandNotPendingError(command.status)
            elif command.is_expired(now):
                if await self._expire(command):
                    raise CommandExpiredError()
                error = CommandExpiredError()
            else:
                error = CommandError("Failed to confirm command")
            await self._audit.log_command_rejected(
                user_id, command_id, "confirm", error.message
            )
            raise error

        updated = await self._transactions.bulk_update(
            user_id,
            claimed.target_ids,
            claimed.action.changes.as_update(),
            now,
        )

        await self._commands.record_result(
            command_id,
            user_id,
            CommandResult(success=True, updated_count=len(updated), updated_at=now),
        )
        await self._audit.log_action_executed(
            user_id, command_id, claimed.prompt, len(updated)
        )

        return ConfirmResult(
            command_id=command_id,
            updated_count=len(updated),
            transactions=updated,
            message=f"Successfully updated {len(updated)} transaction(s)",
        )

    async def cancel_command(self, user_id: UUID, command_id: UUID) -> Command:
        """
        Cancel a pending command. Never touches transactions.

        Raises:
            CommandNotFoundError: Missing or owned by someone else
            CommandNotPendingError: Already in a terminal state
        """
        if not await self._commands.cancel_pending(command_id, user_id):
            command = await self._commands.get_command(command_id, user_id)
            if command is None:
                error: CommandError = CommandNotFoundError()
            else:
                error = CommandNotPendingError(command.status)
            await self._audit.log_command_rejected(
                user_id, command_id, "cancel", error.message
            )
            raise error

        await self._audit.log_command_cancelled(user_id, command_id)
        command = await self._commands.get_command(command_id, user_id)
        if command is None:
            raise CommandNotFoundError()
        return command


class TransactionFlow:
    """
    Orchestrates transaction creation and category rules.

    A transaction created WITHOUT a category gets one from the first
    matching rule; an explicit category must belong to the user.
    """

    def __init__(
        self,
        transaction_storage: TransactionStorageInterface,
        category_storage: CategoryStorageInterface,
        rule_storage: RuleStorageInterface,
        rule_engine: Optional[RuleMatchingEngine] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._transactions = transaction_storage
        self._categories = category_storage
        self._rules = rule_storage
        self._engine = rule_engine or RuleMatchingEngine()
        self._clock = clock

    async def create_transaction(
        self,
        user_id: UUID,
        data: TransactionCreate,
    ) -> Transaction:
        """
        Create a transaction, auto-categorizing it when no category is given.

        Raises:
            InvalidTargetCategoryError: Explicit category not the user's
        """
        category_id = data.category_id
        applied_rule_id = None

        if category_id is not None:
            category = await self._categories.get_category(category_id)
            ownership = validate_category_ownership(
                category_id, user_id, [category] if category else []
            )
            if not ownership.valid:
                raise InvalidTargetCategoryError("Category not found")
        else:
            rules = await self._rules.list_rules(user_id)
            rule = self._engine.find_matching_rule(
                rules,
                RuleTransactionInput(description=data.description or "", amount=data.amount),
            )
            if rule is not None:
                category_id = rule.category_id
                applied_rule_id = rule.id
                await self._rules.increment_match_count(rule.id, user_id)
                logger.info(
                    "transaction_auto_categorized",
                    user_id=str(user_id),
                    rule_id=str(rule.id),
                )

        now = self._clock()
        return await self._transactions.create_transaction(Transaction(
            user_id=user_id,
            type=data.type,
            amount=data.amount,
            description=data.description,
            category_id=category_id,
            applied_rule_id=applied_rule_id,
            occurred_on=data.occurred_on,
            created_at=now,
            updated_at=now,
        ))

    async def test_rule(
        self,
        user_id: UUID,
        rule_id: UUID,
        transaction: RuleTransactionInput,
    ) -> RuleTestResult:
        """Evaluate one of the user's rules against a sample transaction."""
        rule = await self._rules.get_rule(rule_id, user_id)
        if rule is None:
            raise RuleNotFoundError("Rule not found")
        return self._engine.test_rule(rule, transaction)

    async def apply_rule(self, user_id: UUID, rule_id: UUID) -> ApplyRuleResult:
        """
        Apply one rule to the user's uncategorized transactions.

        Categorized transactions are never touched. The rule's match
        counter grows by the number of transactions it categorized.
        """
        rule = await self._rules.get_rule(rule_id, user_id)
        if rule is None:
            raise RuleNotFoundError("Rule not found")

        transactions = await self._transactions.list_transactions(user_id)
        matching_ids = [
            t.id for t in transactions
            if t.category_id is None and self._engine.evaluate_rule(
                rule,
                RuleTransactionInput(description=t.description or "", amount=t.amount),
            )
        ]

        if not matching_ids:
            return ApplyRuleResult(rule_id=rule.id, applied_count=0, match_count=rule.match_count)

        updated = await self._transactions.bulk_update(
            user_id,
            matching_ids,
            {"category_id": rule.category_id, "applied_rule_id": rule.id},
            self._clock(),
        )
        match_count = await self._rules.increment_match_count(rule.id, user_id, by=len(updated))

        return ApplyRuleResult(
            rule_id=rule.id,
            applied_count=len(updated),
            match_count=match_count,
        )


# =============================================================================
# WIRING
# =============================================================================

class AppComponents:
    """Everything the HTTP layer (and tests) need, wired together."""

    def __init__(
        self,
        command_flow: CommandFlow,
        transaction_flow: TransactionFlow,
        transaction_storage: TransactionStorageInterface,
        category_storage: CategoryStorageInterface,
        rule_storage: RuleStorageInterface,
        command_storage: CommandStorageInterface,
        audit_storage: InMemoryAuditStorage,
        rate_limiter: RateLimiter,
    ):
        self.command_flow = command_flow
        self.transaction_flow = transaction_flow
        self.transaction_storage = transaction_storage
        self.category_storage = category_storage
        self.rule_storage = rule_storage
        self.command_storage = command_storage
        self.audit_storage = audit_storage
        self.rate_limiter = rate_limiter


def create_app_components(
    llm_client: Optional[LLMClient] = None,
    clock: Callable[[], datetime] = utc_now,
) -> AppComponents:
    """
    Factory function to create all application components.

    Uses in-memory storage. A host application with its own database
    builds the flows directly with its storage implementations.

    Args:
        llm_client: Model client (tests inject one backed by a mock
                    transport). When None, one is built from settings
                    on the first command.
        clock: Source of "now" shared by both flows

    Returns:
        AppComponents
    """
    transaction_storage = InMemoryTransactionStorage()
    category_storage = InMemoryCategoryStorage()
    rule_storage = InMemoryRuleStorage()
    command_storage = InMemoryCommandStorage()
    audit_storage = InMemoryAuditStorage()
    audit_logger = AuditLogger(audit_storage)
    rate_limiter = RateLimiter()
    interpreter = CommandInterpreter(llm_client, audit_logger) if llm_client else None

    command_flow = CommandFlow(
        command_storage=command_storage,
        transaction_storage=transaction_storage,
        category_storage=category_storage,
        audit_logger=audit_logger,
        interpreter=interpreter,
        rate_limiter=rate_limiter,
        clock=clock,
    )

    transaction_flow = TransactionFlow(
        transaction_storage=transaction_storage,
        category_storage=category_storage,
        rule_storage=rule_storage,
        clock=clock,
    )

    return AppComponents(
        command_flow=command_flow,
        transaction_flow=transaction_flow,
        transaction_storage=transaction_storage,
        category_storage=category_storage,
        rule_storage=rule_storage,
        command_storage=command_storage,
        audit_storage=audit_storage,
        rate_limiter=rate_limiter,
    )
