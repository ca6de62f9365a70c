"""
Abstract Storage Interface

DESIGN DECISION: Business logic talks to storage only through these
interfaces. This allows us to:
1. Plug in the host application's relational store
2. Use in-memory storage for testing
3. Keep guardrail logic decoupled from persistence details

CRITICAL: Every read and write that touches user data takes the owner's
user_id and filters by it. There is no "get by id regardless of owner"
for transactions, rules or commands.

The one exception is CategoryStorageInterface.get_category(), which
returns any owner's category so that ownership can be CHECKED (and a
mismatch reported) rather than silently missed.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from ledger_assistant.models.audit import AuditEvent
from ledger_assistant.models.command import Command, CommandResult
from ledger_assistant.models.rule import CategoryRule
from ledger_assistant.models.transaction import Category, Transaction


class TransactionStorageInterface(ABC):
    """
    Abstract interface for transaction storage.

    Transactions belong to the host application; this package reads them
    for matching and writes them only through bulk_update() and
    create_transaction().
    """

    @abstractmethod
    async def list_transactions(self, user_id: UUID) -> list[Transaction]:
        """
        All transactions owned by user_id, newest first.
        """
        pass

    @abstractmethod
    async def get_transaction(
        self,
        transaction_id: UUID,
        user_id: UUID,
    ) -> Optional[Transaction]:
        """
        Retrieve one transaction if it exists AND belongs to user_id.
        """
        pass

    @abstractmethod
    async def create_transaction(self, transaction: Transaction) -> Transaction:
        """
        Persist a new transaction.

        Raises:
            DuplicateError: If the id is already taken
        """
        pass

    @abstractmethod
    async def bulk_update(
        self,
        user_id: UUID,
        transaction_ids: list[UUID],
        changes: dict[str, Any],
        now: datetime,
    ) -> list[Transaction]:
        """
        Apply the same field changes to a set of transactions.

        Only ids that exist AND belong to user_id are touched; others are
        skipped silently. updated_at is set to now.

        Args:
            user_id: Owner the update is scoped to
            transaction_ids: Exact record set to update
            changes: Field name -> new value (model field names)
            now: Timestamp for updated_at

        Returns:
            The updated transactions
        """
        pass


class CategoryStorageInterface(ABC):
    """Abstract interface for category storage (read-mostly)."""

    @abstractmethod
    async def list_categories(self, user_id: UUID) -> list[Category]:
        """Categories owned by user_id."""
        pass

    @abstractmethod
    async def get_category(self, category_id: UUID) -> Optional[Category]:
        """
        Retrieve a category by id, whoever owns it.

        Callers MUST compare category.user_id with the requester.
        """
        pass

    @abstractmethod
    async def save_category(self, category: Category) -> Category:
        """Insert or replace a category."""
        pass


class RuleStorageInterface(ABC):
    """Abstract interface for auto-categorization rules."""

    @abstractmethod
    async def list_rules(self, user_id: UUID) -> list[CategoryRule]:
        """Rules owned by user_id, enabled or not."""
        pass

    @abstractmethod
    async def get_rule(self, rule_id: UUID, user_id: UUID) -> Optional[CategoryRule]:
        """Retrieve one rule if it belongs to user_id."""
        pass

    @abstractmethod
    async def save_rule(self, rule: CategoryRule) -> CategoryRule:
        """Insert or replace a rule."""
        pass

    @abstractmethod
    async def increment_match_count(
        self,
        rule_id: UUID,
        user_id: UUID,
        by: int = 1,
    ) -> int:
        """
        Atomically add `by` to a rule's match counter.

        Returns:
            The new counter value

        Raises:
            NotFoundError: If the rule does not exist for user_id
        """
        pass


class CommandStorageInterface(ABC):
    """
    Abstract interface for staged AI commands.

    CRITICAL: Status moves only out of pending, and only through the
    guarded operations below. Each of them is a compare-and-set: the
    change happens only if the stored status is still pending.
    """

    @abstractmethod
    async def create_command(self, command: Command) -> Command:
        """
        Persist a new pending command.

        Raises:
            DuplicateError: If the id is already taken
        """
        pass

    @abstractmethod
    async def get_command(self, command_id: UUID, user_id: UUID) -> Optional[Command]:
        """Retrieve a command if it exists AND belongs to user_id."""
        pass

    @abstractmethod
    async def claim_pending(
        self,
        command_id: UUID,
        user_id: UUID,
        now: datetime,
    ) -> Optional[Command]:
        """
        Atomically move a command from pending to confirmed.

        Succeeds only when status is pending AND now < expires_at.
        On success executed_at is set to now.

        Returns:
            The claimed command, or None if the condition did not hold
        """
        pass

    @abstractmethod
    async def mark_expired(self, command_id: UUID, user_id: UUID) -> bool:
        """
        Move a pending command to expired.

        Returns:
            True if this call changed the status
        """
        pass

    @abstractmethod
    async def cancel_pending(self, command_id: UUID, user_id: UUID) -> bool:
        """
        Move a pending command to cancelled.

        Returns:
            True if this call changed the status
        """
        pass

    @abstractmethod
    async def record_result(
        self,
        command_id: UUID,
        user_id: UUID,
        result: CommandResult,
    ) -> None:
        """
        Attach the execution result to a confirmed command.

        Raises:
            NotFoundError: If the command does not exist for user_id
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Args:
            event: The audit event to log

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_for_user(
        self,
        user_id: UUID,
        since: Optional[datetime] = None,
        limit: Optional[int] = 100,
    ) -> list[AuditEvent]:
        """
        Get a user's most recent events.

        Args:
            user_id: Whose events to return
            since: Only events strictly after this time
            limit: Maximum number of events to return (None for all)

        Returns:
            Events in chronological order (the last `limit` of them)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass
