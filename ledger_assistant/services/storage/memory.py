"""
In-Memory Storage Implementation

Used by tests and for single-process deployments without a database.

DESIGN DECISION: Records are stored as serialized rows (JSON text for the
nested parts), the way a relational store would hold them. Callers always
get freshly decoded models back, so mutating a returned object never
changes stored state.

CONCURRENCY:
- Every table has a lock guarding its row map (insert / lookup)
- Every command row has its own lock and a version counter. Status
  changes are compare-and-set operations performed while holding the
  row lock, so two concurrent confirms cannot both claim a command.
- No lock is held across an await. The locks are threading.Lock, which
  makes the stores safe from both event-loop and thread-pool handlers.
"""

import json
import threading
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from ledger_assistant.models.audit import AuditEvent
from ledger_assistant.models.command import (
    Action,
    Command,
    CommandResult,
    CommandStatus,
    PreviewRecord,
)
from ledger_assistant.models.rule import CategoryRule
from ledger_assistant.models.transaction import Category, Transaction
from ledger_assistant.services.storage.interface import (
    AuditStorageInterface,
    CategoryStorageInterface,
    CommandStorageInterface,
    DuplicateError,
    NotFoundError,
    RuleStorageInterface,
    TransactionStorageInterface,
)


class InMemoryTransactionStorage(TransactionStorageInterface):
    """Transactions keyed by id, stored as JSON rows."""

    def __init__(self):
        self._rows: dict[UUID, str] = {}
        self._lock = threading.Lock()

    def clear(self) -> None:
        with self._lock:
            self._rows.clear()

    async def list_transactions(self, user_id: UUID) -> list[Transaction]:
        with self._lock:
            rows = list(self._rows.values())
        transactions = [Transaction.model_validate_json(row) for row in rows]
        owned = [t for t in transactions if t.user_id == user_id]
        owned.sort(key=lambda t: (t.occurred_on, t.created_at), reverse=True)
        return owned

    async def get_transaction(
        self,
        transaction_id: UUID,
        user_id: UUID,
    ) -> Optional[Transaction]:
        with self._lock:
            row = self._rows.get(transaction_id)
        if row is None:
            return None
        transaction = Transaction.model_validate_json(row)
        return transaction if transaction.user_id == user_id else None

    async def create_transaction(self, transaction: Transaction) -> Transaction:
        with self._lock:
            if transaction.id in self._rows:
                raise DuplicateError(f"Transaction {transaction.id} already exists")
            self._rows[transaction.id] = transaction.model_dump_json()
        return transaction.model_copy(deep=True)

    async def bulk_update(
        self,
        user_id: UUID,
        transaction_ids: list[UUID],
        changes: dict[str, Any],
        now: datetime,
    ) -> list[Transaction]:
        updated = []
        with self._lock:
            for transaction_id in transaction_ids:
                row = self._rows.get(transaction_id)
                if row is None:
                    continue
                current = Transaction.model_validate_json(row)
                if current.user_id != user_id:
                    continue
                data = current.model_dump()
                data.update(changes)
                data["updated_at"] = now
                new = Transaction.model_validate(data)
                self._rows[transaction_id] = new.model_dump_json()
                updated.append(new)
        return updated


class InMemoryCategoryStorage(CategoryStorageInterface):
    """Categories keyed by id."""

    def __init__(self):
        self._rows: dict[UUID, str] = {}
        self._lock = threading.Lock()

    def clear(self) -> None:
        with self._lock:
            self._rows.clear()

    async def list_categories(self, user_id: UUID) -> list[Category]:
        with self._lock:
            rows = list(self._rows.values())
        categories = [Category.model_validate_json(row) for row in rows]
        return [c for c in categories if c.user_id == user_id]

    async def get_category(self, category_id: UUID) -> Optional[Category]:
        with self._lock:
            row = self._rows.get(category_id)
        return Category.model_validate_json(row) if row else None

    async def save_category(self, category: Category) -> Category:
        with self._lock:
            self._rows[category.id] = category.model_dump_json()
        return category.model_copy(deep=True)


class InMemoryRuleStorage(RuleStorageInterface):
    """Rules keyed by id. Conditions are kept exactly as given."""

    def __init__(self):
        self._rows: dict[UUID, str] = {}
        self._lock = threading.Lock()

    def clear(self) -> None:
        with self._lock:
            self._rows.clear()

    async def list_rules(self, user_id: UUID) -> list[CategoryRule]:
        with self._lock:
            rows = list(self._rows.values())
        rules = [CategoryRule.model_validate_json(row) for row in rows]
        return [r for r in rules if r.user_id == user_id]

    async def get_rule(self, rule_id: UUID, user_id: UUID) -> Optional[CategoryRule]:
        with self._lock:
            row = self._rows.get(rule_id)
        if row is None:
            return None
        rule = CategoryRule.model_validate_json(row)
        return rule if rule.user_id == user_id else None

    async def save_rule(self, rule: CategoryRule) -> CategoryRule:
        with self._lock:
            self._rows[rule.id] = rule.model_dump_json()
        return rule.model_copy(deep=True)

    async def increment_match_count(
        self,
        rule_id: UUID,
        user_id: UUID,
        by: int = 1,
    ) -> int:
        with self._lock:
            row = self._rows.get(rule_id)
            rule = CategoryRule.model_validate_json(row) if row else None
            if rule is None or rule.user_id != user_id:
                raise NotFoundError(f"Rule {rule_id} not found")
            rule.match_count += by
            self._rows[rule_id] = rule.model_dump_json()
            return rule.match_count


class _CommandRow:
    """One stored command: column values, a version and its own lock."""

    __slots__ = ("values", "version", "lock")

    def __init__(self, values: dict[str, Any]):
        self.values = values
        self.version = 1
        self.lock = threading.Lock()


class InMemoryCommandStorage(CommandStorageInterface):
    """
    Staged commands with compare-and-set status transitions.

    Columns mirror the relational layout: action, preview and result are
    JSON text; status is a plain string.
    """

    def __init__(self):
        self._rows: dict[UUID, _CommandRow] = {}
        self._lock = threading.Lock()

    def clear(self) -> None:
        with self._lock:
            self._rows.clear()

    @staticmethod
    def _command_to_row(command: Command) -> dict[str, Any]:
        return {
            "id": command.id,
            "user_id": command.user_id,
            "prompt": command.prompt,
            "interpretation": command.interpretation,
            "action_json": command.action.model_dump_json(by_alias=True),
            "preview_json": json.dumps(
                [record.model_dump(mode="json") for record in command.preview]
            ),
            "status": command.status.value,
            "created_at": command.created_at,
            "expires_at": command.expires_at,
            "executed_at": command.executed_at,
            "result_json": command.result.model_dump_json() if command.result else None,
        }

    @staticmethod
    def _row_to_command(values: dict[str, Any]) -> Command:
        return Command(
            id=values["id"],
            user_id=values["user_id"],
            prompt=values["prompt"],
            interpretation=values["interpretation"],
            action=Action.model_validate_json(values["action_json"]),
            preview=[
                PreviewRecord.model_validate(record)
                for record in json.loads(values["preview_json"])
            ],
            status=CommandStatus(values["status"]),
            created_at=values["created_at"],
            expires_at=values["expires_at"],
            executed_at=values["executed_at"],
            result=(
                CommandResult.model_validate_json(values["result_json"])
                if values["result_json"] else None
            ),
        )

    def _owned_row(self, command_id: UUID, user_id: UUID) -> Optional[_CommandRow]:
        with self._lock:
            row = self._rows.get(command_id)
        if row is None or row.values["user_id"] != user_id:
            return None
        return row

    def _transition(
        self,
        command_id: UUID,
        user_id: UUID,
        new_status: CommandStatus,
        now: Optional[datetime] = None,
    ) -> Optional[Command]:
        """
        Compare-and-set pending -> new_status under the row lock.

        When now is given, the command must also not have expired.
        """
        row = self._owned_row(command_id, user_id)
        if row is None:
            return None
        with row.lock:
            if row.values["status"] != CommandStatus.PENDING.value:
                return None
            if now is not None and now >= row.values["expires_at"]:
                return None
            row.values["status"] = new_status.value
            if new_status == CommandStatus.CONFIRMED:
                row.values["executed_at"] = now
            row.version += 1
            return self._row_to_command(dict(row.values))

    async def create_command(self, command: Command) -> Command:
        row = _CommandRow(self._command_to_row(command))
        with self._lock:
            if command.id in self._rows:
                raise DuplicateError(f"Command {command.id} already exists")
            self._rows[command.id] = row
        return self._row_to_command(dict(row.values))

    async def get_command(self, command_id: UUID, user_id: UUID) -> Optional[Command]:
        row = self._owned_row(command_id, user_id)
        if row is None:
            return None
        with row.lock:
            values = dict(row.values)
        return self._row_to_command(values)

    async def claim_pending(
        self,
        command_id: UUID,
        user_id: UUID,
        now: datetime,
    ) -> Optional[Command]:
        return self._transition(command_id, user_id, CommandStatus.CONFIRMED, now=now)

    async def mark_expired(self, command_id: UUID, user_id: UUID) -> bool:
        return self._transition(command_id, user_id, CommandStatus.EXPIRED) is not None

    async def cancel_pending(self, command_id: UUID, user_id: UUID) -> bool:
        return self._transition(command_id, user_id, CommandStatus.CANCELLED) is not None

    async def record_result(
        self,
        command_id: UUID,
        user_id: UUID,
        result: CommandResult,
    ) -> None:
        row = self._owned_row(command_id, user_id)
        if row is None:
            raise NotFoundError(f"Command {command_id} not found")
        with row.lock:
            row.values["result_json"] = result.model_dump_json()
            row.version += 1

    def get_version(self, command_id: UUID) -> Optional[int]:
        """Row version, for tests asserting how many writes happened."""
        with self._lock:
            row = self._rows.get(command_id)
        return row.version if row else None


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only list of events."""

    def __init__(self):
        self._events: list[AuditEvent] = []
        self._lock = threading.Lock()

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    async def append_event(self, event: AuditEvent) -> bool:
        with self._lock:
            self._events.append(event.model_copy(deep=True))
        return True

    async def get_events_for_user(
        self,
        user_id: UUID,
        since: Optional[datetime] = None,
        limit: Optional[int] = 100,
    ) -> list[AuditEvent]:
        with self._lock:
            events = [e for e in self._events if e.user_id == user_id]
        if since is not None:
            events = [e for e in events if e.timestamp > since]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return [e.model_copy(deep=True) for e in events]
