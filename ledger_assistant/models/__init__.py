"""
Data Models Package

This package contains all Pydantic models used in Ledger Assistant.
All data flowing through the system must conform to these schemas.
"""

from ledger_assistant.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from ledger_assistant.models.command import (
    Action,
    AmountRange,
    Command,
    CommandResult,
    CommandStatus,
    DateRange,
    Interpretation,
    PreviewRecord,
    PreviewSnapshot,
    ScopedAction,
    TransactionChanges,
    TransactionFilters,
)
from ledger_assistant.models.rule import (
    AmountCondition,
    CategoryRule,
    Condition,
    ConditionResult,
    DescriptionCondition,
    RuleTestResult,
    RuleTransactionInput,
)
from ledger_assistant.models.transaction import (
    Category,
    Transaction,
    TransactionCreate,
    TransactionType,
    utc_now,
)

__all__ = [
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
    # Command models
    "Action",
    "AmountRange",
    "Command",
    "CommandResult",
    "CommandStatus",
    "DateRange",
    "Interpretation",
    "PreviewRecord",
    "PreviewSnapshot",
    "ScopedAction",
    "TransactionChanges",
    "TransactionFilters",
    # Rule models
    "AmountCondition",
    "CategoryRule",
    "Condition",
    "ConditionResult",
    "DescriptionCondition",
    "RuleTestResult",
    "RuleTransactionInput",
    # Records
    "Category",
    "Transaction",
    "TransactionCreate",
    "TransactionType",
    "utc_now",
]
