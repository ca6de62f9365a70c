"""
Storage Services Package

Provides abstract interfaces and the in-memory implementation.
The host application supplies a persistent backend implementing the
same interfaces.
"""

from ledger_assistant.services.storage.interface import (
    AuditStorageInterface,
    CategoryStorageInterface,
    CommandStorageInterface,
    DuplicateError,
    NotFoundError,
    RuleStorageInterface,
    StorageError,
    TransactionStorageInterface,
)
from ledger_assistant.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryCategoryStorage,
    InMemoryCommandStorage,
    InMemoryRuleStorage,
    InMemoryTransactionStorage,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "CategoryStorageInterface",
    "CommandStorageInterface",
    "RuleStorageInterface",
    "TransactionStorageInterface",
    # Exceptions
    "DuplicateError",
    "NotFoundError",
    "StorageError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryCategoryStorage",
    "InMemoryCommandStorage",
    "InMemoryRuleStorage",
    "InMemoryTransactionStorage",
]
