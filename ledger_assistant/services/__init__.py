"""Services package."""

from ledger_assistant.services.rate_limit import RateLimitDecision, RateLimiter
from ledger_assistant.services.storage import (
    AuditStorageInterface,
    CategoryStorageInterface,
    CommandStorageInterface,
    DuplicateError,
    InMemoryAuditStorage,
    InMemoryCategoryStorage,
    InMemoryCommandStorage,
    InMemoryRuleStorage,
    InMemoryTransactionStorage,
    NotFoundError,
    RuleStorageInterface,
    StorageError,
    TransactionStorageInterface,
)

__all__ = [
    # Rate limiting
    "RateLimitDecision",
    "RateLimiter",
    # Storage services
    "AuditStorageInterface",
    "CategoryStorageInterface",
    "CommandStorageInterface",
    "DuplicateError",
    "InMemoryAuditStorage",
    "InMemoryCategoryStorage",
    "InMemoryCommandStorage",
    "InMemoryRuleStorage",
    "InMemoryTransactionStorage",
    "NotFoundError",
    "RuleStorageInterface",
    "StorageError",
    "TransactionStorageInterface",
]
