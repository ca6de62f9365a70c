"""
Transaction Matching Engine

Resolves a scoped action to the concrete records it would change, and
computes the before/after preview the user confirms.

DESIGN DECISION: Matching is pure, synchronous computation over records
the caller already fetched for the scoped user. The engine still filters
by user_id itself, so handing it another user's rows cannot leak them.

FUZZY CATEGORY MATCH:
category_name is free text from the model ("groceries", "Food & Drink").
It is resolved with trigram similarity (the same measure as PostgreSQL's
pg_trgm) against the user's OWN categories only:
- similarity must be strictly above the configured floor (0.3)
- only the single best category is used
- if nothing clears the floor, the match set is EMPTY. We never fall back
  to a low-confidence guess.
"""

import re
from typing import Optional
from uuid import UUID

from ledger_assistant.config import get_settings
from ledger_assistant.models.command import (
    PreviewRecord,
    PreviewSnapshot,
    ScopedAction,
    TransactionChanges,
    TransactionFilters,
)
from ledger_assistant.models.transaction import Category, Transaction


WORD_SPLIT = re.compile(r"[^\w]+|_+")


def _trigrams(text: str) -> set[str]:
    """pg_trgm trigram set: each lower-cased word padded "  word "."""
    grams: set[str] = set()
    for word in WORD_SPLIT.split(text.lower()):
        if not word:
            continue
        padded = f"  {word} "
        for i in range(len(padded) - 2):
            grams.add(padded[i:i + 3])
    return grams


def trigram_similarity(a: str, b: str) -> float:
    """
    Shared trigrams over distinct trigrams of both strings (0.0 to 1.0).

    Matches pg_trgm's similarity() for alphanumeric text.
    """
    grams_a = _trigrams(a)
    grams_b = _trigrams(b)
    if not grams_a or not grams_b:
        return 0.0
    return len(grams_a & grams_b) / len(grams_a | grams_b)


class MatchingEngine:
    """
    Conjunctive filter over one user's transactions, plus preview.

    Usage:
        engine = MatchingEngine()
        matches = engine.find_matching_transactions(scoped, transactions, categories)
        preview = engine.build_preview(matches, scoped.action.changes, categories)
    """

    def __init__(self, similarity_threshold: Optional[float] = None):
        if similarity_threshold is None:
            similarity_threshold = get_settings().guardrails.category_similarity_threshold
        self._threshold = similarity_threshold

    def resolve_category(
        self,
        name: str,
        categories: list[Category],
        user_id: UUID,
    ) -> Optional[Category]:
        """
        Best category of user_id whose name is similar enough to `name`.

        Ties keep the first category in the given order.
        """
        best: Optional[Category] = None
        best_score = self._threshold
        for category in categories:
            if category.user_id != user_id:
                continue
            score = trigram_similarity(category.name, name)
            if score > best_score:
                best, best_score = category, score
        return best

    def _matches(
        self,
        transaction: Transaction,
        filters: TransactionFilters,
        category_id: Optional[UUID],
    ) -> bool:
        if filters.description_contains:
            needle = filters.description_contains.lower()
            if needle not in (transaction.description or "").lower():
                return False

        if filters.amount_equals is not None and transaction.amount != filters.amount_equals:
            return False

        if filters.amount_range is not None:
            if not filters.amount_range.min <= transaction.amount <= filters.amount_range.max:
                return False

        if filters.date_range is not None:
            start = filters.date_range.start_date
            end = filters.date_range.end_date
            if not start <= transaction.occurred_on <= end:
                return False

        if filters.transaction_type is not None and transaction.type != filters.transaction_type:
            return False

        if category_id is not None and transaction.category_id != category_id:
            return False

        return True

    def find_matching_transactions(
        self,
        scoped: ScopedAction,
        transactions: list[Transaction],
        categories: list[Category],
    ) -> list[Transaction]:
        """
        Transactions of scoped.user_id matching every filter, capped.

        Args:
            scoped: The validated action bound to its user
            transactions: Candidate records (normally the user's own)
            categories: Candidate categories for category_name resolution

        Returns:
            At most scoped.max_transactions records, in input order
        """
        filters = scoped.action.filters

        category_id = None
        if filters.category_name:
            category = self.resolve_category(filters.category_name, categories, scoped.user_id)
            if category is None:
                return []
            category_id = category.id

        matches = []
        for transaction in transactions:
            if transaction.user_id != scoped.user_id:
                continue
            if self._matches(transaction, filters, category_id):
                matches.append(transaction)
                if len(matches) >= scoped.max_transactions:
                    break
        return matches

    def build_preview(
        self,
        transactions: list[Transaction],
        changes: TransactionChanges,
        categories: list[Category],
    ) -> list[PreviewRecord]:
        """
        Before/after snapshot of each record with changes applied.

        Nothing is persisted. An unknown target category shows its id.
        """
        names = {category.id: category.name for category in categories}
        records = []
        for transaction in transactions:
            before = PreviewSnapshot(
                description=transaction.description,
                category=names.get(transaction.category_id) if transaction.category_id else None,
                amount=str(transaction.amount),
                type=transaction.type,
            )
            after = before.model_copy()
            if changes.amount is not None:
                after.amount = changes.amount
            if changes.description is not None:
                after.description = changes.description
            if changes.category_id is not None:
                after.category = names.get(changes.category_id, str(changes.category_id))
            if changes.type is not None:
                after.type = changes.type
            records.append(PreviewRecord(id=transaction.id, before=before, after=after))
        return records
