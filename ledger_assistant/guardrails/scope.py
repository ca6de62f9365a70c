"""
User Scope Enforcement

The action the model produced never says WHOSE transactions it touches.
That comes only from the authenticated caller, attached here, and every
query and mutation downstream filters by it.
"""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from ledger_assistant.config import get_settings
from ledger_assistant.models.command import Action, ScopedAction
from ledger_assistant.models.transaction import Category


class OwnershipCheck(BaseModel):
    """Whether a referenced category belongs to the caller."""

    valid: bool
    error: Optional[str] = None


def enforce_user_scope(
    action: Action,
    user_id: UUID,
    max_transactions: Optional[int] = None,
) -> ScopedAction:
    """Bind a validated action to the caller and the per-command cap."""
    if max_transactions is None:
        max_transactions = get_settings().guardrails.max_transactions_per_command
    return ScopedAction(
        action=action,
        user_id=user_id,
        max_transactions=max_transactions,
    )


def validate_category_ownership(
    category_id: Optional[UUID],
    user_id: UUID,
    categories: list[Category],
) -> OwnershipCheck:
    """
    Check that a target category id belongs to user_id.

    Args:
        category_id: Category the change would assign (None means no change)
        user_id: Authenticated caller
        categories: Candidate categories; any owner is accepted here and
                    filtered by user_id
    """
    if category_id is None:
        return OwnershipCheck(valid=True)

    for category in categories:
        if category.id == category_id:
            if category.user_id != user_id:
                return OwnershipCheck(
                    valid=False,
                    error=f"Category {category_id} does not belong to user",
                )
            return OwnershipCheck(valid=True)

    return OwnershipCheck(valid=False, error=f"Category {category_id} not found")
