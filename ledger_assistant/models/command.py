"""
Command Models for Ledger Assistant

These models define the ONLY shape a model-generated action may take.

CRITICAL: Every schema here is closed (extra="forbid"). An unknown field is
a validation error, not something we silently drop. The action vocabulary
never includes a user identifier; ownership is supplied by the caller.

Staged commands follow a one-way lifecycle:
    pending → confirmed | cancelled | expired
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Literal, Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from ledger_assistant.models.transaction import TransactionType, utc_now


MAX_AMOUNT = Decimal("999999999")
UPDATE_TRANSACTIONS = "update_transactions"


# =============================================================================
# ACTION SCHEMA - what the model is allowed to ask for
# =============================================================================

class _ClosedModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class AmountRange(_ClosedModel):
    """Inclusive amount bounds."""

    min: Decimal = Field(..., ge=0, le=MAX_AMOUNT)
    max: Decimal = Field(..., ge=0, le=MAX_AMOUNT)

    @model_validator(mode="after")
    def check_order(self) -> "AmountRange":
        if self.min > self.max:
            raise ValueError("min must be <= max")
        return self


class DateRange(_ClosedModel):
    """Inclusive date bounds. Values are ISO dates (YYYY-MM-DD...)."""

    start: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}")
    end: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}")

    @field_validator("start", "end")
    @classmethod
    def check_calendar_date(cls, v: str) -> str:
        date.fromisoformat(v[:10])
        return v

    @property
    def start_date(self) -> date:
        return date.fromisoformat(self.start[:10])

    @property
    def end_date(self) -> date:
        return date.fromisoformat(self.end[:10])


class TransactionFilters(_ClosedModel):
    """
    Conditions that select transactions. All present conditions must hold.

    The caller's user_id is added at query time; it is never part of this model.
    """

    description_contains: Optional[str] = Field(default=None, max_length=200)
    amount_equals: Optional[Decimal] = Field(default=None, gt=0, le=MAX_AMOUNT)
    amount_range: Optional[AmountRange] = None
    date_range: Optional[DateRange] = None
    category_name: Optional[str] = Field(default=None, max_length=100)
    transaction_type: Optional[TransactionType] = None


class TransactionChanges(_ClosedModel):
    """Fields to write on every matched transaction."""

    category_id: Optional[UUID] = Field(default=None, alias="categoryId")
    amount: Optional[str] = Field(default=None, pattern=r"^\d+(\.\d{1,2})?$")
    description: Optional[str] = Field(default=None, max_length=500)
    type: Optional[TransactionType] = None

    def as_update(self) -> dict:
        """Only the fields the model actually set, ready for storage."""
        update: dict = {}
        if self.category_id is not None:
            update["category_id"] = self.category_id
        if self.amount is not None:
            update["amount"] = Decimal(self.amount)
        if self.description is not None:
            update["description"] = self.description
        if self.type is not None:
            update["type"] = self.type
        return update


class Action(_ClosedModel):
    """The single permitted action: a bulk update of transaction fields."""

    type: Literal["update_transactions"]
    filters: TransactionFilters
    changes: TransactionChanges


class Interpretation(_ClosedModel):
    """Full model reply: a human-readable explanation plus the action."""

    interpretation: str = Field(..., max_length=1000)
    action: Action


class ScopedAction(BaseModel):
    """
    An action bound to the authenticated user and a hard size cap.

    Everything downstream filters by user_id from here, never from the action.
    """

    action: Action
    user_id: UUID
    max_transactions: int = Field(default=100, ge=1)


# =============================================================================
# PREVIEW
# =============================================================================

class PreviewSnapshot(BaseModel):
    """The user-visible fields of a transaction at one point in time."""

    description: Optional[str] = None
    category: Optional[str] = None
    amount: str
    type: TransactionType


class PreviewRecord(BaseModel):
    """Before/after view of one transaction. Computed, never persisted to it."""

    id: UUID
    before: PreviewSnapshot
    after: PreviewSnapshot


# =============================================================================
# STAGED COMMAND
# =============================================================================

class CommandStatus(str, Enum):
    """
    Lifecycle of a staged command.

    CRITICAL: pending is the only non-terminal state. No transition ever
    leaves confirmed, cancelled or expired.
    """
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class CommandResult(BaseModel):
    """Outcome stored on a confirmed command."""

    success: bool
    updated_count: int = Field(ge=0)
    updated_at: datetime


class Command(BaseModel):
    """
    A proposed mutation awaiting explicit confirmation.

    Owned exclusively by user_id. Only status, executed_at and result
    change after creation.
    """

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    prompt: str = Field(..., max_length=500)
    interpretation: str = Field(..., max_length=1000)
    action: Action
    preview: list[PreviewRecord] = Field(default_factory=list)
    status: CommandStatus = CommandStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime
    executed_at: Optional[datetime] = None
    result: Optional[CommandResult] = None

    def is_expired(self, now: datetime) -> bool:
        """True once the confirmation window has closed."""
        return now >= self.expires_at

    def expires_in(self, now: datetime) -> int:
        """Whole seconds left to confirm, never negative."""
        return max(0, int((self.expires_at - now).total_seconds()))

    @property
    def target_ids(self) -> list[UUID]:
        """Record ids the user reviewed. Confirmation touches only these."""
        return [record.id for record in self.preview]
