"""
Core Records for Ledger Assistant

Transactions and categories are owned by the surrounding application.
These models describe the shape this package reads and writes.

DESIGN DECISION: Money is always Decimal. Amounts arrive as strings or
integers and are never routed through binary floating point.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class TransactionType(str, Enum):
    """Direction of money flow."""
    INCOME = "income"
    EXPENSE = "expense"


class Category(BaseModel):
    """A user-defined category. Names and descriptions are user input."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)


class Transaction(BaseModel):
    """
    A stored financial transaction.

    applied_rule_id is set when the category was assigned automatically.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    type: TransactionType
    amount: Decimal = Field(..., ge=0, decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=500)
    category_id: Optional[UUID] = None
    applied_rule_id: Optional[UUID] = None
    occurred_on: date
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def to_api_dict(self) -> dict:
        """Wire representation (camelCase, decimal as string)."""
        return {
            "id": str(self.id),
            "type": self.type.value,
            "amount": str(self.amount),
            "description": self.description,
            "categoryId": str(self.category_id) if self.category_id else None,
            "appliedRuleId": str(self.applied_rule_id) if self.applied_rule_id else None,
            "date": self.occurred_on.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


class TransactionCreate(BaseModel):
    """Input for creating a transaction. category_id is optional."""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        populate_by_name=True,
        extra="forbid",
    )

    type: TransactionType
    amount: Decimal = Field(..., ge=0, max_digits=14, decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=500)
    category_id: Optional[UUID] = Field(default=None, alias="categoryId")
    occurred_on: date = Field(default_factory=date.today, alias="date")
