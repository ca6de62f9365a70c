"""
Category Rule Models

A rule assigns a category to a new transaction when ALL of its conditions
hold. Conditions are stored as raw JSON (users edit them), so they are
parsed at evaluation time. A rule whose conditions do not parse never matches.
"""

from decimal import Decimal
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class DescriptionCondition(BaseModel):
    """Text comparison against the transaction description."""
    model_config = ConfigDict(populate_by_name=True)

    field: Literal["description"]
    operator: Literal["contains", "startsWith", "endsWith", "exact"]
    value: str
    negate: bool = False
    case_sensitive: bool = Field(default=False, alias="caseSensitive")


class AmountCondition(BaseModel):
    """Numeric comparison against the transaction amount."""

    field: Literal["amount"]
    operator: Literal["eq", "gt", "lt", "gte", "lte", "between"]
    value: Decimal
    # Upper bound for "between"
    value2: Optional[Decimal] = None


Condition = Annotated[
    Union[DescriptionCondition, AmountCondition],
    Field(discriminator="field"),
]

conditions_adapter = TypeAdapter(
    Annotated[list[Condition], Field(min_length=1)]
)


class CategoryRule(BaseModel):
    """A user-defined auto-categorization rule. Higher priority wins."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    category_id: UUID
    name: str = Field(..., min_length=1, max_length=255)
    conditions: list[dict[str, Any]] = Field(default_factory=list)
    priority: int = 0
    enabled: bool = True
    match_count: int = Field(default=0, ge=0)


class RuleTransactionInput(BaseModel):
    """The parts of a transaction a rule can look at."""

    description: str = ""
    amount: Decimal


class ConditionResult(BaseModel):
    """Outcome of one condition when testing a rule."""

    field: str
    operator: str
    value: Any
    matched: bool


class RuleTestResult(BaseModel):
    """Outcome of testing a rule against a sample transaction."""

    matches: bool
    condition_results: list[ConditionResult] = Field(default_factory=list)
