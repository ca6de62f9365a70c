"""
Rule Matching Engine

Auto-categorization for newly created transactions.

Semantics:
- A rule matches when ALL of its conditions match (AND)
- Disabled rules never match
- A rule whose stored conditions fail the condition schema never matches
  (fail closed: a broken rule must not categorize everything)
- Among enabled rules, the highest priority wins; equal priorities keep
  their stored order. The FIRST match is used.

Amounts are compared as Decimal, never as floats.
"""

from decimal import Decimal
from typing import Optional

from pydantic import ValidationError

from ledger_assistant.models.rule import (
    AmountCondition,
    CategoryRule,
    Condition,
    ConditionResult,
    DescriptionCondition,
    RuleTestResult,
    RuleTransactionInput,
    conditions_adapter,
)


def parse_conditions(rule: CategoryRule) -> Optional[list[Condition]]:
    """Decode a rule's stored conditions, or None if they are invalid."""
    try:
        return conditions_adapter.validate_python(rule.conditions)
    except ValidationError:
        return None


def evaluate_description_condition(condition: DescriptionCondition, description: str) -> bool:
    if condition.case_sensitive:
        value, target = condition.value, description
    else:
        value, target = condition.value.lower(), description.lower()

    if condition.operator == "contains":
        result = value in target
    elif condition.operator == "startsWith":
        result = target.startswith(value)
    elif condition.operator == "endsWith":
        result = target.endswith(value)
    elif condition.operator == "exact":
        result = target == value
    else:
        result = False

    return not result if condition.negate else result


def evaluate_amount_condition(condition: AmountCondition, amount: Decimal) -> bool:
    if condition.operator == "eq":
        return amount == condition.value
    if condition.operator == "gt":
        return amount > condition.value
    if condition.operator == "lt":
        return amount < condition.value
    if condition.operator == "gte":
        return amount >= condition.value
    if condition.operator == "lte":
        return amount <= condition.value
    if condition.operator == "between":
        if condition.value2 is None:
            return False
        return condition.value <= amount <= condition.value2
    return False


def evaluate_condition(condition: Condition, transaction: RuleTransactionInput) -> bool:
    if isinstance(condition, DescriptionCondition):
        return evaluate_description_condition(condition, transaction.description)
    if isinstance(condition, AmountCondition):
        return evaluate_amount_condition(condition, transaction.amount)
    return False


class RuleMatchingEngine:
    """
    Evaluates category rules against a transaction.

    Pure and synchronous; rules are fetched by the caller.
    """

    def evaluate_rule(self, rule: CategoryRule, transaction: RuleTransactionInput) -> bool:
        """True if the rule is enabled, valid, and every condition holds."""
        if not rule.enabled:
            return False

        conditions = parse_conditions(rule)
        if conditions is None:
            return False

        return all(evaluate_condition(c, transaction) for c in conditions)

    def find_matching_rule(
        self,
        rules: list[CategoryRule],
        transaction: RuleTransactionInput,
    ) -> Optional[CategoryRule]:
        """First enabled rule, by descending priority, that matches."""
        enabled = [rule for rule in rules if rule.enabled]
        # sorted() is stable, so equal priorities keep their order
        for rule in sorted(enabled, key=lambda r: r.priority, reverse=True):
            if self.evaluate_rule(rule, transaction):
                return rule
        return None

    def test_rule(self, rule: CategoryRule, transaction: RuleTransactionInput) -> RuleTestResult:
        """
        Evaluate a rule condition by condition, for the rule editor.

        A disabled rule still reports each condition but never matches.
        Amount values are reported as strings.
        """
        conditions = parse_conditions(rule)
        if conditions is None:
            return RuleTestResult(matches=False)

        results = []
        for condition in conditions:
            matched = evaluate_condition(condition, transaction)
            if isinstance(condition, AmountCondition):
                if condition.operator == "between":
                    value = [
                        str(condition.value),
                        str(condition.value2) if condition.value2 is not None else None,
                    ]
                else:
                    value = str(condition.value)
            else:
                value = condition.value
            results.append(ConditionResult(
                field=condition.field,
                operator=condition.operator,
                value=value,
                matched=matched,
            ))

        return RuleTestResult(
            matches=rule.enabled and all(r.matched for r in results),
            condition_results=results,
        )
