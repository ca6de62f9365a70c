"""Category rules package."""

from ledger_assistant.rules.engine import RuleMatchingEngine, parse_conditions

__all__ = ["RuleMatchingEngine", "parse_conditions"]
