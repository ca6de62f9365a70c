"""Transaction matching package."""

from ledger_assistant.matching.engine import MatchingEngine, trigram_similarity

__all__ = ["MatchingEngine", "trigram_similarity"]
