"""Audit logging package."""

from ledger_assistant.audit.logger import AbuseCheck, AuditLogger

__all__ = ["AbuseCheck", "AuditLogger"]
