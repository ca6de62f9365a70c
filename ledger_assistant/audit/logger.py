"""
Audit Logger

DESIGN DECISION: Every outcome of an AI command is logged, success or
failure. This provides:
1. Complete traceability (prompt, model reply, what was changed)
2. Input for abuse detection
3. Evidence when a guardrail fires

The audit logger:
- Gracefully handles failures (doesn't crash a request if logging fails)
- Logs locally through structlog AND appends to audit storage
- Never decides anything itself; abuse detection is advisory
"""

from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

import structlog
from pydantic import BaseModel

from ledger_assistant.config import get_settings
from ledger_assistant.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
)
from ledger_assistant.models.transaction import utc_now
from ledger_assistant.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AbuseCheck(BaseModel):
    """Result of the abuse heuristic for one user."""

    suspicious: bool
    reason: Optional[str] = None


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for operators)
    2. Audit storage (for abuse detection and later review)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally and abuse detection
                    never flags anyone.
        """
        self._storage = storage
        self._logger = structlog.get_logger()

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        # Always log locally
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        # Persist to storage if available
        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_prompt_received(
        self,
        user_id: UUID,
        prompt: str,
        flagged_patterns: list[str],
    ) -> None:
        """Log an incoming prompt (after sanitization)."""
        await self.log(AuditEventBuilder.prompt_received(user_id, prompt, flagged_patterns))

    async def log_injection_detected(
        self,
        user_id: UUID,
        prompt: str,
        reasons: list[str],
    ) -> None:
        """Log a prompt blocked by the injection check."""
        await self.log(AuditEventBuilder.injection_detected(user_id, prompt, reasons))

    async def log_scope_field_stripped(
        self,
        user_id: UUID,
        prompt: str,
        fields: list[str],
    ) -> None:
        """Log user identifiers removed from the model's filters."""
        await self.log(AuditEventBuilder.scope_field_stripped(user_id, prompt, fields))

    async def log_validation_failed(
        self,
        user_id: UUID,
        prompt: str,
        errors: list[str],
        llm_response: Optional[str] = None,
    ) -> None:
        """Log a model reply that failed parsing or schema validation."""
        await self.log(
            AuditEventBuilder.validation_failed(user_id, prompt, errors, llm_response)
        )

    async def log_upstream_failed(
        self,
        user_id: UUID,
        prompt: str,
        error: Exception,
    ) -> None:
        """Log a model provider failure that outlasted the retries."""
        await self.log(
            AuditEventBuilder.upstream_failed(
                user_id, prompt, type(error).__name__, str(error)
            )
        )

    async def log_no_match_found(
        self,
        user_id: UUID,
        prompt: str,
        filters: dict,
    ) -> None:
        """Log an interpretation whose filters matched nothing."""
        await self.log(AuditEventBuilder.no_match_found(user_id, prompt, filters))

    async def log_rate_limited(self, user_id: UUID, retry_after: int) -> None:
        """Log a refused request over the per-user quota."""
        await self.log(AuditEventBuilder.rate_limited(user_id, retry_after))

    async def log_action_executed(
        self,
        user_id: UUID,
        command_id: UUID,
        prompt: str,
        affected_transactions: int,
    ) -> None:
        """Log a confirmed command being applied."""
        await self.log(
            AuditEventBuilder.action_executed(
                user_id, command_id, prompt, affected_transactions
            )
        )

    async def log_command_cancelled(self, user_id: UUID, command_id: UUID) -> None:
        """Log a user cancelling a staged command."""
        await self.log(AuditEventBuilder.command_cancelled(user_id, command_id))

    async def log_command_expired(self, user_id: UUID, command_id: UUID) -> None:
        """Log a staged command passing its confirmation window."""
        await self.log(AuditEventBuilder.command_expired(user_id, command_id))

    async def log_command_rejected(
        self,
        user_id: UUID,
        command_id: UUID,
        operation: str,
        reason: str,
    ) -> None:
        """Log a refused confirm or cancel."""
        await self.log(
            AuditEventBuilder.command_rejected(user_id, command_id, operation, reason)
        )

    async def detect_abuse_pattern(
        self,
        user_id: UUID,
        now: Optional[datetime] = None,
    ) -> AbuseCheck:
        """
        Look for repeated guardrail hits in the trailing window.

        Flags a user with too many injection attempts or too many
        validation failures. Advisory only: callers decide what to do.
        """
        if self._storage is None:
            return AbuseCheck(suspicious=False)

        settings = get_settings().guardrails
        since = (now or utc_now()) - timedelta(seconds=settings.abuse_window_seconds)
        # Count the whole window, not just the most recent rows
        events = await self._storage.get_events_for_user(user_id, since=since, limit=None)

        injections = sum(
            1 for e in events if e.event_type == AuditEventType.INJECTION_DETECTED
        )
        if injections >= settings.abuse_injection_threshold:
            return AbuseCheck(
                suspicious=True,
                reason="Multiple injection attempts detected",
            )

        failures = sum(
            1 for e in events if e.event_type == AuditEventType.VALIDATION_FAILED
        )
        if failures >= settings.abuse_validation_failure_threshold:
            return AbuseCheck(
                suspicious=True,
                reason="Multiple validation failures",
            )

        return AbuseCheck(suspicious=False)
