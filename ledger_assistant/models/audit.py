"""
Audit Models for Ledger Assistant

Every guardrail-relevant step of an AI command is logged. This provides:
1. Traceability of what the model was asked and what it returned
2. Input to abuse detection (repeated injection attempts, junk output)
3. A record of every mutation that was applied

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from ledger_assistant.models.transaction import utc_now


# Raw model output kept in audit details is capped at this length
MAX_LOGGED_RESPONSE_CHARS = 2000


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Pipeline
    PROMPT_RECEIVED = "prompt_received"
    INJECTION_DETECTED = "injection_detected"
    SCOPE_FIELD_STRIPPED = "scope_field_stripped"
    VALIDATION_FAILED = "validation_failed"
    UPSTREAM_FAILED = "upstream_failed"
    NO_MATCH_FOUND = "no_match_found"
    RATE_LIMITED = "rate_limited"

    # Command lifecycle
    ACTION_EXECUTED = "action_executed"
    COMMAND_CANCELLED = "command_cancelled"
    COMMAND_EXPIRED = "command_expired"
    COMMAND_REJECTED = "command_rejected"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    """

    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utc_now,
        description="When the event occurred (UTC)"
    )
    user_id: UUID = Field(
        ...,
        description="User whose request produced the event"
    )
    event_type: AuditEventType
    success: bool
    severity: AuditSeverity = AuditSeverity.INFO
    command_id: Optional[UUID] = None
    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Event-specific data (prompt, patterns, errors, counts)"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "user_id": str(self.user_id),
            "event_type": self.event_type.value,
            "success": self.success,
            "severity": self.severity.value,
            "command_id": str(self.command_id) if self.command_id else None,
            "description": self.description,
            "details": json.loads(json.dumps(self.details, default=str)),
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.prompt_received(user_id, prompt, patterns)
        event = AuditEventBuilder.action_executed(user_id, command_id, prompt, 2)
    """

    @staticmethod
    def prompt_received(
        user_id: UUID,
        prompt: str,
        flagged_patterns: list[str],
    ) -> AuditEvent:
        details: dict[str, Any] = {"prompt": prompt}
        if flagged_patterns:
            details["flagged_patterns"] = flagged_patterns
        return AuditEvent(
            event_type=AuditEventType.PROMPT_RECEIVED,
            user_id=user_id,
            success=True,
            description="AI command prompt received",
            details=details,
        )

    @staticmethod
    def injection_detected(
        user_id: UUID,
        prompt: str,
        reasons: list[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INJECTION_DETECTED,
            user_id=user_id,
            success=False,
            severity=AuditSeverity.WARNING,
            description=f"Prompt blocked: {len(reasons)} injection patterns matched",
            details={
                "prompt": prompt,
                "reasons": reasons,
            },
        )

    @staticmethod
    def scope_field_stripped(
        user_id: UUID,
        prompt: str,
        fields: list[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SCOPE_FIELD_STRIPPED,
            user_id=user_id,
            success=True,
            severity=AuditSeverity.WARNING,
            description=f"Removed {len(fields)} user identifier fields from model filters",
            details={
                "prompt": prompt,
                "fields": fields,
            },
        )

    @staticmethod
    def validation_failed(
        user_id: UUID,
        prompt: str,
        errors: list[str],
        llm_response: Optional[str] = None,
    ) -> AuditEvent:
        details: dict[str, Any] = {
            "prompt": prompt,
            "errors": errors,
        }
        if llm_response is not None:
            details["llm_response"] = llm_response[:MAX_LOGGED_RESPONSE_CHARS]
        return AuditEvent(
            event_type=AuditEventType.VALIDATION_FAILED,
            user_id=user_id,
            success=False,
            severity=AuditSeverity.WARNING,
            description=f"Model output rejected with {len(errors)} errors",
            details=details,
        )

    @staticmethod
    def upstream_failed(
        user_id: UUID,
        prompt: str,
        error_type: str,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.UPSTREAM_FAILED,
            user_id=user_id,
            success=False,
            severity=AuditSeverity.ERROR,
            description=f"Model provider error: {error_type}",
            details={
                "prompt": prompt,
                "error_type": error_type,
                "error_message": error_message,
            },
        )

    @staticmethod
    def no_match_found(
        user_id: UUID,
        prompt: str,
        filters: dict,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.NO_MATCH_FOUND,
            user_id=user_id,
            success=False,
            description="No transactions matched the interpreted filters",
            details={
                "prompt": prompt,
                "filters": filters,
            },
        )

    @staticmethod
    def rate_limited(user_id: UUID, retry_after: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RATE_LIMITED,
            user_id=user_id,
            success=False,
            severity=AuditSeverity.WARNING,
            description="AI command rate limit exceeded",
            details={"retry_after": retry_after},
        )

    @staticmethod
    def action_executed(
        user_id: UUID,
        command_id: UUID,
        prompt: str,
        affected_transactions: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACTION_EXECUTED,
            user_id=user_id,
            success=True,
            command_id=command_id,
            description=f"Command applied to {affected_transactions} transactions",
            details={
                "prompt": prompt,
                "affected_transactions": affected_transactions,
            },
        )

    @staticmethod
    def command_cancelled(user_id: UUID, command_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.COMMAND_CANCELLED,
            user_id=user_id,
            success=True,
            command_id=command_id,
            description="Command cancelled by user",
        )

    @staticmethod
    def command_expired(user_id: UUID, command_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.COMMAND_EXPIRED,
            user_id=user_id,
            success=False,
            command_id=command_id,
            description="Command expired before confirmation",
        )

    @staticmethod
    def command_rejected(
        user_id: UUID,
        command_id: UUID,
        operation: str,
        reason: str,
    ) -> AuditEvent:
        """A confirm or cancel that was refused (missing or not pending)."""
        return AuditEvent(
            event_type=AuditEventType.COMMAND_REJECTED,
            user_id=user_id,
            success=False,
            severity=AuditSeverity.WARNING,
            command_id=command_id,
            description=f"Command {operation} refused: {reason}",
            details={
                "operation": operation,
                "reason": reason,
            },
        )
