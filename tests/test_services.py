"""
Tests for storage, the rate limiter and the audit logger.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from conftest import START, USER_A, USER_B, make_transaction
from ledger_assistant.audit import AuditLogger
from ledger_assistant.models import (
    Action,
    AuditEventBuilder,
    AuditEventType,
    CategoryRule,
    Command,
    CommandResult,
    CommandStatus,
)
from ledger_assistant.models.transaction import utc_now
from ledger_assistant.services import (
    DuplicateError,
    InMemoryAuditStorage,
    InMemoryCommandStorage,
    InMemoryRuleStorage,
    InMemoryTransactionStorage,
    NotFoundError,
    RateLimiter,
)


def _command(user_id=USER_A, expires_in: int = 300) -> Command:
    return Command(
        user_id=user_id,
        prompt="Put coffee in Food",
        interpretation="Categorize coffee as Food",
        action=Action.model_validate({
            "type": "update_transactions",
            "filters": {"description_contains": "coffee"},
            "changes": {"categoryId": str(uuid4())},
        }),
        created_at=START,
        expires_at=START + timedelta(seconds=expires_in),
    )


class FailingAuditStorage(InMemoryAuditStorage):
    async def append_event(self, event):
        raise RuntimeError("disk full")


# =============================================================================
# STORAGE
# =============================================================================

class TestCommandStorage:
    """Tests for staged command persistence."""

    @pytest.mark.asyncio
    async def test_round_trip(self):
        """Test that a stored command reads back unchanged."""
        storage = InMemoryCommandStorage()
        command = await storage.create_command(_command())

        loaded = await storage.get_command(command.id, USER_A)
        assert loaded == command
        assert storage.get_version(command.id) == 1

    @pytest.mark.asyncio
    async def test_duplicate_id(self):
        """Test that ids are unique."""
        storage = InMemoryCommandStorage()
        command = await storage.create_command(_command())
        with pytest.raises(DuplicateError):
            await storage.create_command(command)

    @pytest.mark.asyncio
    async def test_other_users_command_is_invisible(self):
        """Test that ownership is part of every lookup."""
        storage = InMemoryCommandStorage()
        command = await storage.create_command(_command())

        assert await storage.get_command(command.id, USER_B) is None
        assert await storage.claim_pending(command.id, USER_B, START) is None
        assert await storage.cancel_pending(command.id, USER_B) is False

    @pytest.mark.asyncio
    async def test_claim_succeeds_once(self):
        """Test compare-and-set: a second claim finds the command confirmed."""
        storage = InMemoryCommandStorage()
        command = await storage.create_command(_command())

        claimed = await storage.claim_pending(command.id, USER_A, START)
        assert claimed.status == CommandStatus.CONFIRMED
        assert claimed.executed_at == START
        assert await storage.claim_pending(command.id, USER_A, START) is None
        assert storage.get_version(command.id) == 2

    @pytest.mark.asyncio
    async def test_concurrent_claims(self):
        """Test that of many concurrent claims exactly one wins."""
        storage = InMemoryCommandStorage()
        command = await storage.create_command(_command())

        results = await asyncio.gather(*[
            storage.claim_pending(command.id, USER_A, START) for _ in range(10)
        ])
        assert sum(1 for r in results if r is not None) == 1

    @pytest.mark.asyncio
    async def test_claim_after_expiry(self):
        """Test that an expired command cannot be claimed."""
        storage = InMemoryCommandStorage()
        command = await storage.create_command(_command(expires_in=300))

        assert await storage.claim_pending(command.id, USER_A, START + timedelta(seconds=300)) is None
        assert (await storage.get_command(command.id, USER_A)).status == CommandStatus.PENDING

    @pytest.mark.asyncio
    async def test_terminal_states_are_final(self):
        """Test that no transition leaves a terminal state."""
        storage = InMemoryCommandStorage()
        command = await storage.create_command(_command())

        assert await storage.cancel_pending(command.id, USER_A) is True
        assert await storage.mark_expired(command.id, USER_A) is False
        assert await storage.claim_pending(command.id, USER_A, START) is None
        assert (await storage.get_command(command.id, USER_A)).status == CommandStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_record_result(self):
        """Test storing the outcome of a confirm."""
        storage = InMemoryCommandStorage()
        command = await storage.create_command(_command())
        await storage.claim_pending(command.id, USER_A, START)

        await storage.record_result(
            command.id, USER_A,
            CommandResult(success=True, updated_count=2, updated_at=START),
        )
        loaded = await storage.get_command(command.id, USER_A)
        assert loaded.result.updated_count == 2

        with pytest.raises(NotFoundError):
            await storage.record_result(
                command.id, USER_B,
                CommandResult(success=True, updated_count=2, updated_at=START),
            )


class TestTransactionStorage:
    """Tests for transaction persistence."""

    @pytest.mark.asyncio
    async def test_bulk_update_is_scoped(self):
        """Test that ids belonging to another user are skipped."""
        storage = InMemoryTransactionStorage()
        mine = await storage.create_transaction(make_transaction(USER_A, "Coffee"))
        theirs = await storage.create_transaction(make_transaction(USER_B, "Coffee"))
        later = START + timedelta(minutes=5)

        updated = await storage.bulk_update(
            USER_A, [mine.id, theirs.id, uuid4()], {"amount": Decimal("9.00")}, later
        )

        assert [t.id for t in updated] == [mine.id]
        assert updated[0].amount == Decimal("9.00")
        assert updated[0].updated_at == later
        assert (await storage.get_transaction(theirs.id, USER_B)).amount == Decimal("4.50")

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self):
        """Test that mutating a returned model does not change storage."""
        storage = InMemoryTransactionStorage()
        txn = await storage.create_transaction(make_transaction(USER_A, "Coffee"))

        [loaded] = await storage.list_transactions(USER_A)
        loaded.description = "changed"

        assert (await storage.get_transaction(txn.id, USER_A)).description == "Coffee"
        assert await storage.get_transaction(txn.id, USER_B) is None


class TestRuleStorage:
    """Tests for rule persistence."""

    @pytest.mark.asyncio
    async def test_increment_match_count(self, grab_rule: CategoryRule):
        """Test the match counter and its ownership check."""
        storage = InMemoryRuleStorage()
        await storage.save_rule(grab_rule)

        assert await storage.increment_match_count(grab_rule.id, USER_A) == 1
        assert await storage.increment_match_count(grab_rule.id, USER_A, by=3) == 4
        with pytest.raises(NotFoundError):
            await storage.increment_match_count(grab_rule.id, USER_B)


# =============================================================================
# RATE LIMITER
# =============================================================================

class FakeMonotonic:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestRateLimiter:
    """Tests for the per-user fixed window."""

    def test_quota_and_retry_after(self):
        """Test that the quota is enforced with a positive retry-after."""
        clock = FakeMonotonic()
        limiter = RateLimiter(max_requests=2, window_seconds=60, clock=clock)

        assert limiter.check(USER_A).allowed
        assert limiter.check(USER_A).allowed
        denied = limiter.check(USER_A)
        assert denied.allowed is False
        assert denied.retry_after == 60

        clock.now += 59.5
        assert limiter.check(USER_A).retry_after == 1

    def test_window_resets(self):
        """Test that a new window starts after the old one ends."""
        clock = FakeMonotonic()
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)

        assert limiter.check(USER_A).allowed
        assert not limiter.check(USER_A).allowed
        clock.now += 60
        assert limiter.check(USER_A).allowed

    def test_users_are_independent(self):
        """Test that one user's quota does not affect another's."""
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=FakeMonotonic())
        assert limiter.check(USER_A).allowed
        assert limiter.check(USER_B).allowed
        assert not limiter.check(USER_A).allowed

    def test_reset(self):
        """Test the explicit reset hook."""
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=FakeMonotonic())
        limiter.check(USER_A)
        limiter.check(USER_B)

        limiter.reset(USER_A)
        assert limiter.check(USER_A).allowed
        assert not limiter.check(USER_B).allowed

        limiter.reset()
        assert limiter.check(USER_B).allowed

    def test_defaults_from_settings(self):
        """Test the configured quota of 10 per minute."""
        limiter = RateLimiter(clock=FakeMonotonic())
        results = [limiter.check(USER_A).allowed for _ in range(11)]
        assert results == [True] * 10 + [False]

    def test_closed_windows_are_evicted(self):
        """Test that users whose window ended are no longer tracked."""
        clock = FakeMonotonic()
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
        for _ in range(50):
            limiter.check(uuid4())
        assert limiter.tracked_users() == 50

        clock.now += 60
        assert limiter.check(USER_A).allowed
        assert limiter.tracked_users() == 1


# =============================================================================
# AUDIT LOGGER
# =============================================================================

class TestAuditLogger:
    """Tests for audit logging and abuse detection."""

    @pytest.mark.asyncio
    async def test_log_persists(self):
        """Test that events reach storage."""
        storage = InMemoryAuditStorage()
        audit = AuditLogger(storage)

        await audit.log_rate_limited(USER_A, 30)

        [event] = await storage.get_events_for_user(USER_A)
        assert event.event_type == AuditEventType.RATE_LIMITED
        assert event.details == {"retry_after": 30}

    @pytest.mark.asyncio
    async def test_storage_failure_is_not_raised(self):
        """Test that a failing store never breaks the request."""
        audit = AuditLogger(FailingAuditStorage())
        event = AuditEventBuilder.command_cancelled(USER_A, uuid4())
        assert await audit.log(event) is False

    @pytest.mark.asyncio
    async def test_repeated_injections_are_suspicious(self):
        """Test the injection-attempt threshold."""
        audit = AuditLogger(InMemoryAuditStorage())
        for _ in range(3):
            await audit.log_injection_detected(USER_A, "jailbreak", ["Matches pattern: jailbreak"])

        check = await audit.detect_abuse_pattern(USER_A)
        assert check.suspicious is True
        assert check.reason == "Multiple injection attempts detected"
        assert (await audit.detect_abuse_pattern(USER_B)).suspicious is False

    @pytest.mark.asyncio
    async def test_repeated_validation_failures_are_suspicious(self):
        """Test the validation-failure threshold."""
        audit = AuditLogger(InMemoryAuditStorage())
        for _ in range(4):
            await audit.log_validation_failed(USER_A, "p", ["Invalid JSON"])
        assert (await audit.detect_abuse_pattern(USER_A)).suspicious is False

        await audit.log_validation_failed(USER_A, "p", ["Invalid JSON"])
        check = await audit.detect_abuse_pattern(USER_A)
        assert check.reason == "Multiple validation failures"

    @pytest.mark.asyncio
    async def test_old_events_are_ignored(self):
        """Test that only the trailing window counts."""
        audit = AuditLogger(InMemoryAuditStorage())
        for _ in range(3):
            await audit.log_injection_detected(USER_A, "jailbreak", [])

        later = utc_now() + timedelta(seconds=301)
        assert (await audit.detect_abuse_pattern(USER_A, now=later)).suspicious is False

    @pytest.mark.asyncio
    async def test_without_storage(self):
        """Test that a local-only logger never flags anyone."""
        audit = AuditLogger()
        for _ in range(5):
            await audit.log_injection_detected(USER_A, "jailbreak", [])
        assert (await audit.detect_abuse_pattern(USER_A)).suspicious is False

    @pytest.mark.asyncio
    async def test_injections_followed_by_many_events_are_still_counted(self):
        """Test that later lifecycle events cannot push attempts out of view."""
        audit = AuditLogger(InMemoryAuditStorage())
        for _ in range(3):
            await audit.log_injection_detected(USER_A, "jailbreak", [])
        for _ in range(150):
            await audit.log_command_cancelled(USER_A, uuid4())

        check = await audit.detect_abuse_pattern(USER_A)
        assert check.suspicious is True
        assert check.reason == "Multiple injection attempts detected"

    @pytest.mark.asyncio
    async def test_event_reads_without_limit(self):
        """Test that limit=None returns the whole history."""
        storage = InMemoryAuditStorage()
        audit = AuditLogger(storage)
        for _ in range(120):
            await audit.log_rate_limited(USER_A, 1)

        assert len(await storage.get_events_for_user(USER_A)) == 100
        assert len(await storage.get_events_for_user(USER_A, limit=None)) == 120
