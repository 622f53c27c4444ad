"""Billing run state machine and recovery table."""

from __future__ import annotations

from enum import Enum

from billing_engine.errors import BillingError


class RunStatus(str, Enum):
    """Billing run status values."""

    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class ClaimOutcome(str, Enum):
    """Result of claiming a (vendor, period) billing run."""

    CREATED = "created"
    RECOVERED = "recovered"
    RESUME_SEND = "resume_send"
    ALREADY_SENT = "already_sent"
    IN_FLIGHT = "in_flight"


class InvalidTransitionError(BillingError):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class BillingRunStateMachine:
    """State machine for billing run status transitions.

    Allowed transitions:
    - processing → sent
    - processing → failed
    - failed → processing (retry)

    ``sent`` is terminal. A stale ``processing`` run is reclaimed in place
    (status unchanged, timestamps reset) rather than transitioned.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        RunStatus.PROCESSING: [RunStatus.SENT, RunStatus.FAILED],
        RunStatus.FAILED: [RunStatus.PROCESSING],
        RunStatus.SENT: [],  # Terminal state
    }

    # (status, has_invoice, is_stale) -> outcome for an existing run
    RECOVERY_TABLE: dict[tuple[str, bool, bool], ClaimOutcome] = {
        (RunStatus.SENT, False, False): ClaimOutcome.ALREADY_SENT,
        (RunStatus.SENT, False, True): ClaimOutcome.ALREADY_SENT,
        (RunStatus.SENT, True, False): ClaimOutcome.ALREADY_SENT,
        (RunStatus.SENT, True, True): ClaimOutcome.ALREADY_SENT,
        (RunStatus.PROCESSING, False, False): ClaimOutcome.IN_FLIGHT,
        (RunStatus.PROCESSING, False, True): ClaimOutcome.RECOVERED,
        (RunStatus.PROCESSING, True, False): ClaimOutcome.IN_FLIGHT,
        (RunStatus.PROCESSING, True, True): ClaimOutcome.RESUME_SEND,
        (RunStatus.FAILED, False, False): ClaimOutcome.RECOVERED,
        (RunStatus.FAILED, False, True): ClaimOutcome.RECOVERED,
        (RunStatus.FAILED, True, False): ClaimOutcome.RESUME_SEND,
        (RunStatus.FAILED, True, True): ClaimOutcome.RESUME_SEND,
    }

    # Outcomes where this invocation owns the run and must carry on
    OWNED_OUTCOMES = {
        ClaimOutcome.CREATED,
        ClaimOutcome.RECOVERED,
        ClaimOutcome.RESUME_SEND,
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return not cls.VALID_TRANSITIONS.get(status, [])

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])

    @classmethod
    def recovery_outcome(cls, status: str, has_invoice: bool, is_stale: bool) -> ClaimOutcome:
        """Decide what an invocation does with an existing run."""
        try:
            return cls.RECOVERY_TABLE[(RunStatus(status), has_invoice, is_stale)]
        except (KeyError, ValueError):
            raise InvalidTransitionError(
                status, RunStatus.PROCESSING, "unknown billing run status"
            ) from None

    @classmethod
    def is_owned(cls, outcome: ClaimOutcome) -> bool:
        return outcome in cls.OWNED_OUTCOMES
