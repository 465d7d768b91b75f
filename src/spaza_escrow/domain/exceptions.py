"""Domain exceptions for the escrow engine.

These exceptions are framework-agnostic and represent business rule violations.
Guards and repositories raise them; the engine catches them at its public
boundary and hands them back inside an Outcome.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from spaza_escrow.domain.enums import ErrorKind

if TYPE_CHECKING:
    from datetime import datetime
    from decimal import Decimal


class EscrowError(Exception):
    """Base exception for all domain errors."""

    kind: ErrorKind = ErrorKind.VALIDATION_ERROR

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        if kind is not None:
            self.kind = kind
        self.message = message
        self.code = self.kind.value
        super().__init__(self.message)


class EscrowValidationError(EscrowError):
    """Raised when inputs are malformed (duration, parties, currency, naive timestamps)."""

    kind = ErrorKind.VALIDATION_ERROR


# --- Amount Errors ---


class InvalidAmountError(EscrowError):
    """Raised for a non-positive amount or a funding amount that does not match."""

    kind = ErrorKind.INVALID_AMOUNT

    def __init__(self, message: str, required: Decimal | None = None, provided: Decimal | None = None) -> None:
        super().__init__(message)
        self.required = required
        self.provided = provided


# --- State Machine Errors ---


class InvalidStateError(EscrowError):
    """Raised when an operation is attempted from an illegal source state.

    Example: fund_escrow on a CANCELLED escrow.
    """

    kind = ErrorKind.INVALID_STATE

    def __init__(self, current_state: str, operation: str) -> None:
        super().__init__(f"Operation '{operation}' not allowed from state {current_state}")
        self.current_state = current_state
        self.operation = operation


class DisputeClosedError(InvalidStateError):
    """Raised when a vote arrives after the dispute was resolved."""

    def __init__(self, current_state: str) -> None:
        super().__init__(current_state, "cast_vote")
        self.message = f"Dispute already closed; escrow is {current_state}"
        self.args = (self.message,)


# --- Authorization Errors ---


class UnauthorizedError(EscrowError):
    """Raised when the caller may not perform the attempted action."""

    kind = ErrorKind.UNAUTHORIZED

    def __init__(self, actor: str | None, action: str) -> None:
        super().__init__(f"{actor or 'anonymous caller'} is not authorized to {action}")
        self.actor = actor
        self.action = action


class InvalidPinError(UnauthorizedError):
    """Raised when the supplied release PIN does not match."""

    def __init__(self) -> None:
        super().__init__(None, "release funds")
        self.message = "Invalid release PIN"
        self.args = (self.message,)


class NotArbitratorError(UnauthorizedError):
    """Raised when a vote comes from someone outside the dispute panel."""

    def __init__(self, arbitrator_id: str) -> None:
        super().__init__(arbitrator_id, "vote on this dispute")


class AlreadyConsumedError(EscrowError):
    """Raised when the one-time release PIN has already been used."""

    kind = ErrorKind.ALREADY_CONSUMED

    def __init__(self, escrow_id: str) -> None:
        super().__init__(f"Release PIN already consumed for escrow {escrow_id}")
        self.escrow_id = escrow_id


# --- Lookup & Concurrency Errors ---


class EscrowNotFoundError(EscrowError):
    """Raised when an escrow ID does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, escrow_id: str) -> None:
        super().__init__(f"Escrow not found: {escrow_id}")
        self.escrow_id = escrow_id


class VersionConflictError(EscrowError):
    """Raised when a concurrent writer changed the record first. Re-read and retry."""

    kind = ErrorKind.VERSION_CONFLICT

    def __init__(self, record_id: str, expected: int | None = None, actual: int | None = None) -> None:
        super().__init__(
            f"Version conflict on {record_id}: expected {expected}, found {actual}"
        )
        self.record_id = record_id
        self.expected = expected
        self.actual = actual


# --- Progress & Time-lock Signals ---


class QuorumNotReachedError(EscrowError):
    """Vote recorded, resolution pending. A progress signal, not a failure."""

    kind = ErrorKind.QUORUM_NOT_REACHED

    def __init__(self, votes_cast: int, quorum: int) -> None:
        super().__init__(f"Vote recorded: {votes_cast} of {quorum} required votes cast")
        self.votes_cast = votes_cast
        self.quorum = quorum


class ExpiredError(EscrowError):
    """Raised when an operation needs the escrow to be inside its time-lock window."""

    kind = ErrorKind.EXPIRED

    def __init__(self, escrow_id: str, expires_at: datetime) -> None:
        super().__init__(f"Escrow {escrow_id} expired at {expires_at.isoformat()}")
        self.escrow_id = escrow_id
        self.expires_at = expires_at
