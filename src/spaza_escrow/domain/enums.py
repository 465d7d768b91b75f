"""Domain enumerations for the escrow engine.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no pydantic imports).
"""

import enum


class EscrowState(enum.StrEnum):
    """Lifecycle states of an escrow agreement.

    State transitions are enforced by the EscrowStateMachine guard.
    See domain/state_machine.py for the transition table.
    """

    CREATED = "CREATED"
    FUNDED = "FUNDED"
    IN_DISPUTE = "IN_DISPUTE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {EscrowState.COMPLETED, EscrowState.CANCELLED, EscrowState.REFUNDED}
)


class EventType(enum.StrEnum):
    """Types of audit events recorded in an escrow's history.

    Every state transition MUST produce exactly one event.
    """

    ESCROW_CREATED = "ESCROW_CREATED"
    ESCROW_FUNDED = "ESCROW_FUNDED"
    ESCROW_CANCELLED = "ESCROW_CANCELLED"
    FUNDS_RELEASED = "FUNDS_RELEASED"
    DISPUTE_RAISED = "DISPUTE_RAISED"
    DISPUTE_RESOLVED_SELLER = "DISPUTE_RESOLVED_SELLER"
    DISPUTE_RESOLVED_BUYER = "DISPUTE_RESOLVED_BUYER"
    TIME_LOCK_REFUND = "TIME_LOCK_REFUND"


class DisputeDecision(enum.StrEnum):
    """An arbitrator's vote."""

    FAVOR_BUYER = "favor_buyer"
    FAVOR_SELLER = "favor_seller"


class Role(enum.StrEnum):
    """Roles a participant may hold across escrows."""

    BUYER = "buyer"
    SELLER = "seller"
    ARBITRATOR = "arbitrator"


class Resolution(enum.StrEnum):
    """How a funded escrow reached its terminal state.

    Drives the trust ledger's adjustment policy.
    """

    RELEASED = "released"
    ARBITRATED_FOR_SELLER = "arbitrated_for_seller"
    ARBITRATED_FOR_BUYER = "arbitrated_for_buyer"
    TIME_LOCK_REFUND = "time_lock_refund"


class TrustLevel(enum.StrEnum):
    """Trust bands derived from a score on the 0-100 scale."""

    NEWBIE = "NEWBIE"
    BRONZE = "BRONZE"
    SILVER = "SILVER"
    GOLD = "GOLD"
    PLATINUM = "PLATINUM"
    TRUSTED = "TRUSTED"


class ErrorKind(enum.StrEnum):
    """Typed failure kinds surfaced by every engine operation."""

    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_STATE = "INVALID_STATE"
    UNAUTHORIZED = "UNAUTHORIZED"
    ALREADY_CONSUMED = "ALREADY_CONSUMED"
    NOT_FOUND = "NOT_FOUND"
    VERSION_CONFLICT = "VERSION_CONFLICT"
    QUORUM_NOT_REACHED = "QUORUM_NOT_REACHED"
    EXPIRED = "EXPIRED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
