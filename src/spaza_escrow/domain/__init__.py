"""Domain layer — pure business logic with zero framework dependencies."""

from spaza_escrow.domain.enums import (
    DisputeDecision,
    ErrorKind,
    EscrowState,
    EventType,
    Role,
)
from spaza_escrow.domain.exceptions import (
    EscrowError,
    EscrowNotFoundError,
    InvalidStateError,
    VersionConflictError,
)
from spaza_escrow.domain.models import (
    Dispute,
    Escrow,
    Identity,
    Outcome,
    TransitionEvent,
    TrustBonus,
    TrustPenalty,
)
from spaza_escrow.domain.repository import EscrowRepository
from spaza_escrow.domain.state_machine import EscrowStateMachine

__all__ = [
    "DisputeDecision",
    "ErrorKind",
    "EscrowState",
    "EventType",
    "Role",
    "EscrowError",
    "EscrowNotFoundError",
    "InvalidStateError",
    "VersionConflictError",
    "Dispute",
    "Escrow",
    "Identity",
    "Outcome",
    "TransitionEvent",
    "TrustBonus",
    "TrustPenalty",
    "EscrowRepository",
    "EscrowStateMachine",
]
