"""Pydantic schemas for escrow records and operation outcomes."""

from spaza_escrow.schemas.escrow import (
    DisputeRecord,
    EscrowRecord,
    IdentityRecord,
    OutcomeRecord,
    TransitionEventRecord,
)

__all__ = [
    "DisputeRecord",
    "EscrowRecord",
    "IdentityRecord",
    "OutcomeRecord",
    "TransitionEventRecord",
]
