"""Pydantic schemas for the escrow wire/storage representation.

These schemas define the serialized shapes of escrows, their history and
identities. They are separate from the domain dataclasses and the ORM rows
to keep a stable contract for collaborators. The release PIN digest is
deliberately absent from every record.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

from spaza_escrow.domain.enums import (
    DisputeDecision,
    EscrowState,
    EventType,
    Role,
    TrustLevel,
)
from spaza_escrow.services.trust_ledger import trust_level

# ---------------------------------------------------------------------------
# Escrow records
# ---------------------------------------------------------------------------


class TransitionEventRecord(BaseModel):
    """One entry of an escrow's append-only history."""

    model_config = ConfigDict(from_attributes=True)

    previous_state: EscrowState | None
    new_state: EscrowState
    actor: str
    timestamp: datetime
    note: str = ""
    event_type: EventType
    payload: dict[str, Any] = Field(default_factory=dict)


class DisputeRecord(BaseModel):
    """An open dispute and the votes cast so far."""

    model_config = ConfigDict(from_attributes=True)

    raised_by: str
    opened_at: datetime
    panel: list[str]
    quorum: int
    reason: str = ""
    votes: dict[str, DisputeDecision] = Field(default_factory=dict)


class EscrowRecord(BaseModel):
    """Serialized escrow agreement."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    amount: Decimal
    currency: str
    buyer_id: str
    seller_id: str
    description: str
    state: EscrowState
    created_at: datetime
    expires_at: datetime
    funded_at: datetime | None = None
    closed_at: datetime | None = None
    pin_consumed: bool
    arbitrators: list[str] = Field(default_factory=list)
    dispute: DisputeRecord | None = None
    history: list[TransitionEventRecord] = Field(default_factory=list)
    version: int


# ---------------------------------------------------------------------------
# Identity records
# ---------------------------------------------------------------------------


class TrustPenaltyRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    reason: str
    points: Decimal
    applied_at: datetime
    expires_at: datetime


class TrustBonusRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    reason: str
    points: Decimal
    applied_at: datetime


class IdentityRecord(BaseModel):
    """Serialized participant and trust record."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    trust_score: Decimal
    roles: list[Role] = Field(default_factory=list)
    total_transactions: int = 0
    successful_transactions: int = 0
    disputed_transactions: int = 0
    total_amount: Decimal = Decimal("0")
    last_activity: datetime | None = None
    penalties: list[TrustPenaltyRecord] = Field(default_factory=list)
    bonuses: list[TrustBonusRecord] = Field(default_factory=list)
    updated_at: datetime

    @computed_field
    @property
    def trust_level(self) -> TrustLevel:
        return trust_level(self.trust_score)


# ---------------------------------------------------------------------------
# Operation outcome
# ---------------------------------------------------------------------------


class OutcomeRecord(BaseModel):
    """Serialized result of an engine operation."""

    ok: bool
    error: str | None = None
    message: str | None = None
    release_pin: str | None = Field(
        default=None,
        description="Returned once, on creation only",
    )
    escrow: EscrowRecord | None = None

    @classmethod
    def from_outcome(cls, outcome: Any) -> OutcomeRecord:
        return cls(
            ok=outcome.ok,
            error=outcome.error.code if outcome.error else None,
            message=outcome.error.message if outcome.error else None,
            release_pin=outcome.release_pin,
            escrow=EscrowRecord.model_validate(outcome.escrow) if outcome.escrow else None,
        )
