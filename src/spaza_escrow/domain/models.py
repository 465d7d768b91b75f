"""Domain entities: the escrow record, its audit trail, disputes and identities.

Plain dataclasses with no framework imports. The engine mutates a staged
copy of an Escrow and hands it to the repository for a compare-and-swap
write; nothing else changes a stored record.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from spaza_escrow.domain.enums import (
    DisputeDecision,
    EscrowState,
    EventType,
    Role,
)
from spaza_escrow.domain.exceptions import EscrowError, QuorumNotReachedError


def utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Release PIN helpers
# ---------------------------------------------------------------------------


def generate_pin(length: int = 6) -> str:
    """Return a random numeric PIN of the given length (no leading zero)."""
    low = 10 ** (length - 1)
    return str(low + secrets.randbelow(9 * low))


def hash_pin(escrow_id: uuid.UUID, pin: str, secret: str = "") -> str:
    """HMAC-SHA256 of the PIN bound to the escrow id. Only the digest is stored,
    and only until the PIN is consumed or the escrow closes."""
    message = f"{escrow_id}:{pin}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def pin_matches(escrow_id: uuid.UUID, pin: str, pin_hash: str, secret: str = "") -> bool:
    if not pin_hash:
        return False
    return hmac.compare_digest(hash_pin(escrow_id, pin, secret), pin_hash)


# ---------------------------------------------------------------------------
# Escrow aggregate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TransitionEvent:
    """One append-only history entry.

    Attributes:
        previous_state: State before the transition (None for creation).
        new_state: State after the transition.
        actor: Who triggered it (participant id or SYSTEM).
        timestamp: When it happened (caller-supplied clock).
        note: Free-text context.
        event_type: Audit classification.
        payload: Structured context, e.g. the final vote tally.
    """

    previous_state: EscrowState | None
    new_state: EscrowState
    actor: str
    timestamp: datetime
    note: str = ""
    event_type: EventType = EventType.ESCROW_CREATED
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class Dispute:
    """Open dispute sub-record, owned by its escrow and cleared on resolution."""

    raised_by: str
    opened_at: datetime
    panel: tuple[str, ...]
    quorum: int
    reason: str = ""
    votes: dict[str, DisputeDecision] = field(default_factory=dict)


@dataclass
class Escrow:
    """An escrow agreement between a buyer and a seller."""

    id: uuid.UUID
    amount: Decimal
    currency: str
    buyer_id: str
    seller_id: str
    description: str
    created_at: datetime
    expires_at: datetime
    release_pin_hash: str
    state: EscrowState = EscrowState.CREATED
    pin_consumed: bool = False
    funded_at: datetime | None = None
    closed_at: datetime | None = None
    arbitrators: tuple[str, ...] = ()
    dispute: Dispute | None = None
    history: list[TransitionEvent] = field(default_factory=list)
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.buyer_id, self.seller_id)

    def __repr__(self) -> str:
        return (
            f"<Escrow id={self.id} state={self.state} "
            f"amount={self.amount} {self.currency}>"
        )


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TrustPenalty:
    """A score deduction and the window during which it counts against the holder."""

    reason: str
    points: Decimal
    applied_at: datetime
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class TrustBonus:
    reason: str
    points: Decimal
    applied_at: datetime


@dataclass
class Identity:
    """A participant and their trust record.

    ``total_amount`` is the volume of every settled escrow the participant
    was party to; ``penalties`` and ``bonuses`` keep one entry per non-zero
    score adjustment, oldest first.
    """

    id: str
    trust_score: Decimal
    roles: set[Role] = field(default_factory=set)
    total_transactions: int = 0
    successful_transactions: int = 0
    disputed_transactions: int = 0
    total_amount: Decimal = Decimal("0")
    last_activity: datetime | None = None
    penalties: list[TrustPenalty] = field(default_factory=list)
    bonuses: list[TrustBonus] = field(default_factory=list)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0

    @property
    def dispute_rate(self) -> Decimal:
        if not self.total_transactions:
            return Decimal("0")
        return Decimal(self.disputed_transactions) / Decimal(self.total_transactions)

    def active_penalties(self, now: datetime) -> list[TrustPenalty]:
        return [p for p in self.penalties if p.is_active(now)]


# ---------------------------------------------------------------------------
# Operation outcome
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Outcome:
    """Typed result of an engine operation.

    Attributes:
        escrow: The record after the operation, or unchanged on failure
            (None only when the escrow could not be read at all).
        error: The failure, or a progress signal such as QuorumNotReached.
        release_pin: Cleartext PIN, present only on the creation outcome.
    """

    escrow: Escrow | None = None
    error: EscrowError | None = None
    release_pin: str | None = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def is_partial(self) -> bool:
        """True when the call made progress without completing (vote below quorum)."""
        return isinstance(self.error, QuorumNotReachedError)

    @property
    def state(self) -> EscrowState | None:
        return self.escrow.state if self.escrow else None

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "escrow_id": str(self.escrow.id) if self.escrow else None,
            "state": self.state.value if self.state else None,
            "error": self.error.code if self.error else None,
            "message": self.error.message if self.error else None,
        }
