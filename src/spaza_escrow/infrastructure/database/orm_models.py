"""SQLAlchemy 2.0 ORM models for the escrow store.

Three tables:
    1. escrows        — One row per escrow agreement, CAS-guarded by `version`.
    2. escrow_events  — Append-only audit log of every state transition.
    3. identities     — Participants and their trust records.

Design decisions:
    - UUIDs as primary keys for escrows (no sequential leakage).
    - Decimals stored as canonical strings so every backend round-trips exactly.
    - Datetimes stored as naive UTC and re-attached to UTC on load.
    - CHECK constraint on state to prevent invalid enum values at DB level.
    - escrow_events is append-only: no UPDATE or DELETE at the application level.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# Column types
# ---------------------------------------------------------------------------
class DecimalString(TypeDecorator):
    """Exact decimal persisted as text."""

    impl = String(40)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # noqa: ANN001
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):  # noqa: ANN001
        return None if value is None else Decimal(value)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime that survives backends without tz support."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to UTCDateTime column")
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value, dialect):  # noqa: ANN001
        return None if value is None else value.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# 1. escrows
# ---------------------------------------------------------------------------
class EscrowRow(Base):
    """An escrow agreement between a buyer and a seller."""

    __tablename__ = "escrows"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Participants ---
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)
    arbitrators: Mapped[list] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        comment="Panel fixed at creation (empty = assigned on dispute)",
    )

    # --- Financials ---
    amount: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # --- State (guarded by EscrowStateMachine) ---
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="CREATED")
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # --- Release PIN (digest only) ---
    release_pin_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    pin_consumed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # --- Dispute (present only while IN_DISPUTE) ---
    dispute: Mapped[dict | None] = mapped_column(JSON, nullable=True, default=None)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    funded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # --- Relationships ---
    events: Mapped[list[EscrowEventRow]] = relationship(
        "EscrowEventRow",
        back_populates="escrow",
        cascade="all, delete-orphan",
        order_by="EscrowEventRow.sequence.asc()",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "state IN ('CREATED', 'FUNDED', 'IN_DISPUTE', 'COMPLETED', "
            "'CANCELLED', 'REFUNDED')",
            name="ck_escrow_valid_state",
        ),
        Index("idx_escrow_state", "state"),
        Index("idx_escrow_buyer", "buyer_id"),
        Index("idx_escrow_seller", "seller_id"),
        Index("idx_escrow_expires_at", "expires_at"),
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<EscrowRow id={self.id} state={self.state} v{self.version}>"


# ---------------------------------------------------------------------------
# 2. escrow_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class EscrowEventRow(Base):
    """Immutable audit record of one state transition."""

    __tablename__ = "escrow_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrows.id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Position in the escrow's history, starting at 0",
    )
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    previous_state: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_state: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[str] = mapped_column(String(64), nullable=False, default="SYSTEM")
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    escrow: Mapped[EscrowRow] = relationship("EscrowRow", back_populates="events")

    __table_args__ = (
        Index("idx_event_escrow_sequence", "escrow_id", "sequence", unique=True),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowEventRow escrow={self.escrow_id} #{self.sequence} "
            f"{self.previous_state}->{self.new_state}>"
        )


# ---------------------------------------------------------------------------
# 3. identities
# ---------------------------------------------------------------------------
class IdentityRow(Base):
    """A participant's trust record. Optimistically locked via `version`."""

    __tablename__ = "identities"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    trust_score: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    roles: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    total_transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    disputed_transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[Decimal] = mapped_column(
        DecimalString, nullable=False, default=Decimal("0")
    )
    last_activity: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # [{"reason", "points", "applied_at", "expires_at"}, ...] oldest first
    penalties: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    bonuses: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<IdentityRow id={self.id} score={self.trust_score}>"
