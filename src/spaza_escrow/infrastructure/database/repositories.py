"""SQLAlchemy-backed repository.

Satisfies the EscrowRepository protocol on top of an async session factory.
``transaction()`` opens one session and one database transaction; every
read and write inside the block shares it, and the block commits on clean
exit or rolls back on error. Compare-and-swap comes from the mappers'
``version_id_col``: a stale UPDATE matches zero rows and is reported as a
VersionConflictError.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import attributes
from sqlalchemy.orm.exc import StaleDataError

from spaza_escrow.domain.enums import DisputeDecision, EscrowState, EventType, Role
from spaza_escrow.domain.exceptions import EscrowNotFoundError, VersionConflictError
from spaza_escrow.domain.models import (
    Dispute,
    Escrow,
    Identity,
    TransitionEvent,
    TrustBonus,
    TrustPenalty,
)
from spaza_escrow.infrastructure.database.orm_models import (
    EscrowEventRow,
    EscrowRow,
    IdentityRow,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


# ---------------------------------------------------------------------------
# Row <-> domain mapping
# ---------------------------------------------------------------------------


def _dispute_to_json(dispute: Dispute | None) -> dict | None:
    if dispute is None:
        return None
    return {
        "raised_by": dispute.raised_by,
        "opened_at": dispute.opened_at.isoformat(),
        "panel": list(dispute.panel),
        "quorum": dispute.quorum,
        "reason": dispute.reason,
        "votes": {arbitrator: d.value for arbitrator, d in dispute.votes.items()},
    }


def _dispute_from_json(data: dict | None) -> Dispute | None:
    if data is None:
        return None
    return Dispute(
        raised_by=data["raised_by"],
        opened_at=datetime.fromisoformat(data["opened_at"]),
        panel=tuple(data["panel"]),
        quorum=data["quorum"],
        reason=data.get("reason", ""),
        votes={a: DisputeDecision(d) for a, d in data["votes"].items()},
    )


def _event_to_row(escrow_id: uuid.UUID, sequence: int, event: TransitionEvent) -> EscrowEventRow:
    return EscrowEventRow(
        escrow_id=escrow_id,
        sequence=sequence,
        event_type=event.event_type.value,
        previous_state=event.previous_state.value if event.previous_state else None,
        new_state=event.new_state.value,
        actor=event.actor,
        note=event.note,
        payload=event.payload,
        timestamp=event.timestamp,
    )


def _escrow_from_row(row: EscrowRow) -> Escrow:
    return Escrow(
        id=row.id,
        amount=row.amount,
        currency=row.currency,
        buyer_id=row.buyer_id,
        seller_id=row.seller_id,
        description=row.description,
        created_at=row.created_at,
        expires_at=row.expires_at,
        release_pin_hash=row.release_pin_hash,
        state=EscrowState(row.state),
        pin_consumed=row.pin_consumed,
        funded_at=row.funded_at,
        closed_at=row.closed_at,
        arbitrators=tuple(row.arbitrators),
        dispute=_dispute_from_json(row.dispute),
        history=[
            TransitionEvent(
                previous_state=EscrowState(ev.previous_state) if ev.previous_state else None,
                new_state=EscrowState(ev.new_state),
                actor=ev.actor,
                timestamp=ev.timestamp,
                note=ev.note,
                event_type=EventType(ev.event_type),
                payload=dict(ev.payload),
            )
            for ev in row.events
        ],
        version=row.version,
    )


def _penalty_to_json(penalty: TrustPenalty) -> dict:
    return {
        "reason": penalty.reason,
        "points": str(penalty.points),
        "applied_at": penalty.applied_at.isoformat(),
        "expires_at": penalty.expires_at.isoformat(),
    }


def _bonus_to_json(bonus: TrustBonus) -> dict:
    return {
        "reason": bonus.reason,
        "points": str(bonus.points),
        "applied_at": bonus.applied_at.isoformat(),
    }


def _identity_from_row(row: IdentityRow) -> Identity:
    return Identity(
        id=row.id,
        trust_score=row.trust_score,
        roles={Role(r) for r in row.roles},
        total_transactions=row.total_transactions,
        successful_transactions=row.successful_transactions,
        disputed_transactions=row.disputed_transactions,
        total_amount=row.total_amount,
        last_activity=row.last_activity,
        penalties=[
            TrustPenalty(
                reason=p["reason"],
                points=Decimal(p["points"]),
                applied_at=datetime.fromisoformat(p["applied_at"]),
                expires_at=datetime.fromisoformat(p["expires_at"]),
            )
            for p in row.penalties
        ],
        bonuses=[
            TrustBonus(
                reason=b["reason"],
                points=Decimal(b["points"]),
                applied_at=datetime.fromisoformat(b["applied_at"]),
            )
            for b in row.bonuses
        ],
        updated_at=row.updated_at,
        version=row.version,
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SqlAlchemyEscrowRepository:
    """Data access for escrows and identities over an async session factory."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        default_trust_score: Decimal = Decimal("50"),
    ) -> None:
        self._session_factory = session_factory
        self._default_trust_score = default_trust_score
        self._current: ContextVar[AsyncSession | None] = ContextVar(
            f"escrow_session_{id(self)}", default=None
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._current.get() is not None:
            yield
            return
        async with self._session_factory() as session:
            token = self._current.set(session)
            try:
                async with session.begin():
                    yield
            finally:
                self._current.reset(token)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        session = self._current.get()
        if session is not None:
            yield session
            return
        async with self.transaction():
            yield self._current.get()

    async def _flush(self, session: AsyncSession, record_id: str) -> None:
        try:
            await session.flush()
        except (StaleDataError, IntegrityError) as err:
            raise VersionConflictError(record_id) from err

    # ------------------------------------------------------------------
    # Escrows
    # ------------------------------------------------------------------

    async def add(self, escrow: Escrow) -> Escrow:
        """Insert a new escrow together with its seeded history."""
        async with self._session() as session:
            row = EscrowRow(
                id=escrow.id,
                buyer_id=escrow.buyer_id,
                seller_id=escrow.seller_id,
                arbitrators=list(escrow.arbitrators),
                amount=escrow.amount,
                currency=escrow.currency,
                description=escrow.description,
                state=escrow.state.value,
                release_pin_hash=escrow.release_pin_hash,
                pin_consumed=escrow.pin_consumed,
                dispute=_dispute_to_json(escrow.dispute),
                created_at=escrow.created_at,
                expires_at=escrow.expires_at,
                funded_at=escrow.funded_at,
                closed_at=escrow.closed_at,
                events=[
                    _event_to_row(escrow.id, seq, ev) for seq, ev in enumerate(escrow.history)
                ],
            )
            session.add(row)
            await self._flush(session, str(escrow.id))
            return _escrow_from_row(row)

    async def get(self, escrow_id: uuid.UUID) -> Escrow:
        """Fetch an escrow by its UUID."""
        async with self._session() as session:
            row = await session.get(EscrowRow, escrow_id, populate_existing=True)
            if row is None:
                raise EscrowNotFoundError(str(escrow_id))
            return _escrow_from_row(row)

    async def put(self, escrow: Escrow, expected_version: int) -> Escrow:
        """Write the mutable fields and append new history entries (CAS on version)."""
        async with self._session() as session:
            row = await session.get(EscrowRow, escrow.id)
            if row is None:
                raise EscrowNotFoundError(str(escrow.id))
            if row.version != expected_version:
                raise VersionConflictError(str(escrow.id), expected_version, row.version)

            stored = len(row.events)
            if len(escrow.history) < stored:
                raise ValueError(f"history of escrow {escrow.id} is append-only")

            row.state = escrow.state.value
            row.pin_consumed = escrow.pin_consumed
            row.release_pin_hash = escrow.release_pin_hash
            row.dispute = _dispute_to_json(escrow.dispute)
            row.arbitrators = list(escrow.arbitrators)
            row.funded_at = escrow.funded_at
            row.closed_at = escrow.closed_at
            for seq, ev in enumerate(escrow.history[stored:], start=stored):
                row.events.append(_event_to_row(escrow.id, seq, ev))
            # Every write bumps the version, even when no column value changed
            attributes.flag_modified(row, "state")

            await self._flush(session, str(escrow.id))
            return _escrow_from_row(row)

    async def list_escrows(self, state: EscrowState | None = None) -> list[Escrow]:
        """Fetch all escrows, optionally with a given state, newest first."""
        async with self._session() as session:
            stmt = select(EscrowRow).order_by(EscrowRow.created_at.desc())
            if state is not None:
                stmt = stmt.where(EscrowRow.state == state.value)
            result = await session.execute(stmt)
            return [_escrow_from_row(row) for row in result.scalars().all()]

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    async def get_identity(self, user_id: str) -> Identity:
        async with self._session() as session:
            row = await session.get(IdentityRow, user_id, populate_existing=True)
            if row is None:
                return Identity(id=user_id, trust_score=self._default_trust_score)
            return _identity_from_row(row)

    async def put_identity(self, identity: Identity) -> Identity:
        async with self._session() as session:
            row = await session.get(IdentityRow, identity.id)
            if row is None:
                row = IdentityRow(id=identity.id)
                session.add(row)
            elif row.version != identity.version:
                raise VersionConflictError(identity.id, identity.version, row.version)

            row.trust_score = identity.trust_score
            row.roles = sorted(r.value for r in identity.roles)
            row.total_transactions = identity.total_transactions
            row.successful_transactions = identity.successful_transactions
            row.disputed_transactions = identity.disputed_transactions
            row.total_amount = identity.total_amount
            row.last_activity = identity.last_activity
            row.penalties = [_penalty_to_json(p) for p in identity.penalties]
            row.bonuses = [_bonus_to_json(b) for b in identity.bonuses]
            row.updated_at = identity.updated_at

            await self._flush(session, identity.id)
            return _identity_from_row(row)
