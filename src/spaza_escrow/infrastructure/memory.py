"""In-memory repository.

Keeps escrows and identities in plain dicts owned by the instance, so every
engine (and every test) gets isolated storage. Writes made inside
``transaction()`` are journaled and applied in one step on clean exit; the
compare-and-swap check runs both when a write is staged and again at commit.
"""

from __future__ import annotations

import copy
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

from spaza_escrow.domain.exceptions import EscrowNotFoundError, VersionConflictError
from spaza_escrow.domain.models import Escrow, Identity
from spaza_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid
    from collections.abc import AsyncIterator

    from spaza_escrow.domain.enums import EscrowState

logger = get_logger(__name__)


@dataclass
class _Journal:
    """Writes staged by one transaction."""

    escrows: dict[uuid.UUID, Escrow] = field(default_factory=dict)
    # escrow id -> version the committed record must still have (None = insert)
    expected: dict[uuid.UUID, int | None] = field(default_factory=dict)
    identities: dict[str, Identity] = field(default_factory=dict)
    # user id -> version the committed identity must still have (0 = never stored)
    identity_expected: dict[str, int] = field(default_factory=dict)


class InMemoryEscrowRepository:
    """Dict-backed repository satisfying the EscrowRepository protocol."""

    def __init__(self, default_trust_score: Decimal = Decimal("50")) -> None:
        self._escrows: dict[uuid.UUID, Escrow] = {}
        self._identities: dict[str, Identity] = {}
        self._default_trust_score = default_trust_score
        self._journal: ContextVar[_Journal | None] = ContextVar(
            f"escrow_journal_{id(self)}", default=None
        )

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._journal.get() is not None:
            # Nested blocks join the outer unit of work
            yield
            return
        journal = _Journal()
        token = self._journal.set(journal)
        try:
            yield
            self._commit(journal)
        finally:
            self._journal.reset(token)

    def _commit(self, journal: _Journal) -> None:
        for escrow_id, expected in journal.expected.items():
            self._check_version(escrow_id, expected)
        for user_id, expected in journal.identity_expected.items():
            self._check_identity_version(user_id, expected)
        self._escrows.update(journal.escrows)
        self._identities.update(journal.identities)
        if journal.escrows or journal.identities:
            logger.debug(
                "repository.committed",
                escrows=len(journal.escrows),
                identities=len(journal.identities),
            )

    def _check_version(self, escrow_id: uuid.UUID, expected: int | None) -> None:
        stored = self._escrows.get(escrow_id)
        if expected is None:
            if stored is not None:
                raise VersionConflictError(str(escrow_id), None, stored.version)
            return
        if stored is None:
            raise EscrowNotFoundError(str(escrow_id))
        if stored.version != expected:
            raise VersionConflictError(str(escrow_id), expected, stored.version)

    def _check_identity_version(self, user_id: str, expected: int) -> None:
        stored = self._identities.get(user_id)
        actual = 0 if stored is None else stored.version
        if actual != expected:
            raise VersionConflictError(user_id, expected, actual)

    @asynccontextmanager
    async def _writing(self) -> AsyncIterator[_Journal]:
        """Yield the active journal, or an implicit single-write transaction."""
        journal = self._journal.get()
        if journal is not None:
            yield journal
            return
        async with self.transaction():
            yield self._journal.get()

    # ------------------------------------------------------------------
    # Escrows
    # ------------------------------------------------------------------

    async def add(self, escrow: Escrow) -> Escrow:
        async with self._writing() as journal:
            self._check_version(escrow.id, None)
            stored = copy.deepcopy(escrow)
            stored.version = 1
            journal.escrows[escrow.id] = stored
            journal.expected[escrow.id] = None
        return copy.deepcopy(stored)

    async def get(self, escrow_id: uuid.UUID) -> Escrow:
        journal = self._journal.get()
        if journal is not None and escrow_id in journal.escrows:
            return copy.deepcopy(journal.escrows[escrow_id])
        stored = self._escrows.get(escrow_id)
        if stored is None:
            raise EscrowNotFoundError(str(escrow_id))
        return copy.deepcopy(stored)

    async def put(self, escrow: Escrow, expected_version: int) -> Escrow:
        async with self._writing() as journal:
            staged = journal.escrows.get(escrow.id)
            if staged is not None:
                if staged.version != expected_version:
                    raise VersionConflictError(str(escrow.id), expected_version, staged.version)
            else:
                self._check_version(escrow.id, expected_version)
                journal.expected[escrow.id] = expected_version
            stored = copy.deepcopy(escrow)
            stored.version = expected_version + 1
            journal.escrows[escrow.id] = stored
        return copy.deepcopy(stored)

    async def list_escrows(self, state: EscrowState | None = None) -> list[Escrow]:
        escrows = [
            e for e in self._escrows.values() if state is None or e.state == state
        ]
        escrows.sort(key=lambda e: e.created_at, reverse=True)
        return [copy.deepcopy(e) for e in escrows]

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    async def get_identity(self, user_id: str) -> Identity:
        journal = self._journal.get()
        if journal is not None and user_id in journal.identities:
            return copy.deepcopy(journal.identities[user_id])
        stored = self._identities.get(user_id)
        if stored is None:
            return Identity(id=user_id, trust_score=self._default_trust_score)
        return copy.deepcopy(stored)

    async def put_identity(self, identity: Identity) -> Identity:
        async with self._writing() as journal:
            staged = journal.identities.get(identity.id)
            if staged is not None:
                if staged.version != identity.version:
                    raise VersionConflictError(identity.id, identity.version, staged.version)
            else:
                self._check_identity_version(identity.id, identity.version)
                journal.identity_expected[identity.id] = identity.version
            stored = copy.deepcopy(identity)
            stored.version = identity.version + 1
            journal.identities[identity.id] = stored
        return copy.deepcopy(stored)
