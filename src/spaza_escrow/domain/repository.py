"""Repository Protocol.

Defines the persistence contract the engine consumes. This is a Protocol
(structural subtyping) so adapters don't need to inherit from a base class,
they just need to match the shape.

Concrete implementations:
    - infrastructure/memory.py                  (in-process, per-instance state)
    - infrastructure/database/repositories.py   (SQLAlchemy async)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    import uuid
    from contextlib import AbstractAsyncContextManager

    from spaza_escrow.domain.enums import EscrowState
    from spaza_escrow.domain.models import Escrow, Identity


@runtime_checkable
class EscrowRepository(Protocol):
    """Storage for escrow and identity records."""

    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Open an all-or-nothing unit of work.

        Every write made inside the block becomes visible on clean exit;
        an exception discards all of them.
        """
        ...

    async def add(self, escrow: Escrow) -> Escrow:
        """Insert a new escrow record."""
        ...

    async def get(self, escrow_id: uuid.UUID) -> Escrow:
        """Return a detached copy of the record.

        Raises:
            EscrowNotFoundError: If no such escrow exists.
        """
        ...

    async def put(self, escrow: Escrow, expected_version: int) -> Escrow:
        """Compare-and-swap write. Returns the stored record with its new version.

        Raises:
            EscrowNotFoundError: If the record vanished.
            VersionConflictError: If the stored version differs from expected_version.
        """
        ...

    async def get_identity(self, user_id: str) -> Identity:
        """Return the identity, or a fresh default one if it was never stored."""
        ...

    async def put_identity(self, identity: Identity) -> Identity:
        """Insert or update an identity."""
        ...

    async def list_escrows(self, state: EscrowState | None = None) -> list[Escrow]:
        """Return all escrows, optionally filtered by state, newest first."""
        ...
