"""Repository adapters — in-memory and SQLAlchemy."""

from spaza_escrow.infrastructure.memory import InMemoryEscrowRepository

__all__ = ["InMemoryEscrowRepository"]
