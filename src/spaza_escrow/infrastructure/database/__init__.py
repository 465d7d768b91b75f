"""Database infrastructure — engine, ORM models, and repositories."""

from spaza_escrow.infrastructure.database.engine import (
    close_db,
    get_engine,
    get_session_factory,
    init_db,
    make_session_factory,
)
from spaza_escrow.infrastructure.database.orm_models import (
    Base,
    EscrowEventRow,
    EscrowRow,
    IdentityRow,
)
from spaza_escrow.infrastructure.database.repositories import SqlAlchemyEscrowRepository

__all__ = [
    "Base",
    "EscrowEventRow",
    "EscrowRow",
    "IdentityRow",
    "SqlAlchemyEscrowRepository",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
    "make_session_factory",
]
