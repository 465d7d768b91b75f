"""Shared test fixtures for the Spaza Escrow test suite.

Provides:
    - Settings isolated from any .env file
    - In-memory and SQLite-backed repositories
    - An engine plus a fixed clock and party identifiers
    - Async test support via pytest-asyncio
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from spaza_escrow.config import Settings
from spaza_escrow.infrastructure.database import (
    SqlAlchemyEscrowRepository,
    init_db,
    make_session_factory,
)
from spaza_escrow.infrastructure.memory import InMemoryEscrowRepository
from spaza_escrow.services.escrow_engine import EscrowEngine

BUYER = "buyer-lerato"
SELLER = "seller-sipho"
ARBITRATORS = ("arb-1", "arb-2", "arb-3")

# ---------------------------------------------------------------------------
# Configuration Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Return settings that ignore the developer's .env file."""
    return Settings(
        _env_file=None,
        arbitrator_roster=",".join(ARBITRATORS),
        record_lock_timeout_seconds=2.0,
    )


@pytest.fixture
def now() -> datetime:
    """A fixed point in time; tests pass it explicitly as the clock."""
    return datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def amount() -> Decimal:
    return Decimal("1500")


# ---------------------------------------------------------------------------
# Repository & Engine Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def repo(settings: Settings) -> InMemoryEscrowRepository:
    return InMemoryEscrowRepository(default_trust_score=settings.trust_score_default)


@pytest.fixture
def engine(repo: InMemoryEscrowRepository, settings: Settings, now: datetime) -> EscrowEngine:
    return EscrowEngine(repo, settings, clock=lambda: now)


@pytest_asyncio.fixture
async def sql_repo(settings: Settings):
    """SQLAlchemy repository over a private SQLite in-memory database."""
    db_engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    await init_db(db_engine)
    yield SqlAlchemyEscrowRepository(
        make_session_factory(db_engine),
        default_trust_score=settings.trust_score_default,
    )
    await db_engine.dispose()


@pytest.fixture
def sql_engine(sql_repo: SqlAlchemyEscrowRepository, settings: Settings, now: datetime) -> EscrowEngine:
    return EscrowEngine(sql_repo, settings, clock=lambda: now)
