#!/usr/bin/env python3
"""Spaza Escrow — End-to-End Simulation.

Walks four scenarios between a Buyer, a Seller and a three-member
arbitrator panel:

    Scenario 1: Happy Path
        - Buyer creates a R1500 escrow for 30 days and funds it
        - Buyer hands over the release PIN -> COMPLETED, both trust scores rise

    Scenario 2: Dispute
        - Buyer funds, then disputes the delivery
        - Two of three arbitrators vote favor_buyer -> REFUNDED, seller penalized

    Scenario 3: Time-lock
        - Buyer funds a 1-day escrow and nothing else happens
        - Sweep two days later -> REFUNDED, no trust change

    Scenario 4: Cancellation
        - Buyer cancels before funding -> CANCELLED
        - A late funding attempt is rejected with INVALID_STATE

Usage:
    # In-memory repository (default):
    uv run python simulation.py

    # SQLAlchemy repository on SQLite in-memory:
    uv run python simulation.py --sqlite

    # Run a specific scenario:
    uv run python simulation.py --scenario 2
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from spaza_escrow.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from spaza_escrow.config import Settings  # noqa: E402
from spaza_escrow.domain.enums import DisputeDecision  # noqa: E402
from spaza_escrow.services.escrow_engine import EscrowEngine  # noqa: E402

# Module-level state
_sqlite_engine = None
_repository = None

START = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
SETTINGS = Settings(
    _env_file=None,
    arbitrator_roster="arb-thandi,arb-pieter,arb-nomsa",
)


# ---------------------------------------------------------------------------
# Repository lifecycle helpers
# ---------------------------------------------------------------------------
async def init_repository(use_sqlite: bool = False) -> None:
    """Create the repository every scenario shares."""
    global _sqlite_engine, _repository

    if use_sqlite:
        from sqlalchemy.ext.asyncio import create_async_engine
        from sqlalchemy.pool import StaticPool

        from spaza_escrow.infrastructure.database import (
            SqlAlchemyEscrowRepository,
            init_db,
            make_session_factory,
        )

        _sqlite_engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            poolclass=StaticPool,
        )
        await init_db(_sqlite_engine)
        _repository = SqlAlchemyEscrowRepository(
            make_session_factory(_sqlite_engine),
            default_trust_score=SETTINGS.trust_score_default,
        )
        logger.info("database.sqlite_initialized")
    else:
        from spaza_escrow.infrastructure.memory import InMemoryEscrowRepository

        _repository = InMemoryEscrowRepository(default_trust_score=SETTINGS.trust_score_default)


def get_engine() -> EscrowEngine:
    return EscrowEngine(_repository, SETTINGS)


async def shutdown_repository() -> None:
    global _sqlite_engine, _repository

    if _sqlite_engine is not None:
        await _sqlite_engine.dispose()
        _sqlite_engine = None
    _repository = None


# ---------------------------------------------------------------------------
# Participants
# ---------------------------------------------------------------------------
@dataclass
class Buyer:
    """Simulated buyer who opens, funds and settles escrows."""

    user_id: str = "buyer-lerato"
    pins: dict[str, str] = field(default_factory=dict)

    async def create_escrow(
        self,
        engine: EscrowEngine,
        seller: Seller,
        amount: Decimal,
        description: str,
        days: int,
    ) -> str:
        outcome = await engine.create_escrow(
            amount, "ZAR", self.user_id, seller.user_id, description, days, now=START
        )
        escrow_id = str(outcome.escrow.id)
        self.pins[escrow_id] = outcome.release_pin
        logger.info(
            "🔵 BUYER: Escrow created",
            escrow_id=escrow_id,
            amount=str(amount),
            state=outcome.state.value,
        )
        return escrow_id

    async def fund(self, engine: EscrowEngine, escrow_id: str, amount: Decimal, now: datetime) -> Any:
        outcome = await engine.fund_escrow(escrow_id, amount, now=now)
        logger.info(
            "🔵 BUYER: Funding attempted",
            escrow_id=escrow_id,
            state=outcome.state.value,
            error=outcome.error.code if outcome.error else None,
        )
        return outcome

    async def release(self, engine: EscrowEngine, escrow_id: str, now: datetime) -> Any:
        outcome = await engine.release_to_seller(
            escrow_id, self.pins[escrow_id], now, caller_id=self.user_id
        )
        logger.info("🔵 BUYER: PIN entered", escrow_id=escrow_id, state=outcome.state.value)
        return outcome

    async def cancel(self, engine: EscrowEngine, escrow_id: str, now: datetime) -> Any:
        outcome = await engine.cancel_escrow(escrow_id, self.user_id, now=now)
        logger.info("🔵 BUYER: Cancelled", escrow_id=escrow_id, state=outcome.state.value)
        return outcome

    async def dispute(self, engine: EscrowEngine, escrow_id: str, reason: str, now: datetime) -> Any:
        outcome = await engine.raise_dispute(escrow_id, self.user_id, now, reason=reason)
        logger.info(
            "🔵 BUYER: Dispute raised",
            escrow_id=escrow_id,
            panel=list(outcome.escrow.dispute.panel),
        )
        return outcome


@dataclass
class Seller:
    """Simulated seller; only waits to be paid."""

    user_id: str = "seller-sipho"


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


def print_outcome(outcome: Any) -> None:
    icon = "✅" if outcome.ok else ("⏳" if outcome.is_partial else "❌")
    print(f"  {icon} State: {outcome.state.value if outcome.state else 'UNKNOWN'}")
    if outcome.error:
        print(f"  {outcome.error.code}: {outcome.error.message}")


async def print_trust(engine: EscrowEngine, *user_ids: str) -> None:
    for user_id in user_ids:
        identity = await engine.get_identity(user_id)
        level = await engine.ledger.get_level(user_id)
        print(
            f"  🤝 {user_id}: score={identity.trust_score} level={level.value} "
            f"volume={identity.total_amount} penalties={len(identity.penalties)}"
        )


async def print_audit_trail(engine: EscrowEngine, escrow_id: str) -> None:
    """Print the full history of an escrow."""
    outcome = await engine.get_escrow(escrow_id)
    print("\n  📜 Audit Trail:")
    for i, evt in enumerate(outcome.escrow.history, 1):
        old = evt.previous_state.value if evt.previous_state else "—"
        print(f"    {i}. [{evt.event_type}] {old} → {evt.new_state} (by {evt.actor})")
    print()


# ===========================================================================
# Scenario 1: Happy Path
# ===========================================================================
async def scenario_1_happy_path() -> None:
    """Buyer funds and releases with the PIN."""
    banner("SCENARIO 1: Happy Path — PIN Release")

    engine = get_engine()
    buyer, seller = Buyer(), Seller()
    amount = Decimal("1500")

    section("Step 1: Buyer creates escrow")
    escrow_id = await buyer.create_escrow(engine, seller, amount, "Fridge delivery", days=30)
    await print_trust(engine, buyer.user_id, seller.user_id)

    section("Step 2: Buyer funds escrow")
    print_outcome(await buyer.fund(engine, escrow_id, amount, START + timedelta(hours=1)))

    section("Step 3: Goods arrive, buyer releases with the PIN")
    print_outcome(await buyer.release(engine, escrow_id, START + timedelta(days=2)))
    await print_trust(engine, buyer.user_id, seller.user_id)

    await print_audit_trail(engine, escrow_id)


# ===========================================================================
# Scenario 2: Dispute
# ===========================================================================
async def scenario_2_dispute() -> None:
    """Buyer disputes; the panel sides with the buyer."""
    banner("SCENARIO 2: Dispute — Panel Refunds the Buyer")

    engine = get_engine()
    buyer, seller = Buyer(user_id="buyer-ayanda"), Seller(user_id="seller-johan")
    amount = Decimal("1500")

    section("Step 1: Buyer creates and funds escrow")
    escrow_id = await buyer.create_escrow(engine, seller, amount, "Second-hand laptop", days=30)
    await buyer.fund(engine, escrow_id, amount, START + timedelta(hours=1))

    section("Step 2: Buyer raises a dispute")
    outcome = await buyer.dispute(
        engine, escrow_id, "Laptop does not power on", START + timedelta(days=3)
    )
    print_outcome(outcome)

    section("Step 3: Arbitrators vote")
    for arbitrator in outcome.escrow.dispute.panel[:2]:
        vote = await engine.cast_vote(
            escrow_id,
            arbitrator,
            DisputeDecision.FAVOR_BUYER,
            now=START + timedelta(days=4),
        )
        print(f"  🧑‍⚖️ {arbitrator} votes favor_buyer")
        print_outcome(vote)

    await print_trust(engine, buyer.user_id, seller.user_id)
    await print_audit_trail(engine, escrow_id)


# ===========================================================================
# Scenario 3: Time-lock
# ===========================================================================
async def scenario_3_time_lock() -> None:
    """Nobody acts; the sweep refunds the buyer after the deadline."""
    banner("SCENARIO 3: Time-lock — Automatic Refund")

    engine = get_engine()
    buyer, seller = Buyer(user_id="buyer-zanele"), Seller(user_id="seller-kabelo")
    amount = Decimal("300")

    section("Step 1: Buyer creates a 1-day escrow and funds it")
    escrow_id = await buyer.create_escrow(engine, seller, amount, "Airtime bundle", days=1)
    await buyer.fund(engine, escrow_id, amount, START + timedelta(minutes=5))

    section("Step 2: Sweep two days later")
    outcomes = await engine.sweep_all_expired(START + timedelta(days=2))
    for outcome in outcomes:
        print_outcome(outcome)
    await print_trust(engine, buyer.user_id, seller.user_id)

    await print_audit_trail(engine, escrow_id)


# ===========================================================================
# Scenario 4: Cancellation
# ===========================================================================
async def scenario_4_cancellation() -> None:
    """Buyer cancels before funding; a later funding attempt is refused."""
    banner("SCENARIO 4: Cancellation — Funding After Cancel Is Refused")

    engine = get_engine()
    buyer, seller = Buyer(user_id="buyer-thabo"), Seller(user_id="seller-anna")
    amount = Decimal("1500")

    section("Step 1: Buyer creates escrow")
    escrow_id = await buyer.create_escrow(engine, seller, amount, "Bulk maize meal", days=30)

    section("Step 2: Buyer cancels")
    print_outcome(await buyer.cancel(engine, escrow_id, START + timedelta(hours=2)))

    section("Step 3: Buyer tries to fund anyway")
    print_outcome(await buyer.fund(engine, escrow_id, amount, START + timedelta(hours=3)))

    await print_audit_trail(engine, escrow_id)


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    1: scenario_1_happy_path,
    2: scenario_2_dispute,
    3: scenario_3_time_lock,
    4: scenario_4_cancellation,
}


async def run_all(use_sqlite: bool = False) -> None:
    """Run all scenarios sequentially."""
    await init_repository(use_sqlite=use_sqlite)

    try:
        print("\n" + "🚀" * 35)
        print("  SPAZA ESCROW — SIMULATION")
        backend = "SQLite (in-memory)" if use_sqlite else "In-memory repository"
        print(f"  Storage: {backend}")
        print("🚀" * 35 + "\n")

        for scenario in SCENARIOS.values():
            await scenario()

        print("\n" + "=" * 70)
        print("  ✅ ALL SCENARIOS COMPLETED")
        print("=" * 70 + "\n")

    finally:
        await shutdown_repository()


async def run_scenario(num: int, use_sqlite: bool = False) -> None:
    """Run a specific scenario."""
    await init_repository(use_sqlite=use_sqlite)

    try:
        if num not in SCENARIOS:
            print(f"Unknown scenario {num}. Available: {', '.join(map(str, SCENARIOS))}")
            return
        await SCENARIOS[num]()
    finally:
        await shutdown_repository()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Spaza Escrow Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1-4). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use the SQLAlchemy repository on SQLite in-memory.",
    )
    args = parser.parse_args()

    if args.scenario == 0:
        asyncio.run(run_all(use_sqlite=args.sqlite))
    else:
        asyncio.run(run_scenario(args.scenario, use_sqlite=args.sqlite))
