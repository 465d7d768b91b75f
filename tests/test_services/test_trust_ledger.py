"""Tests for the trust ledger: clamping, bands, resolution policy and the
penalty/bonus record."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from spaza_escrow.config import Settings
from spaza_escrow.domain.enums import Resolution, Role, TrustLevel
from spaza_escrow.domain.models import Escrow
from spaza_escrow.infrastructure.memory import InMemoryEscrowRepository
from spaza_escrow.services.trust_ledger import TrustLedger, clamp, trust_level

T0 = datetime(2026, 3, 1, tzinfo=UTC)


@pytest.fixture
def ledger(repo: InMemoryEscrowRepository, settings: Settings) -> TrustLedger:
    return TrustLedger(repo, settings)


def _escrow() -> Escrow:
    return Escrow(
        id=uuid.uuid4(),
        amount=Decimal("100"),
        currency="ZAR",
        buyer_id="B",
        seller_id="S",
        description="",
        created_at=T0,
        expires_at=T0 + timedelta(days=1),
        release_pin_hash="x",
    )


class TestTrustLevel:
    @pytest.mark.parametrize(
        ("score", "level"),
        [
            ("0", TrustLevel.NEWBIE),
            ("29.99", TrustLevel.NEWBIE),
            ("30", TrustLevel.BRONZE),
            ("59", TrustLevel.BRONZE),
            ("60", TrustLevel.SILVER),
            ("80", TrustLevel.GOLD),
            ("90", TrustLevel.PLATINUM),
            ("96", TrustLevel.TRUSTED),
            ("100", TrustLevel.TRUSTED),
        ],
    )
    def test_bands(self, score: str, level: TrustLevel) -> None:
        assert trust_level(Decimal(score)) is level

    def test_clamp(self) -> None:
        assert clamp(Decimal("120"), Decimal("0"), Decimal("100")) == Decimal("100")
        assert clamp(Decimal("-5"), Decimal("0"), Decimal("100")) == Decimal("0")
        assert clamp(Decimal("42"), Decimal("0"), Decimal("100")) == Decimal("42")


class TestAdjust:
    @pytest.mark.asyncio
    async def test_unknown_user_starts_at_default(self, ledger: TrustLedger) -> None:
        assert await ledger.get_score("nobody") == Decimal("50")
        assert await ledger.get_level("nobody") is TrustLevel.BRONZE

    @pytest.mark.asyncio
    async def test_positive_delta_clamps_to_max(self, ledger: TrustLedger) -> None:
        identity = await ledger.adjust("S", Decimal("75"))
        assert identity.trust_score == Decimal("100")

    @pytest.mark.asyncio
    async def test_negative_delta_clamps_to_min(self, ledger: TrustLedger) -> None:
        identity = await ledger.adjust("S", Decimal("-500"))
        assert identity.trust_score == Decimal("0")

    @pytest.mark.asyncio
    async def test_counters(self, ledger: TrustLedger) -> None:
        await ledger.adjust("S", Decimal("2"), successful=True)
        identity = await ledger.adjust("S", Decimal("-10"), successful=False, disputed=True)
        assert identity.total_transactions == 2
        assert identity.successful_transactions == 1
        assert identity.disputed_transactions == 1

    @pytest.mark.asyncio
    async def test_no_counter_change_without_outcome(self, ledger: TrustLedger) -> None:
        identity = await ledger.adjust("S", Decimal("1"))
        assert identity.total_transactions == 0
        assert identity.last_activity is None

    @pytest.mark.asyncio
    async def test_penalty_entry_expires(self, ledger: TrustLedger, settings: Settings) -> None:
        identity = await ledger.adjust("S", Decimal("-10"), reason="lost dispute", now=T0)
        [penalty] = identity.penalties
        assert penalty.reason == "lost dispute"
        assert penalty.points == Decimal("10")
        assert penalty.applied_at == T0
        assert penalty.expires_at == T0 + timedelta(days=settings.trust_penalty_expiry_days)
        assert identity.active_penalties(T0 + timedelta(days=1)) == [penalty]
        assert identity.active_penalties(penalty.expires_at) == []
        assert identity.bonuses == []

    @pytest.mark.asyncio
    async def test_bonus_entry(self, ledger: TrustLedger) -> None:
        identity = await ledger.adjust("S", Decimal("2"), reason="released", now=T0)
        assert [(b.reason, b.points, b.applied_at) for b in identity.bonuses] == [
            ("released", Decimal("2"), T0)
        ]
        assert identity.penalties == []

    @pytest.mark.asyncio
    async def test_zero_delta_records_no_entry(self, ledger: TrustLedger) -> None:
        identity = await ledger.adjust(
            "S", Decimal("0"), amount=Decimal("75"), successful=True, now=T0
        )
        assert identity.penalties == identity.bonuses == []
        assert identity.total_amount == Decimal("75")
        assert identity.last_activity == T0


class TestRegister:
    @pytest.mark.asyncio
    async def test_register_adds_role_once(self, ledger: TrustLedger) -> None:
        first = await ledger.register("B", Role.BUYER)
        again = await ledger.register("B", Role.BUYER)
        assert first.roles == {Role.BUYER}
        assert again.version == first.version

    @pytest.mark.asyncio
    async def test_register_accumulates_roles(self, ledger: TrustLedger) -> None:
        await ledger.register("X", Role.BUYER)
        identity = await ledger.register("X", Role.SELLER)
        assert identity.roles == {Role.BUYER, Role.SELLER}


class TestRecommendedDuration:
    @pytest.mark.asyncio
    async def test_higher_trust_shorter_window(self, ledger: TrustLedger) -> None:
        assert await ledger.recommended_duration_days("new") == 30
        await ledger.adjust("star", Decimal("50"))
        assert await ledger.recommended_duration_days("star") == 1


class TestSettle:
    def test_deltas(self, ledger: TrustLedger) -> None:
        assert ledger.deltas_for(Resolution.RELEASED) == (Decimal("2"), Decimal("2"))
        assert ledger.deltas_for(Resolution.ARBITRATED_FOR_SELLER) == (Decimal("-10"), 0)
        assert ledger.deltas_for(Resolution.ARBITRATED_FOR_BUYER) == (0, Decimal("-10"))
        assert ledger.deltas_for(Resolution.TIME_LOCK_REFUND) == (0, 0)

    @pytest.mark.asyncio
    async def test_release_rewards_both(self, ledger: TrustLedger) -> None:
        await ledger.settle(_escrow(), Resolution.RELEASED, T0)
        assert await ledger.get_score("B") == Decimal("52")
        assert await ledger.get_score("S") == Decimal("52")

    @pytest.mark.asyncio
    async def test_buyer_win_penalizes_seller(self, ledger: TrustLedger) -> None:
        await ledger.settle(_escrow(), Resolution.ARBITRATED_FOR_BUYER, T0)
        assert await ledger.get_score("B") == Decimal("50")
        assert await ledger.get_score("S") == Decimal("40")

    @pytest.mark.asyncio
    async def test_refund_changes_no_score(self, ledger: TrustLedger, repo: InMemoryEscrowRepository) -> None:
        await ledger.settle(_escrow(), Resolution.TIME_LOCK_REFUND, T0)
        buyer = await repo.get_identity("B")
        seller = await repo.get_identity("S")
        assert buyer.trust_score == seller.trust_score == Decimal("50")
        assert buyer.total_transactions == seller.total_transactions == 1

    @pytest.mark.asyncio
    async def test_settle_records_volume_and_entries(
        self, ledger: TrustLedger, repo: InMemoryEscrowRepository
    ) -> None:
        escrow = _escrow()
        await ledger.settle(escrow, Resolution.RELEASED, T0)
        later = T0 + timedelta(days=2)
        await ledger.settle(_escrow(), Resolution.ARBITRATED_FOR_SELLER, later)

        buyer = await repo.get_identity("B")
        assert buyer.total_amount == Decimal("200")
        assert buyer.last_activity == later
        assert [b.reason for b in buyer.bonuses] == [f"released escrow {escrow.id}"]
        assert len(buyer.penalties) == 1
        assert buyer.penalties[0].reason.startswith("arbitrated_for_seller escrow ")

        seller = await repo.get_identity("S")
        assert seller.total_amount == Decimal("200")
        assert seller.penalties == []
        assert len(seller.bonuses) == 1
