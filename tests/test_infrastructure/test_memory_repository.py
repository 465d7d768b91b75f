"""Tests for the in-memory repository: isolation, CAS and transactions."""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from spaza_escrow.domain.enums import EscrowState, Role
from spaza_escrow.domain.exceptions import EscrowNotFoundError, VersionConflictError
from spaza_escrow.domain.models import Escrow, TrustBonus, TrustPenalty
from spaza_escrow.domain.repository import EscrowRepository
from spaza_escrow.infrastructure.memory import InMemoryEscrowRepository

T0 = datetime(2026, 3, 1, tzinfo=UTC)


def _escrow(created_at: datetime = T0) -> Escrow:
    return Escrow(
        id=uuid.uuid4(),
        amount=Decimal("1500"),
        currency="ZAR",
        buyer_id="B",
        seller_id="S",
        description="",
        created_at=created_at,
        expires_at=created_at + timedelta(days=30),
        release_pin_hash="digest",
    )


class TestProtocol:
    def test_satisfies_protocol(self, repo: InMemoryEscrowRepository) -> None:
        assert isinstance(repo, EscrowRepository)

    @pytest.mark.asyncio
    async def test_instances_are_isolated(self) -> None:
        first, second = InMemoryEscrowRepository(), InMemoryEscrowRepository()
        stored = await first.add(_escrow())
        with pytest.raises(EscrowNotFoundError):
            await second.get(stored.id)


class TestEscrowStorage:
    @pytest.mark.asyncio
    async def test_add_and_get(self, repo: InMemoryEscrowRepository) -> None:
        stored = await repo.add(_escrow())
        assert stored.version == 1
        assert await repo.get(stored.id) == stored

    @pytest.mark.asyncio
    async def test_get_returns_a_copy(self, repo: InMemoryEscrowRepository) -> None:
        stored = await repo.add(_escrow())
        fetched = await repo.get(stored.id)
        fetched.state = EscrowState.FUNDED
        assert (await repo.get(stored.id)).state is EscrowState.CREATED

    @pytest.mark.asyncio
    async def test_add_twice_conflicts(self, repo: InMemoryEscrowRepository) -> None:
        escrow = _escrow()
        await repo.add(escrow)
        with pytest.raises(VersionConflictError):
            await repo.add(escrow)

    @pytest.mark.asyncio
    async def test_missing(self, repo: InMemoryEscrowRepository) -> None:
        with pytest.raises(EscrowNotFoundError):
            await repo.get(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_put_bumps_version(self, repo: InMemoryEscrowRepository) -> None:
        stored = await repo.add(_escrow())
        stored.state = EscrowState.FUNDED
        saved = await repo.put(stored, expected_version=1)
        assert saved.version == 2
        assert (await repo.get(stored.id)).state is EscrowState.FUNDED

    @pytest.mark.asyncio
    async def test_stale_put_conflicts(self, repo: InMemoryEscrowRepository) -> None:
        stored = await repo.add(_escrow())
        await repo.put(stored, expected_version=1)
        stored.state = EscrowState.CANCELLED
        with pytest.raises(VersionConflictError) as exc_info:
            await repo.put(stored, expected_version=1)
        assert exc_info.value.actual == 2
        assert (await repo.get(stored.id)).state is EscrowState.CREATED

    @pytest.mark.asyncio
    async def test_list_newest_first_and_filter(self, repo: InMemoryEscrowRepository) -> None:
        old = await repo.add(_escrow(T0))
        new = await repo.add(_escrow(T0 + timedelta(hours=1)))
        new.state = EscrowState.FUNDED
        await repo.put(new, expected_version=1)

        assert [e.id for e in await repo.list_escrows()] == [new.id, old.id]
        assert [e.id for e in await repo.list_escrows(EscrowState.FUNDED)] == [new.id]


class TestTransactions:
    @pytest.mark.asyncio
    async def test_error_discards_all_writes(self, repo: InMemoryEscrowRepository) -> None:
        stored = await repo.add(_escrow())
        with pytest.raises(RuntimeError):
            async with repo.transaction():
                stored.state = EscrowState.FUNDED
                await repo.put(stored, expected_version=1)
                identity = await repo.get_identity("B")
                identity.trust_score = Decimal("99")
                await repo.put_identity(identity)
                raise RuntimeError("abort")

        assert (await repo.get(stored.id)).state is EscrowState.CREATED
        assert (await repo.get_identity("B")).trust_score == Decimal("50")

    @pytest.mark.asyncio
    async def test_reads_see_staged_writes(self, repo: InMemoryEscrowRepository) -> None:
        stored = await repo.add(_escrow())
        async with repo.transaction():
            stored.state = EscrowState.FUNDED
            await repo.put(stored, expected_version=1)
            assert (await repo.get(stored.id)).version == 2

    @pytest.mark.asyncio
    async def test_commit_rechecks_versions(self, repo: InMemoryEscrowRepository) -> None:
        stored = await repo.add(_escrow())
        with pytest.raises(VersionConflictError):
            async with repo.transaction():
                staged = await repo.get(stored.id)
                staged.state = EscrowState.FUNDED
                await repo.put(staged, expected_version=1)
                # A writer outside this unit of work commits first
                repo._escrows[stored.id].version = 5
        assert (await repo.get(stored.id)).state is EscrowState.CREATED


class TestIdentities:
    @pytest.mark.asyncio
    async def test_unknown_identity_has_default_score(self, repo: InMemoryEscrowRepository) -> None:
        identity = await repo.get_identity("nobody")
        assert identity.trust_score == Decimal("50")
        assert identity.version == 0

    @pytest.mark.asyncio
    async def test_put_identity(self, repo: InMemoryEscrowRepository) -> None:
        identity = await repo.get_identity("S")
        identity.roles.add(Role.SELLER)
        saved = await repo.put_identity(identity)
        assert saved.version == 1
        assert (await repo.get_identity("S")).roles == {Role.SELLER}

    @pytest.mark.asyncio
    async def test_stale_identity_conflicts(self, repo: InMemoryEscrowRepository) -> None:
        identity = await repo.get_identity("S")
        await repo.put_identity(identity)
        with pytest.raises(VersionConflictError):
            await repo.put_identity(identity)

    @pytest.mark.asyncio
    async def test_concurrent_adjustments_do_not_overwrite(
        self, repo: InMemoryEscrowRepository
    ) -> None:
        await repo.put_identity(await repo.get_identity("B"))

        async def shift(delta: str) -> None:
            async with repo.transaction():
                identity = await repo.get_identity("B")
                identity.trust_score += Decimal(delta)
                await repo.put_identity(identity)
                # Both writers stage against version 1 before either commits
                await asyncio.sleep(0)

        results = await asyncio.gather(shift("2"), shift("-10"), return_exceptions=True)
        assert results[0] is None
        assert isinstance(results[1], VersionConflictError)

        final = await repo.get_identity("B")
        assert final.trust_score == Decimal("52")
        assert final.version == 2

    @pytest.mark.asyncio
    async def test_trust_entries_are_copied(self, repo: InMemoryEscrowRepository) -> None:
        identity = await repo.get_identity("S")
        identity.total_amount = Decimal("1500")
        identity.last_activity = T0
        identity.penalties.append(
            TrustPenalty(
                reason="lost dispute",
                points=Decimal("10"),
                applied_at=T0,
                expires_at=T0 + timedelta(days=90),
            )
        )
        identity.bonuses.append(TrustBonus(reason="released", points=Decimal("2"), applied_at=T0))
        saved = await repo.put_identity(identity)
        saved.penalties.clear()

        stored = await repo.get_identity("S")
        assert stored.total_amount == Decimal("1500")
        assert stored.last_activity == T0
        assert [p.reason for p in stored.penalties] == ["lost dispute"]
        assert stored.bonuses[0].points == Decimal("2")
