"""Trust Ledger — bounded reputation scores and their update policy.

Scores live on Identity records in the repository. The engine calls
``settle`` once per terminal transition reachable from FUNDED; ``settle``
in turn calls ``adjust`` exactly once for each party. Cancellation never
reaches the ledger.

Adjustment policy:
    released (PIN)           -> buyer +success, seller +success
    arbitrated for seller    -> buyer -penalty, seller 0
    arbitrated for buyer     -> buyer 0,        seller -penalty
    time-lock refund         -> no score change for either party

Every settlement also adds the escrow amount to both parties' volume.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from spaza_escrow.config import Settings, get_settings
from spaza_escrow.domain.enums import Resolution, Role, TrustLevel
from spaza_escrow.domain.models import TrustBonus, TrustPenalty, utcnow
from spaza_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from datetime import datetime

    from spaza_escrow.domain.models import Escrow, Identity
    from spaza_escrow.domain.repository import EscrowRepository

logger = get_logger(__name__)

# Lower bound of each band on the 0-100 scale, highest first.
_LEVEL_FLOORS: tuple[tuple[Decimal, TrustLevel], ...] = (
    (Decimal("96"), TrustLevel.TRUSTED),
    (Decimal("90"), TrustLevel.PLATINUM),
    (Decimal("80"), TrustLevel.GOLD),
    (Decimal("60"), TrustLevel.SILVER),
    (Decimal("30"), TrustLevel.BRONZE),
)

RECOMMENDED_DURATION_DAYS: dict[TrustLevel, int] = {
    TrustLevel.TRUSTED: 1,
    TrustLevel.PLATINUM: 3,
    TrustLevel.GOLD: 7,
    TrustLevel.SILVER: 14,
    TrustLevel.BRONZE: 30,
    TrustLevel.NEWBIE: 60,
}


def trust_level(score: Decimal) -> TrustLevel:
    for floor, level in _LEVEL_FLOORS:
        if score >= floor:
            return level
    return TrustLevel.NEWBIE


def clamp(value: Decimal, low: Decimal, high: Decimal) -> Decimal:
    return max(low, min(high, value))


class TrustLedger:
    """Reads and adjusts participant trust scores."""

    def __init__(self, repository: EscrowRepository, settings: Settings | None = None) -> None:
        self._repo = repository
        self._settings = settings or get_settings()

    async def get_score(self, user_id: str) -> Decimal:
        identity = await self._repo.get_identity(user_id)
        return identity.trust_score

    async def get_level(self, user_id: str) -> TrustLevel:
        return trust_level(await self.get_score(user_id))

    async def recommended_duration_days(self, user_id: str) -> int:
        """Higher trust earns a shorter escrow window."""
        return RECOMMENDED_DURATION_DAYS[await self.get_level(user_id)]

    async def register(self, user_id: str, role: Role) -> Identity:
        """Ensure an identity exists and holds the given role."""
        identity = await self._repo.get_identity(user_id)
        if role in identity.roles and identity.version:
            return identity
        identity.roles.add(role)
        return await self._repo.put_identity(identity)

    async def adjust(
        self,
        user_id: str,
        delta: Decimal,
        *,
        reason: str = "",
        amount: Decimal | None = None,
        successful: bool | None = None,
        disputed: bool = False,
        now: datetime | None = None,
    ) -> Identity:
        """Apply a score delta, clamped to the configured bounds.

        A negative delta is recorded as a penalty that expires after
        ``trust_penalty_expiry_days``; a positive one as a bonus.

        Args:
            user_id: Participant to adjust.
            delta: Signed change; the result never leaves [min, max].
            reason: Why the score moved, kept on the penalty/bonus entry.
            amount: Escrow amount to add to the participant's volume.
            successful: When not None, also counts one finished transaction.
            disputed: Whether that transaction went through a dispute.
            now: Timestamp for the update.
        """
        now = now or utcnow()
        delta = Decimal(delta)
        identity = await self._repo.get_identity(user_id)
        previous = identity.trust_score
        identity.trust_score = clamp(
            previous + delta,
            self._settings.trust_score_min,
            self._settings.trust_score_max,
        )
        if delta < 0:
            identity.penalties.append(
                TrustPenalty(
                    reason=reason,
                    points=-delta,
                    applied_at=now,
                    expires_at=now + timedelta(days=self._settings.trust_penalty_expiry_days),
                )
            )
        elif delta > 0:
            identity.bonuses.append(TrustBonus(reason=reason, points=delta, applied_at=now))
        if amount is not None:
            identity.total_amount += amount
        if successful is not None:
            identity.total_transactions += 1
            if successful:
                identity.successful_transactions += 1
            if disputed:
                identity.disputed_transactions += 1
            identity.last_activity = now
        identity.updated_at = now
        identity = await self._repo.put_identity(identity)

        logger.info(
            "trust.adjusted",
            user_id=user_id,
            previous=str(previous),
            new=str(identity.trust_score),
            delta=str(delta),
            reason=reason,
        )
        return identity

    def deltas_for(self, resolution: Resolution) -> tuple[Decimal, Decimal]:
        """Return (buyer_delta, seller_delta) for a resolution."""
        success = self._settings.trust_success_delta
        penalty = -self._settings.trust_dispute_penalty
        zero = Decimal("0")
        match resolution:
            case Resolution.RELEASED:
                return success, success
            case Resolution.ARBITRATED_FOR_SELLER:
                return penalty, zero
            case Resolution.ARBITRATED_FOR_BUYER:
                return zero, penalty
            case Resolution.TIME_LOCK_REFUND:
                return zero, zero

    async def settle(self, escrow: Escrow, resolution: Resolution, now: datetime) -> None:
        """Apply the resolution's deltas to both parties, once each."""
        buyer_delta, seller_delta = self.deltas_for(resolution)
        reason = f"{resolution.value} escrow {escrow.id}"
        disputed = resolution in (
            Resolution.ARBITRATED_FOR_SELLER,
            Resolution.ARBITRATED_FOR_BUYER,
        )
        await self.adjust(
            escrow.buyer_id,
            buyer_delta,
            reason=reason,
            amount=escrow.amount,
            successful=resolution != Resolution.ARBITRATED_FOR_SELLER,
            disputed=disputed,
            now=now,
        )
        await self.adjust(
            escrow.seller_id,
            seller_delta,
            reason=reason,
            amount=escrow.amount,
            successful=resolution in (Resolution.RELEASED, Resolution.ARBITRATED_FOR_SELLER),
            disputed=disputed,
            now=now,
        )
