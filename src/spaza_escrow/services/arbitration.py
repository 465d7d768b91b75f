"""Dispute Arbitration — panel assignment, quorum and vote tallying.

The engine opens a dispute with a panel and a quorum computed here, records
votes on the dispute sub-record, and asks ``tally_votes`` for a decision once
enough distinct arbitrators have voted.

Rules:
    - Quorum defaults to a strict majority of the panel; a configured
      threshold overrides it (capped at the panel size).
    - At quorum, FAVOR_SELLER wins only with strictly more votes than
      FAVOR_BUYER. Ties go to the buyer, whose funds are at risk.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from spaza_escrow.domain.enums import DisputeDecision

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from spaza_escrow.domain.models import Dispute, Escrow


@runtime_checkable
class ArbitratorPanelPolicy(Protocol):
    """Chooses who sits on a dispute's panel."""

    def assign(self, escrow: Escrow) -> tuple[str, ...]:
        ...


class FixedRosterPolicy:
    """Seats the first ``panel_size`` roster members who are not party to the escrow."""

    def __init__(self, roster: Sequence[str], panel_size: int | None = None) -> None:
        self._roster = tuple(dict.fromkeys(roster))
        self._panel_size = panel_size

    def assign(self, escrow: Escrow) -> tuple[str, ...]:
        eligible = tuple(a for a in self._roster if not escrow.is_party(a))
        if self._panel_size is not None:
            return eligible[: self._panel_size]
        return eligible


def quorum_for(panel_size: int, configured: int | None = None) -> int:
    """Votes needed before a decision is computed."""
    if configured is not None:
        return min(configured, panel_size)
    return panel_size // 2 + 1


@dataclass(frozen=True)
class Tally:
    """Vote counts for a dispute."""

    favor_buyer: int
    favor_seller: int

    @property
    def total(self) -> int:
        return self.favor_buyer + self.favor_seller

    @property
    def decision(self) -> DisputeDecision:
        if self.favor_seller > self.favor_buyer:
            return DisputeDecision.FAVOR_SELLER
        return DisputeDecision.FAVOR_BUYER

    def to_dict(self) -> dict:
        return {
            DisputeDecision.FAVOR_BUYER.value: self.favor_buyer,
            DisputeDecision.FAVOR_SELLER.value: self.favor_seller,
        }


def tally_votes(votes: Mapping[str, DisputeDecision]) -> Tally:
    counts = Counter(votes.values())
    return Tally(
        favor_buyer=counts[DisputeDecision.FAVOR_BUYER],
        favor_seller=counts[DisputeDecision.FAVOR_SELLER],
    )


def record_vote(dispute: Dispute, arbitrator_id: str, decision: DisputeDecision) -> Tally | None:
    """Store (or replace) an arbitrator's vote.

    Returns:
        The tally once quorum is reached, otherwise None.
    """
    dispute.votes[arbitrator_id] = DisputeDecision(decision)
    if len(dispute.votes) < dispute.quorum:
        return None
    return tally_votes(dispute.votes)
