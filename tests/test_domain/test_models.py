"""Tests for domain entities, PIN helpers and Outcome."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from spaza_escrow.domain.enums import EscrowState
from spaza_escrow.domain.exceptions import (
    DisputeClosedError,
    InvalidPinError,
    InvalidStateError,
    QuorumNotReachedError,
    UnauthorizedError,
)
from spaza_escrow.domain.models import (
    Escrow,
    Identity,
    Outcome,
    TrustPenalty,
    generate_pin,
    hash_pin,
    pin_matches,
)

ESCROW_ID = uuid.UUID("12345678-1234-5678-1234-567812345678")
T0 = datetime(2026, 3, 1, tzinfo=UTC)


def _escrow(**overrides) -> Escrow:
    fields = {
        "id": ESCROW_ID,
        "amount": Decimal("1500"),
        "currency": "ZAR",
        "buyer_id": "B",
        "seller_id": "S",
        "description": "",
        "created_at": T0,
        "expires_at": T0 + timedelta(days=1),
        "release_pin_hash": hash_pin(ESCROW_ID, "123456"),
    }
    fields.update(overrides)
    return Escrow(**fields)


class TestPin:
    def test_generated_pin_has_requested_length(self) -> None:
        for length in (4, 6, 12):
            pin = generate_pin(length)
            assert len(pin) == length
            assert pin.isdigit()
            assert pin[0] != "0"

    def test_hash_is_salted_by_escrow(self) -> None:
        other = uuid.uuid4()
        assert hash_pin(ESCROW_ID, "123456") != hash_pin(other, "123456")
        assert "123456" not in hash_pin(ESCROW_ID, "123456")

    def test_pin_matches(self) -> None:
        digest = hash_pin(ESCROW_ID, "123456")
        assert pin_matches(ESCROW_ID, "123456", digest)
        assert not pin_matches(ESCROW_ID, "654321", digest)

    def test_digest_is_keyed(self) -> None:
        keyed = hash_pin(ESCROW_ID, "123456", "deployment-key")
        assert keyed != hash_pin(ESCROW_ID, "123456")
        assert pin_matches(ESCROW_ID, "123456", keyed, "deployment-key")
        assert not pin_matches(ESCROW_ID, "123456", keyed)

    def test_cleared_digest_matches_nothing(self) -> None:
        assert not pin_matches(ESCROW_ID, "", "")
        assert not pin_matches(ESCROW_ID, "123456", "")


class TestEscrow:
    def test_expiry_is_strictly_after_deadline(self) -> None:
        escrow = _escrow()
        assert not escrow.is_expired(escrow.expires_at)
        assert escrow.is_expired(escrow.expires_at + timedelta(microseconds=1))

    def test_is_party(self) -> None:
        escrow = _escrow()
        assert escrow.is_party("B")
        assert escrow.is_party("S")
        assert not escrow.is_party("arb-1")

    def test_repr_hides_pin_hash(self) -> None:
        escrow = _escrow()
        assert escrow.release_pin_hash not in repr(escrow)


class TestIdentity:
    def test_dispute_rate(self) -> None:
        identity = Identity(id="S", trust_score=Decimal("50"))
        assert identity.dispute_rate == 0
        identity.total_transactions = 4
        identity.disputed_transactions = 1
        assert identity.dispute_rate == Decimal("0.25")

    def test_active_penalties(self) -> None:
        identity = Identity(id="S", trust_score=Decimal("40"))
        identity.penalties = [
            TrustPenalty("old", Decimal("10"), T0, T0 + timedelta(days=1)),
            TrustPenalty("recent", Decimal("10"), T0, T0 + timedelta(days=90)),
        ]
        active = identity.active_penalties(T0 + timedelta(days=2))
        assert [p.reason for p in active] == ["recent"]
        assert identity.total_amount == Decimal("0")
        assert identity.last_activity is None


class TestOutcome:
    def test_success(self) -> None:
        outcome = Outcome(escrow=_escrow(), release_pin="123456")
        assert outcome.ok
        assert not outcome.is_partial
        assert outcome.state is EscrowState.CREATED
        assert "123456" not in repr(outcome)

    def test_failure_to_dict(self) -> None:
        outcome = Outcome(escrow=_escrow(), error=InvalidStateError("CREATED", "release_to_seller"))
        assert outcome.to_dict() == {
            "ok": False,
            "escrow_id": str(ESCROW_ID),
            "state": "CREATED",
            "error": "INVALID_STATE",
            "message": "Operation 'release_to_seller' not allowed from state CREATED",
        }

    def test_quorum_signal_is_partial(self) -> None:
        outcome = Outcome(escrow=_escrow(), error=QuorumNotReachedError(1, 2))
        assert not outcome.ok
        assert outcome.is_partial

    def test_error_without_escrow(self) -> None:
        outcome = Outcome(error=InvalidPinError())
        assert outcome.state is None
        assert outcome.to_dict()["escrow_id"] is None


class TestExceptionHierarchy:
    def test_pin_error_is_unauthorized(self) -> None:
        err = InvalidPinError()
        assert isinstance(err, UnauthorizedError)
        assert err.code == "UNAUTHORIZED"
        assert str(err) == "Invalid release PIN"

    def test_dispute_closed_is_invalid_state(self) -> None:
        err = DisputeClosedError("REFUNDED")
        assert isinstance(err, InvalidStateError)
        assert err.code == "INVALID_STATE"
        assert "already closed" in err.message
