"""Tests for domain enumerations."""

from __future__ import annotations

from spaza_escrow.domain.enums import (
    TERMINAL_STATES,
    DisputeDecision,
    ErrorKind,
    EscrowState,
    EventType,
    TrustLevel,
)


class TestEscrowState:
    def test_all_states_exist(self) -> None:
        expected = {"CREATED", "FUNDED", "IN_DISPUTE", "COMPLETED", "CANCELLED", "REFUNDED"}
        assert {s.value for s in EscrowState} == expected

    def test_state_is_str_enum(self) -> None:
        assert isinstance(EscrowState.CREATED, str)
        assert EscrowState.FUNDED == "FUNDED"

    def test_terminal_states(self) -> None:
        assert TERMINAL_STATES == {
            EscrowState.COMPLETED,
            EscrowState.CANCELLED,
            EscrowState.REFUNDED,
        }
        assert EscrowState.REFUNDED.is_terminal
        assert not EscrowState.IN_DISPUTE.is_terminal


class TestEventType:
    def test_all_event_types_exist(self) -> None:
        # creation + funding + cancel + release + dispute raised + 2 resolutions + refund
        assert len(EventType) == 8


class TestDisputeDecision:
    def test_values(self) -> None:
        assert DisputeDecision("favor_buyer") is DisputeDecision.FAVOR_BUYER
        assert DisputeDecision.FAVOR_SELLER == "favor_seller"


class TestErrorKind:
    def test_error_kinds(self) -> None:
        assert {k.value for k in ErrorKind} >= {
            "INVALID_AMOUNT",
            "INVALID_STATE",
            "UNAUTHORIZED",
            "ALREADY_CONSUMED",
            "NOT_FOUND",
            "VERSION_CONFLICT",
            "QUORUM_NOT_REACHED",
            "EXPIRED",
        }


class TestTrustLevel:
    def test_six_bands(self) -> None:
        assert len(TrustLevel) == 6
