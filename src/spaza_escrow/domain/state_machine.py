"""Escrow State Machine Guard.

Uses python-statemachine to enforce legal state transitions at the domain level.
No matter what the caller does, an illegal transition (e.g., CREATED -> COMPLETED)
raises TransitionNotAllowed.

The state machine is instantiated per-operation and validates a transition
before the escrow record's state field is updated.

Transition table:
    CREATED     -> FUNDED        (confirm_funding)
    CREATED     -> CANCELLED     (buyer_cancels)
    FUNDED      -> COMPLETED     (pin_confirmed)
    FUNDED      -> IN_DISPUTE    (party_disputes)
    FUNDED      -> REFUNDED      (time_lock_expired)
    IN_DISPUTE  -> COMPLETED     (arbitrated_for_seller)
    IN_DISPUTE  -> REFUNDED      (arbitrated_for_buyer)
"""

from __future__ import annotations

from statemachine import State, StateMachine


class EscrowStateMachine(StateMachine):
    """State machine that guards escrow lifecycle transitions.

    Usage:
        sm = EscrowStateMachine(current_status="FUNDED")
        sm.pin_confirmed()   # transitions to COMPLETED
        sm.status            # "COMPLETED"
    """

    # --- States ---
    CREATED = State("CREATED", initial=True)
    FUNDED = State("FUNDED")
    IN_DISPUTE = State("IN_DISPUTE")
    COMPLETED = State("COMPLETED", final=True)
    CANCELLED = State("CANCELLED", final=True)
    REFUNDED = State("REFUNDED", final=True)

    # --- Events / Transitions ---

    # Funding
    confirm_funding = CREATED.to(FUNDED)
    buyer_cancels = CREATED.to(CANCELLED)

    # Settlement
    pin_confirmed = FUNDED.to(COMPLETED)
    time_lock_expired = FUNDED.to(REFUNDED)

    # Disputes
    party_disputes = FUNDED.to(IN_DISPUTE)
    arbitrated_for_seller = IN_DISPUTE.to(COMPLETED)
    arbitrated_for_buyer = IN_DISPUTE.to(REFUNDED)

    def __init__(self, current_status: str = "CREATED") -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: The current EscrowState value (e.g., "FUNDED").
                           Must match one of the State value strings exactly.
        """
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches EscrowState enum)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [event.id for event in self.allowed_events]

