"""Escrow Engine — core business logic for the escrow lifecycle.

This is the application layer that coordinates between:
    - Domain state machine (transition guard)
    - Repository (data access, compare-and-swap writes)
    - Trust ledger (score updates at resolution)
    - Dispute arbitration (panel, quorum, tally)

Every public operation runs under a per-escrow lock inside one repository
transaction and returns an Outcome. Domain errors never escape: the caller
gets the unchanged record plus the error. A transition, its history entry and
any trust update are committed together or not at all.

Time-locks are evaluated against the caller-supplied ``now``, which must be
timezone-aware; a naive value is rejected with VALIDATION_ERROR. An expired
FUNDED escrow is refunded by ``sweep_expired`` or lazily by the next
``release_to_seller``/``raise_dispute`` that touches it.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
import weakref
from contextlib import asynccontextmanager
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from statemachine.exceptions import TransitionNotAllowed

from spaza_escrow.config import Settings, get_settings
from spaza_escrow.domain.enums import (
    DisputeDecision,
    EscrowState,
    EventType,
    Resolution,
    Role,
)
from spaza_escrow.domain.exceptions import (
    AlreadyConsumedError,
    DisputeClosedError,
    EscrowError,
    EscrowNotFoundError,
    EscrowValidationError,
    ExpiredError,
    InvalidAmountError,
    InvalidPinError,
    InvalidStateError,
    NotArbitratorError,
    QuorumNotReachedError,
    UnauthorizedError,
    VersionConflictError,
)
from spaza_escrow.domain.models import (
    Dispute,
    Escrow,
    Outcome,
    TransitionEvent,
    generate_pin,
    hash_pin,
    pin_matches,
    utcnow,
)
from spaza_escrow.domain.state_machine import EscrowStateMachine
from spaza_escrow.logging_config import escrow_context, get_logger
from spaza_escrow.services.arbitration import (
    ArbitratorPanelPolicy,
    FixedRosterPolicy,
    quorum_for,
    record_vote,
)
from spaza_escrow.services.trust_ledger import TrustLedger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
    from datetime import datetime

    from spaza_escrow.domain.models import Identity
    from spaza_escrow.domain.repository import EscrowRepository

logger = get_logger(__name__)

SYSTEM_ACTOR = "SYSTEM"

_DISPUTE_RESOLVED = frozenset(
    {EventType.DISPUTE_RESOLVED_SELLER, EventType.DISPUTE_RESOLVED_BUYER}
)


def _to_decimal(value: Any) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as err:
        raise InvalidAmountError(f"Not a decimal amount: {value!r}") from err
    if not amount.is_finite():
        raise InvalidAmountError(f"Amount must be finite: {value!r}")
    return amount


def _to_uuid(escrow_id: uuid.UUID | str) -> uuid.UUID:
    if isinstance(escrow_id, uuid.UUID):
        return escrow_id
    try:
        return uuid.UUID(str(escrow_id))
    except ValueError as err:
        raise EscrowNotFoundError(str(escrow_id)) from err


def _require_aware(now: datetime) -> None:
    if now.tzinfo is None or now.utcoffset() is None:
        raise EscrowValidationError(f"Timestamp must be timezone-aware, got {now.isoformat()}")


def _require_state(escrow: Escrow, operation: str, *allowed: EscrowState) -> None:
    if escrow.state not in allowed:
        raise InvalidStateError(escrow.state.value, operation)


class RecordLocks:
    """One asyncio.Lock per escrow id; waits are bounded by a timeout."""

    def __init__(self, timeout_seconds: float) -> None:
        self._timeout = timeout_seconds
        self._locks: weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @asynccontextmanager
    async def hold(self, escrow_id: uuid.UUID) -> AsyncIterator[None]:
        lock = self._locks.get(escrow_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[escrow_id] = lock
        try:
            async with asyncio.timeout(self._timeout):
                await lock.acquire()
        except TimeoutError as err:
            raise VersionConflictError(str(escrow_id)) from err
        try:
            yield
        finally:
            lock.release()


class EscrowEngine:
    """Enacts every legal transition on escrow records."""

    def __init__(
        self,
        repository: EscrowRepository,
        settings: Settings | None = None,
        *,
        panel_policy: ArbitratorPanelPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repo = repository
        self._settings = settings or get_settings()
        self._ledger = TrustLedger(repository, self._settings)
        self._panel_policy = panel_policy or FixedRosterPolicy(
            self._settings.arbitrator_roster_list,
            self._settings.dispute_panel_size,
        )
        self._clock = clock or utcnow
        self._pin_secret = self._settings.release_pin_secret.get_secret_value()
        self._locks = RecordLocks(self._settings.record_lock_timeout_seconds)

    @property
    def ledger(self) -> TrustLedger:
        return self._ledger

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_escrow(
        self,
        amount: Decimal | str | int,
        currency: str | None,
        buyer_id: str,
        seller_id: str,
        description: str = "",
        duration_days: int | None = None,
        *,
        now: datetime | None = None,
        arbitrators: Iterable[str] | None = None,
    ) -> Outcome:
        """Create a new escrow in CREATED state.

        The returned Outcome carries the cleartext release PIN; it is not
        stored anywhere and cannot be recovered later.
        """
        now = now or self._clock()
        try:
            _require_aware(now)
            amount = _to_decimal(amount)
            if amount <= 0:
                raise InvalidAmountError(f"Amount must be positive, got {amount}", provided=amount)
            days = self._settings.default_duration_days if duration_days is None else duration_days
            if days <= 0:
                raise EscrowValidationError(f"duration_days must be positive, got {days}")
            if not buyer_id or not seller_id:
                raise EscrowValidationError("buyer_id and seller_id are required")
            if buyer_id == seller_id:
                raise EscrowValidationError("Buyer and seller must be different participants")
            code = (currency or self._settings.default_currency).strip().upper()
            if len(code) != 3 or not code.isalpha():
                raise EscrowValidationError(f"Invalid currency code: {currency!r}")
            panel = tuple(dict.fromkeys(arbitrators or ()))
            if buyer_id in panel or seller_id in panel:
                raise EscrowValidationError("A party to the escrow cannot arbitrate it")

            escrow_id = uuid.uuid4()
            pin = generate_pin(self._settings.release_pin_length)
            escrow = Escrow(
                id=escrow_id,
                amount=amount,
                currency=code,
                buyer_id=buyer_id,
                seller_id=seller_id,
                description=description,
                created_at=now,
                expires_at=now + timedelta(days=days),
                release_pin_hash=hash_pin(escrow_id, pin, self._pin_secret),
                arbitrators=panel,
            )
            escrow.history.append(
                TransitionEvent(
                    previous_state=None,
                    new_state=EscrowState.CREATED,
                    actor=buyer_id,
                    timestamp=now,
                    note=description,
                    event_type=EventType.ESCROW_CREATED,
                    payload={"amount": str(amount), "currency": code, "duration_days": days},
                )
            )

            async with self._repo.transaction():
                escrow = await self._repo.add(escrow)
                await self._ledger.register(buyer_id, Role.BUYER)
                await self._ledger.register(seller_id, Role.SELLER)
        except EscrowError as exc:
            return self._rejected("create_escrow", None, exc)

        logger.info(
            "escrow.created",
            escrow_id=str(escrow.id),
            amount=str(escrow.amount),
            currency=escrow.currency,
            expires_at=escrow.expires_at.isoformat(),
        )
        return Outcome(escrow=escrow, release_pin=pin)

    # ------------------------------------------------------------------
    # Funding & cancellation
    # ------------------------------------------------------------------

    async def fund_escrow(
        self,
        escrow_id: uuid.UUID | str,
        amount: Decimal | str | int,
        *,
        now: datetime | None = None,
    ) -> Outcome:
        """Record funding and transition CREATED -> FUNDED. No partial funding."""
        now = now or self._clock()

        async def apply(escrow: Escrow) -> None:
            _require_state(escrow, "fund_escrow", EscrowState.CREATED)
            provided = _to_decimal(amount)
            if provided != escrow.amount:
                raise InvalidAmountError(
                    f"Funding must equal the escrowed amount: required {escrow.amount}, "
                    f"provided {provided}",
                    required=escrow.amount,
                    provided=provided,
                )
            self._transition(
                escrow,
                "confirm_funding",
                actor=escrow.buyer_id,
                now=now,
                event_type=EventType.ESCROW_FUNDED,
                payload={"amount": str(provided)},
            )
            escrow.funded_at = now

        outcome = await self._mutate("fund_escrow", escrow_id, apply, now)
        if outcome.ok:
            logger.info("escrow.funded", escrow_id=str(outcome.escrow.id))
        return outcome

    async def cancel_escrow(
        self,
        escrow_id: uuid.UUID | str,
        caller_id: str,
        *,
        now: datetime | None = None,
    ) -> Outcome:
        """Buyer withdraws before funding. CREATED -> CANCELLED, no trust change."""
        now = now or self._clock()

        async def apply(escrow: Escrow) -> None:
            _require_state(escrow, "cancel_escrow", EscrowState.CREATED)
            if caller_id != escrow.buyer_id:
                raise UnauthorizedError(caller_id, "cancel this escrow")
            self._transition(
                escrow,
                "buyer_cancels",
                actor=caller_id,
                now=now,
                event_type=EventType.ESCROW_CANCELLED,
            )

        outcome = await self._mutate("cancel_escrow", escrow_id, apply, now)
        if outcome.ok:
            logger.info("escrow.cancelled", escrow_id=str(outcome.escrow.id))
        return outcome

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release_to_seller(
        self,
        escrow_id: uuid.UUID | str,
        pin: str,
        now: datetime | None = None,
        *,
        caller_id: str | None = None,
        buyer_override: bool = False,
    ) -> Outcome:
        """Release the funds to the seller with the one-time PIN.

        The PIN is entered through the buyer's confirmation channel, so an
        explicit ``caller_id`` must be the buyer. After ``expires_at`` only the
        buyer may release, by passing ``buyer_override``; otherwise the expired
        escrow is refunded and EXPIRED is reported.
        """
        now = now or self._clock()
        released = False

        async def apply(escrow: Escrow) -> EscrowError | None:
            nonlocal released
            if escrow.pin_consumed:
                raise AlreadyConsumedError(str(escrow.id))
            _require_state(escrow, "release_to_seller", EscrowState.FUNDED)
            if caller_id is not None and caller_id != escrow.buyer_id:
                raise UnauthorizedError(caller_id, "release funds")
            if buyer_override and caller_id != escrow.buyer_id:
                raise UnauthorizedError(caller_id, "override the release deadline")

            expired = escrow.is_expired(now)
            if expired and not buyer_override:
                await self._refund_expired(escrow, now)
                return ExpiredError(str(escrow.id), escrow.expires_at)

            if not pin_matches(escrow.id, str(pin), escrow.release_pin_hash, self._pin_secret):
                raise InvalidPinError()

            self._transition(
                escrow,
                "pin_confirmed",
                actor=caller_id or escrow.buyer_id,
                now=now,
                event_type=EventType.FUNDS_RELEASED,
                note="released by buyer override after deadline" if expired else "",
            )
            escrow.pin_consumed = True
            await self._ledger.settle(escrow, Resolution.RELEASED, now)
            released = True
            return None

        outcome = await self._mutate("release_to_seller", escrow_id, apply, now)
        if released:
            logger.info(
                "escrow.released",
                escrow_id=str(outcome.escrow.id),
                amount=str(outcome.escrow.amount),
                override=buyer_override,
            )
        return outcome

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def raise_dispute(
        self,
        escrow_id: uuid.UUID | str,
        caller_id: str,
        now: datetime | None = None,
        *,
        reason: str = "",
    ) -> Outcome:
        """Open a dispute on a funded escrow. FUNDED -> IN_DISPUTE."""
        now = now or self._clock()
        opened = False

        async def apply(escrow: Escrow) -> EscrowError | None:
            nonlocal opened
            _require_state(escrow, "raise_dispute", EscrowState.FUNDED)
            if not escrow.is_party(caller_id):
                raise UnauthorizedError(caller_id, "dispute this escrow")
            if now > escrow.expires_at + self._settings.dispute_grace_period:
                await self._refund_expired(escrow, now)
                return ExpiredError(str(escrow.id), escrow.expires_at)

            panel = escrow.arbitrators or tuple(self._panel_policy.assign(escrow))
            if not panel:
                raise EscrowValidationError("No arbitrators available to hear the dispute")
            quorum = quorum_for(len(panel), self._settings.dispute_quorum)

            escrow.dispute = Dispute(
                raised_by=caller_id,
                opened_at=now,
                panel=panel,
                quorum=quorum,
                reason=reason,
            )
            self._transition(
                escrow,
                "party_disputes",
                actor=caller_id,
                now=now,
                event_type=EventType.DISPUTE_RAISED,
                note=reason,
                payload={"panel": list(panel), "quorum": quorum},
            )
            opened = True
            return None

        outcome = await self._mutate("raise_dispute", escrow_id, apply, now)
        if opened:
            logger.info(
                "dispute.raised",
                escrow_id=str(outcome.escrow.id),
                by=caller_id,
                panel_size=len(outcome.escrow.dispute.panel),
                quorum=outcome.escrow.dispute.quorum,
            )
        return outcome

    async def cast_vote(
        self,
        escrow_id: uuid.UUID | str,
        arbitrator_id: str,
        decision: DisputeDecision | str,
        *,
        now: datetime | None = None,
    ) -> Outcome:
        """Record an arbitrator's vote and resolve the dispute at quorum.

        Below quorum the vote is persisted and the Outcome carries
        QuorumNotReachedError as a progress signal.
        """
        now = now or self._clock()
        resolved: list[DisputeDecision] = []

        async def apply(escrow: Escrow) -> EscrowError | None:
            if escrow.state is not EscrowState.IN_DISPUTE:
                if escrow.is_terminal and any(
                    ev.event_type in _DISPUTE_RESOLVED for ev in escrow.history
                ):
                    raise DisputeClosedError(escrow.state.value)
                raise InvalidStateError(escrow.state.value, "cast_vote")
            dispute = escrow.dispute
            if arbitrator_id not in dispute.panel:
                raise NotArbitratorError(arbitrator_id)
            try:
                vote = DisputeDecision(decision)
            except ValueError as err:
                raise EscrowValidationError(f"Unknown decision: {decision!r}") from err

            tally = record_vote(dispute, arbitrator_id, vote)
            await self._ledger.register(arbitrator_id, Role.ARBITRATOR)
            if tally is None:
                return QuorumNotReachedError(len(dispute.votes), dispute.quorum)

            payload = {
                "votes": {a: d.value for a, d in sorted(dispute.votes.items())},
                "tally": tally.to_dict(),
                "decision": tally.decision.value,
                "quorum": dispute.quorum,
            }
            escrow.dispute = None
            if tally.decision is DisputeDecision.FAVOR_SELLER:
                event_name, event_type = "arbitrated_for_seller", EventType.DISPUTE_RESOLVED_SELLER
                resolution = Resolution.ARBITRATED_FOR_SELLER
            else:
                event_name, event_type = "arbitrated_for_buyer", EventType.DISPUTE_RESOLVED_BUYER
                resolution = Resolution.ARBITRATED_FOR_BUYER
            self._transition(
                escrow,
                event_name,
                actor=arbitrator_id,
                now=now,
                event_type=event_type,
                note="resolved by panel vote",
                payload=payload,
            )
            await self._ledger.settle(escrow, resolution, now)
            resolved.append(tally.decision)
            return None

        outcome = await self._mutate("cast_vote", escrow_id, apply, now)
        if resolved:
            logger.info(
                "dispute.resolved",
                escrow_id=str(outcome.escrow.id),
                decision=resolved[0].value,
                state=outcome.escrow.state.value,
            )
        elif outcome.is_partial:
            logger.info(
                "dispute.vote_recorded",
                escrow_id=str(outcome.escrow.id),
                arbitrator=arbitrator_id,
                votes=outcome.error.votes_cast,
                quorum=outcome.error.quorum,
            )
        return outcome

    # ------------------------------------------------------------------
    # Time-lock
    # ------------------------------------------------------------------

    async def sweep_expired(
        self,
        escrow_id: uuid.UUID | str,
        now: datetime | None = None,
    ) -> Outcome:
        """Refund a FUNDED escrow past its deadline. Idempotent; a no-op otherwise."""
        now = now or self._clock()

        async def apply(escrow: Escrow) -> None:
            if escrow.state is EscrowState.FUNDED and escrow.is_expired(now):
                await self._refund_expired(escrow, now)

        return await self._mutate("sweep_expired", escrow_id, apply, now)

    async def sweep_all_expired(self, now: datetime | None = None) -> list[Outcome]:
        """Run ``sweep_expired`` over every funded escrow that is past its deadline."""
        now = now or self._clock()
        try:
            _require_aware(now)
        except EscrowError as exc:
            return [self._rejected("sweep_all_expired", None, exc)]
        outcomes = []
        for escrow in await self._repo.list_escrows(EscrowState.FUNDED):
            if escrow.is_expired(now):
                outcomes.append(await self.sweep_expired(escrow.id, now))
        return outcomes

    async def _refund_expired(self, escrow: Escrow, now: datetime) -> None:
        self._transition(
            escrow,
            "time_lock_expired",
            actor=SYSTEM_ACTOR,
            now=now,
            event_type=EventType.TIME_LOCK_REFUND,
            note="time-lock expired; funds returned to buyer",
            payload={"expires_at": escrow.expires_at.isoformat()},
        )
        await self._ledger.settle(escrow, Resolution.TIME_LOCK_REFUND, now)
        logger.info(
            "escrow.refunded",
            escrow_id=str(escrow.id),
            reason="time_lock",
            expires_at=escrow.expires_at.isoformat(),
        )

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_escrow(self, escrow_id: uuid.UUID | str) -> Outcome:
        try:
            return Outcome(escrow=await self._repo.get(_to_uuid(escrow_id)))
        except EscrowError as exc:
            return Outcome(error=exc)

    async def get_status(self, escrow_id: uuid.UUID | str) -> dict:
        """Get escrow state with the transitions still open to it."""
        outcome = await self.get_escrow(escrow_id)
        if not outcome.ok:
            return outcome.to_dict()
        escrow = outcome.escrow
        sm = EscrowStateMachine(current_status=escrow.state.value)
        return {
            "escrow_id": str(escrow.id),
            "state": escrow.state.value,
            "expires_at": escrow.expires_at.isoformat(),
            "expired": escrow.is_expired(self._clock()),
            "votes_cast": len(escrow.dispute.votes) if escrow.dispute else 0,
            "allowed_events": sm.get_allowed_events(),
        }

    async def list_escrows(self, state: EscrowState | None = None) -> list[Escrow]:
        return await self._repo.list_escrows(state)

    async def get_identity(self, user_id: str) -> Identity:
        return await self._repo.get_identity(user_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _mutate(
        self,
        operation: str,
        escrow_id: uuid.UUID | str,
        apply: Callable[[Escrow], Awaitable[EscrowError | None]],
        now: datetime,
    ) -> Outcome:
        """Run ``apply`` on a staged copy and write it back atomically.

        ``apply`` raises to abort with nothing written, or returns an error
        to report alongside a committed change (lazy refund, partial vote).
        """
        current: Escrow | None = None
        with escrow_context(operation, escrow_id):
            try:
                key = _to_uuid(escrow_id)
                async with self._locks.hold(key):
                    async with self._repo.transaction():
                        current = await self._repo.get(key)
                        _require_aware(now)
                        staged = copy.deepcopy(current)
                        signal = await apply(staged)
                        if staged == current:
                            saved = current
                        else:
                            saved = await self._repo.put(staged, expected_version=current.version)
            except EscrowError as exc:
                return self._rejected(operation, current, exc)
        return Outcome(escrow=saved, error=signal)

    def _transition(
        self,
        escrow: Escrow,
        event_name: str,
        *,
        actor: str,
        now: datetime,
        event_type: EventType,
        note: str = "",
        payload: dict | None = None,
    ) -> None:
        """Fire a state machine event and append its history entry.

        This is the only place an escrow's state changes.
        """
        sm = EscrowStateMachine(current_status=escrow.state.value)
        try:
            getattr(sm, event_name)()
        except TransitionNotAllowed as err:
            raise InvalidStateError(escrow.state.value, event_name) from err

        previous = escrow.state
        escrow.state = EscrowState(sm.status)
        escrow.history.append(
            TransitionEvent(
                previous_state=previous,
                new_state=escrow.state,
                actor=actor,
                timestamp=now,
                note=note,
                event_type=event_type,
                payload=payload or {},
            )
        )
        if escrow.is_terminal:
            escrow.closed_at = now
            # a closed escrow can never be released, so its PIN digest is dropped
            escrow.release_pin_hash = ""

    def _rejected(self, operation: str, escrow: Escrow | None, exc: EscrowError) -> Outcome:
        logger.warning(
            "escrow.operation_rejected",
            operation=operation,
            escrow_id=str(escrow.id) if escrow else None,
            error=exc.code,
            message=exc.message,
        )
        return Outcome(escrow=escrow, error=exc)
