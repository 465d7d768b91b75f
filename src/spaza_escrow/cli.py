"""Command-line front end for the escrow engine.

Every command opens the database at ``DATABASE_URL``, runs one engine
operation and prints its outcome as JSON on stdout. Logs go to stderr.
A failed operation exits with status 1.

Usage:
    spaza-escrow create --amount 1500 --buyer B --seller S --days 30
    spaza-escrow fund --escrow-id <id> --amount 1500
    spaza-escrow release --escrow-id <id> --pin 123456
    spaza-escrow dispute --escrow-id <id> --user-id B --reason "not delivered"
    spaza-escrow vote --escrow-id <id> --arbitrator-id A1 --decision favor_buyer
    spaza-escrow sweep [--escrow-id <id>]
    spaza-escrow get --escrow-id <id>
    spaza-escrow list [--state FUNDED]
    spaza-escrow trust --user-id S
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from spaza_escrow.config import get_settings
from spaza_escrow.domain.enums import DisputeDecision, EscrowState
from spaza_escrow.infrastructure.database import (
    SqlAlchemyEscrowRepository,
    close_db,
    get_session_factory,
    init_db,
)
from spaza_escrow.logging_config import setup_logging
from spaza_escrow.schemas.escrow import EscrowRecord, IdentityRecord, OutcomeRecord
from spaza_escrow.services.escrow_engine import EscrowEngine

if TYPE_CHECKING:
    from collections.abc import Sequence

    from spaza_escrow.domain.models import Outcome


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="spaza-escrow",
        description="Neutral buyer/seller escrow with PIN release and arbitrated disputes.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create", help="Create a new escrow")
    p.add_argument("--amount", type=Decimal, required=True)
    p.add_argument("--currency", default=None, help="Currency code (default from settings)")
    p.add_argument("--buyer", required=True, help="Buyer identifier")
    p.add_argument("--seller", required=True, help="Seller identifier")
    p.add_argument("--description", default="")
    p.add_argument("--days", type=int, default=None, help="Time-lock in days")
    p.add_argument(
        "--arbitrator",
        action="append",
        default=None,
        help="Fix the dispute panel at creation (repeatable)",
    )

    p = sub.add_parser("fund", help="Fund an escrow with its exact amount")
    p.add_argument("--escrow-id", required=True)
    p.add_argument("--amount", type=Decimal, required=True)

    p = sub.add_parser("release", help="Release funds to the seller with the PIN")
    p.add_argument("--escrow-id", required=True)
    p.add_argument("--pin", required=True)
    p.add_argument("--user-id", default=None, help="Caller; must be the buyer if given")
    p.add_argument(
        "--override",
        action="store_true",
        help="Buyer releases after the deadline",
    )

    p = sub.add_parser("cancel", help="Cancel an unfunded escrow (buyer only)")
    p.add_argument("--escrow-id", required=True)
    p.add_argument("--user-id", required=True)

    p = sub.add_parser("dispute", help="Raise a dispute on a funded escrow")
    p.add_argument("--escrow-id", required=True)
    p.add_argument("--user-id", required=True)
    p.add_argument("--reason", default="")

    p = sub.add_parser("vote", help="Cast an arbitrator vote")
    p.add_argument("--escrow-id", required=True)
    p.add_argument("--arbitrator-id", required=True)
    p.add_argument(
        "--decision",
        required=True,
        choices=[d.value for d in DisputeDecision],
    )

    p = sub.add_parser("sweep", help="Refund expired funded escrows")
    p.add_argument("--escrow-id", default=None, help="Only this escrow (default: all)")

    p = sub.add_parser("get", help="Show one escrow")
    p.add_argument("--escrow-id", required=True)

    p = sub.add_parser("list", help="List escrows")
    p.add_argument("--state", choices=[s.value for s in EscrowState], default=None)

    p = sub.add_parser("trust", help="Show a participant's trust record")
    p.add_argument("--user-id", required=True)

    return parser


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _emit_outcome(outcome: Outcome) -> int:
    _emit(OutcomeRecord.from_outcome(outcome).model_dump(mode="json"))
    return 0 if outcome.ok or outcome.is_partial else 1


async def run_command(args: argparse.Namespace, engine: EscrowEngine) -> int:
    """Dispatch one parsed command to the engine. Returns the exit status."""
    match args.command:
        case "create":
            return _emit_outcome(
                await engine.create_escrow(
                    args.amount,
                    args.currency,
                    args.buyer,
                    args.seller,
                    args.description,
                    args.days,
                    arbitrators=args.arbitrator,
                )
            )
        case "fund":
            return _emit_outcome(await engine.fund_escrow(args.escrow_id, args.amount))
        case "release":
            return _emit_outcome(
                await engine.release_to_seller(
                    args.escrow_id,
                    args.pin,
                    caller_id=args.user_id,
                    buyer_override=args.override,
                )
            )
        case "cancel":
            return _emit_outcome(await engine.cancel_escrow(args.escrow_id, args.user_id))
        case "dispute":
            return _emit_outcome(
                await engine.raise_dispute(args.escrow_id, args.user_id, reason=args.reason)
            )
        case "vote":
            return _emit_outcome(
                await engine.cast_vote(args.escrow_id, args.arbitrator_id, args.decision)
            )
        case "sweep":
            if args.escrow_id:
                return _emit_outcome(await engine.sweep_expired(args.escrow_id))
            outcomes = await engine.sweep_all_expired()
            _emit([OutcomeRecord.from_outcome(o).model_dump(mode="json") for o in outcomes])
            return 0 if all(o.ok for o in outcomes) else 1
        case "get":
            return _emit_outcome(await engine.get_escrow(args.escrow_id))
        case "list":
            state = EscrowState(args.state) if args.state else None
            escrows = await engine.list_escrows(state)
            _emit([EscrowRecord.model_validate(e).model_dump(mode="json") for e in escrows])
            return 0
        case "trust":
            identity = await engine.get_identity(args.user_id)
            record = IdentityRecord.model_validate(identity).model_dump(mode="json")
            record["recommended_duration_days"] = await engine.ledger.recommended_duration_days(
                args.user_id
            )
            _emit(record)
            return 0
    raise ValueError(f"Unknown command: {args.command}")


async def _main(args: argparse.Namespace) -> int:
    settings = get_settings()
    await init_db()
    try:
        repository = SqlAlchemyEscrowRepository(
            get_session_factory(),
            default_trust_score=settings.trust_score_default,
        )
        engine = EscrowEngine(repository, settings)
        return await run_command(args, engine)
    finally:
        await close_db()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(log_level=settings.app_log_level, json_logs=not settings.is_development)
    return asyncio.run(_main(args))


if __name__ == "__main__":
    sys.exit(main())
