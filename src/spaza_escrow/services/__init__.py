"""Application services — the escrow engine and its collaborators."""

from spaza_escrow.services.escrow_engine import EscrowEngine
from spaza_escrow.services.trust_ledger import TrustLedger

__all__ = ["EscrowEngine", "TrustLedger"]
