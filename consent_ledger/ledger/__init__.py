"""
Ledger anchoring for the Consent Ledger
Append-only external log contract and an in-memory Merkle ledger
"""

from .base import (
    LedgerAnchor, LedgerEvent, LedgerReceipt, MerkleProof, ProofStep, LedgerError,
)
from .memory import InMemoryLedger
from .merkle import verify_inclusion, from_hex

__all__ = [
    "LedgerAnchor",
    "LedgerEvent",
    "LedgerReceipt",
    "MerkleProof",
    "ProofStep",
    "LedgerError",
    "InMemoryLedger",
    "verify_inclusion",
    "from_hex",
]
