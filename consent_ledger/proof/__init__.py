"""
Proof oracle for the Consent Ledger
Attestations over hash-only consent claims
"""

from .base import (
    ProofOracle, ConsentClaim, RecordSnapshot, Attestation, ClaimType,
)
from .commitment import CommitmentProofOracle

__all__ = [
    "ProofOracle",
    "ConsentClaim",
    "RecordSnapshot",
    "Attestation",
    "ClaimType",
    "CommitmentProofOracle",
]
