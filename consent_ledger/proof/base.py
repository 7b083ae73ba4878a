"""
Proof oracle contract for the Consent Ledger

The oracle turns a claim about a consent into an attestation a third party
can check. Its inputs are hashes only: the purpose text and the user's raw
identity are not fields of any input model, so they cannot reach a proof
backend by accident.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from ..consent.models import ConsentStatus, LawfulBasis
from ..utils.clock import utc_now


class ClaimType(str, Enum):
    CONSENT_GRANTED = "consent_granted"
    CONSENT_VERIFIED = "consent_verified"


class ConsentClaim(BaseModel):
    """Claim proven at grant time"""
    model_config = ConfigDict(extra="forbid")

    consent_id: str
    user_id: str
    controller_hash: str
    purpose_hash: str
    lawful_basis: LawfulBasis
    data_categories: List[str] = Field(default_factory=list)


class RecordSnapshot(BaseModel):
    """Hash-only view of a record proven at verification time"""
    model_config = ConfigDict(extra="forbid")

    consent_id: str
    user_id: str
    controller_hash: str
    purpose_hash: str
    lawful_basis: LawfulBasis
    status: ConsentStatus
    granted_at: int
    expires_at: Optional[int] = None
    ledger_tx_hash: Optional[str] = None


class Attestation(BaseModel):
    """Opaque attestation; public_inputs are safe to disclose"""
    scheme: str
    claim_type: ClaimType
    public_inputs: Dict[str, Any]
    proof: str
    issued_at: datetime = Field(default_factory=utc_now)


class ProofOracle(ABC):
    """Produces and checks attestations over hash-only consent claims"""

    @abstractmethod
    async def prove_consent(self, claim: ConsentClaim) -> Attestation:
        """Attest that the user holds a GRANTED consent for the claim"""

    @abstractmethod
    async def prove_verification(self, snapshot: RecordSnapshot) -> Attestation:
        """Attest that the snapshot is a currently GRANTED consent"""

    @abstractmethod
    def verify_attestation(self, attestation: Attestation) -> bool:
        """Check an attestation previously produced by this oracle"""
