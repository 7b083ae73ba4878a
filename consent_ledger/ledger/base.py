"""
Ledger anchor contract for the Consent Ledger

The ledger is an external append-only log that timestamps each consent
lifecycle event. It may be slow or unavailable; the engine treats the
transaction hash it returns as an eventually-consistent attribute of a
record, never as part of the state decision.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field

from ..consent.models import ConsentStatus
from ..utils.clock import utc_now


class LedgerEvent(BaseModel):
    """Hash-only description of a lifecycle event submitted for anchoring"""
    consent_id: str
    controller_hash: str
    purpose_hash: str
    user_hash: str = Field(..., description="H(user_id); the pseudonymous id is not published")
    status: ConsentStatus
    granted_at: int = Field(..., description="Epoch milliseconds")
    expires_at: Optional[int] = None


class LedgerReceipt(BaseModel):
    transaction_hash: str
    consent_id: str
    status: ConsentStatus
    leaf_index: int
    anchored_at: datetime = Field(default_factory=utc_now)


class ProofStep(BaseModel):
    sibling: str
    position: str


class MerkleProof(BaseModel):
    """Inclusion proof of a consent's latest ledger entry"""
    consent_id: str
    leaf_hash: str
    leaf_index: int
    tree_size: int
    root: str
    path: List[ProofStep] = Field(default_factory=list)


class LedgerError(Exception):
    """Raised by ledger adapters when the ledger cannot serve a request"""
    pass


class LedgerAnchor(ABC):
    """Contract the consent engine requires from the ledger"""

    @abstractmethod
    async def anchor(self, event: LedgerEvent) -> LedgerReceipt:
        """Append a grant event; idempotent per (consent_id, status)"""

    @abstractmethod
    async def update_status(self, consent_id: str, status: ConsentStatus) -> LedgerReceipt:
        """Append a status change; idempotent per (consent_id, status)"""

    @abstractmethod
    async def get_proof(self, consent_id: str) -> Optional[MerkleProof]:
        """Inclusion proof of the latest entry for consent_id, if anchored"""
