"""
Consent data models for the Consent Ledger
GDPR consent records, controllers, pseudonymous identities and engine results
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any, NamedTuple
from pydantic import BaseModel, Field, field_validator
import uuid

from ..constants import IdentityDefaults
from ..utils.clock import utc_now, ensure_utc


class LawfulBasis(str, Enum):
    """GDPR Article 6 lawful bases for processing"""
    CONSENT = "consent"
    CONTRACT = "contract"
    LEGAL_OBLIGATION = "legal_obligation"
    VITAL_INTEREST = "vital_interest"
    PUBLIC_TASK = "public_task"
    LEGITIMATE_INTEREST = "legitimate_interest"


class ConsentStatus(str, Enum):
    """Consent record status; REVOKED and EXPIRED are terminal"""
    GRANTED = "granted"
    REVOKED = "revoked"
    EXPIRED = "expired"


class VerifyOutcome(str, Enum):
    """Why a verification did not produce a valid consent"""
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    INVALID_STATUS = "invalid_status"


class ConsentKey(NamedTuple):
    """Uniqueness key: at most one GRANTED record per key"""
    user_id: str
    controller_hash: str
    purpose_hash: str


class ConsentRecord(BaseModel):
    """Individual consent record"""
    consent_id: str = Field(..., description="Derived consent identifier")
    user_id: str = Field(..., description="Pseudonymous user identifier")
    controller_ref: str = Field(..., description="Internal reference of the controller")
    controller_hash: str
    purpose_hash: str

    # Content
    purpose: str = Field(..., description="Purpose of data processing")
    data_categories: List[str] = Field(default_factory=list)
    lawful_basis: LawfulBasis = Field(default=LawfulBasis.CONSENT)

    # Lifecycle
    status: ConsentStatus = Field(default=ConsentStatus.GRANTED)
    granted_at: datetime = Field(default_factory=utc_now)
    expires_at: Optional[datetime] = Field(default=None)
    revoked_at: Optional[datetime] = Field(default=None)
    updated_at: datetime = Field(default_factory=utc_now)

    # Ledger linkage
    ledger_tx_hash: Optional[str] = Field(default=None)
    anchored_status: Optional[ConsentStatus] = Field(
        default=None, description="Status attested by ledger_tx_hash"
    )
    proof_attestation: Optional[Dict[str, Any]] = Field(default=None)

    @property
    def key(self) -> ConsentKey:
        return ConsentKey(self.user_id, self.controller_hash, self.purpose_hash)

    @property
    def ledger_pending(self) -> bool:
        """True while the ledger does not yet attest the current status"""
        return self.anchored_status != self.status

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True once expires_at has been reached, whatever the stored status"""
        if self.expires_at is None:
            return False
        return (now or utc_now()) >= ensure_utc(self.expires_at)

    def to_public_dict(self) -> Dict[str, Any]:
        """Owner-facing view without the attestation blob"""
        return self.model_dump(mode="json", exclude={"proof_attestation"})


class ControllerRecord(BaseModel):
    """Registered data controller (organization)"""
    controller_ref: str = Field(default_factory=lambda: str(uuid.uuid4()))
    organization_id: str
    organization_name: str
    controller_hash: str
    public_key: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    registered_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class UserIdentity(BaseModel):
    """Pseudonymous user identity; the raw email is never part of it"""
    user_id: str
    did: str
    wallet_address: str
    public_key: str
    created_at: datetime = Field(default_factory=utc_now)


class ConsentGrantRequest(BaseModel):
    """Validated grant input"""
    user_id: str = Field(..., min_length=1, max_length=IdentityDefaults.MAX_USER_ID_LENGTH)
    controller_id: str = Field(..., min_length=1, description="Organization id of the controller")
    purpose: str = Field(..., min_length=1)
    data_categories: List[str] = Field(default_factory=list)
    lawful_basis: LawfulBasis = Field(default=LawfulBasis.CONSENT)
    expires_at: Optional[datetime] = None

    @field_validator("user_id", "controller_id", "purpose")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("data_categories")
    @classmethod
    def _unique_categories(cls, value: List[str]) -> List[str]:
        seen: List[str] = []
        for category in value:
            category = category.strip()
            if not category:
                raise ValueError("data categories must not be blank")
            if category not in seen:
                seen.append(category)
        return seen

    @field_validator("expires_at")
    @classmethod
    def _utc_expiry(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class ConsentGrantResult(BaseModel):
    consent_id: str
    status: ConsentStatus = ConsentStatus.GRANTED
    granted_at: datetime
    expires_at: Optional[datetime] = None
    ledger_tx_hash: Optional[str] = None


class ConsentVerifyResult(BaseModel):
    """
    Verification outcome, safe to hand to a controller or regulator.

    Carries no purpose text and no identity beyond what the caller supplied.
    """
    is_valid: bool
    consent_id: Optional[str] = None
    status: Optional[ConsentStatus] = None
    error: Optional[VerifyOutcome] = None
    message: Optional[str] = None
    attestation: Optional[Dict[str, Any]] = None
    ledger_merkle_proof: Optional[Dict[str, Any]] = None


class ConsentRevokeResult(BaseModel):
    consent_id: str
    status: ConsentStatus = ConsentStatus.REVOKED
    revoked_at: datetime
    ledger_tx_hash: Optional[str] = None


class ComplianceMetrics(BaseModel):
    controller_hash: str
    total_consents: int = 0
    active_consents: int = 0
    revoked_consents: int = 0
    expired_consents: int = 0
    pending_anchors: int = 0
    compliance_score: float = 100.0
    generated_at: datetime = Field(default_factory=utc_now)
