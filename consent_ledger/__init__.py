"""
Consent Ledger
GDPR consent grant, verification and revocation with pseudonymous identities,
hash-only proofs and an append-only anchoring ledger
"""

__version__ = "0.1.0"

# Core exports
from .config import LedgerConfig, get_ledger_config
from .exceptions import (
    ConsentLedgerError, ValidationError, ControllerNotFoundError, DuplicateControllerError,
    DuplicateConsentError, NotFoundOrForbiddenError, InvalidSignatureError,
    InvalidStateTransitionError, AdapterFailureError,
)

# Consent management (imported before ledger and proof, which build on its models)
from .consent import (
    ConsentRecord, ConsentStatus, LawfulBasis, VerifyOutcome,
    ConsentEngine, get_consent_engine, grant_consent, verify_consent, revoke_consent,
)

# Collaborators
from .ledger import LedgerAnchor, InMemoryLedger
from .proof import ProofOracle, CommitmentProofOracle
from .audit import AuditTrail

# Identity derivation
from .crypto import (
    controller_hash, purpose_hash, derive_user_id, derive_consent_id, derive_did,
    derive_wallet_address, create_revocation_message,
)

__all__ = [
    # Config
    "LedgerConfig",
    "get_ledger_config",

    # Errors
    "ConsentLedgerError",
    "ValidationError",
    "ControllerNotFoundError",
    "DuplicateControllerError",
    "DuplicateConsentError",
    "NotFoundOrForbiddenError",
    "InvalidSignatureError",
    "InvalidStateTransitionError",
    "AdapterFailureError",

    # Consent
    "ConsentRecord",
    "ConsentStatus",
    "LawfulBasis",
    "VerifyOutcome",
    "ConsentEngine",
    "get_consent_engine",
    "grant_consent",
    "verify_consent",
    "revoke_consent",

    # Collaborators
    "LedgerAnchor",
    "InMemoryLedger",
    "ProofOracle",
    "CommitmentProofOracle",
    "AuditTrail",

    # Identity
    "controller_hash",
    "purpose_hash",
    "derive_user_id",
    "derive_consent_id",
    "derive_did",
    "derive_wallet_address",
    "create_revocation_message",
]
