"""
Consent management module for the Consent Ledger
GDPR consent grant, verification and revocation with ledger anchoring
"""

from .models import (
    ConsentRecord, ConsentStatus, LawfulBasis, ConsentKey, VerifyOutcome,
    ControllerRecord, UserIdentity, ConsentGrantResult, ConsentVerifyResult,
    ConsentRevokeResult, ComplianceMetrics,
)
from .storage import ConsentStore, ConsentStorage, InMemoryConsentStorage
from .registry import (
    ControllerRegistry, SQLControllerRegistry, InMemoryControllerRegistry,
    IdentityRegistry, SQLIdentityRegistry, InMemoryIdentityRegistry,
)
from .locks import KeyedLocks
from .engine import (
    ConsentEngine, get_consent_engine, grant_consent, verify_consent, revoke_consent,
)
from .manager import ConsentManager

__all__ = [
    "ConsentRecord",
    "ConsentStatus",
    "LawfulBasis",
    "ConsentKey",
    "VerifyOutcome",
    "ControllerRecord",
    "UserIdentity",
    "ConsentGrantResult",
    "ConsentVerifyResult",
    "ConsentRevokeResult",
    "ComplianceMetrics",
    "ConsentStore",
    "ConsentStorage",
    "InMemoryConsentStorage",
    "ControllerRegistry",
    "SQLControllerRegistry",
    "InMemoryControllerRegistry",
    "IdentityRegistry",
    "SQLIdentityRegistry",
    "InMemoryIdentityRegistry",
    "KeyedLocks",
    "ConsentEngine",
    "get_consent_engine",
    "grant_consent",
    "verify_consent",
    "revoke_consent",
    "ConsentManager",
]
