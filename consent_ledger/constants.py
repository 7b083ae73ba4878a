"""
Constants for the Consent Ledger

Centralized identifiers for the service, audit actions, error codes,
hash derivation and ledger anchoring defaults.
"""

from typing import Final, Tuple

# =============================================================================
# SERVICE IDENTIFICATION
# =============================================================================

SERVICE_NAME: Final[str] = "consent-ledger"
SERVICE_VERSION: Final[str] = "0.1.0"


# =============================================================================
# IDENTITY DERIVATION
# =============================================================================

class IdentityDefaults:
    """Parameters for pseudonymous identifier derivation"""
    DIGEST_HEX_LENGTH: Final[int] = 64
    MAX_USER_ID_LENGTH: Final[int] = 64
    FIELD_SEPARATOR: Final[str] = ":"

    DID_PREFIX: Final[str] = "did"
    DID_SCHEME: Final[str] = "consentire"
    DID_KEY_HASH_LENGTH: Final[int] = 16

    WALLET_ADDRESS_LENGTH: Final[int] = 40


# =============================================================================
# REVOCATION SIGNATURES
# =============================================================================

REVOCATION_MESSAGE_TEMPLATE: Final[str] = "consent-ledger:revoke:{consent_id}:{user_id}"


# =============================================================================
# AUDIT ACTIONS
# =============================================================================

class AuditActions:
    """Audit action tags written for consent lifecycle events"""
    CONSENT_GRANTED: Final[str] = "consent_granted"
    CONSENT_VERIFIED: Final[str] = "consent_verified"
    CONSENT_REVOKED: Final[str] = "consent_revoked"
    CONSENT_EXPIRED: Final[str] = "consent_expired"

    CONTROLLER_REGISTERED: Final[str] = "controller_registered"
    CONTROLLER_UPDATED: Final[str] = "controller_updated"
    USER_REGISTERED: Final[str] = "user_registered"

    ALL: Final[Tuple[str, ...]] = (
        CONSENT_GRANTED, CONSENT_VERIFIED, CONSENT_REVOKED, CONSENT_EXPIRED,
        CONTROLLER_REGISTERED, CONTROLLER_UPDATED,
        USER_REGISTERED,
    )


# Actor recorded for transitions the engine performs on its own
SYSTEM_ACTOR: Final[str] = "system"


# =============================================================================
# ERROR CODES
# =============================================================================

class ErrorCodes:
    """Standardized error codes for the consent ledger"""
    UNKNOWN_ERROR: Final[str] = "UNKNOWN_ERROR"
    VALIDATION_ERROR: Final[str] = "VALIDATION_ERROR"

    # Consent errors
    CONTROLLER_NOT_FOUND: Final[str] = "CONTROLLER_NOT_FOUND"
    DUPLICATE_CONTROLLER: Final[str] = "DUPLICATE_CONTROLLER"
    DUPLICATE_CONSENT: Final[str] = "DUPLICATE_CONSENT"
    NOT_FOUND_OR_FORBIDDEN: Final[str] = "NOT_FOUND_OR_FORBIDDEN"
    INVALID_SIGNATURE: Final[str] = "INVALID_SIGNATURE"
    INVALID_STATE_TRANSITION: Final[str] = "INVALID_STATE_TRANSITION"

    # Collaborator errors
    ADAPTER_FAILURE: Final[str] = "ADAPTER_FAILURE"


# =============================================================================
# LEDGER ANCHORING
# =============================================================================

class LedgerDefaults:
    """Ledger anchoring defaults"""
    ANCHOR_TIMEOUT_SECONDS: Final[float] = 2.0
    ANCHOR_RETRY_INTERVAL_SECONDS: Final[int] = 60
    TX_HASH_PREFIX: Final[str] = "0x"
