"""
Cryptographic utilities for the Consent Ledger
Identity derivation, fingerprints and revocation signatures
"""

from .hash import (
    secure_hash, hash_string, hmac_hash, create_data_fingerprint,
    controller_hash, purpose_hash, derive_user_id, derive_consent_id,
    derive_did, derive_wallet_address,
)
from .signatures import (
    SignatureVerifier, Ed25519SignatureVerifier,
    create_revocation_message, verify_ed25519_signature,
)

__all__ = [
    "secure_hash",
    "hash_string",
    "hmac_hash",
    "create_data_fingerprint",
    "controller_hash",
    "purpose_hash",
    "derive_user_id",
    "derive_consent_id",
    "derive_did",
    "derive_wallet_address",
    "SignatureVerifier",
    "Ed25519SignatureVerifier",
    "create_revocation_message",
    "verify_ed25519_signature",
]
