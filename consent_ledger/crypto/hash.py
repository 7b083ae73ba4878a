"""
Hashing utilities for the Consent Ledger
Deterministic one-way identity derivation, keyed commitments and fingerprints

Every identifier the ledger persists or hands to a third party is derived
here. The functions are pure: the same UTF-8 input always yields the same
lowercase hex digest, so ids are reproducible by any SHA-256 implementation.
"""

import hashlib
import hmac
import json
from typing import Any, Dict, Union

from ..constants import IdentityDefaults

_SEP = IdentityDefaults.FIELD_SEPARATOR


def secure_hash(data: bytes) -> str:
    """
    Create SHA-256 hash of data

    Args:
        data: Data to hash

    Returns:
        Hex-encoded hash string
    """
    return hashlib.sha256(data).hexdigest()


def hash_string(text: str) -> str:
    """Hash a string's UTF-8 bytes"""
    return secure_hash(text.encode('utf-8'))


def hmac_hash(key: bytes, data: bytes) -> str:
    """
    Create HMAC-SHA256 for message authentication

    Args:
        key: Secret key for HMAC
        data: Data to authenticate

    Returns:
        Hex-encoded HMAC hash
    """
    return hmac.new(key, data, hashlib.sha256).hexdigest()


def constant_time_equals(left: str, right: str) -> bool:
    """Compare two digests without leaking timing information"""
    return hmac.compare_digest(left.encode('utf-8'), right.encode('utf-8'))


def create_data_fingerprint(data: Dict[str, Any]) -> str:
    """
    Create deterministic fingerprint of data structure

    Args:
        data: Dictionary to fingerprint

    Returns:
        Fingerprint hash
    """
    # Sort keys for deterministic output
    normalized = json.dumps(data, sort_keys=True, separators=(',', ':'), default=str)
    return hash_string(normalized)


# =============================================================================
# IDENTITY DERIVATION
# =============================================================================

def controller_hash(organization_id: str) -> str:
    """Pseudonymous controller identifier: H(organization_id)"""
    return hash_string(organization_id)


def purpose_hash(purpose: str) -> str:
    """Purpose commitment: H(purpose)"""
    return hash_string(purpose)


def derive_user_id(email: str, public_key: str) -> str:
    """
    Derive the pseudonymous user id: H(email ":" public_key)

    This is the only identifier the ledger keeps for a user; the raw email
    never leaves this function.
    """
    return hash_string(f"{email}{_SEP}{public_key}")


def derive_consent_id(
    user_id: str,
    controller_id: str,
    purpose: str,
    timestamp: Union[int, float]
) -> str:
    """
    Derive a consent id: H(user_id ":" controller_id ":" purpose ":" timestamp)

    Args:
        user_id: Pseudonymous user id
        controller_id: Organization id as supplied at grant time
        purpose: Purpose text
        timestamp: Grant instant in epoch milliseconds

    Returns:
        64 character hex consent id
    """
    return hash_string(_SEP.join([user_id, controller_id, purpose, str(int(timestamp))]))


def derive_did(public_key: str, scheme: str = IdentityDefaults.DID_SCHEME) -> str:
    """Stable decentralized identifier: did:<scheme>:H(public_key)[0:16]"""
    key_hash = hash_string(public_key)
    return _SEP.join([
        IdentityDefaults.DID_PREFIX,
        scheme,
        key_hash[:IdentityDefaults.DID_KEY_HASH_LENGTH],
    ])


def derive_wallet_address(public_key: str) -> str:
    """Simulated wallet address: H(public_key)[0:40]"""
    return hash_string(public_key)[:IdentityDefaults.WALLET_ADDRESS_LENGTH]


def is_digest(value: Any) -> bool:
    """True if value looks like a lowercase hex SHA-256 digest"""
    if not isinstance(value, str) or len(value) != IdentityDefaults.DIGEST_HEX_LENGTH:
        return False
    return all(c in "0123456789abcdef" for c in value)
