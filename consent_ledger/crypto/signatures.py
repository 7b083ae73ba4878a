"""
Revocation signature verification for the Consent Ledger
Ed25519 signature checks over a deterministic revocation message

The engine only requires that a revocation was authenticated as coming from
the consent owner; how that is done is up to the injected verifier. The
default verifier expects the owner's Ed25519 public key in base58 (the
format wallets hand out) and a base64 signature over the message produced by
create_revocation_message().
"""

import base64
import binascii
from abc import ABC, abstractmethod
from typing import Callable, Optional

import base58
import structlog
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from ..constants import REVOCATION_MESSAGE_TEMPLATE

logger = structlog.get_logger(__name__)

ED25519_PUBLIC_KEY_SIZE = 32
ED25519_SIGNATURE_SIZE = 64


def create_revocation_message(consent_id: str, user_id: str) -> str:
    """
    Create the message a consent owner signs to revoke a consent.

    Binding both ids prevents a signature for one consent from being replayed
    against another.
    """
    return REVOCATION_MESSAGE_TEMPLATE.format(consent_id=consent_id, user_id=user_id)


def verify_ed25519_signature(public_key: bytes, message: bytes, signature: bytes) -> bool:
    """
    Verify an Ed25519 signature.

    Args:
        public_key: 32-byte Ed25519 public key
        message: Original message that was signed
        signature: 64-byte Ed25519 signature

    Returns:
        True if signature is valid, False otherwise
    """
    if len(public_key) != ED25519_PUBLIC_KEY_SIZE:
        logger.warning("Invalid public key size",
                       expected=ED25519_PUBLIC_KEY_SIZE,
                       actual=len(public_key))
        return False

    if len(signature) != ED25519_SIGNATURE_SIZE:
        logger.warning("Invalid signature size",
                       expected=ED25519_SIGNATURE_SIZE,
                       actual=len(signature))
        return False

    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
        return True
    except InvalidSignature:
        logger.warning("Signature verification failed - invalid signature")
        return False


class SignatureVerifier(ABC):
    """Authenticates revocation requests as originating from the consent owner"""

    @abstractmethod
    def verify_revocation(self, consent_id: str, user_id: str, signature: str) -> bool:
        """Return True if signature authenticates the owner of user_id"""


class Ed25519SignatureVerifier(SignatureVerifier):
    """
    Verifies base64 Ed25519 signatures against the owner's registered key.

    Args:
        key_lookup: Callable returning the base58 public key registered for a
            user id, or None if the user is unknown
    """

    def __init__(self, key_lookup: Callable[[str], Optional[str]]):
        self.key_lookup = key_lookup

    def verify_revocation(self, consent_id: str, user_id: str, signature: str) -> bool:
        public_key_base58 = self.key_lookup(user_id)
        if not public_key_base58:
            logger.warning("No public key registered for user", user_id=user_id)
            return False

        try:
            public_key = base58.b58decode(public_key_base58)
            signature_bytes = base64.b64decode(signature, validate=True)
        except (ValueError, binascii.Error) as e:
            logger.warning("Malformed revocation signature or key",
                           user_id=user_id, error=str(e))
            return False

        message = create_revocation_message(consent_id, user_id).encode('utf-8')
        return verify_ed25519_signature(public_key, message, signature_bytes)
