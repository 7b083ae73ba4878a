"""
Deterministic commitment proof oracle

Binds the public inputs of a claim with HMAC-SHA256 under the oracle key.
It is not zero-knowledge; it stands in for a real proof backend with the
same inputs and outputs, and is reproducible so tests can compare
attestations.
"""

import json
from typing import Any, Dict, Optional
import structlog

from .base import (
    ProofOracle, ConsentClaim, RecordSnapshot, Attestation, ClaimType,
)
from ..config import get_ledger_config
from ..crypto.hash import hmac_hash, hash_string, constant_time_equals

logger = structlog.get_logger(__name__)

SCHEME = "hmac-sha256-commitment-v1"


def _canonical(data: Dict[str, Any]) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(',', ':')).encode('utf-8')


class CommitmentProofOracle(ProofOracle):
    """HMAC commitment oracle over hash-only public inputs"""

    def __init__(self, key: Optional[str] = None):
        self._key = (key or get_ledger_config().proof_oracle_key).encode('utf-8')

    def _attest(self, claim_type: ClaimType, public_inputs: Dict[str, Any]) -> Attestation:
        payload = {"claim_type": claim_type.value, "public_inputs": public_inputs}
        return Attestation(
            scheme=SCHEME,
            claim_type=claim_type,
            public_inputs=public_inputs,
            proof=hmac_hash(self._key, _canonical(payload)),
        )

    async def prove_consent(self, claim: ConsentClaim) -> Attestation:
        public_inputs = {
            "consent_id": claim.consent_id,
            # The pseudonymous id is hashed again before disclosure
            "subject": hash_string(claim.user_id),
            "controller_hash": claim.controller_hash,
            "purpose_hash": claim.purpose_hash,
            "lawful_basis": claim.lawful_basis.value,
            "data_categories": sorted(claim.data_categories),
        }
        attestation = self._attest(ClaimType.CONSENT_GRANTED, public_inputs)
        logger.debug("Produced consent attestation", consent_id=claim.consent_id)
        return attestation

    async def prove_verification(self, snapshot: RecordSnapshot) -> Attestation:
        public_inputs = {
            "consent_id": snapshot.consent_id,
            "subject": hash_string(snapshot.user_id),
            "controller_hash": snapshot.controller_hash,
            "purpose_hash": snapshot.purpose_hash,
            "lawful_basis": snapshot.lawful_basis.value,
            "status": snapshot.status.value,
            "granted_at": snapshot.granted_at,
            "expires_at": snapshot.expires_at,
            "ledger_tx_hash": snapshot.ledger_tx_hash,
        }
        attestation = self._attest(ClaimType.CONSENT_VERIFIED, public_inputs)
        logger.debug("Produced verification attestation", consent_id=snapshot.consent_id)
        return attestation

    def verify_attestation(self, attestation: Attestation) -> bool:
        if attestation.scheme != SCHEME:
            logger.warning("Unsupported attestation scheme", scheme=attestation.scheme)
            return False
        expected = self._attest(attestation.claim_type, attestation.public_inputs)
        return constant_time_equals(expected.proof, attestation.proof)
