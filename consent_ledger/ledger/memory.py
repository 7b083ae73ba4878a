"""
In-memory append-only ledger

Stands in for the external anchoring network in tests and single-process
deployments. Entries are leaves of a Merkle tree; submitting the same
(consent_id, status) twice returns the original receipt.
"""

import asyncio
import json
from typing import Dict, List, Optional, Tuple
import structlog

from .base import LedgerAnchor, LedgerEvent, LedgerReceipt, MerkleProof, ProofStep, LedgerError
from .merkle import leaf_hash, merkle_root, inclusion_proof, to_hex
from ..constants import LedgerDefaults
from ..consent.models import ConsentStatus
from ..crypto.hash import create_data_fingerprint

logger = structlog.get_logger(__name__)


class InMemoryLedger(LedgerAnchor):
    """Append-only ledger holding a Merkle tree of anchored events"""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._leaves: List[bytes] = []
        self._receipts: Dict[Tuple[str, ConsentStatus], LedgerReceipt] = {}
        self._latest_index: Dict[str, int] = {}
        self._events: Dict[str, LedgerEvent] = {}

    @property
    def size(self) -> int:
        return len(self._leaves)

    def root(self) -> str:
        return to_hex(merkle_root(self._leaves))

    async def _append(self, consent_id: str, status: ConsentStatus, payload: dict) -> LedgerReceipt:
        async with self._lock:
            existing = self._receipts.get((consent_id, status))
            if existing:
                logger.debug("Ledger entry already anchored", consent_id=consent_id,
                             status=status.value)
                return existing

            data = json.dumps(payload, sort_keys=True, separators=(',', ':')).encode('utf-8')
            leaf = leaf_hash(data)
            index = len(self._leaves)
            self._leaves.append(leaf)
            self._latest_index[consent_id] = index

            tx_hash = LedgerDefaults.TX_HASH_PREFIX + create_data_fingerprint({
                "leaf": to_hex(leaf),
                "index": index,
            })
            receipt = LedgerReceipt(
                transaction_hash=tx_hash,
                consent_id=consent_id,
                status=status,
                leaf_index=index,
            )
            self._receipts[(consent_id, status)] = receipt

        logger.info("Anchored ledger entry", consent_id=consent_id, status=status.value,
                    leaf_index=index, transaction_hash=tx_hash)
        return receipt

    async def anchor(self, event: LedgerEvent) -> LedgerReceipt:
        self._events[event.consent_id] = event
        return await self._append(event.consent_id, event.status, event.model_dump(mode="json"))

    async def update_status(self, consent_id: str, status: ConsentStatus) -> LedgerReceipt:
        if consent_id not in self._latest_index:
            raise LedgerError(f"consent {consent_id} has not been anchored")
        return await self._append(consent_id, status, {
            "consent_id": consent_id,
            "status": status.value,
            "previous_index": self._latest_index[consent_id],
        })

    async def get_proof(self, consent_id: str) -> Optional[MerkleProof]:
        async with self._lock:
            index = self._latest_index.get(consent_id)
            if index is None:
                return None
            leaves = list(self._leaves)

        path = inclusion_proof(leaves, index)
        return MerkleProof(
            consent_id=consent_id,
            leaf_hash=to_hex(leaves[index]),
            leaf_index=index,
            tree_size=len(leaves),
            root=to_hex(merkle_root(leaves)),
            path=[ProofStep(sibling=to_hex(sibling), position=side) for sibling, side in path],
        )
