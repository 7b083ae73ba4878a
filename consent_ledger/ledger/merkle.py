"""
Merkle tree utilities for the in-memory ledger.

RFC 6962-style hashing:
    leaf = H(0x00 || data)
    node = H(0x01 || left || right)
An odd node at the end of a level is promoted unchanged. Audit paths record
which side each sibling sits on, so verification does not need the tree
size.
"""

from __future__ import annotations

import binascii
from hashlib import sha256
from typing import List, Sequence, Tuple

LEAF_PREFIX: bytes = b"\x00"
NODE_PREFIX: bytes = b"\x01"

LEFT = "left"
RIGHT = "right"

AuditPath = List[Tuple[bytes, str]]


def leaf_hash(data: bytes) -> bytes:
    """RFC 6962-like leaf hash: H(0x00 || data)."""
    return sha256(LEAF_PREFIX + data).digest()


def node_hash(left: bytes, right: bytes) -> bytes:
    """RFC 6962-like internal node hash: H(0x01 || left || right)."""
    return sha256(NODE_PREFIX + left + right).digest()


def empty_root() -> bytes:
    """Deterministic root for empty tree."""
    return sha256(b"").digest()


def to_hex(b: bytes) -> str:
    return binascii.hexlify(b).decode("ascii")


def from_hex(s: str) -> bytes:
    try:
        return binascii.unhexlify(s.strip().lower())
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"bad hex: {e}")


def _next_level(layer: Sequence[bytes]) -> List[bytes]:
    nxt: List[bytes] = []
    for i in range(0, len(layer), 2):
        if i + 1 < len(layer):
            nxt.append(node_hash(layer[i], layer[i + 1]))
        else:
            nxt.append(layer[i])
    return nxt


def merkle_root(leaves: Sequence[bytes]) -> bytes:
    """Compute merkle root for a list of leaf *hashes* (not raw data)."""
    if not leaves:
        return empty_root()
    layer = list(leaves)
    while len(layer) > 1:
        layer = _next_level(layer)
    return layer[0]


def inclusion_proof(leaves: Sequence[bytes], index: int) -> AuditPath:
    """
    Build the audit path for the leaf at `index`.
    Returns (sibling hash, sibling side) pairs bottom-up.
    """
    if not (0 <= index < len(leaves)):
        raise ValueError("index out of range")

    path: AuditPath = []
    layer = list(leaves)
    idx = index
    while len(layer) > 1:
        if idx % 2 == 0:
            if idx + 1 < len(layer):
                path.append((layer[idx + 1], RIGHT))
            # else: promoted, no sibling at this level
        else:
            path.append((layer[idx - 1], LEFT))
        layer = _next_level(layer)
        idx //= 2
    return path


def root_from_inclusion(leaf_hash_value: bytes, audit_path: Sequence[Tuple[bytes, str]]) -> bytes:
    """Reconstruct root from a leaf hash and its audit path."""
    h = leaf_hash_value
    for sibling, side in audit_path:
        if side == LEFT:
            h = node_hash(sibling, h)
        elif side == RIGHT:
            h = node_hash(h, sibling)
        else:
            raise ValueError(f"bad sibling side: {side}")
    return h


def verify_inclusion(leaf_hash_value: bytes, audit_path: Sequence[Tuple[bytes, str]],
                     expected_root: bytes) -> bool:
    """Verify an inclusion proof against a published root."""
    try:
        return root_from_inclusion(leaf_hash_value, audit_path) == expected_root
    except ValueError:
        return False
