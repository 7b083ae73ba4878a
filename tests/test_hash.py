"""
Tests for hash identity derivation
"""

import hashlib

from consent_ledger.crypto.hash import (
    secure_hash, hash_string, hmac_hash, create_data_fingerprint, controller_hash,
    purpose_hash, derive_user_id, derive_consent_id, derive_did, derive_wallet_address,
    is_digest,
)


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class TestFixedVectors:
    """Known SHA-256 outputs"""

    def test_empty_string(self):
        assert hash_string("") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

    def test_abc(self):
        assert controller_hash("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        assert purpose_hash("abc") == controller_hash("abc")
        assert secure_hash(b"abc") == controller_hash("abc")

    def test_unicode_is_utf8_encoded(self):
        assert hash_string("données") == hashlib.sha256("données".encode("utf-8")).hexdigest()

    def test_controller_hash_vector(self):
        assert controller_hash("acme") == "822b33ad87c148a0a20a5ba7cd5ebcaa68d36a18e7aad165554903f52ca82757"

    def test_purpose_hash_vector(self):
        assert purpose_hash("marketing") == "e2a530e251d3675034d23f5c5f87f54ec3182a088ba7d13350824794f8e6b76e"

    def test_consent_id_vector(self):
        assert derive_consent_id("u1", "acme", "marketing", 1700000000000) == (
            "4448437e0c5527a13e069d894a14e4f148462a1b7544b60e14cd5c006b712c7d"
        )


class TestDerivation:
    """Identity derivation formulas"""

    def test_user_id(self):
        assert derive_user_id("alice@example.com", "PK") == _sha256("alice@example.com:PK")

    def test_user_id_is_deterministic_and_key_bound(self):
        assert derive_user_id("a@b.c", "k1") == derive_user_id("a@b.c", "k1")
        assert derive_user_id("a@b.c", "k1") != derive_user_id("a@b.c", "k2")

    def test_consent_id(self):
        consent_id = derive_consent_id("u1", "acme", "marketing", 1700000000000)
        assert consent_id == _sha256("u1:acme:marketing:1700000000000")
        assert len(consent_id) == 64

    def test_consent_id_truncates_fractional_timestamps(self):
        assert derive_consent_id("u1", "acme", "marketing", 1700000000000.9) == \
            derive_consent_id("u1", "acme", "marketing", 1700000000000)

    def test_did(self):
        did = derive_did("PK")
        assert did == "did:consentire:" + _sha256("PK")[:16]

    def test_did_custom_scheme(self):
        assert derive_did("PK", scheme="example").startswith("did:example:")

    def test_wallet_address(self):
        address = derive_wallet_address("PK")
        assert address == _sha256("PK")[:40]
        assert len(address) == 40

    def test_is_digest(self):
        assert is_digest(controller_hash("acme"))
        assert not is_digest("acme")
        assert not is_digest(controller_hash("acme").upper())
        assert not is_digest(None)


class TestFingerprints:

    def test_fingerprint_ignores_key_order(self):
        assert create_data_fingerprint({"a": 1, "b": 2}) == create_data_fingerprint({"b": 2, "a": 1})

    def test_hmac_depends_on_key(self):
        assert hmac_hash(b"k1", b"data") != hmac_hash(b"k2", b"data")
        assert len(hmac_hash(b"k1", b"data")) == 64
