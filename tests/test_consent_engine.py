"""
Tests for the consent state engine
"""

import asyncio
import base64
from datetime import timedelta

import base58
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from consent_ledger.audit import AuditTrail, InMemoryAuditStorage
from consent_ledger.config import LedgerConfig
from consent_ledger.consent.engine import ConsentEngine
from consent_ledger.consent.models import ConsentStatus, LawfulBasis, VerifyOutcome
from consent_ledger.consent.registry import InMemoryControllerRegistry, InMemoryIdentityRegistry
from consent_ledger.consent.storage import InMemoryConsentStorage
from consent_ledger.crypto.hash import controller_hash, purpose_hash, hash_string, is_digest
from consent_ledger.crypto.signatures import Ed25519SignatureVerifier, create_revocation_message
from consent_ledger.exceptions import (
    ValidationError, ControllerNotFoundError, DuplicateConsentError, NotFoundOrForbiddenError,
    InvalidSignatureError, InvalidStateTransitionError, AdapterFailureError,
)
from consent_ledger.ledger import InMemoryLedger
from consent_ledger.proof import CommitmentProofOracle
from consent_ledger.utils.clock import utc_now


class Signer:
    """Ed25519 key pair standing in for a user's wallet"""

    def __init__(self):
        self.private_key = Ed25519PrivateKey.generate()
        raw = self.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self.public_key = base58.b58encode(raw).decode("ascii")

    def sign_revocation(self, consent_id: str, user_id: str) -> str:
        message = create_revocation_message(consent_id, user_id).encode("utf-8")
        return base64.b64encode(self.private_key.sign(message)).decode("ascii")


class FailingOracle(CommitmentProofOracle):

    async def prove_consent(self, claim):
        raise RuntimeError("prover offline")


class FailingAuditStorage(InMemoryAuditStorage):

    def append(self, entry):
        raise RuntimeError("audit sink unavailable")


class EngineTestCase:
    """Builds an engine over in-memory adapters"""

    def setup_method(self):
        self.storage = InMemoryConsentStorage()
        self.controllers = InMemoryControllerRegistry()
        self.identities = InMemoryIdentityRegistry()
        self.ledger = InMemoryLedger()
        self.audit_storage = InMemoryAuditStorage()
        self.signer = Signer()
        self.keys = {"u1": self.signer.public_key}
        self.config = LedgerConfig(ledger_anchor_timeout_seconds=1.0)
        self.engine = self.build_engine()

        self.controllers.register("acme", "Acme Corp", "acme-controller-key")

    def build_engine(self, **overrides) -> ConsentEngine:
        parts = dict(
            storage=self.storage,
            controllers=self.controllers,
            identities=self.identities,
            proof_oracle=CommitmentProofOracle("test-oracle-key"),
            ledger=self.ledger,
            audit=AuditTrail(self.audit_storage),
            signature_verifier=Ed25519SignatureVerifier(self.keys.get),
            config=self.config,
        )
        parts.update(overrides)
        return ConsentEngine(**parts)

    def actions(self, consent_id=None):
        return [e.action for e in self.audit_storage.list_entries(consent_id=consent_id)]


class TestGrant(EngineTestCase):

    @pytest.mark.asyncio
    async def test_grant_creates_granted_record(self):
        result = await self.engine.grant_consent("u1", "acme", "marketing",
                                                 data_categories=["email", "profile"])

        assert result.status == ConsentStatus.GRANTED
        assert is_digest(result.consent_id)
        assert result.ledger_tx_hash and result.ledger_tx_hash.startswith("0x")

        record = self.storage.get_by_id(result.consent_id)
        assert record.controller_hash == controller_hash("acme")
        assert record.purpose_hash == purpose_hash("marketing")
        assert record.data_categories == ["email", "profile"]
        assert record.lawful_basis == LawfulBasis.CONSENT
        assert record.ledger_tx_hash == result.ledger_tx_hash
        assert not record.ledger_pending
        assert record.proof_attestation["public_inputs"]["subject"] == hash_string("u1")

    @pytest.mark.asyncio
    async def test_grant_records_audit_entry_without_purpose(self):
        result = await self.engine.grant_consent("u1", "acme", "marketing")

        entries = self.audit_storage.list_entries(consent_id=result.consent_id)
        assert [e.action for e in entries] == ["consent_granted"]
        assert entries[0].actor == "u1"
        assert entries[0].details["purpose_hash"] == purpose_hash("marketing")
        assert "marketing" not in str(entries[0].details)

    @pytest.mark.asyncio
    async def test_grant_requires_registered_controller(self):
        with pytest.raises(ControllerNotFoundError):
            await self.engine.grant_consent("u1", "unknown-org", "marketing")
        assert self.storage.consents == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("user_id,controller_id,purpose", [
        ("", "acme", "marketing"),
        ("u1", "", "marketing"),
        ("u1", "acme", "   "),
    ])
    async def test_grant_rejects_blank_fields(self, user_id, controller_id, purpose):
        with pytest.raises(ValidationError):
            await self.engine.grant_consent(user_id, controller_id, purpose)
        assert self.storage.consents == {}

    @pytest.mark.asyncio
    async def test_user_id_is_bounded_by_column_width(self):
        digest_user = hash_string("alice")
        result = await self.engine.grant_consent(digest_user, "acme", "marketing")
        assert result.status == ConsentStatus.GRANTED

        too_long = "u" * 65
        with pytest.raises(ValidationError):
            await self.engine.grant_consent(too_long, "acme", "marketing")
        with pytest.raises(ValidationError):
            await self.engine.verify_consent(too_long, "acme", "marketing")
        with pytest.raises(ValidationError):
            await self.engine.revoke_consent(result.consent_id, too_long, "c2ln")
        with pytest.raises(ValidationError):
            await self.engine.get_active_consents(too_long)
        assert len(self.storage.consents) == 1

    @pytest.mark.asyncio
    async def test_grant_rejects_malformed_data_category(self):
        with pytest.raises(ValidationError):
            await self.engine.grant_consent("u1", "acme", "marketing", data_categories=["<script>"])

    @pytest.mark.asyncio
    async def test_duplicate_grant_is_rejected(self):
        await self.engine.grant_consent("u1", "acme", "marketing")

        with pytest.raises(DuplicateConsentError):
            await self.engine.grant_consent("u1", "acme", "marketing")
        assert len(self.storage.consents) == 1

    @pytest.mark.asyncio
    async def test_other_purpose_is_independent(self):
        await self.engine.grant_consent("u1", "acme", "marketing")
        await self.engine.grant_consent("u1", "acme", "analytics")

        assert len(await self.engine.get_active_consents("u1")) == 2

    @pytest.mark.asyncio
    async def test_concurrent_grants_single_winner(self):
        results = await asyncio.gather(
            *[self.engine.grant_consent("u1", "acme", "marketing") for _ in range(20)],
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert all(isinstance(f, DuplicateConsentError) for f in failures)
        assert len(self.storage.consents) == 1

    @pytest.mark.asyncio
    async def test_concurrent_grants_across_engines(self):
        other = self.build_engine(ledger=InMemoryLedger())

        results = await asyncio.gather(
            self.engine.grant_consent("u1", "acme", "marketing"),
            other.grant_consent("u1", "acme", "marketing"),
            return_exceptions=True,
        )

        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        granted = self.storage.list_by_user("u1", ConsentStatus.GRANTED)
        assert len(granted) == 1

    @pytest.mark.asyncio
    async def test_oracle_failure_aborts_grant(self):
        engine = self.build_engine(proof_oracle=FailingOracle("test-oracle-key"))

        with pytest.raises(AdapterFailureError) as exc_info:
            await engine.grant_consent("u1", "acme", "marketing")
        assert exc_info.value.adapter == "proof_oracle"
        assert self.storage.consents == {}

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_fail_grant(self):
        engine = self.build_engine(audit=AuditTrail(FailingAuditStorage()))

        result = await engine.grant_consent("u1", "acme", "marketing")

        assert self.storage.get_by_id(result.consent_id).status == ConsentStatus.GRANTED

    @pytest.mark.asyncio
    async def test_default_expiry_from_config(self):
        engine = self.build_engine(config=LedgerConfig(default_consent_expiry_days=30))

        result = await engine.grant_consent("u1", "acme", "marketing")

        assert result.expires_at == result.granted_at + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_regrant_after_expiry_replaces_stale_grant(self):
        first = await self.engine.grant_consent("u1", "acme", "marketing")
        self.storage.consents[first.consent_id].expires_at = utc_now() - timedelta(seconds=1)
        await asyncio.sleep(0.002)

        second = await self.engine.grant_consent("u1", "acme", "marketing")
        await self.engine.drain()

        assert second.consent_id != first.consent_id
        assert self.storage.get_by_id(first.consent_id).status == ConsentStatus.EXPIRED
        assert "consent_expired" in self.actions(first.consent_id)


class TestVerify(EngineTestCase):

    @pytest.mark.asyncio
    async def test_verify_round_trip(self):
        grant = await self.engine.grant_consent("u1", "acme", "marketing")

        result = await self.engine.verify_consent("u1", "acme", "marketing")

        assert result.is_valid
        assert result.consent_id == grant.consent_id
        assert result.status == ConsentStatus.GRANTED
        assert result.error is None
        assert result.attestation["claim_type"] == "consent_verified"
        assert result.ledger_merkle_proof["consent_id"] == grant.consent_id

    @pytest.mark.asyncio
    async def test_verify_result_hides_purpose_and_identity(self):
        await self.engine.grant_consent("u1", "acme", "sensitive-health-research")

        result = await self.engine.verify_consent("u1", "acme", "sensitive-health-research")

        serialized = result.model_dump_json()
        assert "sensitive-health-research" not in serialized
        assert '"u1"' not in serialized

    @pytest.mark.asyncio
    async def test_verify_unknown_consent(self):
        result = await self.engine.verify_consent("u1", "acme", "marketing")

        assert not result.is_valid
        assert result.error == VerifyOutcome.NOT_FOUND
        assert result.consent_id is None

    @pytest.mark.asyncio
    async def test_already_expired_grant_verifies_expired(self):
        grant = await self.engine.grant_consent(
            "u1", "acme", "marketing", expires_at=utc_now() - timedelta(milliseconds=1)
        )

        result = await self.engine.verify_consent("u1", "acme", "marketing")
        await self.engine.drain()

        assert not result.is_valid
        assert result.error == VerifyOutcome.EXPIRED
        assert result.status == ConsentStatus.EXPIRED
        assert self.storage.get_by_id(grant.consent_id).status == ConsentStatus.EXPIRED
        assert self.actions(grant.consent_id)[0] == "consent_expired"

    @pytest.mark.asyncio
    async def test_verify_writes_audit_entry(self):
        grant = await self.engine.grant_consent("u1", "acme", "marketing")

        await self.engine.verify_consent("u1", "acme", "marketing")

        assert "consent_verified" in self.actions(grant.consent_id)

    @pytest.mark.asyncio
    async def test_verify_survives_missing_merkle_proof(self):
        class ProoflessLedger(InMemoryLedger):
            async def get_proof(self, consent_id):
                raise RuntimeError("proof service down")

        engine = self.build_engine(ledger=ProoflessLedger())
        await engine.grant_consent("u1", "acme", "marketing")

        result = await engine.verify_consent("u1", "acme", "marketing")

        assert result.is_valid
        assert result.ledger_merkle_proof is None


class TestRevoke(EngineTestCase):

    @pytest.mark.asyncio
    async def test_acme_marketing_scenario(self):
        grant = await self.engine.grant_consent("u1", "acme", "marketing", lawful_basis=LawfulBasis.CONSENT)
        assert grant.status == ConsentStatus.GRANTED
        assert len(grant.consent_id) == 64

        assert (await self.engine.verify_consent("u1", "acme", "marketing")).is_valid

        signature = self.signer.sign_revocation(grant.consent_id, "u1")
        revoked = await self.engine.revoke_consent(grant.consent_id, "u1", signature)
        assert revoked.status == ConsentStatus.REVOKED
        assert revoked.ledger_tx_hash

        result = await self.engine.verify_consent("u1", "acme", "marketing")
        assert not result.is_valid
        assert result.status == ConsentStatus.REVOKED
        assert result.error == VerifyOutcome.INVALID_STATUS

        record = self.storage.get_by_id(grant.consent_id)
        assert record.revoked_at == revoked.revoked_at
        assert record.anchored_status == ConsentStatus.REVOKED
        assert "consent_revoked" in self.actions(grant.consent_id)

    @pytest.mark.asyncio
    async def test_revoke_missing_consent(self):
        with pytest.raises(NotFoundOrForbiddenError):
            await self.engine.revoke_consent("0" * 64, "u1", "sig")

    @pytest.mark.asyncio
    async def test_revoke_by_other_user_looks_like_missing(self):
        grant = await self.engine.grant_consent("u1", "acme", "marketing")

        with pytest.raises(NotFoundOrForbiddenError):
            await self.engine.revoke_consent(grant.consent_id, "u2", "sig")
        assert self.storage.get_by_id(grant.consent_id).status == ConsentStatus.GRANTED

    @pytest.mark.asyncio
    async def test_revoke_with_bad_signature(self):
        grant = await self.engine.grant_consent("u1", "acme", "marketing")
        forged = Signer().sign_revocation(grant.consent_id, "u1")

        with pytest.raises(InvalidSignatureError):
            await self.engine.revoke_consent(grant.consent_id, "u1", forged)
        assert self.storage.get_by_id(grant.consent_id).status == ConsentStatus.GRANTED

    @pytest.mark.asyncio
    async def test_signature_is_bound_to_consent(self):
        first = await self.engine.grant_consent("u1", "acme", "marketing")
        second = await self.engine.grant_consent("u1", "acme", "analytics")
        signature = self.signer.sign_revocation(first.consent_id, "u1")

        with pytest.raises(InvalidSignatureError):
            await self.engine.revoke_consent(second.consent_id, "u1", signature)

    @pytest.mark.asyncio
    async def test_revoke_twice_fails(self):
        grant = await self.engine.grant_consent("u1", "acme", "marketing")
        signature = self.signer.sign_revocation(grant.consent_id, "u1")
        first = await self.engine.revoke_consent(grant.consent_id, "u1", signature)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await self.engine.revoke_consent(grant.consent_id, "u1", signature)

        assert exc_info.value.current_status == "revoked"
        record = self.storage.get_by_id(grant.consent_id)
        assert record.status == ConsentStatus.REVOKED
        assert record.revoked_at == first.revoked_at

    @pytest.mark.asyncio
    async def test_revoke_expired_consent_fails(self):
        grant = await self.engine.grant_consent(
            "u1", "acme", "marketing", expires_at=utc_now() - timedelta(seconds=1)
        )
        signature = self.signer.sign_revocation(grant.consent_id, "u1")

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await self.engine.revoke_consent(grant.consent_id, "u1", signature)
        await self.engine.drain()

        assert exc_info.value.current_status == "expired"
        assert self.storage.get_by_id(grant.consent_id).status == ConsentStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_concurrent_revokes_single_winner(self):
        grant = await self.engine.grant_consent("u1", "acme", "marketing")
        signature = self.signer.sign_revocation(grant.consent_id, "u1")

        results = await asyncio.gather(
            *[self.engine.revoke_consent(grant.consent_id, "u1", signature) for _ in range(10)],
            return_exceptions=True,
        )

        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert all(isinstance(r, InvalidStateTransitionError)
                   for r in results if isinstance(r, Exception))

    @pytest.mark.asyncio
    async def test_revoked_consent_past_expiry_stays_revoked(self):
        grant = await self.engine.grant_consent(
            "u1", "acme", "marketing", expires_at=utc_now() + timedelta(hours=1)
        )
        signature = self.signer.sign_revocation(grant.consent_id, "u1")
        await self.engine.revoke_consent(grant.consent_id, "u1", signature)
        self.storage.consents[grant.consent_id].expires_at = utc_now() - timedelta(seconds=1)

        result = await self.engine.verify_consent("u1", "acme", "marketing")

        assert result.status == ConsentStatus.REVOKED
        assert result.error == VerifyOutcome.INVALID_STATUS


class TestReads(EngineTestCase):

    @pytest.mark.asyncio
    async def test_active_consents_newest_first(self):
        first = await self.engine.grant_consent("u1", "acme", "marketing")
        await asyncio.sleep(0.002)
        second = await self.engine.grant_consent("u1", "acme", "analytics")

        active = await self.engine.get_active_consents("u1")

        assert [r.consent_id for r in active] == [second.consent_id, first.consent_id]

    @pytest.mark.asyncio
    async def test_active_consents_apply_lazy_expiry(self):
        grant = await self.engine.grant_consent(
            "u1", "acme", "marketing", expires_at=utc_now() + timedelta(hours=1)
        )
        self.storage.consents[grant.consent_id].expires_at = utc_now() - timedelta(seconds=1)

        active = await self.engine.get_active_consents("u1")
        await self.engine.drain()

        assert active == []
        record = self.storage.get_by_id(grant.consent_id)
        assert record.status == ConsentStatus.EXPIRED
        assert record.anchored_status == ConsentStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_active_consents_for_unknown_user(self):
        assert await self.engine.get_active_consents("nobody") == []

    @pytest.mark.asyncio
    async def test_export_includes_all_statuses(self):
        grant = await self.engine.grant_consent("u1", "acme", "marketing")
        await self.engine.grant_consent("u1", "acme", "analytics")
        signature = self.signer.sign_revocation(grant.consent_id, "u1")
        await self.engine.revoke_consent(grant.consent_id, "u1", signature)

        export = await self.engine.export_consent_history("u1")

        assert export["user_id"] == "u1"
        statuses = sorted(c["status"] for c in export["consents"])
        assert statuses == ["granted", "revoked"]
        assert all("proof_attestation" not in c for c in export["consents"])

    @pytest.mark.asyncio
    async def test_get_consent(self):
        grant = await self.engine.grant_consent("u1", "acme", "marketing")

        assert (await self.engine.get_consent(grant.consent_id)).status == ConsentStatus.GRANTED
        assert await self.engine.get_consent("f" * 64) is None


class TestHousekeeping(EngineTestCase):

    @pytest.mark.asyncio
    async def test_sweep_expired(self):
        await self.engine.grant_consent("u1", "acme", "marketing",
                                        expires_at=utc_now() + timedelta(days=1))
        await self.engine.grant_consent("u1", "acme", "analytics")

        flipped = await self.engine.sweep_expired(now=utc_now() + timedelta(days=2))
        await self.engine.drain()

        assert flipped == 1
        statuses = sorted(r.status.value for r in self.storage.list_by_user("u1"))
        assert statuses == ["expired", "granted"]

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self):
        await self.engine.grant_consent("u1", "acme", "marketing",
                                        expires_at=utc_now() - timedelta(seconds=1))

        assert await self.engine.sweep_expired() == 1
        assert await self.engine.sweep_expired() == 0
        await self.engine.drain()

    @pytest.mark.asyncio
    async def test_compliance_metrics(self):
        grant = await self.engine.grant_consent("u1", "acme", "marketing")
        await self.engine.grant_consent("u2", "acme", "marketing")
        signature = self.signer.sign_revocation(grant.consent_id, "u1")
        await self.engine.revoke_consent(grant.consent_id, "u1", signature)

        metrics = await self.engine.get_compliance_metrics(controller_hash("acme"))

        assert metrics.total_consents == 2
        assert metrics.active_consents == 1
        assert metrics.revoked_consents == 1
        assert metrics.pending_anchors == 0
        assert metrics.compliance_score == 100.0

    @pytest.mark.asyncio
    async def test_compliance_metrics_for_unknown_controller(self):
        metrics = await self.engine.get_compliance_metrics(controller_hash("nobody"))

        assert metrics.total_consents == 0
        assert metrics.compliance_score == 100.0
