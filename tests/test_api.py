"""Tests for the HTTP surface of the consent ledger service."""

from __future__ import annotations

import base64
from typing import Any, Dict

import base58
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from fastapi.testclient import TestClient

from consent_ledger.audit import AuditTrail, InMemoryAuditStorage
from consent_ledger.config import LedgerConfig
from consent_ledger.consent.engine import ConsentEngine
from consent_ledger.consent.manager import ConsentManager
from consent_ledger.consent.registry import InMemoryControllerRegistry, InMemoryIdentityRegistry
from consent_ledger.consent.storage import InMemoryConsentStorage
from consent_ledger.crypto.hash import controller_hash
from consent_ledger.crypto.signatures import create_revocation_message
from consent_ledger.ledger import InMemoryLedger
from consent_ledger.main import app
from consent_ledger.proof import CommitmentProofOracle
import consent_ledger.main as main_mod


client = TestClient(app)


class FailingOracle(CommitmentProofOracle):

    async def prove_consent(self, claim):
        raise RuntimeError("prover offline")


def build_manager(**overrides) -> ConsentManager:
    parts: Dict[str, Any] = dict(
        storage=InMemoryConsentStorage(),
        controllers=InMemoryControllerRegistry(),
        identities=InMemoryIdentityRegistry(),
        proof_oracle=CommitmentProofOracle("test-oracle-key"),
        ledger=InMemoryLedger(),
        audit=AuditTrail(InMemoryAuditStorage()),
        config=LedgerConfig(ledger_anchor_timeout_seconds=1.0),
    )
    parts.update(overrides)
    return ConsentManager(engine=ConsentEngine(**parts))


class ApiTestCase:

    def setup_method(self) -> None:
        self.original = main_mod.consent_manager
        main_mod.consent_manager = build_manager()

        self.private_key = Ed25519PrivateKey.generate()
        raw = self.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self.public_key = base58.b58encode(raw).decode("ascii")

    def teardown_method(self) -> None:
        main_mod.consent_manager = self.original

    def register_user(self) -> str:
        response = client.post("/users/register", json={
            "email": "alice@example.com",
            "public_key": self.public_key,
        })
        assert response.status_code == 201
        return response.json()["user_id"]

    def register_controller(self, organization_id: str = "acme") -> Dict[str, Any]:
        response = client.post("/controllers/register", json={
            "organization_id": organization_id,
            "organization_name": "Acme Corp",
            "public_key": "acme-controller-key",
        })
        assert response.status_code == 201
        return response.json()

    def grant(self, user_id: str, purpose: str = "marketing"):
        return client.post("/consent/grant", json={
            "user_id": user_id,
            "controller_id": "acme",
            "purpose": purpose,
            "data_categories": ["email"],
            "lawful_basis": "consent",
        })

    def sign(self, consent_id: str, user_id: str) -> str:
        message = create_revocation_message(consent_id, user_id).encode("utf-8")
        return base64.b64encode(self.private_key.sign(message)).decode("ascii")


class TestServiceEndpoints(ApiTestCase):

    def test_health(self) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["components"]["consent_manager"] is True

    def test_returns_503_when_manager_missing(self) -> None:
        main_mod.consent_manager = None

        response = client.get("/consent/user/u1")

        assert response.status_code == 503
        assert "Consent manager not available" in response.json().get("detail", "")


class TestRegistrationEndpoints(ApiTestCase):

    def test_register_user_hides_email(self) -> None:
        response = client.post("/users/register", json={
            "email": "alice@example.com",
            "public_key": self.public_key,
        })

        assert response.status_code == 201
        data = response.json()
        assert data["did"].startswith("did:consentire:")
        assert "alice@example.com" not in response.text

    def test_register_controller_and_lookup(self) -> None:
        created = self.register_controller()
        assert created["controller_hash"] == controller_hash("acme")

        response = client.get("/controllers/acme")
        assert response.status_code == 200
        assert response.json()["controller_ref"] == created["controller_ref"]

    def test_duplicate_controller_conflicts(self) -> None:
        self.register_controller()

        response = client.post("/controllers/register", json={
            "organization_id": "acme",
            "organization_name": "Acme Again",
            "public_key": "pk",
        })

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "DUPLICATE_CONTROLLER"

    def test_unknown_controller_is_404(self) -> None:
        assert client.get("/controllers/nobody").status_code == 404

    def test_update_controller_metadata(self) -> None:
        self.register_controller()

        response = client.put("/controllers/acme/metadata", json={"dpo": "privacy@acme.test"})

        assert response.status_code == 200
        assert response.json()["metadata"] == {"dpo": "privacy@acme.test"}


class TestConsentEndpoints(ApiTestCase):

    def test_grant_verify_revoke_flow(self) -> None:
        user_id = self.register_user()
        self.register_controller()

        granted = self.grant(user_id)
        assert granted.status_code == 201
        consent_id = granted.json()["consent_id"]
        assert granted.json()["status"] == "granted"

        verified = client.get(f"/consent/verify/{user_id}/acme/marketing")
        assert verified.status_code == 200
        assert verified.json()["is_valid"] is True
        assert "marketing" not in verified.text

        revoked = client.post(f"/consent/revoke/{consent_id}", json={
            "user_id": user_id,
            "signature": self.sign(consent_id, user_id),
        })
        assert revoked.status_code == 200
        assert revoked.json()["status"] == "revoked"

        verified = client.get(f"/consent/verify/{user_id}/acme/marketing")
        assert verified.status_code == 200
        assert verified.json()["is_valid"] is False
        assert verified.json()["status"] == "revoked"

        again = client.post(f"/consent/revoke/{consent_id}", json={
            "user_id": user_id,
            "signature": self.sign(consent_id, user_id),
        })
        assert again.status_code == 409

    def test_grant_unknown_controller_is_404(self) -> None:
        response = self.grant("u1")

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "CONTROLLER_NOT_FOUND"

    def test_duplicate_grant_conflicts(self) -> None:
        self.register_controller()
        assert self.grant("u1").status_code == 201

        response = self.grant("u1")

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "DUPLICATE_CONSENT"

    def test_blank_purpose_is_400(self) -> None:
        self.register_controller()

        assert self.grant("u1", purpose=" ").status_code == 400

    def test_unknown_lawful_basis_is_400(self) -> None:
        self.register_controller()

        response = client.post("/consent/grant", json={
            "user_id": "u1",
            "controller_id": "acme",
            "purpose": "marketing",
            "lawful_basis": "because",
        })

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "VALIDATION_ERROR"

    def test_verify_unknown_consent_is_200(self) -> None:
        response = client.get("/consent/verify/u1/acme/marketing")

        assert response.status_code == 200
        assert response.json()["is_valid"] is False
        assert response.json()["error"] == "not_found"

    def test_revoke_with_bad_signature_is_401(self) -> None:
        user_id = self.register_user()
        self.register_controller()
        consent_id = self.grant(user_id).json()["consent_id"]

        response = client.post(f"/consent/revoke/{consent_id}", json={
            "user_id": user_id,
            "signature": base64.b64encode(b"\x00" * 64).decode("ascii"),
        })

        assert response.status_code == 401

    def test_revoke_unknown_consent_is_404(self) -> None:
        response = client.post(f"/consent/revoke/{'0' * 64}", json={
            "user_id": "u1",
            "signature": "c2ln",
        })

        assert response.status_code == 404

    def test_oracle_outage_is_503(self) -> None:
        main_mod.consent_manager = build_manager(proof_oracle=FailingOracle("test-oracle-key"))
        self.register_controller()

        response = self.grant("u1")

        assert response.status_code == 503
        assert response.json()["detail"]["details"]["adapter"] == "proof_oracle"

    def test_user_consents_and_export(self) -> None:
        self.register_controller()
        self.grant("u1", purpose="marketing")
        self.grant("u1", purpose="analytics")

        active = client.get("/consent/user/u1")
        assert active.status_code == 200
        assert len(active.json()["consents"]) == 2

        export = client.get("/consent/user/u1/export")
        assert export.status_code == 200
        assert export.json()["user_id"] == "u1"
        assert len(export.json()["consents"]) == 2


class TestComplianceEndpoints(ApiTestCase):

    def test_compliance_metrics(self) -> None:
        self.register_controller()
        self.grant("u1")

        response = client.get(f"/compliance/{controller_hash('acme')}")

        assert response.status_code == 200
        data = response.json()
        assert data["total_consents"] == 1
        assert data["active_consents"] == 1
        assert data["compliance_score"] == 100.0

    def test_audit_history(self) -> None:
        self.register_controller()
        consent_id = self.grant("u1").json()["consent_id"]

        response = client.get(f"/audit/{consent_id}")

        assert response.status_code == 200
        data = response.json()
        assert [e["action"] for e in data["entries"]] == ["consent_granted"]
        assert data["integrity_verified"] is True
