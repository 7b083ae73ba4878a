import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from .models import LawfulBasis
from .engine import ConsentEngine, get_consent_engine
from ..constants import AuditActions
from ..exceptions import ControllerNotFoundError


logger = structlog.get_logger(__name__)


class UserRegisterRequest(BaseModel):
    email: str
    public_key: str = Field(..., description="Base58 Ed25519 public key")


class ControllerRegisterRequest(BaseModel):
    organization_id: str
    organization_name: str
    public_key: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConsentGrantPayload(BaseModel):
    user_id: str
    controller_id: str
    purpose: str
    data_categories: List[str] = Field(default_factory=list)
    lawful_basis: LawfulBasis = LawfulBasis.CONSENT
    expires_at: Optional[datetime] = None


class ConsentRevokePayload(BaseModel):
    user_id: str
    signature: str = Field(..., description="Base64 Ed25519 signature of the revocation message")


class ConsentManager:
    """Request-level facade over the consent engine and its registries"""

    def __init__(self, engine: Optional[ConsentEngine] = None):
        self.engine = engine or get_consent_engine()

    async def register_user(self, payload: UserRegisterRequest) -> Dict[str, Any]:
        identity = await asyncio.to_thread(
            self.engine.identities.register_user, payload.email, payload.public_key
        )
        await self.engine.audit.record(
            AuditActions.USER_REGISTERED,
            actor=identity.user_id,
            details={"did": identity.did},
        )
        return identity.model_dump(mode="json")

    async def register_controller(self, payload: ControllerRegisterRequest) -> Dict[str, Any]:
        record = await asyncio.to_thread(
            self.engine.controllers.register,
            payload.organization_id,
            payload.organization_name,
            payload.public_key,
            payload.metadata,
        )
        await self.engine.audit.record(
            AuditActions.CONTROLLER_REGISTERED,
            actor=record.controller_ref,
            details={"controller_hash": record.controller_hash},
        )
        return record.model_dump(mode="json")

    async def get_controller(self, organization_id: str) -> Dict[str, Any]:
        record = await asyncio.to_thread(self.engine.controllers.resolve, organization_id)
        if record is None:
            raise ControllerNotFoundError(organization_id)
        return record.model_dump(mode="json")

    async def update_controller_metadata(self, organization_id: str,
                                         metadata: Dict[str, Any]) -> Dict[str, Any]:
        record = await asyncio.to_thread(
            self.engine.controllers.update_metadata, organization_id, metadata
        )
        if record is None:
            raise ControllerNotFoundError(organization_id)
        await self.engine.audit.record(
            AuditActions.CONTROLLER_UPDATED,
            actor=record.controller_ref,
            details={"controller_hash": record.controller_hash},
        )
        return record.model_dump(mode="json")

    async def grant(self, payload: ConsentGrantPayload) -> Dict[str, Any]:
        result = await self.engine.grant_consent(
            user_id=payload.user_id,
            controller_id=payload.controller_id,
            purpose=payload.purpose,
            data_categories=payload.data_categories,
            lawful_basis=payload.lawful_basis,
            expires_at=payload.expires_at,
        )
        return result.model_dump(mode="json")

    async def verify(self, user_id: str, controller_id: str, purpose: str) -> Dict[str, Any]:
        result = await self.engine.verify_consent(user_id, controller_id, purpose)
        return result.model_dump(mode="json")

    async def revoke(self, consent_id: str, payload: ConsentRevokePayload) -> Dict[str, Any]:
        result = await self.engine.revoke_consent(consent_id, payload.user_id, payload.signature)
        return result.model_dump(mode="json")

    async def get_active_consents(self, user_id: str) -> Dict[str, Any]:
        records = await self.engine.get_active_consents(user_id)
        return {
            "user_id": user_id,
            "consents": [record.to_public_dict() for record in records],
        }

    async def export_history(self, user_id: str) -> Dict[str, Any]:
        return await self.engine.export_consent_history(user_id)

    async def compliance(self, controller_hash: str) -> Dict[str, Any]:
        metrics = await self.engine.get_compliance_metrics(controller_hash)
        return metrics.model_dump(mode="json")

    async def audit_history(self, consent_id: str, limit: int = 100) -> Dict[str, Any]:
        entries = await asyncio.to_thread(
            self.engine.audit.list_entries, consent_id, None, limit
        )
        return {
            "consent_id": consent_id,
            "entries": [entry.model_dump(mode="json") for entry in entries],
            "integrity_verified": self.engine.audit.verify_integrity(entries),
        }
