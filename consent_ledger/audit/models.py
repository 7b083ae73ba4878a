"""
Audit log entry model
"""

from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from ..crypto.hash import create_data_fingerprint, constant_time_equals
from ..utils.clock import utc_now
from ..utils.ids import generate_audit_id


class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    id: str = Field(default_factory=generate_audit_id)
    consent_id: Optional[str] = None
    actor: str
    action: str
    details: Dict[str, Any] = Field(default_factory=dict)
    ledger_tx_hash: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    entry_hash: str = ""

    def content(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "consent_id": self.consent_id,
            "actor": self.actor,
            "action": self.action,
            "details": self.details,
            "ledger_tx_hash": self.ledger_tx_hash,
            "created_at": self.created_at.isoformat(),
        }

    def compute_hash(self) -> str:
        """Fingerprint of the entry content for tamper evidence"""
        return create_data_fingerprint(self.content())

    def seal(self) -> "AuditLogEntry":
        self.entry_hash = self.compute_hash()
        return self

    def verify_integrity(self) -> bool:
        return bool(self.entry_hash) and constant_time_equals(self.entry_hash, self.compute_hash())
