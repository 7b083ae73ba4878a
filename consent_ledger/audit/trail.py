"""
Audit trail recorder for the Consent Ledger

Appends one entry per lifecycle transition. Recording is best effort: the
transition it describes has already committed, so a failing sink is logged
and never propagated to the caller.
"""

import asyncio
from typing import Any, Dict, List, Optional
import structlog

from .models import AuditLogEntry
from .storage import AuditStore, InMemoryAuditStorage
from ..utils.validators import sanitize_audit_message

logger = structlog.get_logger(__name__)


class AuditTrail:
    """Append-only audit recorder over an AuditStore"""

    def __init__(self, storage: Optional[AuditStore] = None):
        self.storage = storage or InMemoryAuditStorage()

    async def record(self, action: str, actor: str, consent_id: Optional[str] = None,
                     details: Optional[Dict[str, Any]] = None,
                     ledger_tx_hash: Optional[str] = None) -> Optional[AuditLogEntry]:
        """Append an entry; returns None if the sink failed"""
        entry = AuditLogEntry(
            consent_id=consent_id,
            actor=sanitize_audit_message(actor, max_length=128),
            action=action,
            details=details or {},
            ledger_tx_hash=ledger_tx_hash,
        ).seal()

        try:
            await asyncio.to_thread(self.storage.append, entry)
        except Exception as e:
            logger.error("Failed to create audit log", action=action,
                         consent_id=consent_id, error=str(e))
            return None

        logger.info("Audit entry recorded", action=action, consent_id=consent_id,
                    entry_id=entry.id)
        return entry

    def list_entries(self, consent_id: Optional[str] = None, actor: Optional[str] = None,
                     limit: int = 100) -> List[AuditLogEntry]:
        """Entries newest first, for compliance reporting"""
        return self.storage.list_entries(consent_id=consent_id, actor=actor, limit=limit)

    def verify_integrity(self, entries: Optional[List[AuditLogEntry]] = None) -> bool:
        """Check every entry still matches its fingerprint"""
        if entries is None:
            entries = self.list_entries(limit=10000)

        for entry in entries:
            if not entry.verify_integrity():
                logger.error("Audit integrity violation", entry_id=entry.id)
                return False
        return True
