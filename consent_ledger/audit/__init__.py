"""
Audit Subpackage for the Consent Ledger

Append-only audit trail of consent lifecycle transitions.
"""

from .models import AuditLogEntry
from .storage import AuditStore, SQLAuditStorage, InMemoryAuditStorage
from .trail import AuditTrail

__all__ = [
    "AuditLogEntry",
    "AuditStore",
    "SQLAuditStorage",
    "InMemoryAuditStorage",
    "AuditTrail",
]
