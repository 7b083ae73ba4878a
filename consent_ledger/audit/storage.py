"""
Audit log storage for the Consent Ledger
Append-only sinks; entries are never updated or deleted
"""

from abc import ABC, abstractmethod
from typing import List, Optional
import json
import threading
import structlog
from sqlalchemy import Column, String, DateTime, Text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .models import AuditLogEntry
from ..db import Base, create_db_engine, to_db_time
from ..utils.clock import ensure_utc

logger = structlog.get_logger(__name__)


class AuditStore(ABC):
    """Append-only audit sink"""

    @abstractmethod
    def append(self, entry: AuditLogEntry) -> None:
        """Persist an entry; raises on failure"""

    @abstractmethod
    def list_entries(self, consent_id: Optional[str] = None, actor: Optional[str] = None,
                     limit: int = 100) -> List[AuditLogEntry]:
        """Entries newest first, for reporting"""


class AuditLogDB(Base):
    """SQLAlchemy model for audit log entries"""
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True)
    consent_id = Column(String(64), index=True)
    actor = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False)
    details = Column(Text)  # JSON string
    ledger_tx_hash = Column(String)
    entry_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime, nullable=False)


class SQLAuditStorage(AuditStore):
    """Audit storage backed by SQLAlchemy"""

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        self.engine = engine or create_db_engine(database_url)
        self.SessionLocal = sessionmaker(bind=self.engine)
        Base.metadata.create_all(bind=self.engine)

    def append(self, entry: AuditLogEntry) -> None:
        with self.SessionLocal() as session:
            session.add(AuditLogDB(
                id=entry.id,
                consent_id=entry.consent_id,
                actor=entry.actor,
                action=entry.action,
                details=json.dumps(entry.details, default=str) if entry.details else None,
                ledger_tx_hash=entry.ledger_tx_hash,
                entry_hash=entry.entry_hash,
                created_at=to_db_time(entry.created_at),
            ))
            session.commit()

    def list_entries(self, consent_id: Optional[str] = None, actor: Optional[str] = None,
                     limit: int = 100) -> List[AuditLogEntry]:
        with self.SessionLocal() as session:
            query = session.query(AuditLogDB)
            if consent_id:
                query = query.filter_by(consent_id=consent_id)
            if actor:
                query = query.filter_by(actor=actor)
            rows = query.order_by(AuditLogDB.created_at.desc()).limit(limit).all()
            return [
                AuditLogEntry(
                    id=row.id,
                    consent_id=row.consent_id,
                    actor=row.actor,
                    action=row.action,
                    details=json.loads(row.details) if row.details else {},
                    ledger_tx_hash=row.ledger_tx_hash,
                    entry_hash=row.entry_hash,
                    created_at=ensure_utc(row.created_at),
                )
                for row in rows
            ]


class InMemoryAuditStorage(AuditStore):
    """In-memory audit storage for testing"""

    def __init__(self):
        self._lock = threading.Lock()
        self.entries: List[AuditLogEntry] = []

    def append(self, entry: AuditLogEntry) -> None:
        with self._lock:
            self.entries.append(entry)

    def list_entries(self, consent_id: Optional[str] = None, actor: Optional[str] = None,
                     limit: int = 100) -> List[AuditLogEntry]:
        with self._lock:
            entries = list(self.entries)

        if consent_id:
            entries = [e for e in entries if e.consent_id == consent_id]
        if actor:
            entries = [e for e in entries if e.actor == actor]

        # Sort by timestamp (newest first)
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries[:limit]
