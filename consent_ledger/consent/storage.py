"""
Consent storage adapters for the Consent Ledger
Durable keyed storage with compare-and-swap writes

The engine never trusts an in-process view of the data: every write is a
conditional operation (insert only if no GRANTED record exists for the key,
update only if the stored status still matches), so several engine
instances can share one database.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List, Dict, Any
import json
import threading
import structlog
from sqlalchemy import Column, String, DateTime, Text, Index, func, or_, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .models import ConsentRecord, ConsentKey, ConsentStatus, LawfulBasis
from ..constants import IdentityDefaults
from ..db import Base, create_db_engine, to_db_time
from ..exceptions import AdapterFailureError
from ..utils.clock import ensure_utc, utc_now

logger = structlog.get_logger(__name__)

ADAPTER_NAME = "consent_store"


def _select_for_key(records: List[ConsentRecord]) -> Optional[ConsentRecord]:
    """The GRANTED record for a key wins, otherwise the most recent grant"""
    if not records:
        return None
    for record in records:
        if record.status == ConsentStatus.GRANTED:
            return record
    return max(records, key=lambda r: ensure_utc(r.granted_at))


class ConsentStore(ABC):
    """Contract the consent engine requires from persistent storage"""

    @abstractmethod
    def get_by_key(self, key: ConsentKey) -> Optional[ConsentRecord]:
        """Record for (user, controller hash, purpose hash), GRANTED first"""

    @abstractmethod
    def get_by_id(self, consent_id: str) -> Optional[ConsentRecord]:
        """Record by consent id"""

    @abstractmethod
    def insert_if_absent_granted(self, record: ConsentRecord) -> bool:
        """Insert record unless a GRANTED record exists for its key"""

    @abstractmethod
    def update_status(self, consent_id: str, expected_status: ConsentStatus,
                      new_status: ConsentStatus, revoked_at: Optional[datetime] = None,
                      updated_at: Optional[datetime] = None) -> bool:
        """Transition a record if its stored status is still expected_status"""

    @abstractmethod
    def list_by_user(self, user_id: str,
                     status: Optional[ConsentStatus] = None) -> List[ConsentRecord]:
        """Records of a user, most recently granted first"""

    @abstractmethod
    def attach_ledger_tx(self, consent_id: str, status: ConsentStatus, tx_hash: str) -> bool:
        """Record the ledger tx attesting status, if the record is still in it"""

    @abstractmethod
    def list_pending_anchors(self) -> List[ConsentRecord]:
        """Records whose ledger anchor does not match their status"""

    @abstractmethod
    def list_expired_granted(self, now: datetime) -> List[ConsentRecord]:
        """GRANTED records whose expires_at has been reached"""

    @abstractmethod
    def count_by_status(self, controller_hash: str) -> Dict[str, int]:
        """Record counts per status for a controller, plus 'pending_anchors'"""


class ConsentRecordDB(Base):
    """SQLAlchemy model for consent records"""
    __tablename__ = "consent_records"
    __table_args__ = (
        Index("ix_consent_records_key", "user_id", "controller_hash", "purpose_hash"),
        # Backs insert_if_absent_granted across engine instances
        Index(
            "uq_consent_records_active_key",
            "user_id", "controller_hash", "purpose_hash",
            unique=True,
            sqlite_where=text("status = 'granted'"),
            postgresql_where=text("status = 'granted'"),
        ),
    )

    consent_id = Column(String(64), primary_key=True)
    user_id = Column(String(IdentityDefaults.MAX_USER_ID_LENGTH), nullable=False, index=True)
    controller_ref = Column(String, nullable=False)
    controller_hash = Column(String(64), nullable=False, index=True)
    purpose_hash = Column(String(64), nullable=False)

    purpose = Column(Text, nullable=False)
    data_categories = Column(Text, nullable=False)  # JSON list
    lawful_basis = Column(String, nullable=False)

    status = Column(String, nullable=False)
    granted_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime)
    revoked_at = Column(DateTime)
    updated_at = Column(DateTime, nullable=False)

    ledger_tx_hash = Column(String)
    anchored_status = Column(String)
    proof_attestation = Column(Text)  # JSON


class ConsentStorage(ConsentStore):
    """SQLAlchemy storage adapter for consent records"""

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        self.engine = engine or create_db_engine(database_url)
        self.SessionLocal = sessionmaker(bind=self.engine)

        # Create tables
        Base.metadata.create_all(bind=self.engine)

    def _to_db_model(self, consent: ConsentRecord) -> ConsentRecordDB:
        """Convert ConsentRecord to database model"""
        return ConsentRecordDB(
            consent_id=consent.consent_id,
            user_id=consent.user_id,
            controller_ref=consent.controller_ref,
            controller_hash=consent.controller_hash,
            purpose_hash=consent.purpose_hash,
            purpose=consent.purpose,
            data_categories=json.dumps(consent.data_categories),
            lawful_basis=consent.lawful_basis.value,
            status=consent.status.value,
            granted_at=to_db_time(consent.granted_at),
            expires_at=to_db_time(consent.expires_at),
            revoked_at=to_db_time(consent.revoked_at),
            updated_at=to_db_time(consent.updated_at),
            ledger_tx_hash=consent.ledger_tx_hash,
            anchored_status=consent.anchored_status.value if consent.anchored_status else None,
            proof_attestation=json.dumps(consent.proof_attestation) if consent.proof_attestation else None,
        )

    def _from_db_model(self, db_consent: ConsentRecordDB) -> ConsentRecord:
        """Convert database model to ConsentRecord"""
        attestation = None
        if db_consent.proof_attestation:
            try:
                attestation = json.loads(db_consent.proof_attestation)
            except json.JSONDecodeError:
                logger.warning("Invalid attestation JSON", consent_id=db_consent.consent_id)

        return ConsentRecord(
            consent_id=db_consent.consent_id,
            user_id=db_consent.user_id,
            controller_ref=db_consent.controller_ref,
            controller_hash=db_consent.controller_hash,
            purpose_hash=db_consent.purpose_hash,
            purpose=db_consent.purpose,
            data_categories=json.loads(db_consent.data_categories or "[]"),
            lawful_basis=LawfulBasis(db_consent.lawful_basis),
            status=ConsentStatus(db_consent.status),
            granted_at=ensure_utc(db_consent.granted_at),
            expires_at=ensure_utc(db_consent.expires_at),
            revoked_at=ensure_utc(db_consent.revoked_at),
            updated_at=ensure_utc(db_consent.updated_at),
            ledger_tx_hash=db_consent.ledger_tx_hash,
            anchored_status=ConsentStatus(db_consent.anchored_status) if db_consent.anchored_status else None,
            proof_attestation=attestation,
        )

    def _failure(self, operation: str, error: Exception, **context: Any) -> AdapterFailureError:
        logger.error("Consent store operation failed", operation=operation,
                     error=str(error), **context)
        return AdapterFailureError(ADAPTER_NAME, reason=str(error), operation=operation)

    def get_by_key(self, key: ConsentKey) -> Optional[ConsentRecord]:
        try:
            with self.SessionLocal() as session:
                rows = session.query(ConsentRecordDB).filter_by(
                    user_id=key.user_id,
                    controller_hash=key.controller_hash,
                    purpose_hash=key.purpose_hash,
                ).all()
                return _select_for_key([self._from_db_model(row) for row in rows])
        except SQLAlchemyError as e:
            raise self._failure("get_by_key", e, user_id=key.user_id)

    def get_by_id(self, consent_id: str) -> Optional[ConsentRecord]:
        try:
            with self.SessionLocal() as session:
                row = session.query(ConsentRecordDB).filter_by(consent_id=consent_id).first()
                return self._from_db_model(row) if row else None
        except SQLAlchemyError as e:
            raise self._failure("get_by_id", e, consent_id=consent_id)

    def insert_if_absent_granted(self, record: ConsentRecord) -> bool:
        try:
            with self.SessionLocal() as session:
                existing = session.query(ConsentRecordDB.consent_id).filter_by(
                    user_id=record.user_id,
                    controller_hash=record.controller_hash,
                    purpose_hash=record.purpose_hash,
                    status=ConsentStatus.GRANTED.value,
                ).first()
                if existing:
                    return False

                session.add(self._to_db_model(record))
                try:
                    session.commit()
                except IntegrityError:
                    # Another instance inserted a GRANTED record for the key first
                    session.rollback()
                    logger.info("Concurrent grant lost the insert race",
                                consent_id=record.consent_id)
                    return False

                logger.info("Stored consent record", consent_id=record.consent_id,
                            user_id=record.user_id)
                return True
        except SQLAlchemyError as e:
            raise self._failure("insert_if_absent_granted", e, consent_id=record.consent_id)

    def update_status(self, consent_id: str, expected_status: ConsentStatus,
                      new_status: ConsentStatus, revoked_at: Optional[datetime] = None,
                      updated_at: Optional[datetime] = None) -> bool:
        values: Dict[str, Any] = {
            "status": new_status.value,
            "updated_at": to_db_time(updated_at or utc_now()),
        }
        if revoked_at is not None:
            values["revoked_at"] = to_db_time(revoked_at)

        try:
            with self.SessionLocal() as session:
                updated = session.query(ConsentRecordDB).filter_by(
                    consent_id=consent_id,
                    status=expected_status.value,
                ).update(values, synchronize_session=False)
                session.commit()
        except SQLAlchemyError as e:
            raise self._failure("update_status", e, consent_id=consent_id)

        if updated:
            logger.info("Updated consent status", consent_id=consent_id,
                        from_status=expected_status.value, to_status=new_status.value)
        return bool(updated)

    def list_by_user(self, user_id: str,
                     status: Optional[ConsentStatus] = None) -> List[ConsentRecord]:
        try:
            with self.SessionLocal() as session:
                query = session.query(ConsentRecordDB).filter_by(user_id=user_id)
                if status is not None:
                    query = query.filter_by(status=status.value)
                rows = query.order_by(ConsentRecordDB.granted_at.desc()).all()
                return [self._from_db_model(row) for row in rows]
        except SQLAlchemyError as e:
            raise self._failure("list_by_user", e, user_id=user_id)

    def attach_ledger_tx(self, consent_id: str, status: ConsentStatus, tx_hash: str) -> bool:
        try:
            with self.SessionLocal() as session:
                updated = session.query(ConsentRecordDB).filter_by(
                    consent_id=consent_id,
                    status=status.value,
                ).update({
                    "ledger_tx_hash": tx_hash,
                    "anchored_status": status.value,
                }, synchronize_session=False)
                session.commit()
                return bool(updated)
        except SQLAlchemyError as e:
            raise self._failure("attach_ledger_tx", e, consent_id=consent_id)

    def list_pending_anchors(self) -> List[ConsentRecord]:
        try:
            with self.SessionLocal() as session:
                rows = session.query(ConsentRecordDB).filter(or_(
                    ConsentRecordDB.anchored_status.is_(None),
                    ConsentRecordDB.anchored_status != ConsentRecordDB.status,
                )).order_by(ConsentRecordDB.updated_at).all()
                return [self._from_db_model(row) for row in rows]
        except SQLAlchemyError as e:
            raise self._failure("list_pending_anchors", e)

    def list_expired_granted(self, now: datetime) -> List[ConsentRecord]:
        try:
            with self.SessionLocal() as session:
                rows = session.query(ConsentRecordDB).filter(
                    ConsentRecordDB.status == ConsentStatus.GRANTED.value,
                    ConsentRecordDB.expires_at.isnot(None),
                    ConsentRecordDB.expires_at <= to_db_time(now),
                ).all()
                return [self._from_db_model(row) for row in rows]
        except SQLAlchemyError as e:
            raise self._failure("list_expired_granted", e)

    def count_by_status(self, controller_hash: str) -> Dict[str, int]:
        try:
            with self.SessionLocal() as session:
                rows = session.query(
                    ConsentRecordDB.status, func.count(ConsentRecordDB.consent_id)
                ).filter_by(controller_hash=controller_hash).group_by(ConsentRecordDB.status).all()
                counts = {status.value: 0 for status in ConsentStatus}
                counts.update({status: count for status, count in rows})

                counts["pending_anchors"] = session.query(ConsentRecordDB).filter(
                    ConsentRecordDB.controller_hash == controller_hash,
                    or_(
                        ConsentRecordDB.anchored_status.is_(None),
                        ConsentRecordDB.anchored_status != ConsentRecordDB.status,
                    ),
                ).count()
                return counts
        except SQLAlchemyError as e:
            raise self._failure("count_by_status", e, controller_hash=controller_hash)


class InMemoryConsentStorage(ConsentStore):
    """
    In-memory storage for tests and single-process use.

    Implements the same compare-and-swap contract as the SQL store under a
    lock; records are copied in and out so callers never share state.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self.consents: Dict[str, ConsentRecord] = {}
        self.user_consents: Dict[str, List[str]] = {}

    def _copy(self, record: ConsentRecord) -> ConsentRecord:
        return record.model_copy(deep=True)

    def get_by_key(self, key: ConsentKey) -> Optional[ConsentRecord]:
        with self._lock:
            matches = [c for c in self.consents.values() if c.key == key]
            selected = _select_for_key(matches)
            return self._copy(selected) if selected else None

    def get_by_id(self, consent_id: str) -> Optional[ConsentRecord]:
        with self._lock:
            record = self.consents.get(consent_id)
            return self._copy(record) if record else None

    def insert_if_absent_granted(self, record: ConsentRecord) -> bool:
        with self._lock:
            if record.consent_id in self.consents:
                return False
            for existing in self.consents.values():
                if existing.key == record.key and existing.status == ConsentStatus.GRANTED:
                    return False

            self.consents[record.consent_id] = self._copy(record)
            self.user_consents.setdefault(record.user_id, []).append(record.consent_id)
            return True

    def update_status(self, consent_id: str, expected_status: ConsentStatus,
                      new_status: ConsentStatus, revoked_at: Optional[datetime] = None,
                      updated_at: Optional[datetime] = None) -> bool:
        with self._lock:
            record = self.consents.get(consent_id)
            if record is None or record.status != expected_status:
                return False
            record.status = new_status
            record.updated_at = updated_at or utc_now()
            if revoked_at is not None:
                record.revoked_at = revoked_at
            return True

    def list_by_user(self, user_id: str,
                     status: Optional[ConsentStatus] = None) -> List[ConsentRecord]:
        with self._lock:
            records = [self.consents[cid] for cid in self.user_consents.get(user_id, [])]
            if status is not None:
                records = [r for r in records if r.status == status]
            records.sort(key=lambda r: ensure_utc(r.granted_at), reverse=True)
            return [self._copy(r) for r in records]

    def attach_ledger_tx(self, consent_id: str, status: ConsentStatus, tx_hash: str) -> bool:
        with self._lock:
            record = self.consents.get(consent_id)
            if record is None or record.status != status:
                return False
            record.ledger_tx_hash = tx_hash
            record.anchored_status = status
            return True

    def list_pending_anchors(self) -> List[ConsentRecord]:
        with self._lock:
            pending = [r for r in self.consents.values() if r.ledger_pending]
            pending.sort(key=lambda r: ensure_utc(r.updated_at))
            return [self._copy(r) for r in pending]

    def list_expired_granted(self, now: datetime) -> List[ConsentRecord]:
        with self._lock:
            return [
                self._copy(r) for r in self.consents.values()
                if r.status == ConsentStatus.GRANTED and r.is_expired(now)
            ]

    def count_by_status(self, controller_hash: str) -> Dict[str, int]:
        with self._lock:
            counts = {status.value: 0 for status in ConsentStatus}
            counts["pending_anchors"] = 0
            for record in self.consents.values():
                if record.controller_hash != controller_hash:
                    continue
                counts[record.status.value] += 1
                if record.ledger_pending:
                    counts["pending_anchors"] += 1
            return counts
