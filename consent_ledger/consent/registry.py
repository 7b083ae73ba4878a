"""
Controller and identity registries for the Consent Ledger

Controllers are registered once and resolved by organization id; only their
metadata may change afterwards. User identities are pseudonymous: the
registry keeps the derived user id, DID and public key, never the email.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any
import json
import threading
import structlog
from sqlalchemy import Column, String, DateTime, Text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .models import ControllerRecord, UserIdentity
from ..config import get_ledger_config
from ..constants import IdentityDefaults
from ..crypto.hash import controller_hash, derive_user_id, derive_did, derive_wallet_address
from ..db import Base, create_db_engine, to_db_time
from ..exceptions import AdapterFailureError, DuplicateControllerError, ValidationError
from ..utils.clock import ensure_utc, utc_now
from ..utils.validators import validate_required_text

logger = structlog.get_logger(__name__)


# =============================================================================
# CONTROLLERS
# =============================================================================

class ControllerRegistry(ABC):
    """Registered data controllers, resolved by organization id"""

    @abstractmethod
    def resolve(self, organization_id: str) -> Optional[ControllerRecord]:
        """Controller registered under organization_id, if any"""

    @abstractmethod
    def get(self, controller_ref: str) -> Optional[ControllerRecord]:
        """Controller by internal reference"""

    @abstractmethod
    def _insert(self, record: ControllerRecord) -> bool:
        """Insert a controller unless its organization id is taken"""

    @abstractmethod
    def _replace_metadata(self, organization_id: str, metadata: Dict[str, Any]) -> Optional[ControllerRecord]:
        """Overwrite metadata of an existing controller"""

    def register(self, organization_id: str, organization_name: str, public_key: str,
                 metadata: Optional[Dict[str, Any]] = None) -> ControllerRecord:
        """Register a controller; organization ids are unique"""
        organization_id = validate_required_text(organization_id, "organization_id")
        organization_name = validate_required_text(organization_name, "organization_name")
        public_key = validate_required_text(public_key, "public_key")

        record = ControllerRecord(
            organization_id=organization_id,
            organization_name=organization_name,
            controller_hash=controller_hash(organization_id),
            public_key=public_key,
            metadata=metadata or {},
        )
        if not self._insert(record):
            raise DuplicateControllerError(organization_id)

        logger.info("Controller registered", controller_ref=record.controller_ref,
                    controller_hash=record.controller_hash)
        return record

    def update_metadata(self, organization_id: str, metadata: Dict[str, Any]) -> Optional[ControllerRecord]:
        """Replace controller metadata; identity fields are immutable"""
        if not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object", field="metadata")
        record = self._replace_metadata(organization_id, metadata)
        if record:
            logger.info("Controller metadata updated", controller_ref=record.controller_ref)
        return record


class ControllerRecordDB(Base):
    """SQLAlchemy model for controllers"""
    __tablename__ = "controllers"

    controller_ref = Column(String, primary_key=True)
    organization_id = Column(String, nullable=False, unique=True)
    organization_name = Column(String, nullable=False)
    controller_hash = Column(String(64), nullable=False, index=True)
    public_key = Column(Text, nullable=False)
    controller_metadata = Column(Text)  # JSON string
    registered_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class SQLControllerRegistry(ControllerRegistry):
    """Controller registry backed by SQLAlchemy"""

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        self.engine = engine or create_db_engine(database_url)
        self.SessionLocal = sessionmaker(bind=self.engine)
        Base.metadata.create_all(bind=self.engine)

    def _from_db_model(self, row: ControllerRecordDB) -> ControllerRecord:
        return ControllerRecord(
            controller_ref=row.controller_ref,
            organization_id=row.organization_id,
            organization_name=row.organization_name,
            controller_hash=row.controller_hash,
            public_key=row.public_key,
            metadata=json.loads(row.controller_metadata) if row.controller_metadata else {},
            registered_at=ensure_utc(row.registered_at),
            updated_at=ensure_utc(row.updated_at),
        )

    def resolve(self, organization_id: str) -> Optional[ControllerRecord]:
        try:
            with self.SessionLocal() as session:
                row = session.query(ControllerRecordDB).filter_by(organization_id=organization_id).first()
                return self._from_db_model(row) if row else None
        except SQLAlchemyError as e:
            logger.error("Failed to resolve controller", error=str(e))
            raise AdapterFailureError("controller_registry", reason=str(e), operation="resolve")

    def get(self, controller_ref: str) -> Optional[ControllerRecord]:
        try:
            with self.SessionLocal() as session:
                row = session.get(ControllerRecordDB, controller_ref)
                return self._from_db_model(row) if row else None
        except SQLAlchemyError as e:
            logger.error("Failed to get controller", controller_ref=controller_ref, error=str(e))
            raise AdapterFailureError("controller_registry", reason=str(e), operation="get")

    def _insert(self, record: ControllerRecord) -> bool:
        try:
            with self.SessionLocal() as session:
                session.add(ControllerRecordDB(
                    controller_ref=record.controller_ref,
                    organization_id=record.organization_id,
                    organization_name=record.organization_name,
                    controller_hash=record.controller_hash,
                    public_key=record.public_key,
                    controller_metadata=json.dumps(record.metadata) if record.metadata else None,
                    registered_at=to_db_time(record.registered_at),
                    updated_at=to_db_time(record.updated_at),
                ))
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    return False
                return True
        except SQLAlchemyError as e:
            logger.error("Failed to store controller", error=str(e))
            raise AdapterFailureError("controller_registry", reason=str(e), operation="register")

    def _replace_metadata(self, organization_id: str, metadata: Dict[str, Any]) -> Optional[ControllerRecord]:
        try:
            with self.SessionLocal() as session:
                row = session.query(ControllerRecordDB).filter_by(organization_id=organization_id).first()
                if not row:
                    return None
                row.controller_metadata = json.dumps(metadata) if metadata else None
                row.updated_at = to_db_time(utc_now())
                session.commit()
                return self._from_db_model(row)
        except SQLAlchemyError as e:
            logger.error("Failed to update controller metadata", error=str(e))
            raise AdapterFailureError("controller_registry", reason=str(e), operation="update_metadata")


class InMemoryControllerRegistry(ControllerRegistry):
    """In-memory controller registry for testing"""

    def __init__(self):
        self._lock = threading.Lock()
        self.controllers: Dict[str, ControllerRecord] = {}

    def resolve(self, organization_id: str) -> Optional[ControllerRecord]:
        record = self.controllers.get(organization_id)
        return record.model_copy(deep=True) if record else None

    def get(self, controller_ref: str) -> Optional[ControllerRecord]:
        for record in self.controllers.values():
            if record.controller_ref == controller_ref:
                return record.model_copy(deep=True)
        return None

    def _insert(self, record: ControllerRecord) -> bool:
        with self._lock:
            if record.organization_id in self.controllers:
                return False
            self.controllers[record.organization_id] = record.model_copy(deep=True)
            return True

    def _replace_metadata(self, organization_id: str, metadata: Dict[str, Any]) -> Optional[ControllerRecord]:
        with self._lock:
            record = self.controllers.get(organization_id)
            if record is None:
                return None
            record.metadata = dict(metadata)
            record.updated_at = utc_now()
            return record.model_copy(deep=True)


# =============================================================================
# USER IDENTITIES
# =============================================================================

class IdentityRegistry(ABC):
    """Pseudonymous user identities and their public keys"""

    @abstractmethod
    def get(self, user_id: str) -> Optional[UserIdentity]:
        """Identity registered under user_id"""

    @abstractmethod
    def _insert(self, identity: UserIdentity) -> None:
        """Insert an identity, keeping an existing one with the same user id"""

    def register_user(self, email: str, public_key: str) -> UserIdentity:
        """
        Derive and persist the pseudonymous identity of a user.

        Registering the same email and key twice returns the same identity.
        The email is consumed by derive_user_id and not stored.
        """
        email = validate_required_text(email, "email")
        public_key = validate_required_text(public_key, "public_key")

        user_id = derive_user_id(email, public_key)
        existing = self.get(user_id)
        if existing:
            return existing

        identity = UserIdentity(
            user_id=user_id,
            did=derive_did(public_key, get_ledger_config().did_scheme),
            wallet_address=derive_wallet_address(public_key),
            public_key=public_key,
        )
        self._insert(identity)
        logger.info("User registered", user_id=user_id, did=identity.did)
        return self.get(user_id) or identity

    def public_key_for(self, user_id: str) -> Optional[str]:
        identity = self.get(user_id)
        return identity.public_key if identity else None


class UserIdentityDB(Base):
    """SQLAlchemy model for pseudonymous user identities"""
    __tablename__ = "user_identities"

    user_id = Column(String(IdentityDefaults.MAX_USER_ID_LENGTH), primary_key=True)
    did = Column(String, nullable=False, index=True)
    wallet_address = Column(String(40), nullable=False)
    public_key = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False)


class SQLIdentityRegistry(IdentityRegistry):
    """Identity registry backed by SQLAlchemy"""

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        self.engine = engine or create_db_engine(database_url)
        self.SessionLocal = sessionmaker(bind=self.engine)
        Base.metadata.create_all(bind=self.engine)

    def get(self, user_id: str) -> Optional[UserIdentity]:
        try:
            with self.SessionLocal() as session:
                row = session.get(UserIdentityDB, user_id)
                if not row:
                    return None
                return UserIdentity(
                    user_id=row.user_id,
                    did=row.did,
                    wallet_address=row.wallet_address,
                    public_key=row.public_key,
                    created_at=ensure_utc(row.created_at),
                )
        except SQLAlchemyError as e:
            logger.error("Failed to get user identity", user_id=user_id, error=str(e))
            raise AdapterFailureError("identity_registry", reason=str(e), operation="get")

    def _insert(self, identity: UserIdentity) -> None:
        try:
            with self.SessionLocal() as session:
                session.add(UserIdentityDB(
                    user_id=identity.user_id,
                    did=identity.did,
                    wallet_address=identity.wallet_address,
                    public_key=identity.public_key,
                    created_at=to_db_time(identity.created_at),
                ))
                try:
                    session.commit()
                except IntegrityError:
                    # Registered concurrently with the same email and key
                    session.rollback()
        except SQLAlchemyError as e:
            logger.error("Failed to store user identity", user_id=identity.user_id, error=str(e))
            raise AdapterFailureError("identity_registry", reason=str(e), operation="register_user")


class InMemoryIdentityRegistry(IdentityRegistry):
    """In-memory identity registry for testing"""

    def __init__(self):
        self.identities: Dict[str, UserIdentity] = {}

    def get(self, user_id: str) -> Optional[UserIdentity]:
        identity = self.identities.get(user_id)
        return identity.model_copy() if identity else None

    def _insert(self, identity: UserIdentity) -> None:
        self.identities.setdefault(identity.user_id, identity)
