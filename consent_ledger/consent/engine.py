"""
Consent state engine for the Consent Ledger
Grant, verify and revoke with per-key serialization and lazy expiry

The engine is the only writer of consent status. Local state transitions
happen under a per-key lock through compare-and-swap store writes; the proof
oracle and the ledger are called outside the lock. A ledger transaction hash
is attached to a record afterwards and may arrive after the call returns.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
import structlog
from pydantic import ValidationError as PydanticValidationError

from .locks import KeyedLocks
from .models import (
    ConsentRecord, ConsentKey, ConsentStatus, LawfulBasis, ConsentGrantRequest,
    ConsentGrantResult, ConsentVerifyResult, ConsentRevokeResult, ComplianceMetrics,
    VerifyOutcome,
)
from .registry import (
    ControllerRegistry, IdentityRegistry, SQLControllerRegistry, SQLIdentityRegistry,
    InMemoryControllerRegistry, InMemoryIdentityRegistry,
)
from .storage import ConsentStore, ConsentStorage
from ..audit import AuditTrail, SQLAuditStorage, InMemoryAuditStorage
from ..config import LedgerConfig, get_ledger_config
from ..constants import AuditActions, SYSTEM_ACTOR
from ..crypto.hash import controller_hash, purpose_hash, derive_consent_id, hash_string
from ..crypto.signatures import SignatureVerifier, Ed25519SignatureVerifier
from ..exceptions import (
    ConsentLedgerError, AdapterFailureError, ValidationError, ControllerNotFoundError,
    DuplicateConsentError, NotFoundOrForbiddenError, InvalidSignatureError,
    InvalidStateTransitionError,
)
from ..ledger import LedgerAnchor, LedgerEvent, InMemoryLedger
from ..proof import ProofOracle, CommitmentProofOracle, ConsentClaim, RecordSnapshot
from ..utils.clock import utc_now, to_epoch_ms, from_epoch_ms
from ..utils.validators import (
    validate_required_text, validate_user_id, validate_digest, validate_data_categories,
)

logger = structlog.get_logger(__name__)


class ConsentEngine:
    """Core consent state machine"""

    def __init__(self, storage: Optional[ConsentStore] = None,
                 controllers: Optional[ControllerRegistry] = None,
                 identities: Optional[IdentityRegistry] = None,
                 proof_oracle: Optional[ProofOracle] = None,
                 ledger: Optional[LedgerAnchor] = None,
                 audit: Optional[AuditTrail] = None,
                 signature_verifier: Optional[SignatureVerifier] = None,
                 config: Optional[LedgerConfig] = None):
        self.config = config or get_ledger_config()
        self.storage = storage or ConsentStorage(self.config.database_url)

        # Default registries and audit sink share the consent store's database
        db_engine = getattr(self.storage, "engine", None)
        if db_engine is not None:
            self.controllers = controllers or SQLControllerRegistry(engine=db_engine)
            self.identities = identities or SQLIdentityRegistry(engine=db_engine)
            self.audit = audit or AuditTrail(SQLAuditStorage(engine=db_engine))
        else:
            self.controllers = controllers or InMemoryControllerRegistry()
            self.identities = identities or InMemoryIdentityRegistry()
            self.audit = audit or AuditTrail(InMemoryAuditStorage())

        self.proof_oracle = proof_oracle or CommitmentProofOracle(self.config.proof_oracle_key)
        self.ledger = ledger or InMemoryLedger()
        self.signature_verifier = signature_verifier or Ed25519SignatureVerifier(
            self.identities.public_key_for
        )

        self._locks = KeyedLocks()
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Adapter plumbing
    # ------------------------------------------------------------------

    async def _store(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking store call off the event loop"""
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ConsentLedgerError:
            raise
        except Exception as e:
            logger.error("Store call failed", operation=getattr(fn, "__name__", "?"), error=str(e))
            raise AdapterFailureError("consent_store", reason=str(e),
                                      operation=getattr(fn, "__name__", None))

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for all background ledger and audit work to finish"""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    @property
    def pending_background_tasks(self) -> int:
        return len(self._background)

    # ------------------------------------------------------------------
    # Ledger anchoring
    # ------------------------------------------------------------------

    def _ledger_event(self, record: ConsentRecord) -> LedgerEvent:
        return LedgerEvent(
            consent_id=record.consent_id,
            controller_hash=record.controller_hash,
            purpose_hash=record.purpose_hash,
            user_hash=hash_string(record.user_id),
            status=ConsentStatus.GRANTED,
            granted_at=to_epoch_ms(record.granted_at),
            expires_at=to_epoch_ms(record.expires_at) if record.expires_at else None,
        )

    async def _anchor_status(self, record: ConsentRecord, status: ConsentStatus) -> Optional[str]:
        """
        Anchor status for record and attach the tx hash.

        Never raises: a ledger failure leaves the record pending for
        retry_pending_anchors().
        """
        try:
            if status == ConsentStatus.GRANTED or record.anchored_status is None:
                receipt = await self.ledger.anchor(self._ledger_event(record))
            if status != ConsentStatus.GRANTED:
                receipt = await self.ledger.update_status(record.consent_id, status)
        except Exception as e:
            logger.warning("Ledger anchor failed, left pending", consent_id=record.consent_id,
                           status=status.value, error=str(e))
            return None

        tx_hash = receipt.transaction_hash
        try:
            attached = await self._store(self.storage.attach_ledger_tx,
                                         record.consent_id, status, tx_hash)
        except AdapterFailureError:
            logger.warning("Could not attach ledger tx, left pending",
                           consent_id=record.consent_id, transaction_hash=tx_hash)
            return tx_hash

        if attached:
            logger.info("Ledger tx attached", consent_id=record.consent_id,
                        status=status.value, transaction_hash=tx_hash)
        else:
            logger.debug("Record moved past anchored status", consent_id=record.consent_id,
                         status=status.value)
        return tx_hash

    async def _await_anchor(self, task: asyncio.Task) -> Optional[str]:
        """Wait a bounded time for an anchor; it keeps running if slow"""
        try:
            return await asyncio.wait_for(asyncio.shield(task),
                                          timeout=self.config.ledger_anchor_timeout_seconds)
        except asyncio.TimeoutError:
            logger.info("Ledger anchor still pending, returning without tx hash")
            return None

    async def _audit_transition(self, anchor_task: asyncio.Task, action: str,
                                **fields: Any) -> None:
        ledger_tx_hash = await self._await_anchor(anchor_task)
        await self.audit.record(action, ledger_tx_hash=ledger_tx_hash, **fields)

    async def _anchor_and_audit(self, record: ConsentRecord, status: ConsentStatus,
                                action: str, **fields: Any) -> Optional[str]:
        """
        Anchor a committed transition and audit it.

        Both run as tracked tasks, so a caller cancelled during the bounded
        wait still leaves the anchor and the audit entry to complete.
        """
        anchor_task = self._spawn(self._anchor_status(record, status))
        audit_task = self._spawn(self._audit_transition(anchor_task, action, **fields))
        ledger_tx_hash = await self._await_anchor(anchor_task)
        await asyncio.shield(audit_task)
        return ledger_tx_hash

    # ------------------------------------------------------------------
    # Lazy expiry
    # ------------------------------------------------------------------

    def _after_expiry(self, record: ConsentRecord) -> None:
        expired = record.model_copy(update={"status": ConsentStatus.EXPIRED})
        self._spawn(self._anchor_status(expired, ConsentStatus.EXPIRED))
        self._spawn(self.audit.record(
            AuditActions.CONSENT_EXPIRED,
            actor=SYSTEM_ACTOR,
            consent_id=record.consent_id,
            details={"expires_at": record.expires_at.isoformat() if record.expires_at else None},
        ))

    async def _expire_if_due(self, record: ConsentRecord,
                             now: Optional[datetime] = None) -> ConsentRecord:
        """
        Flip a GRANTED record past its expiry to EXPIRED.

        Returns the record as it stands afterwards, which may differ from the
        argument if another operation got to it first.
        """
        if record.status != ConsentStatus.GRANTED or not record.is_expired(now):
            return record

        flipped = False
        async with self._locks.hold(record.key):
            current = await self._store(self.storage.get_by_id, record.consent_id)
            if current is None:
                return record
            if current.status == ConsentStatus.GRANTED and current.is_expired(now):
                flipped = await self._store(self.storage.update_status, current.consent_id,
                                            ConsentStatus.GRANTED, ConsentStatus.EXPIRED)
                if flipped:
                    current = current.model_copy(update={"status": ConsentStatus.EXPIRED})
                else:
                    current = await self._store(self.storage.get_by_id, record.consent_id) or current

        if flipped:
            logger.info("Consent expired", consent_id=current.consent_id)
            self._after_expiry(current)
        return current

    # ------------------------------------------------------------------
    # Grant
    # ------------------------------------------------------------------

    def _validate_grant(self, **fields: Any) -> ConsentGrantRequest:
        try:
            request = ConsentGrantRequest(**fields)
        except PydanticValidationError as e:
            error = e.errors()[0]
            field = ".".join(str(part) for part in error.get("loc", ())) or None
            raise ValidationError(f"Invalid grant request: {error.get('msg')}", field=field)
        request.data_categories = validate_data_categories(request.data_categories)
        return request

    async def grant_consent(self, user_id: str, controller_id: str, purpose: str,
                            data_categories: Optional[List[str]] = None,
                            lawful_basis: LawfulBasis = LawfulBasis.CONSENT,
                            expires_at: Optional[datetime] = None) -> ConsentGrantResult:
        """Grant consent for a controller and purpose"""
        request = self._validate_grant(
            user_id=user_id,
            controller_id=controller_id,
            purpose=purpose,
            data_categories=data_categories or [],
            lawful_basis=lawful_basis,
            expires_at=expires_at,
        )

        controller = await self._store(self.controllers.resolve, request.controller_id)
        if controller is None:
            raise ControllerNotFoundError(request.controller_id)

        granted_at_ms = to_epoch_ms(utc_now())
        granted_at = from_epoch_ms(granted_at_ms)
        expires_at = request.expires_at
        if expires_at is None and self.config.default_consent_expiry_days:
            expires_at = granted_at + timedelta(days=self.config.default_consent_expiry_days)

        c_hash = controller_hash(request.controller_id)
        p_hash = purpose_hash(request.purpose)
        consent_id = derive_consent_id(request.user_id, request.controller_id,
                                       request.purpose, granted_at_ms)

        # The oracle sees hashes only
        try:
            attestation = await self.proof_oracle.prove_consent(ConsentClaim(
                consent_id=consent_id,
                user_id=request.user_id,
                controller_hash=c_hash,
                purpose_hash=p_hash,
                lawful_basis=request.lawful_basis,
                data_categories=request.data_categories,
            ))
        except Exception as e:
            logger.error("Proof oracle failed during grant", consent_id=consent_id, error=str(e))
            raise AdapterFailureError("proof_oracle", reason=str(e), operation="prove_consent")

        record = ConsentRecord(
            consent_id=consent_id,
            user_id=request.user_id,
            controller_ref=controller.controller_ref,
            controller_hash=c_hash,
            purpose_hash=p_hash,
            purpose=request.purpose,
            data_categories=request.data_categories,
            lawful_basis=request.lawful_basis,
            status=ConsentStatus.GRANTED,
            granted_at=granted_at,
            expires_at=expires_at,
            updated_at=granted_at,
            proof_attestation=attestation.model_dump(mode="json"),
        )

        stale: Optional[ConsentRecord] = None
        async with self._locks.hold(record.key):
            existing = await self._store(self.storage.get_by_key, record.key)
            if existing is not None and existing.status == ConsentStatus.GRANTED:
                if not existing.is_expired():
                    raise DuplicateConsentError()
                if await self._store(self.storage.update_status, existing.consent_id,
                                     ConsentStatus.GRANTED, ConsentStatus.EXPIRED):
                    stale = existing

            if not await self._store(self.storage.insert_if_absent_granted, record):
                raise DuplicateConsentError()

        if stale is not None:
            self._after_expiry(stale)

        logger.info("Granted consent", consent_id=consent_id, user_id=request.user_id,
                    controller_hash=c_hash, expires_at=expires_at)

        ledger_tx_hash = await self._anchor_and_audit(
            record,
            ConsentStatus.GRANTED,
            AuditActions.CONSENT_GRANTED,
            actor=request.user_id,
            consent_id=consent_id,
            details={
                "controller_hash": c_hash,
                "purpose_hash": p_hash,
                "lawful_basis": request.lawful_basis.value,
                "data_categories": request.data_categories,
            },
        )

        return ConsentGrantResult(
            consent_id=consent_id,
            status=ConsentStatus.GRANTED,
            granted_at=granted_at,
            expires_at=expires_at,
            ledger_tx_hash=ledger_tx_hash,
        )

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    async def verify_consent(self, user_id: str, controller_id: str,
                             purpose: str) -> ConsentVerifyResult:
        """Verify consent without exposing the purpose or the user's identity"""
        validate_user_id(user_id)
        validate_required_text(controller_id, "controller_id")
        validate_required_text(purpose, "purpose")

        key = ConsentKey(user_id, controller_hash(controller_id), purpose_hash(purpose))
        record = await self._store(self.storage.get_by_key, key)

        if record is None:
            return ConsentVerifyResult(
                is_valid=False,
                error=VerifyOutcome.NOT_FOUND,
                message="Consent not found",
            )

        # REVOKED is terminal, so only live or already expired records report expiry
        if record.status != ConsentStatus.REVOKED and record.is_expired():
            record = await self._expire_if_due(record)
            if record.status == ConsentStatus.EXPIRED:
                return ConsentVerifyResult(
                    is_valid=False,
                    consent_id=record.consent_id,
                    status=ConsentStatus.EXPIRED,
                    error=VerifyOutcome.EXPIRED,
                    message="Consent expired",
                )

        if record.status != ConsentStatus.GRANTED:
            return ConsentVerifyResult(
                is_valid=False,
                consent_id=record.consent_id,
                status=record.status,
                error=VerifyOutcome.INVALID_STATUS,
                message=f"consent is {record.status.value}",
            )

        try:
            attestation = await self.proof_oracle.prove_verification(RecordSnapshot(
                consent_id=record.consent_id,
                user_id=record.user_id,
                controller_hash=record.controller_hash,
                purpose_hash=record.purpose_hash,
                lawful_basis=record.lawful_basis,
                status=record.status,
                granted_at=to_epoch_ms(record.granted_at),
                expires_at=to_epoch_ms(record.expires_at) if record.expires_at else None,
                ledger_tx_hash=record.ledger_tx_hash,
            ))
        except Exception as e:
            logger.error("Proof oracle failed during verify", consent_id=record.consent_id,
                         error=str(e))
            raise AdapterFailureError("proof_oracle", reason=str(e), operation="prove_verification")

        merkle_proof = None
        try:
            proof = await self.ledger.get_proof(record.consent_id)
            merkle_proof = proof.model_dump(mode="json") if proof else None
        except Exception as e:
            logger.warning("Merkle proof unavailable", consent_id=record.consent_id, error=str(e))

        await self.audit.record(
            AuditActions.CONSENT_VERIFIED,
            actor=user_id,
            consent_id=record.consent_id,
            details={
                "controller_hash": record.controller_hash,
                "purpose_hash": record.purpose_hash,
                "verification_result": "valid",
            },
        )

        logger.info("Consent verified", consent_id=record.consent_id)
        return ConsentVerifyResult(
            is_valid=True,
            consent_id=record.consent_id,
            status=ConsentStatus.GRANTED,
            attestation=attestation.model_dump(mode="json"),
            ledger_merkle_proof=merkle_proof,
        )

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    async def _check_signature(self, consent_id: str, user_id: str, signature: str) -> None:
        try:
            valid = await asyncio.to_thread(
                self.signature_verifier.verify_revocation, consent_id, user_id, signature
            )
        except ConsentLedgerError:
            raise
        except Exception as e:
            logger.error("Signature verifier failed", consent_id=consent_id, error=str(e))
            raise AdapterFailureError("signature_verifier", reason=str(e),
                                      operation="verify_revocation")
        if not valid:
            logger.warning("Revocation signature rejected", consent_id=consent_id, user_id=user_id)
            raise InvalidSignatureError(consent_id)

    async def revoke_consent(self, consent_id: str, user_id: str,
                             signature: str) -> ConsentRevokeResult:
        """Revoke a GRANTED consent on behalf of its owner"""
        validate_required_text(consent_id, "consent_id")
        validate_user_id(user_id)
        validate_required_text(signature, "signature")

        record = await self._store(self.storage.get_by_id, consent_id)
        if record is None or record.user_id != user_id:
            raise NotFoundOrForbiddenError(consent_id)

        await self._check_signature(consent_id, user_id, signature)

        revoked_at = utc_now()
        expired: Optional[ConsentRecord] = None
        async with self._locks.hold(record.key):
            current = await self._store(self.storage.get_by_id, consent_id)
            if current is None:
                raise NotFoundOrForbiddenError(consent_id)

            if current.status == ConsentStatus.GRANTED and current.is_expired():
                if await self._store(self.storage.update_status, consent_id,
                                     ConsentStatus.GRANTED, ConsentStatus.EXPIRED):
                    expired = current
                else:
                    current = await self._store(self.storage.get_by_id, consent_id) or current
                    if current.status != ConsentStatus.EXPIRED:
                        raise InvalidStateTransitionError(consent_id, current.status.value)
            elif current.status != ConsentStatus.GRANTED:
                raise InvalidStateTransitionError(consent_id, current.status.value)
            elif not await self._store(self.storage.update_status, consent_id,
                                       ConsentStatus.GRANTED, ConsentStatus.REVOKED,
                                       revoked_at=revoked_at, updated_at=revoked_at):
                latest = await self._store(self.storage.get_by_id, consent_id)
                raise InvalidStateTransitionError(
                    consent_id, latest.status.value if latest else "unknown"
                )

        if expired is not None:
            self._after_expiry(expired)
        if current.status == ConsentStatus.EXPIRED or expired is not None:
            raise InvalidStateTransitionError(consent_id, ConsentStatus.EXPIRED.value)

        logger.info("Revoked consent", consent_id=consent_id, user_id=user_id)

        revoked = current.model_copy(update={
            "status": ConsentStatus.REVOKED,
            "revoked_at": revoked_at,
        })
        ledger_tx_hash = await self._anchor_and_audit(
            revoked,
            ConsentStatus.REVOKED,
            AuditActions.CONSENT_REVOKED,
            actor=user_id,
            consent_id=consent_id,
            details={"revoked_at": revoked_at.isoformat(), "reason": "user_request"},
        )

        return ConsentRevokeResult(
            consent_id=consent_id,
            status=ConsentStatus.REVOKED,
            revoked_at=revoked_at,
            ledger_tx_hash=ledger_tx_hash,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_active_consents(self, user_id: str) -> List[ConsentRecord]:
        """GRANTED consents of a user, most recently granted first"""
        validate_user_id(user_id)
        records = await self._store(self.storage.list_by_user, user_id, ConsentStatus.GRANTED)

        active: List[ConsentRecord] = []
        for record in records:
            record = await self._expire_if_due(record)
            if record.status == ConsentStatus.GRANTED:
                active.append(record)
        return active

    async def get_consent(self, consent_id: str) -> Optional[ConsentRecord]:
        """Single record with lazy expiry applied"""
        record = await self._store(self.storage.get_by_id, consent_id)
        if record is None:
            return None
        return await self._expire_if_due(record)

    async def export_consent_history(self, user_id: str) -> Dict[str, Any]:
        """Export complete consent history for data subject access requests"""
        validate_user_id(user_id)
        records = await self._store(self.storage.list_by_user, user_id)
        records = [await self._expire_if_due(record) for record in records]

        return {
            "user_id": user_id,
            "exported_at": utc_now().isoformat(),
            "consents": [record.to_public_dict() for record in records],
        }

    async def get_compliance_metrics(self, controller_hash_value: str) -> ComplianceMetrics:
        """Status counts and anchoring coverage for a controller"""
        validate_digest(controller_hash_value, "controller_hash")
        counts = await self._store(self.storage.count_by_status, controller_hash_value)
        total = sum(counts.get(status.value, 0) for status in ConsentStatus)
        pending = counts.get("pending_anchors", 0)
        score = 100.0 if total == 0 else round(100.0 * (total - pending) / total, 2)

        return ComplianceMetrics(
            controller_hash=controller_hash_value,
            total_consents=total,
            active_consents=counts.get(ConsentStatus.GRANTED.value, 0),
            revoked_consents=counts.get(ConsentStatus.REVOKED.value, 0),
            expired_consents=counts.get(ConsentStatus.EXPIRED.value, 0),
            pending_anchors=pending,
            compliance_score=score,
        )

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Expire every GRANTED record past its expiry; returns how many flipped"""
        now = now or utc_now()
        candidates = await self._store(self.storage.list_expired_granted, now)

        flipped = 0
        for record in candidates:
            current = await self._expire_if_due(record, now)
            if current.status == ConsentStatus.EXPIRED:
                flipped += 1

        if flipped:
            logger.info("Expiry sweep finished", expired=flipped)
        return flipped

    async def retry_pending_anchors(self) -> int:
        """Re-submit records whose ledger anchor lags their status"""
        pending = await self._store(self.storage.list_pending_anchors)

        anchored = 0
        for record in pending:
            if await self._anchor_status(record, record.status):
                anchored += 1

        if pending:
            logger.info("Pending anchors retried", pending=len(pending), anchored=anchored)
        return anchored

    async def run_periodic(self, name: str, interval_seconds: float,
                           job: Callable[[], Awaitable[Any]]) -> None:
        """Run job every interval until cancelled"""
        logger.info("Starting periodic job", job=name, interval_seconds=interval_seconds)
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await job()
            except Exception as e:
                logger.error("Periodic job failed", job=name, error=str(e))


# Global consent engine instance
_consent_engine: Optional[ConsentEngine] = None


def get_consent_engine() -> ConsentEngine:
    """Get the global consent engine instance"""
    global _consent_engine
    if _consent_engine is None:
        _consent_engine = ConsentEngine()
    return _consent_engine


# Convenience functions
async def grant_consent(user_id: str, controller_id: str, purpose: str,
                        data_categories: Optional[List[str]] = None,
                        lawful_basis: LawfulBasis = LawfulBasis.CONSENT,
                        expires_at: Optional[datetime] = None) -> ConsentGrantResult:
    """Grant consent for a controller and purpose"""
    return await get_consent_engine().grant_consent(
        user_id, controller_id, purpose, data_categories, lawful_basis, expires_at
    )


async def verify_consent(user_id: str, controller_id: str, purpose: str) -> ConsentVerifyResult:
    """Verify consent for a controller and purpose"""
    return await get_consent_engine().verify_consent(user_id, controller_id, purpose)


async def revoke_consent(consent_id: str, user_id: str, signature: str) -> ConsentRevokeResult:
    """Revoke consent on behalf of its owner"""
    return await get_consent_engine().revoke_consent(consent_id, user_id, signature)
