"""
Consent Ledger - FastAPI Application
Registers users and controllers, grants, verifies and revokes consent
"""

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Any, Dict, List
import asyncio
import structlog

from .config import LedgerConfig, get_ledger_config
from .constants import SERVICE_NAME, SERVICE_VERSION
from .consent.manager import (
    ConsentManager,
    UserRegisterRequest,
    ControllerRegisterRequest,
    ConsentGrantPayload,
    ConsentRevokePayload,
)
from .exceptions import (
    ConsentLedgerError,
    ValidationError,
    ControllerNotFoundError,
    DuplicateControllerError,
    DuplicateConsentError,
    NotFoundOrForbiddenError,
    InvalidSignatureError,
    InvalidStateTransitionError,
    AdapterFailureError,
)
from .logging_config import configure_logging

logger = structlog.get_logger()

# Global settings
settings = get_ledger_config()

# Initialize services
consent_manager = None
background_jobs: List[asyncio.Task] = []

_STATUS_CODES = (
    (ValidationError, 400),
    (InvalidSignatureError, 401),
    (ControllerNotFoundError, 404),
    (NotFoundOrForbiddenError, 404),
    (DuplicateControllerError, 409),
    (DuplicateConsentError, 409),
    (InvalidStateTransitionError, 409),
    (AdapterFailureError, 503),
)


def _http_error(exc: ConsentLedgerError) -> HTTPException:
    """Map a ledger error onto its HTTP status"""
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=exc.to_dict())
    return HTTPException(status_code=500, detail=exc.to_dict())


def warn_on_insecure_settings(config: LedgerConfig) -> bool:
    """Log a warning if production runs with the development oracle key"""
    if config.uses_development_oracle_key and not config.debug_mode:
        logger.warning(
            "Proof oracle uses the development key; set CONSENT_LEDGER_PROOF_ORACLE_KEY",
            debug_mode=config.debug_mode,
        )
        return True
    return False


def _start_background_jobs(manager: ConsentManager) -> None:
    engine = manager.engine
    if settings.expiry_sweep_interval_seconds > 0:
        background_jobs.append(asyncio.create_task(engine.run_periodic(
            "expiry_sweep", settings.expiry_sweep_interval_seconds, engine.sweep_expired
        )))
    if settings.anchor_retry_interval_seconds > 0:
        background_jobs.append(asyncio.create_task(engine.run_periodic(
            "anchor_retry", settings.anchor_retry_interval_seconds, engine.retry_pending_anchors
        )))


async def _stop_background_jobs() -> None:
    for task in background_jobs:
        task.cancel()
    await asyncio.gather(*background_jobs, return_exceptions=True)
    background_jobs.clear()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    global consent_manager

    configure_logging("DEBUG" if settings.debug_mode else settings.log_level)
    logger.info("Starting Consent Ledger", version=SERVICE_VERSION)
    warn_on_insecure_settings(settings)

    # Initialize services only if not already provided (for testing/injection)
    if consent_manager is None:
        consent_manager = ConsentManager()
    _start_background_jobs(consent_manager)
    logger.info("Consent services initialized", background_jobs=len(background_jobs))

    yield

    logger.info("Shutting down Consent Ledger")
    await _stop_background_jobs()
    await consent_manager.engine.drain()


# Create FastAPI app
app = FastAPI(
    title="Consent Ledger",
    description="GDPR consent management with hash-only proofs and ledger anchoring",
    version=SERVICE_VERSION,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are validation errors like any other"""
    errors = exc.errors()
    field = ".".join(str(part) for part in errors[0].get("loc", ())) if errors else None
    error = ValidationError(
        f"Invalid request: {errors[0].get('msg')}" if errors else "Invalid request",
        field=field,
    )
    return JSONResponse(status_code=400, content={"detail": error.to_dict()})


def _require_manager() -> ConsentManager:
    if not consent_manager:
        raise HTTPException(status_code=503, detail="Consent manager not available")
    return consent_manager


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    engine = consent_manager.engine if consent_manager else None
    return {
        "status": "healthy" if engine else "degraded",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "components": {
            "consent_manager": consent_manager is not None,
            "background_jobs": len(background_jobs),
            "pending_ledger_tasks": engine.pending_background_tasks if engine else 0,
        },
    }


# =============================================================================
# IDENTITY ENDPOINTS
# =============================================================================

@app.post("/users/register", status_code=201)
async def register_user(request: UserRegisterRequest) -> Dict[str, Any]:
    """Register a pseudonymous user identity"""
    manager = _require_manager()
    try:
        return await manager.register_user(request)
    except ConsentLedgerError as e:
        logger.warning("User registration rejected", error=e.error_code)
        raise _http_error(e)


@app.post("/controllers/register", status_code=201)
async def register_controller(request: ControllerRegisterRequest) -> Dict[str, Any]:
    """Register a data controller"""
    manager = _require_manager()
    try:
        return await manager.register_controller(request)
    except ConsentLedgerError as e:
        logger.warning("Controller registration rejected", error=e.error_code)
        raise _http_error(e)


@app.get("/controllers/{organization_id}")
async def get_controller(organization_id: str) -> Dict[str, Any]:
    manager = _require_manager()
    try:
        return await manager.get_controller(organization_id)
    except ConsentLedgerError as e:
        raise _http_error(e)


@app.put("/controllers/{organization_id}/metadata")
async def update_controller_metadata(organization_id: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
    """Replace controller metadata"""
    manager = _require_manager()
    try:
        return await manager.update_controller_metadata(organization_id, metadata)
    except ConsentLedgerError as e:
        raise _http_error(e)


# =============================================================================
# CONSENT ENDPOINTS
# =============================================================================

@app.post("/consent/grant", status_code=201)
async def grant_consent(request: ConsentGrantPayload) -> Dict[str, Any]:
    """Grant consent for a controller and purpose"""
    manager = _require_manager()
    try:
        result = await manager.grant(request)
    except ConsentLedgerError as e:
        logger.warning("Consent grant rejected", user_id=request.user_id, error=e.error_code)
        raise _http_error(e)

    logger.info("Consent granted", consent_id=result["consent_id"])
    return result


@app.get("/consent/verify/{user_id}/{controller_id}/{purpose}")
async def verify_consent(user_id: str, controller_id: str, purpose: str) -> Dict[str, Any]:
    """Verify consent; a missing or inactive consent is a normal answer"""
    manager = _require_manager()
    try:
        return await manager.verify(user_id, controller_id, purpose)
    except ConsentLedgerError as e:
        raise _http_error(e)


@app.post("/consent/revoke/{consent_id}")
async def revoke_consent(consent_id: str, request: ConsentRevokePayload) -> Dict[str, Any]:
    """Revoke consent with the owner's signature"""
    manager = _require_manager()
    try:
        result = await manager.revoke(consent_id, request)
    except ConsentLedgerError as e:
        logger.warning("Consent revocation rejected", consent_id=consent_id, error=e.error_code)
        raise _http_error(e)

    logger.info("Consent revoked", consent_id=consent_id)
    return result


@app.get("/consent/user/{user_id}")
async def get_user_consents(user_id: str) -> Dict[str, Any]:
    """Active consents of a user"""
    manager = _require_manager()
    try:
        return await manager.get_active_consents(user_id)
    except ConsentLedgerError as e:
        raise _http_error(e)


@app.get("/consent/user/{user_id}/export")
async def export_user_consents(user_id: str) -> Dict[str, Any]:
    """Full consent history of a user for access requests"""
    manager = _require_manager()
    try:
        return await manager.export_history(user_id)
    except ConsentLedgerError as e:
        raise _http_error(e)


# =============================================================================
# COMPLIANCE ENDPOINTS
# =============================================================================

@app.get("/compliance/{controller_hash}")
async def get_compliance_metrics(controller_hash: str) -> Dict[str, Any]:
    manager = _require_manager()
    try:
        return await manager.compliance(controller_hash)
    except ConsentLedgerError as e:
        raise _http_error(e)


@app.get("/audit/{consent_id}")
async def get_audit_history(consent_id: str, limit: int = 100) -> Dict[str, Any]:
    """Audit entries of a consent, newest first"""
    manager = _require_manager()
    try:
        return await manager.audit_history(consent_id, limit)
    except ConsentLedgerError as e:
        raise _http_error(e)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Consent Ledger",
        "version": SERVICE_VERSION,
        "status": "operational",
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
