"""
Custom Exceptions for the Consent Ledger

Provides a unified exception hierarchy for consent lifecycle operations,
controller registration and the external collaborators (store, proof
oracle, ledger) the engine depends on.
"""

from typing import Optional, Dict, Any

from .constants import ErrorCodes


class ConsentLedgerError(Exception):
    """
    Base exception for all consent ledger errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        error_code: str = ErrorCodes.UNKNOWN_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses"""
        result: Dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# VALIDATION ERRORS
# =============================================================================

class ValidationError(ConsentLedgerError):
    """Raised when caller input is missing or malformed"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, ErrorCodes.VALIDATION_ERROR, details)


# =============================================================================
# CONTROLLER ERRORS
# =============================================================================

class ControllerNotFoundError(ConsentLedgerError):
    """Raised when an organization id does not resolve to a registered controller"""

    def __init__(self, organization_id: str):
        super().__init__(
            message="Controller not found. Please register the organization first.",
            error_code=ErrorCodes.CONTROLLER_NOT_FOUND,
            details={"organization_id": organization_id}
        )


class DuplicateControllerError(ConsentLedgerError):
    """Raised when registering an organization id twice"""

    def __init__(self, organization_id: str):
        super().__init__(
            message=f"Controller already registered: {organization_id}",
            error_code=ErrorCodes.DUPLICATE_CONTROLLER,
            details={"organization_id": organization_id}
        )


# =============================================================================
# CONSENT ERRORS
# =============================================================================

class ConsentError(ConsentLedgerError):
    """Base exception for consent lifecycle errors"""

    def __init__(
        self,
        message: str,
        error_code: str,
        consent_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if consent_id:
            details["consent_id"] = consent_id
        super().__init__(message, error_code, details)


class DuplicateConsentError(ConsentError):
    """Raised when a GRANTED consent already exists for the same key"""

    def __init__(self, consent_id: Optional[str] = None):
        super().__init__(
            message="Active consent already exists for this purpose",
            error_code=ErrorCodes.DUPLICATE_CONSENT,
            consent_id=consent_id
        )


class NotFoundOrForbiddenError(ConsentError):
    """Raised when a consent does not exist or belongs to another user"""

    def __init__(self, consent_id: str):
        super().__init__(
            message="Consent not found or access denied",
            error_code=ErrorCodes.NOT_FOUND_OR_FORBIDDEN,
            consent_id=consent_id
        )


class InvalidSignatureError(ConsentError):
    """Raised when a revocation request is not signed by the consent owner"""

    def __init__(self, consent_id: str):
        super().__init__(
            message="Signature does not authenticate the consent owner",
            error_code=ErrorCodes.INVALID_SIGNATURE,
            consent_id=consent_id
        )


class InvalidStateTransitionError(ConsentError):
    """Raised when a transition is not allowed from the current status"""

    def __init__(self, consent_id: str, current_status: str, action: str = "revoke"):
        super().__init__(
            message=f"Cannot {action} consent with status: {current_status}",
            error_code=ErrorCodes.INVALID_STATE_TRANSITION,
            consent_id=consent_id,
            details={"current_status": current_status, "action": action}
        )
        self.current_status = current_status


# =============================================================================
# COLLABORATOR ERRORS
# =============================================================================

class AdapterFailureError(ConsentLedgerError):
    """Raised when the store, proof oracle or ledger is unavailable"""

    def __init__(
        self,
        adapter: str,
        reason: Optional[str] = None,
        operation: Optional[str] = None
    ):
        details: Dict[str, Any] = {"adapter": adapter}
        if reason:
            details["reason"] = reason
        if operation:
            details["operation"] = operation
        super().__init__(
            message=f"{adapter} unavailable",
            error_code=ErrorCodes.ADAPTER_FAILURE,
            details=details
        )
        self.adapter = adapter
