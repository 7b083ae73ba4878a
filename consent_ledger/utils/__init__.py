"""
Utility functions for the Consent Ledger
ID generation, time helpers and validation
"""

from .ids import generate_audit_id
from .clock import utc_now, ensure_utc, to_epoch_ms, from_epoch_ms
from .validators import (
    validate_required_text,
    validate_digest,
    validate_data_categories,
    sanitize_audit_message,
)

__all__ = [
    # ID generation
    "generate_audit_id",
    # Time
    "utc_now",
    "ensure_utc",
    "to_epoch_ms",
    "from_epoch_ms",
    # Validators
    "validate_required_text",
    "validate_digest",
    "validate_data_categories",
    "sanitize_audit_message",
]
