"""
Input Validators for the Consent Ledger

Provides validation utilities for caller-supplied identifiers, purposes,
data categories and audit payloads. All failures raise ValidationError
before any state is touched.
"""

import re
import logging
from typing import Optional, Any, List

from ..constants import IdentityDefaults
from ..exceptions import ValidationError

logger = logging.getLogger(__name__)

# =============================================================================
# REGEX PATTERNS
# =============================================================================

DIGEST_PATTERN = re.compile(r"^[0-9a-f]{%d}$" % IdentityDefaults.DIGEST_HEX_LENGTH)
CATEGORY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 _.:/-]{0,63}$")

MAX_TEXT_LENGTH = 4096
MAX_DATA_CATEGORIES = 64

# =============================================================================
# VALIDATION FUNCTIONS
# =============================================================================

def validate_required_text(
    value: Any,
    field_name: str,
    max_length: int = MAX_TEXT_LENGTH
) -> str:
    """
    Validate a required free-text field.

    Args:
        value: Value to validate
        field_name: Field name for error messages
        max_length: Maximum allowed length

    Returns:
        The value, unchanged

    Raises:
        ValidationError: If the value is missing, blank or too long
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{field_name} is required", field=field_name)

    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string", field=field_name)

    if len(value) > max_length:
        raise ValidationError(f"{field_name} exceeds maximum length", field=field_name)

    return value


def validate_user_id(value: Any, field_name: str = "user_id") -> str:
    """Validate a pseudonymous user id; it must fit the stored column width"""
    return validate_required_text(value, field_name, max_length=IdentityDefaults.MAX_USER_ID_LENGTH)


def validate_digest(
    value: Any,
    field_name: str,
    required: bool = True
) -> Optional[str]:
    """
    Validate a 64 character lowercase hex digest (user ids, consent ids, hashes).

    Raises:
        ValidationError: If validation fails
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field_name} is required", field=field_name)
        return None

    if not isinstance(value, str) or not DIGEST_PATTERN.match(value):
        raise ValidationError(
            f"{field_name} must be a {IdentityDefaults.DIGEST_HEX_LENGTH} character hex digest",
            field=field_name
        )

    return value


def validate_data_categories(
    categories: Any,
    field_name: str = "data_categories"
) -> List[str]:
    """
    Validate a list of data categories, dropping duplicates in order.

    Raises:
        ValidationError: If validation fails
    """
    if categories is None:
        return []

    if not isinstance(categories, list):
        raise ValidationError(f"{field_name} must be a list", field=field_name)

    if len(categories) > MAX_DATA_CATEGORIES:
        raise ValidationError(f"{field_name} has too many entries", field=field_name)

    validated: List[str] = []
    for category in categories:
        if not isinstance(category, str) or not CATEGORY_PATTERN.match(category):
            logger.debug("Rejected data category %r", category)
            raise ValidationError(f"invalid data category: {category!r}", field=field_name)
        if category not in validated:
            validated.append(category)

    return validated


def sanitize_audit_message(message: str, max_length: int = 1000) -> str:
    """
    Sanitize a message for audit logging.

    Args:
        message: Message to sanitize
        max_length: Maximum allowed length

    Returns:
        Sanitized message safe for logging
    """
    if not message:
        return ""

    # Truncate if too long
    if len(message) > max_length:
        message = message[:max_length] + "...[truncated]"

    # Remove potential log injection characters
    message = message.replace("\n", " ").replace("\r", " ")

    # Remove potential control characters
    message = ''.join(c for c in message if c.isprintable() or c == ' ')

    return message
