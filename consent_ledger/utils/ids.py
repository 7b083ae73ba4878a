"""
ID generation utilities for the Consent Ledger
Random identifiers for audit entries
"""

import uuid


def generate_audit_id() -> str:
    """Generate audit entry ID"""
    return f"audit_{uuid.uuid4()}"
