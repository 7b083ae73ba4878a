"""
Configuration management for the Consent Ledger
Storage, identity derivation, ledger anchoring and housekeeping settings
"""

from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import Field

from .constants import IdentityDefaults, LedgerDefaults

DEVELOPMENT_ORACLE_KEY = "consent-ledger-dev-oracle-key"


class LedgerConfig(BaseSettings):
    """Consent ledger configuration settings"""

    # Storage settings
    database_url: str = Field(default="sqlite:///consent_ledger.db")
    database_echo: bool = Field(default=False)

    # Identity derivation
    did_scheme: str = Field(default=IdentityDefaults.DID_SCHEME)

    # Ledger anchoring
    ledger_anchor_timeout_seconds: float = Field(
        default=LedgerDefaults.ANCHOR_TIMEOUT_SECONDS,
        description="How long grant/revoke wait for the ledger before returning without a tx hash"
    )
    anchor_retry_interval_seconds: int = Field(
        default=LedgerDefaults.ANCHOR_RETRY_INTERVAL_SECONDS,
        description="Interval of the pending anchor retry loop, 0 disables it"
    )

    # Proof oracle
    proof_oracle_key: str = Field(
        default=DEVELOPMENT_ORACLE_KEY,
        description="Key of the commitment proof oracle"
    )

    # Consent lifecycle
    default_consent_expiry_days: Optional[int] = Field(
        default=None,
        description="Expiry applied to grants without an explicit expires_at"
    )
    expiry_sweep_interval_seconds: int = Field(
        default=0,
        description="Interval of the optional expiry sweeper, 0 disables it"
    )

    # Environment-specific overrides
    debug_mode: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    model_config = {"env_prefix": "CONSENT_LEDGER_", "case_sensitive": False}

    @property
    def uses_development_oracle_key(self) -> bool:
        """True if attestations are keyed with the published default key"""
        return self.proof_oracle_key == DEVELOPMENT_ORACLE_KEY


# Global configuration instance
ledger_config = LedgerConfig()


def get_ledger_config() -> LedgerConfig:
    """Get the global ledger configuration instance"""
    return ledger_config


def update_ledger_config(**kwargs) -> LedgerConfig:
    """Update ledger configuration with new values"""
    global ledger_config
    for key, value in kwargs.items():
        if hasattr(ledger_config, key):
            setattr(ledger_config, key, value)
    return ledger_config
