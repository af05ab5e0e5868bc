"""
Vault Configuration — Encryption key material and validated settings.

Reads settings from environment variables:
    VAULT_ENCRYPTION_KEY = <hex-encoded 32-byte key>
    VAULT_ENCRYPTION_PASSPHRASE = <passphrase, stretched with scrypt>
    VAULT_ENVIRONMENT = development | test | staging | production

Security Note:
    Never log key material. Only log where the key came from.
"""
import os
import secrets
import logging
from typing import Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("credential_vault.config")

KEY_LENGTH = 32  # AES-256

# Hard ceiling for any paginated query (audit trail and credential listing).
MAX_PAGE_LIMIT = 1000
DEFAULT_PAGE_LIMIT = 100

ENVIRONMENTS = ("development", "test", "staging", "production")
DEVELOPMENT_ENVIRONMENTS = frozenset({"development", "test"})


def load_key_material() -> Optional[bytes]:
    """Load the raw encryption key from VAULT_ENCRYPTION_KEY.

    The value must be hex-encoded and decode to exactly 32 bytes.

    Returns:
        Raw 32-byte key, or None when the variable is absent or unusable.
    """
    raw = os.environ.get("VAULT_ENCRYPTION_KEY")
    if not raw:
        return None
    try:
        key_bytes = bytes.fromhex(raw.strip())
    except ValueError:
        logger.warning(
            "VAULT_ENCRYPTION_KEY is not valid hex; ignoring it"
        )
        return None
    if len(key_bytes) != KEY_LENGTH:
        logger.warning(
            "VAULT_ENCRYPTION_KEY must decode to exactly %d bytes, got %d; "
            "ignoring it",
            KEY_LENGTH, len(key_bytes),
        )
        return None
    return key_bytes


def generate_encryption_key() -> str:
    """Generate a random 32-byte encryption key and return it as hex.

    This is a utility for operators to generate new keys.

    Returns:
        Hex-encoded 32-byte key string (64 characters).
    """
    return secrets.token_hex(KEY_LENGTH)


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    encryption_key: Optional[bytes] = Field(default=None, repr=False)
    passphrase: Optional[str] = Field(default=None, repr=False)
    environment: str = Field(default="development")

    @field_validator("encryption_key")
    @classmethod
    def validate_key_length(cls, v: Optional[bytes]) -> Optional[bytes]:
        """Ensure an explicit key is usable for AES-256."""
        if v is not None and len(v) != KEY_LENGTH:
            raise ValueError(
                f"encryption_key must be exactly {KEY_LENGTH} bytes, "
                f"got {len(v)}"
            )
        return v

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment name is known."""
        v = v.strip().lower()
        if v not in ENVIRONMENTS:
            raise ValueError(f"Unsupported environment: {v}")
        return v

    @property
    def is_development(self) -> bool:
        return self.environment in DEVELOPMENT_ENVIRONMENTS

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Returns:
            Populated VaultConfig instance.
        """
        return cls(
            encryption_key=load_key_material(),
            passphrase=os.environ.get("VAULT_ENCRYPTION_PASSPHRASE") or None,
            environment=os.environ.get("VAULT_ENVIRONMENT", "development"),
        )
