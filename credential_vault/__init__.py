"""Credential Vault — Encrypted client credentials with access control and audit.

Security Note (Threat Model):
    Secrets are encrypted at rest with a single process-wide key derived at
    startup. Decrypted values exist in process memory while a request is
    served; anyone holding the key material can read every stored secret.
    Protecting the key (environment, secret manager) is the operator's job.
"""

from .version import __version__
from .audit import AuditFilter, AuditRecorder, MemoryAuditSink, PostgresAuditSink
from .config import VaultConfig, generate_encryption_key
from .context import RequestContext
from .crypto import Cipher, KeyProvider, generate_password, password_strength
from .exceptions import (
    VaultError,
    ValidationError,
    InvalidRangeError,
    ForbiddenError,
    NotFoundError,
    InternalError,
    DecryptionError,
    CipherError,
    EmptyInputError,
    MalformedBlobError,
    AuthenticationFailedError,
)
from .key_rotation import rotate_encryption_key
from .models import (
    Actor,
    AuditAction,
    AuditEntry,
    AuditResource,
    Client,
    CredentialRecord,
    CredentialType,
    DecryptedCredential,
    EmailConfig,
    Role,
    StaffMember,
)
from .service import AuditService, CredentialService
from .staff import StaffService
from .storage import (
    CredentialFilter,
    MemoryClientStore,
    MemoryCredentialStore,
    MemoryUserStore,
    PostgresClientStore,
    PostgresCredentialStore,
    PostgresUserStore,
)

__all__ = [
    "__version__",
    "Actor",
    "AuditAction",
    "AuditEntry",
    "AuditFilter",
    "AuditRecorder",
    "AuditResource",
    "AuditService",
    "AuthenticationFailedError",
    "Cipher",
    "CipherError",
    "Client",
    "CredentialFilter",
    "CredentialRecord",
    "CredentialService",
    "CredentialType",
    "DecryptedCredential",
    "DecryptionError",
    "EmailConfig",
    "EmptyInputError",
    "ForbiddenError",
    "InternalError",
    "InvalidRangeError",
    "KeyProvider",
    "MalformedBlobError",
    "MemoryAuditSink",
    "MemoryClientStore",
    "MemoryCredentialStore",
    "MemoryUserStore",
    "NotFoundError",
    "PostgresAuditSink",
    "PostgresClientStore",
    "PostgresCredentialStore",
    "PostgresUserStore",
    "RequestContext",
    "Role",
    "StaffMember",
    "StaffService",
    "ValidationError",
    "VaultConfig",
    "VaultError",
    "generate_encryption_key",
    "generate_password",
    "password_strength",
    "rotate_encryption_key",
]
