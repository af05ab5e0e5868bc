"""
Vault Models — Entities exchanged between vault components.

``CredentialRecord.password`` always holds an EncodedBlob; the only model that
ever carries plaintext is ``DecryptedCredential``, which is returned to the
caller and never persisted, logged or audited.
"""
from enum import Enum
from typing import Any, Optional, Union
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from .context import RequestContext


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class CredentialType(str, Enum):
    GENERAL = "general"
    EMAIL = "email"


class Actor(BaseModel):
    """Authenticated identity performing an operation."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str = ""
    role: Role = Role.USER
    name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


class Client(BaseModel):
    """Tenant (customer) that credentials belong to."""

    id: str
    client_name: str
    contact_person: Optional[str] = None


class StaffMember(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    role: Role = Role.USER
    created_at: datetime = Field(default_factory=utcnow)


class CredentialRecord(BaseModel):
    """One stored secret with its ownership and metadata.

    ``credential_type`` is None only for legacy rows written before the type
    was persisted; see ``records.resolve_credential_type``.
    """

    id: str
    client_id: str
    client_name: Optional[str] = None
    service_name: str
    username: str
    password: str = Field(repr=False)
    url: str = ""
    notes: str = ""
    credential_type: Optional[CredentialType] = None
    created_by_id: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_accessed_at: Optional[datetime] = None

    def metadata(self) -> dict[str, Any]:
        """Non-secret description of the record, safe for the audit trail."""
        return {
            "credentialId": self.id,
            "serviceName": self.service_name,
            "clientId": self.client_id,
            "clientName": self.client_name,
            "credentialType": (
                self.credential_type.value if self.credential_type else None
            ),
        }


class DecryptedCredential(BaseModel):
    id: str
    service_name: str
    username: str
    password: str = Field(repr=False)
    credential_type: CredentialType
    url: str = ""
    client_id: Optional[str] = None
    outgoing_password: Optional[str] = Field(default=None, repr=False)


class EmailConfig(BaseModel):
    """Mail-server settings stored as JSON in a credential's notes.

    ``outgoing_password`` is an EncodedBlob. The incoming password is the
    record's primary ``password`` and never appears here.
    """

    model_config = ConfigDict(populate_by_name=True)

    incoming_server: str = Field(default="", alias="incomingServer")
    incoming_port: Union[int, str] = Field(default="", alias="incomingPort")
    incoming_username: str = Field(default="", alias="incomingUsername")
    incoming_ssl: bool = Field(default=False, alias="incomingSSL")
    outgoing_server: str = Field(default="", alias="outgoingServer")
    outgoing_port: Union[int, str] = Field(default="", alias="outgoingPort")
    outgoing_username: str = Field(default="", alias="outgoingUsername")
    outgoing_password: str = Field(
        default="", alias="outgoingPassword", repr=False,
    )
    outgoing_ssl: bool = Field(default=False, alias="outgoingSSL")
    additional_notes: str = Field(default="", alias="additionalNotes")


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class AuditAction(str, Enum):
    # Authentication
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    LOGIN_FAILED = "LOGIN_FAILED"
    # User management
    CREATE_USER = "CREATE_USER"
    UPDATE_USER = "UPDATE_USER"
    DELETE_USER = "DELETE_USER"
    UPDATE_USER_ROLE = "UPDATE_USER_ROLE"
    # Client management
    CREATE_CLIENT = "CREATE_CLIENT"
    UPDATE_CLIENT = "UPDATE_CLIENT"
    DELETE_CLIENT = "DELETE_CLIENT"
    VIEW_CLIENT = "VIEW_CLIENT"
    # Credential management
    CREATE_CREDENTIAL = "CREATE_CREDENTIAL"
    UPDATE_CREDENTIAL = "UPDATE_CREDENTIAL"
    DELETE_CREDENTIAL = "DELETE_CREDENTIAL"
    VIEW_CREDENTIAL = "VIEW_CREDENTIAL"
    DECRYPT_CREDENTIAL = "DECRYPT_CREDENTIAL"
    # Export
    EXPORT_PDF = "EXPORT_PDF"
    EXPORT_DATA = "EXPORT_DATA"
    # System
    ROTATE_KEY = "ROTATE_KEY"
    SYSTEM_ERROR = "SYSTEM_ERROR"
    SECURITY_VIOLATION = "SECURITY_VIOLATION"


class AuditResource(str, Enum):
    USER = "USER"
    CLIENT = "CLIENT"
    CREDENTIAL = "CREDENTIAL"
    SYSTEM = "SYSTEM"
    AUTH = "AUTH"


class AuditEntry(BaseModel):
    """Immutable record of one security-relevant action."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    user_email: str = ""
    user_role: str = ""
    action: AuditAction
    resource: AuditResource
    resource_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    success: bool = True
    error_message: Optional[str] = None

    @classmethod
    def for_actor(
        cls,
        actor: Actor,
        action: AuditAction,
        resource: AuditResource,
        *,
        resource_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> "AuditEntry":
        return cls(
            user_id=actor.id,
            user_email=actor.email,
            user_role=actor.role.value,
            action=action,
            resource=resource,
            resource_id=resource_id,
            details=details or {},
            ip_address=context.ip_address if context else None,
            user_agent=context.user_agent if context else None,
            success=success,
            error_message=error_message,
        )

    def to_external(self) -> dict[str, Any]:
        """Shape exposed to the admin audit interface."""
        external: dict[str, Any] = {
            "userId": self.user_id,
            "userEmail": self.user_email,
            "userRole": self.user_role,
            "action": self.action.value,
            "resource": self.resource.value,
            "details": dict(self.details),
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
        }
        optional = {
            "resourceId": self.resource_id,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "errorMessage": self.error_message,
        }
        external.update({k: v for k, v in optional.items() if v is not None})
        return external
