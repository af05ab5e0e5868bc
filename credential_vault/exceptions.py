"""
Vault Exceptions — error taxonomy shared by every vault component.

Each error carries the HTTP-equivalent ``status_code`` an outer transport
should use. Cipher errors are internal: the credential service collapses them
into ``DecryptionError`` before they reach a caller.
"""
from typing import Any, Optional


class VaultError(Exception):
    """Base exception for credential vault errors."""

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        errors: Optional[list[str]] = None,
    ):
        self.message = message or self.default_message
        self.errors = errors or []
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Return the error in the shape returned to API callers."""
        response: dict[str, Any] = {"error": self.message}
        if self.errors:
            response["details"] = list(self.errors)
        return response


class ValidationError(VaultError):
    """Input has the wrong shape or exceeds a length ceiling."""

    status_code = 400
    default_message = "Invalid input"


class InvalidRangeError(ValidationError):
    """A pagination window (limit/offset) is out of bounds."""

    default_message = "Limit cannot exceed 1000"


class ForbiddenError(VaultError):
    status_code = 403
    default_message = "Forbidden - You can only act on resources you created"


class NotFoundError(VaultError):
    status_code = 404
    default_message = "Not found"


class InternalError(VaultError):
    """Storage or infrastructure fault."""


class DecryptionError(InternalError):
    """Generic decryption failure exposed to callers."""

    default_message = "Failed to decrypt credential"


# ---------------------------------------------------------------------------
# Cipher errors
# ---------------------------------------------------------------------------

class CipherError(VaultError):
    """Base class for failures inside the cipher."""


class EmptyInputError(CipherError):
    status_code = 400
    default_message = "Cannot encrypt empty text"


class MalformedBlobError(CipherError):
    default_message = "Invalid encrypted data format - expected IV:tag:encrypted"


class AuthenticationFailedError(CipherError):
    default_message = "Authentication tag verification failed"
