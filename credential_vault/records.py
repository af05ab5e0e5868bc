"""
Credential Records — Input validation and the email-config sub-document.

General credentials hold one username/password pair. Email credentials keep
the incoming-server password as the record's primary ``password`` and embed
the outgoing-server settings (with their own encrypted password) as JSON in
``notes``.
"""
import re
import logging
from typing import Any, Optional
from collections.abc import Mapping

import orjson
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .crypto import Cipher
from .exceptions import ValidationError
from .models import CredentialRecord, CredentialType, EmailConfig

logger = logging.getLogger("credential_vault.records")

MAX_SERVICE_NAME = 100
MAX_USERNAME = 100
MAX_PASSWORD = 500  # before encryption
MAX_URL = 200

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

GENERAL_FIELDS = frozenset({
    "client_id", "service_name", "username", "password", "url", "notes",
})
EMAIL_FIELDS = frozenset({
    "client_id", "service_name", "notes",
    "incoming_server", "incoming_port", "incoming_username",
    "incoming_password", "incoming_ssl",
    "outgoing_server", "outgoing_port", "outgoing_username",
    "outgoing_password", "outgoing_ssl",
})
PASSWORD_FIELDS = frozenset({
    "password", "incoming_password", "outgoing_password",
})

_UNSAFE_CHARS = re.compile(r"[<>'\";]")


def is_email(value: str) -> bool:
    return bool(EMAIL_PATTERN.match(value))


def _check_email(value: Optional[str]) -> Optional[str]:
    if value is not None and not is_email(value):
        raise ValueError("must be a valid email address")
    return value


def _check_secret(value: Optional[str]) -> Optional[str]:
    if value is not None and not value.strip():
        raise ValueError("must not be blank")
    return value


class _InputModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class GeneralCredentialInput(_InputModel):
    client_id: str = Field(min_length=1)
    service_name: str = Field(min_length=1, max_length=MAX_SERVICE_NAME)
    username: str = Field(
        min_length=1,
        max_length=MAX_USERNAME,
        validation_alias=AliasChoices("username", "email"),
    )
    password: str = Field(min_length=1, max_length=MAX_PASSWORD, repr=False)
    url: str = Field(default="", max_length=MAX_URL)
    notes: str = ""

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        return _check_email(v)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return _check_secret(v)


class EmailCredentialInput(_InputModel):
    client_id: str = Field(min_length=1)
    service_name: str = Field(min_length=1, max_length=MAX_SERVICE_NAME)
    incoming_server: str = Field(min_length=1)
    incoming_port: int = Field(ge=1, le=65535)
    incoming_username: str = Field(min_length=1, max_length=MAX_USERNAME)
    incoming_password: str = Field(
        min_length=1, max_length=MAX_PASSWORD, repr=False,
    )
    incoming_ssl: bool = Field(default=False, alias="incomingSSL")
    outgoing_server: str = Field(min_length=1)
    outgoing_port: int = Field(ge=1, le=65535)
    outgoing_username: str = Field(min_length=1, max_length=MAX_USERNAME)
    outgoing_password: str = Field(
        min_length=1, max_length=MAX_PASSWORD, repr=False,
    )
    outgoing_ssl: bool = Field(default=False, alias="outgoingSSL")
    notes: str = ""

    @field_validator("incoming_password", "outgoing_password")
    @classmethod
    def validate_passwords(cls, v: str) -> str:
        return _check_secret(v)


class CredentialUpdate(_InputModel):
    """Partial update; unset or None fields are left unchanged."""

    client_id: Optional[str] = Field(default=None, min_length=1)
    service_name: Optional[str] = Field(
        default=None, min_length=1, max_length=MAX_SERVICE_NAME,
    )
    credential_type: Optional[CredentialType] = None
    username: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=MAX_USERNAME,
        validation_alias=AliasChoices("username", "email"),
    )
    password: Optional[str] = Field(
        default=None, max_length=MAX_PASSWORD, repr=False,
    )
    url: Optional[str] = Field(default=None, max_length=MAX_URL)
    notes: Optional[str] = None
    incoming_server: Optional[str] = Field(default=None, min_length=1)
    incoming_port: Optional[int] = Field(default=None, ge=1, le=65535)
    incoming_username: Optional[str] = Field(
        default=None, min_length=1, max_length=MAX_USERNAME,
    )
    incoming_password: Optional[str] = Field(
        default=None, max_length=MAX_PASSWORD, repr=False,
    )
    incoming_ssl: Optional[bool] = Field(default=None, alias="incomingSSL")
    outgoing_server: Optional[str] = Field(default=None, min_length=1)
    outgoing_port: Optional[int] = Field(default=None, ge=1, le=65535)
    outgoing_username: Optional[str] = Field(
        default=None, min_length=1, max_length=MAX_USERNAME,
    )
    outgoing_password: Optional[str] = Field(
        default=None, max_length=MAX_PASSWORD, repr=False,
    )
    outgoing_ssl: Optional[bool] = Field(default=None, alias="outgoingSSL")


def _error_messages(err: PydanticValidationError) -> list[str]:
    # Never echo the rejected input: it may be a password.
    messages = []
    for error in err.errors():
        location = ".".join(str(part) for part in error["loc"]) or "input"
        messages.append(f"{location}: {error['msg']}")
    return messages


def _validate(model: type[BaseModel], fields: Mapping[str, Any], kind: str):
    try:
        return model.model_validate(dict(fields))
    except PydanticValidationError as err:
        raise ValidationError(
            f"Invalid {kind} credential", errors=_error_messages(err),
        ) from None


def validate_general(fields: Mapping[str, Any]) -> GeneralCredentialInput:
    """Validate the fields of a general credential.

    Raises:
        ValidationError: Listing every rejected field.
    """
    return _validate(GeneralCredentialInput, fields, "general")


def validate_email(fields: Mapping[str, Any]) -> EmailCredentialInput:
    """Validate the eight server fields of an email credential.

    Raises:
        ValidationError: Listing every rejected field.
    """
    return _validate(EmailCredentialInput, fields, "email")


def validate_update(
    credential_type: CredentialType,
    fields: Mapping[str, Any],
) -> dict[str, Any]:
    """Validate a partial update against the record's type.

    Blank passwords mean "keep the stored one" and are dropped.

    Returns:
        Mapping of field name to new value, only for supplied fields.
    """
    update = _validate(CredentialUpdate, fields, "updated")
    changes = update.model_dump(exclude_unset=True, exclude_none=True)

    for name in PASSWORD_FIELDS:
        if name in changes and not changes[name].strip():
            del changes[name]

    requested_type = changes.pop("credential_type", None)
    if requested_type is not None and requested_type != credential_type:
        raise ValidationError("Credential type cannot be changed")

    allowed = (
        GENERAL_FIELDS if credential_type is CredentialType.GENERAL
        else EMAIL_FIELDS
    )
    invalid = sorted(set(changes) - allowed)
    if invalid:
        raise ValidationError(
            f"Fields do not apply to {credential_type.value} credentials",
            errors=invalid,
        )
    if "username" in changes and not is_email(changes["username"]):
        raise ValidationError(
            "Invalid updated credential",
            errors=["username: must be a valid email address"],
        )
    return changes


# ---------------------------------------------------------------------------
# Email-config sub-document
# ---------------------------------------------------------------------------

def dump_email_config(config: EmailConfig) -> str:
    return orjson.dumps(config.model_dump(by_alias=True)).decode("utf-8")


def serialize_email_config(fields: EmailCredentialInput, cipher: Cipher) -> str:
    """Build the notes JSON for an email credential.

    The outgoing password is encrypted before it is embedded; the incoming
    password is not part of the document.
    """
    config = EmailConfig(
        incoming_server=fields.incoming_server,
        incoming_port=fields.incoming_port,
        incoming_username=fields.incoming_username,
        incoming_ssl=fields.incoming_ssl,
        outgoing_server=fields.outgoing_server,
        outgoing_port=fields.outgoing_port,
        outgoing_username=fields.outgoing_username,
        outgoing_password=cipher.encrypt(fields.outgoing_password),
        outgoing_ssl=fields.outgoing_ssl,
        additional_notes=fields.notes,
    )
    return dump_email_config(config)


def deserialize_email_config(notes: Optional[str]) -> Optional[EmailConfig]:
    """Parse notes as an email config.

    Returns:
        The config, or None when notes are plain text (not JSON, not an
        object, or without an ``incomingServer`` key).
    """
    if not notes:
        return None
    try:
        parsed = orjson.loads(notes)
    except orjson.JSONDecodeError:
        return None
    if not isinstance(parsed, dict) or "incomingServer" not in parsed:
        return None
    try:
        return EmailConfig.model_validate(parsed)
    except PydanticValidationError:
        logger.debug("Notes look like an email config but do not validate")
        return None


def resolve_credential_type(record: CredentialRecord) -> CredentialType:
    """Return the record's type.

    A persisted ``credential_type`` is always trusted; the notes are only
    sniffed for legacy rows stored without one.
    """
    if record.credential_type is not None:
        return record.credential_type
    if deserialize_email_config(record.notes) is not None:
        return CredentialType.EMAIL
    return CredentialType.GENERAL


# ---------------------------------------------------------------------------
# Sanitizing
# ---------------------------------------------------------------------------

def sanitize_input(value: Any) -> Any:
    """Strip markup, quotes and semicolons from strings, recursively."""
    if isinstance(value, str):
        return _UNSAFE_CHARS.sub("", value).strip()
    if isinstance(value, (list, tuple)):
        return [sanitize_input(item) for item in value]
    if isinstance(value, Mapping):
        return {key: sanitize_input(item) for key, item in value.items()}
    return value


def sanitize_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Sanitize every field except passwords, which are kept verbatim."""
    return {
        key: value if _is_password_key(key) else sanitize_input(value)
        for key, value in fields.items()
    }


def _is_password_key(key: str) -> bool:
    return "password" in key.lower()
