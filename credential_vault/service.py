"""
Credential Service — Orchestration of validation, authorization, encryption,
storage and auditing for every credential lifecycle transition.

Public API:
- ``create(actor, fields)`` — validate, encrypt and persist a credential
- ``read(actor, credential_id)`` — fetch a credential, password still encoded
- ``decrypt(actor, credential_id)`` — reveal the plaintext password(s)
- ``update(actor, credential_id, fields)`` — partial update
- ``delete(actor, credential_id)`` — permanent removal
- ``list(actor, filter)`` — ownership-filtered listing
- ``export(actor, filter)`` — decrypted dump of the actor's visible records

Security Note:
    Plaintext only ever leaves this module inside ``DecryptedCredential``.
    Never log or audit plaintext or blobs; only ids, names and counts.
"""
import uuid
import logging
from typing import Any, Optional, Union
from contextlib import contextmanager
from collections.abc import Iterator, Mapping

from pydantic import ValidationError as PydanticValidationError

from .audit import AuditFilter, AuditRecorder
from .authorizer import (
    can_decrypt,
    can_export,
    can_mutate,
    can_read,
    can_view_audit,
)
from .config import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT
from .context import RequestContext
from .crypto import Cipher
from .exceptions import (
    CipherError,
    DecryptionError,
    ForbiddenError,
    InternalError,
    InvalidRangeError,
    NotFoundError,
    ValidationError,
    VaultError,
)
from .models import (
    Actor,
    AuditAction,
    AuditEntry,
    AuditResource,
    CredentialRecord,
    CredentialType,
    DecryptedCredential,
    EmailConfig,
    utcnow,
)
from .records import (
    deserialize_email_config,
    dump_email_config,
    resolve_credential_type,
    sanitize_fields,
    serialize_email_config,
    validate_email,
    validate_general,
    validate_update,
)
from .storage import ClientStore, CredentialFilter, CredentialStore

logger = logging.getLogger("credential_vault.service")

FilterInput = Union[CredentialFilter, Mapping[str, Any], None]


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Convert storage faults into ``InternalError``.

    Vault errors raised inside the block pass through unchanged.
    """
    try:
        yield
    except VaultError:
        raise
    except Exception as err:
        logger.error("Storage failure during %s: %s", operation, err)
        raise InternalError() from err


def check_page(limit: int, offset: int) -> None:
    """Reject pagination windows outside 1..1000 / offset >= 0."""
    if limit > MAX_PAGE_LIMIT:
        raise InvalidRangeError(f"Limit cannot exceed {MAX_PAGE_LIMIT}")
    if limit < 1:
        raise InvalidRangeError("Limit must be at least 1")
    if offset < 0:
        raise InvalidRangeError("Offset cannot be negative")


def _as_filter(filter: FilterInput) -> CredentialFilter:
    if filter is None:
        return CredentialFilter()
    if isinstance(filter, CredentialFilter):
        return filter
    try:
        return CredentialFilter.model_validate(dict(filter))
    except PydanticValidationError as err:
        raise ValidationError(
            "Invalid credential filter",
            errors=[e["msg"] for e in err.errors()],
        ) from None


class CredentialService:
    """Credential lifecycle over injected cipher, stores and audit recorder."""

    def __init__(
        self,
        cipher: Cipher,
        credentials: CredentialStore,
        clients: ClientStore,
        recorder: AuditRecorder,
    ):
        self._cipher = cipher
        self._credentials = credentials
        self._clients = clients
        self._recorder = recorder

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _audit(
        self,
        actor: Actor,
        action: AuditAction,
        *,
        resource_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> None:
        entry = AuditEntry.for_actor(
            actor,
            action,
            AuditResource.CREDENTIAL,
            resource_id=resource_id,
            details=details,
            success=success,
            error_message=error_message,
            context=context,
        )
        # The AuditResult is dropped on purpose: a failed audit append must
        # never change the outcome of the operation it describes.
        await self._recorder.record(entry)

    async def _fetch(self, credential_id: str) -> CredentialRecord:
        with storage_errors("fetch"):
            record = await self._credentials.get(credential_id)
        if record is None:
            raise NotFoundError("Credential not found")
        return record

    async def _deny(
        self,
        actor: Actor,
        action: AuditAction,
        record: CredentialRecord,
        message: str,
        context: Optional[RequestContext],
    ) -> ForbiddenError:
        logger.warning(
            "Denied %s on credential %s for user %s",
            action.value, record.id, actor.id,
        )
        await self._audit(
            actor,
            action,
            resource_id=record.id,
            details={"serviceName": record.service_name, "reason": "not owner"},
            success=False,
            error_message="Forbidden",
            context=context,
        )
        return ForbiddenError(message)

    async def _resolve_client_name(self, client_id: str) -> str:
        with storage_errors("client lookup"):
            client = await self._clients.get(client_id)
        if client is None:
            raise NotFoundError("Client not found")
        return client.client_name

    def _visible(self, actor: Actor, filter: FilterInput) -> CredentialFilter:
        flt = _as_filter(filter)
        if not actor.is_admin:
            # Ownership filtering is mandatory for non-admins.
            flt = flt.model_copy(update={"created_by_id": actor.id})
        return flt

    def _reveal(self, record: CredentialRecord) -> DecryptedCredential:
        """Decrypt a record. Raises ``CipherError`` on failure."""
        credential_type = resolve_credential_type(record)
        outgoing = None
        if credential_type is CredentialType.EMAIL:
            config = deserialize_email_config(record.notes)
            if config is not None and config.outgoing_password:
                outgoing = self._cipher.decrypt(config.outgoing_password)
        return DecryptedCredential(
            id=record.id,
            service_name=record.service_name,
            username=record.username,
            password=self._cipher.decrypt(record.password),
            credential_type=credential_type,
            url=record.url,
            client_id=record.client_id,
            outgoing_password=outgoing,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create(
        self,
        actor: Actor,
        fields: Mapping[str, Any],
        context: Optional[RequestContext] = None,
    ) -> CredentialRecord:
        """Validate, encrypt and persist a new credential.

        Args:
            actor: Creator; becomes the record's owner.
            fields: General or email credential fields; ``credentialType``
                selects which (default ``general``).

        Returns:
            The stored record, password still encoded.

        Raises:
            ValidationError: If the input is rejected.
            NotFoundError: If the client does not exist.
            InternalError: If storage fails.
        """
        fields = sanitize_fields(fields)
        raw_type = (
            fields.get("credentialType")
            or fields.get("credential_type")
            or CredentialType.GENERAL.value
        )
        try:
            credential_type = CredentialType(raw_type)
            if credential_type is CredentialType.GENERAL:
                payload = validate_general(fields)
            else:
                payload = validate_email(fields)
        except (ValueError, ValidationError) as err:
            error = (
                err if isinstance(err, ValidationError)
                else ValidationError(f"Unknown credential type: {raw_type}")
            )
            await self._audit(
                actor,
                AuditAction.CREATE_CREDENTIAL,
                details={"error": "Invalid input", "credentialType": str(raw_type)},
                success=False,
                error_message=error.message,
                context=context,
            )
            raise error from None

        client_name = await self._resolve_client_name(payload.client_id)
        now = utcnow()
        if credential_type is CredentialType.GENERAL:
            record = CredentialRecord(
                id=uuid.uuid4().hex,
                client_id=payload.client_id,
                client_name=client_name,
                service_name=payload.service_name,
                username=payload.username,
                password=self._cipher.encrypt(payload.password),
                url=payload.url,
                notes=payload.notes,
                credential_type=credential_type,
                created_by_id=actor.id,
                created_at=now,
                updated_at=now,
            )
        else:
            record = CredentialRecord(
                id=uuid.uuid4().hex,
                client_id=payload.client_id,
                client_name=client_name,
                service_name=payload.service_name,
                username=payload.incoming_username,
                password=self._cipher.encrypt(payload.incoming_password),
                url="",
                notes=serialize_email_config(payload, self._cipher),
                credential_type=credential_type,
                created_by_id=actor.id,
                created_at=now,
                updated_at=now,
            )

        with storage_errors("create"):
            record = await self._credentials.insert(record)

        await self._audit(
            actor,
            AuditAction.CREATE_CREDENTIAL,
            resource_id=record.id,
            details=record.metadata(),
            context=context,
        )
        logger.info(
            "Credential created: id=%s type=%s user=%s",
            record.id, credential_type.value, actor.id,
        )
        return record

    async def read(
        self,
        actor: Actor,
        credential_id: str,
        context: Optional[RequestContext] = None,
    ) -> CredentialRecord:
        """Return a credential with its password still encoded."""
        record = await self._fetch(credential_id)
        if not can_read(actor, record.created_by_id):
            raise await self._deny(
                actor,
                AuditAction.VIEW_CREDENTIAL,
                record,
                "Forbidden - You can only access credentials you created",
                context,
            )
        await self._audit(
            actor,
            AuditAction.VIEW_CREDENTIAL,
            resource_id=record.id,
            details={
                "serviceName": record.service_name,
                "clientName": record.client_name,
            },
            context=context,
        )
        return record

    async def decrypt(
        self,
        actor: Actor,
        credential_id: str,
        context: Optional[RequestContext] = None,
    ) -> DecryptedCredential:
        """Reveal a credential's password(s) to its owner or an admin.

        Raises:
            NotFoundError: If the credential does not exist.
            ForbiddenError: If the actor is neither owner nor admin.
            DecryptionError: If the stored blob cannot be decrypted; the
                underlying cipher failure is not exposed.
        """
        record = await self._fetch(credential_id)
        if not can_decrypt(actor, record.created_by_id):
            raise await self._deny(
                actor,
                AuditAction.DECRYPT_CREDENTIAL,
                record,
                "Forbidden - You can only decrypt credentials you created",
                context,
            )
        try:
            revealed = self._reveal(record)
        except CipherError as err:
            logger.error(
                "Decryption failed for credential %s: %s",
                record.id, type(err).__name__,
            )
            await self._audit(
                actor,
                AuditAction.DECRYPT_CREDENTIAL,
                resource_id=record.id,
                details={"serviceName": record.service_name},
                success=False,
                error_message="Decryption failed",
                context=context,
            )
            raise DecryptionError() from None

        with storage_errors("decrypt"):
            await self._credentials.touch(record.id, utcnow())

        await self._audit(
            actor,
            AuditAction.DECRYPT_CREDENTIAL,
            resource_id=record.id,
            details={
                "serviceName": record.service_name,
                "clientName": record.client_name,
                "decryptedBy": "admin" if actor.is_admin else "owner",
            },
            context=context,
        )
        return revealed

    async def update(
        self,
        actor: Actor,
        credential_id: str,
        fields: Mapping[str, Any],
        context: Optional[RequestContext] = None,
    ) -> CredentialRecord:
        """Apply a partial update.

        Passwords are re-encrypted only when a new plaintext is supplied;
        every other stored blob is kept as it is.
        """
        record = await self._fetch(credential_id)
        if not can_mutate(actor, record.created_by_id):
            raise await self._deny(
                actor,
                AuditAction.UPDATE_CREDENTIAL,
                record,
                "Forbidden - You can only edit credentials you created",
                context,
            )

        credential_type = resolve_credential_type(record)
        try:
            changes = validate_update(credential_type, sanitize_fields(fields))
        except ValidationError as err:
            await self._audit(
                actor,
                AuditAction.UPDATE_CREDENTIAL,
                resource_id=record.id,
                details={"error": "Invalid input"},
                success=False,
                error_message=err.message,
                context=context,
            )
            raise

        updated = record.model_copy(deep=True)
        updated.credential_type = credential_type
        new_client = changes.get("client_id")
        if new_client is not None and new_client != record.client_id:
            updated.client_id = new_client
            updated.client_name = await self._resolve_client_name(new_client)
        if "service_name" in changes:
            updated.service_name = changes["service_name"]

        if credential_type is CredentialType.GENERAL:
            self._apply_general(updated, changes)
        else:
            self._apply_email(updated, changes)
        updated.updated_at = utcnow()

        with storage_errors("update"):
            stored = await self._credentials.update(updated)
        if stored is None:
            raise NotFoundError("Credential not found")

        await self._audit(
            actor,
            AuditAction.UPDATE_CREDENTIAL,
            resource_id=record.id,
            details={
                "serviceName": stored.service_name,
                "clientId": stored.client_id,
                "changedFields": sorted(changes),
            },
            context=context,
        )
        logger.info(
            "Credential updated: id=%s fields=%s user=%s",
            record.id, sorted(changes), actor.id,
        )
        return stored

    def _apply_general(
        self, record: CredentialRecord, changes: dict[str, Any],
    ) -> None:
        for name in ("username", "url", "notes"):
            if name in changes:
                setattr(record, name, changes[name])
        if "password" in changes:
            record.password = self._cipher.encrypt(changes["password"])

    def _apply_email(
        self, record: CredentialRecord, changes: dict[str, Any],
    ) -> None:
        config = deserialize_email_config(record.notes) or EmailConfig()
        plain = (
            "incoming_server", "incoming_port", "incoming_username",
            "incoming_ssl", "outgoing_server", "outgoing_port",
            "outgoing_username", "outgoing_ssl",
        )
        for name in plain:
            if name in changes:
                setattr(config, name, changes[name])
        if "notes" in changes:
            config.additional_notes = changes["notes"]
        if "outgoing_password" in changes:
            config.outgoing_password = self._cipher.encrypt(
                changes["outgoing_password"]
            )
        if "incoming_username" in changes:
            record.username = changes["incoming_username"]
        if "incoming_password" in changes:
            record.password = self._cipher.encrypt(changes["incoming_password"])
        record.url = ""
        record.notes = dump_email_config(config)

    async def delete(
        self,
        actor: Actor,
        credential_id: str,
        context: Optional[RequestContext] = None,
    ) -> None:
        """Permanently remove a credential.

        The audit entry is written before removal, while the record's
        metadata still exists. Deleting twice raises ``NotFoundError``.
        """
        record = await self._fetch(credential_id)
        if not can_mutate(actor, record.created_by_id):
            raise await self._deny(
                actor,
                AuditAction.DELETE_CREDENTIAL,
                record,
                "Forbidden - You can only delete credentials you created",
                context,
            )
        await self._audit(
            actor,
            AuditAction.DELETE_CREDENTIAL,
            resource_id=record.id,
            details=record.metadata(),
            context=context,
        )
        with storage_errors("delete"):
            removed = await self._credentials.delete(record.id)
        if not removed:
            raise NotFoundError("Credential not found")
        logger.info("Credential deleted: id=%s user=%s", record.id, actor.id)

    async def export(
        self,
        actor: Actor,
        filter: FilterInput = None,
        context: Optional[RequestContext] = None,
    ) -> list[DecryptedCredential]:
        """Decrypt every credential visible to the actor.

        Records that cannot be decrypted are skipped and counted in the
        audit entry.
        """
        # Every current role may export; visibility is narrowed below.
        if not can_export(actor):
            await self._audit(
                actor,
                AuditAction.EXPORT_DATA,
                success=False,
                error_message="Forbidden",
                context=context,
            )
            raise ForbiddenError("Export is not permitted")

        flt = self._visible(actor, filter)
        records: list[CredentialRecord] = []
        offset = 0
        with storage_errors("export"):
            while True:
                page = await self._credentials.find(flt, MAX_PAGE_LIMIT, offset)
                records.extend(page)
                if len(page) < MAX_PAGE_LIMIT:
                    break
                offset += len(page)

        exported: list[DecryptedCredential] = []
        failed = 0
        for record in records:
            try:
                exported.append(self._reveal(record))
            except CipherError as err:
                failed += 1
                logger.warning(
                    "Skipping credential %s in export: %s",
                    record.id, type(err).__name__,
                )

        await self._audit(
            actor,
            AuditAction.EXPORT_DATA,
            details={
                "credentialCount": len(exported),
                "failedCount": failed,
                "clientId": flt.client_id or "all",
            },
            context=context,
        )
        return exported

    async def list(
        self,
        actor: Actor,
        filter: FilterInput = None,
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
        context: Optional[RequestContext] = None,
    ) -> list[CredentialRecord]:
        """List credentials visible to the actor, newest first.

        Non-admins only ever see records they created, whatever the filter.

        Raises:
            InvalidRangeError: If ``limit`` exceeds 1000.
        """
        check_page(limit, offset)
        flt = self._visible(actor, filter)
        with storage_errors("list"):
            records = await self._credentials.find(flt, limit, offset)
        await self._audit(
            actor,
            AuditAction.VIEW_CREDENTIAL,
            details={
                "credentialCount": len(records),
                "clientId": flt.client_id or "all",
                "userRole": actor.role.value,
            },
            context=context,
        )
        return records


class AuditService:
    """Admin-only access to the audit trail."""

    def __init__(self, recorder: AuditRecorder):
        self._recorder = recorder

    async def query(
        self,
        actor: Actor,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        resource: Optional[str] = None,
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Return matching audit entries in their external shape.

        Raises:
            ForbiddenError: If the actor is not an admin.
            InvalidRangeError: If ``limit`` exceeds 1000.
        """
        if not can_view_audit(actor):
            raise ForbiddenError("Access denied. Admin privileges required.")
        check_page(limit, offset)
        try:
            flt = AuditFilter(user_id=user_id, action=action, resource=resource)
        except PydanticValidationError as err:
            raise ValidationError(
                "Invalid audit filter",
                errors=[e["msg"] for e in err.errors()],
            ) from None
        with storage_errors("audit query"):
            entries = await self._recorder.query(flt, limit, offset)
        return [entry.to_external() for entry in entries]
