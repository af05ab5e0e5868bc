"""
Tests for the credential service.

Tests cover:
- Create / read / decrypt / update / delete / list / export
- Ownership enforcement and the admin bypass
- Email credentials and their embedded outgoing password
- Audit entries written for every transition
- Storage and cipher failures surfacing as vault errors
"""
import base64

import orjson
import pytest
import pytest_asyncio

from credential_vault.audit import AuditRecorder, MemoryAuditSink
from credential_vault.context import RequestContext
from credential_vault.exceptions import (
    DecryptionError,
    ForbiddenError,
    InternalError,
    InvalidRangeError,
    MalformedBlobError,
    NotFoundError,
    ValidationError,
    VaultError,
)
from credential_vault.models import AuditAction, CredentialType, DecryptedCredential
from credential_vault.service import CredentialService
from credential_vault.storage import MemoryCredentialStore


@pytest_asyncio.fixture
async def record(service, user_x, general_fields):
    return await service.create(user_x, general_fields)


@pytest_asyncio.fixture
async def email_record(service, user_x, email_fields):
    return await service.create(user_x, email_fields)


def _actions(audit_sink):
    return [(e.action, e.success) for e in audit_sink.entries]


class TestCreate:

    @pytest.mark.asyncio
    async def test_general(self, record, cipher, user_x):
        assert record.service_name == "AWS"
        assert record.username == "a@b.com"
        assert record.client_name == "Acme Corp"
        assert record.created_by_id == user_x.id
        assert record.credential_type is CredentialType.GENERAL
        assert record.password != "Secr3t!"
        assert cipher.decrypt(record.password) == "Secr3t!"

    @pytest.mark.asyncio
    async def test_persisted(self, record, credentials):
        assert record.id in credentials

    @pytest.mark.asyncio
    async def test_audited(self, record, audit_sink):
        entry = audit_sink.entries[-1]
        assert entry.action is AuditAction.CREATE_CREDENTIAL
        assert entry.success is True
        assert entry.resource_id == record.id
        assert entry.details["serviceName"] == "AWS"
        assert "Secr3t!" not in orjson.dumps(entry.details).decode()

    @pytest.mark.asyncio
    async def test_context_recorded(self, service, user_x, general_fields, audit_sink):
        context = RequestContext(ip_address="203.0.113.9", user_agent="pytest")
        await service.create(user_x, general_fields, context)
        entry = audit_sink.entries[-1]
        assert entry.ip_address == "203.0.113.9"
        assert entry.user_agent == "pytest"

    @pytest.mark.asyncio
    async def test_invalid_input(self, service, user_x, general_fields, credentials, audit_sink):
        general_fields["username"] = "not-an-email"
        with pytest.raises(ValidationError):
            await service.create(user_x, general_fields)
        assert len(credentials) == 0
        assert _actions(audit_sink) == [(AuditAction.CREATE_CREDENTIAL, False)]

    @pytest.mark.asyncio
    async def test_unknown_type(self, service, user_x, general_fields):
        general_fields["credentialType"] = "ssh"
        with pytest.raises(ValidationError, match="Unknown credential type"):
            await service.create(user_x, general_fields)

    @pytest.mark.asyncio
    async def test_unknown_client(self, service, user_x, general_fields):
        general_fields["clientId"] = "missing"
        with pytest.raises(NotFoundError, match="Client not found"):
            await service.create(user_x, general_fields)

    @pytest.mark.asyncio
    async def test_service_name_sanitized(self, service, user_x, general_fields):
        general_fields["serviceName"] = "<AWS>"
        general_fields["password"] = "p<w>d;'"
        record = await service.create(user_x, general_fields)
        assert record.service_name == "AWS"
        decrypted = await service.decrypt(user_x, record.id)
        assert decrypted.password == "p<w>d;'"

    @pytest.mark.asyncio
    async def test_email(self, email_record, cipher):
        assert email_record.credential_type is CredentialType.EMAIL
        assert email_record.username == "info@example.com"
        assert cipher.decrypt(email_record.password) == "imap-Pass1!"
        notes = orjson.loads(email_record.notes)
        assert notes["outgoingPassword"] != "smtp-Pass2!"
        assert cipher.decrypt(notes["outgoingPassword"]) == "smtp-Pass2!"


class TestReadAndDecrypt:
    """Owner and admin access to a single credential."""

    @pytest.mark.asyncio
    async def test_owner_reads_encoded(self, service, record, user_x):
        fetched = await service.read(user_x, record.id)
        assert fetched.id == record.id
        assert fetched.password != "Secr3t!"

    @pytest.mark.asyncio
    async def test_owner_decrypts(self, service, record, user_x):
        decrypted = await service.decrypt(user_x, record.id)
        assert decrypted.password == "Secr3t!"
        assert decrypted.username == "a@b.com"
        assert decrypted.credential_type is CredentialType.GENERAL

    @pytest.mark.asyncio
    async def test_other_user_forbidden(self, service, record, user_y, audit_sink):
        with pytest.raises(ForbiddenError):
            await service.decrypt(user_y, record.id)
        entry = audit_sink.entries[-1]
        assert entry.action is AuditAction.DECRYPT_CREDENTIAL
        assert entry.success is False
        assert entry.user_id == user_y.id

    @pytest.mark.asyncio
    async def test_other_user_cannot_read(self, service, record, user_y):
        with pytest.raises(ForbiddenError):
            await service.read(user_y, record.id)

    @pytest.mark.asyncio
    async def test_admin_decrypts_any(self, service, record, admin, audit_sink):
        decrypted = await service.decrypt(admin, record.id)
        assert decrypted.password == "Secr3t!"
        assert audit_sink.entries[-1].details["decryptedBy"] == "admin"

    @pytest.mark.asyncio
    async def test_missing_is_not_found(self, service, user_x):
        with pytest.raises(NotFoundError):
            await service.decrypt(user_x, "missing")

    @pytest.mark.asyncio
    async def test_decrypt_touches_last_access(self, service, record, user_x, credentials):
        assert record.last_accessed_at is None
        await service.decrypt(user_x, record.id)
        stored = await credentials.get(record.id)
        assert stored.last_accessed_at is not None

    @pytest.mark.asyncio
    async def test_email_reveals_both_passwords(self, service, email_record, user_x):
        decrypted = await service.decrypt(user_x, email_record.id)
        assert decrypted.password == "imap-Pass1!"
        assert decrypted.outgoing_password == "smtp-Pass2!"

    @pytest.mark.asyncio
    async def test_truncated_blob(self, service, record, user_x, credentials, cipher, audit_sink):
        combined = base64.b64decode(record.password).decode("ascii")
        truncated = ":".join(combined.split(":")[:2])
        stored = await credentials.get(record.id)
        stored.password = base64.b64encode(truncated.encode("ascii")).decode("ascii")
        await credentials.update(stored)

        with pytest.raises(MalformedBlobError):
            cipher.decrypt(stored.password)
        with pytest.raises(DecryptionError) as exc:
            await service.decrypt(user_x, record.id)
        assert exc.value.message == "Failed to decrypt credential"
        assert exc.value.__cause__ is None
        assert _actions(audit_sink)[-1] == (AuditAction.DECRYPT_CREDENTIAL, False)

    @pytest.mark.asyncio
    async def test_wrong_key(self, record, user_x, other_cipher, credentials, clients, recorder):
        rotated_away = CredentialService(other_cipher, credentials, clients, recorder)
        with pytest.raises(DecryptionError):
            await rotated_away.decrypt(user_x, record.id)


class TestUpdate:

    @pytest.mark.asyncio
    async def test_partial_update_keeps_password(self, service, record, user_x):
        updated = await service.update(user_x, record.id, {"url": "https://aws.example"})
        assert updated.url == "https://aws.example"
        assert updated.password == record.password
        assert updated.updated_at >= record.updated_at

    @pytest.mark.asyncio
    async def test_blank_password_keeps_blob(self, service, record, user_x):
        updated = await service.update(user_x, record.id, {"password": ""})
        assert updated.password == record.password

    @pytest.mark.asyncio
    async def test_new_password_reencrypted(self, service, record, user_x):
        updated = await service.update(user_x, record.id, {"password": "N3w-secret"})
        assert updated.password != record.password
        decrypted = await service.decrypt(user_x, record.id)
        assert decrypted.password == "N3w-secret"

    @pytest.mark.asyncio
    async def test_move_to_other_client(self, service, record, user_x):
        updated = await service.update(user_x, record.id, {"clientId": "client-2"})
        assert updated.client_id == "client-2"
        assert updated.client_name == "Globex"

    @pytest.mark.asyncio
    async def test_other_user_forbidden(self, service, record, user_y, credentials):
        with pytest.raises(ForbiddenError):
            await service.update(user_y, record.id, {"url": "https://evil"})
        stored = await credentials.get(record.id)
        assert stored.url == "https://console.aws.amazon.com"

    @pytest.mark.asyncio
    async def test_admin_may_update(self, service, record, admin):
        updated = await service.update(admin, record.id, {"notes": "checked"})
        assert updated.notes == "checked"
        assert updated.created_by_id == record.created_by_id

    @pytest.mark.asyncio
    async def test_type_change_rejected(self, service, record, user_x, audit_sink):
        with pytest.raises(ValidationError):
            await service.update(user_x, record.id, {"credentialType": "email"})
        assert _actions(audit_sink)[-1] == (AuditAction.UPDATE_CREDENTIAL, False)

    @pytest.mark.asyncio
    async def test_changed_fields_audited(self, service, record, user_x, audit_sink):
        await service.update(user_x, record.id, {"notes": "n", "password": "Xx1!abcd"})
        entry = audit_sink.entries[-1]
        assert entry.details["changedFields"] == ["notes", "password"]

    @pytest.mark.asyncio
    async def test_email_update_keeps_outgoing_password(self, service, email_record, user_x):
        await service.update(user_x, email_record.id, {"incomingPort": 143})
        decrypted = await service.decrypt(user_x, email_record.id)
        assert decrypted.outgoing_password == "smtp-Pass2!"
        assert decrypted.password == "imap-Pass1!"

    @pytest.mark.asyncio
    async def test_email_update_outgoing_password(self, service, email_record, user_x):
        updated = await service.update(
            user_x, email_record.id, {"outgoingPassword": "smtp-N3w!"},
        )
        assert updated.password == email_record.password
        decrypted = await service.decrypt(user_x, email_record.id)
        assert decrypted.outgoing_password == "smtp-N3w!"

    @pytest.mark.asyncio
    async def test_email_update_incoming_username(self, service, email_record, user_x):
        updated = await service.update(
            user_x, email_record.id, {"incomingUsername": "sales@example.com"},
        )
        assert updated.username == "sales@example.com"
        assert orjson.loads(updated.notes)["incomingUsername"] == "sales@example.com"


class TestDelete:

    @pytest.mark.asyncio
    async def test_owner_deletes(self, service, record, user_x, credentials, audit_sink):
        await service.delete(user_x, record.id)
        assert record.id not in credentials
        entry = audit_sink.entries[-1]
        assert entry.action is AuditAction.DELETE_CREDENTIAL
        assert entry.details["serviceName"] == "AWS"

    @pytest.mark.asyncio
    async def test_delete_twice(self, service, record, user_x):
        await service.delete(user_x, record.id)
        with pytest.raises(NotFoundError):
            await service.delete(user_x, record.id)

    @pytest.mark.asyncio
    async def test_other_user_forbidden(self, service, record, user_y, credentials):
        with pytest.raises(ForbiddenError):
            await service.delete(user_y, record.id)
        assert record.id in credentials

    @pytest.mark.asyncio
    async def test_admin_deletes_any(self, service, record, admin, credentials):
        await service.delete(admin, record.id)
        assert len(credentials) == 0


class TestList:

    @pytest_asyncio.fixture
    async def populated(self, service, user_x, user_y, general_fields):
        for name in ("AWS", "GCP"):
            await service.create(user_x, {**general_fields, "serviceName": name})
        await service.create(user_y, {
            **general_fields, "serviceName": "Azure", "clientId": "client-2",
        })

    @pytest.mark.asyncio
    async def test_user_sees_own(self, service, populated, user_x):
        records = await service.list(user_x)
        assert {r.service_name for r in records} == {"AWS", "GCP"}

    @pytest.mark.asyncio
    async def test_user_cannot_widen_filter(self, service, populated, user_x):
        records = await service.list(user_x, {"createdById": "user-y"})
        assert all(r.created_by_id == user_x.id for r in records)
        records = await service.list(user_x, {"created_by_id": "user-y"})
        assert all(r.created_by_id == user_x.id for r in records)

    @pytest.mark.asyncio
    async def test_admin_sees_all(self, service, populated, admin):
        assert len(await service.list(admin)) == 3

    @pytest.mark.asyncio
    async def test_admin_filters_by_client(self, service, populated, admin):
        records = await service.list(admin, {"client_id": "client-2"})
        assert [r.service_name for r in records] == ["Azure"]

    @pytest.mark.asyncio
    async def test_admin_filters_by_camel_case_client(self, service, populated, admin):
        records = await service.list(admin, {"clientId": "client-2"})
        assert [r.service_name for r in records] == ["Azure"]
        records = await service.list(admin, {"serviceName": "GCP"})
        assert [r.service_name for r in records] == ["GCP"]

    @pytest.mark.asyncio
    async def test_unknown_filter_key_rejected(self, service, populated, admin):
        with pytest.raises(ValidationError, match="Invalid credential filter"):
            await service.list(admin, {"client": "client-2"})

    @pytest.mark.asyncio
    async def test_limit_over_ceiling_rejected(self, service, populated, admin):
        with pytest.raises(InvalidRangeError, match="Limit cannot exceed 1000"):
            await service.list(admin, limit=5000)

    @pytest.mark.asyncio
    async def test_limit_and_offset(self, service, populated, admin):
        assert len(await service.list(admin, limit=2)) == 2
        assert len(await service.list(admin, limit=2, offset=2)) == 1
        with pytest.raises(InvalidRangeError):
            await service.list(admin, offset=-1)

    @pytest.mark.asyncio
    async def test_list_audited(self, service, populated, user_x, audit_sink):
        await service.list(user_x)
        entry = audit_sink.entries[-1]
        assert entry.action is AuditAction.VIEW_CREDENTIAL
        assert entry.details["credentialCount"] == 2


class TestExport:

    @pytest.mark.asyncio
    async def test_user_exports_own(self, service, record, email_record, user_x, user_y, general_fields):
        await service.create(user_y, general_fields)
        exported = await service.export(user_x)
        assert {e.id for e in exported} == {record.id, email_record.id}
        passwords = {e.password for e in exported}
        assert passwords == {"Secr3t!", "imap-Pass1!"}

    @pytest.mark.asyncio
    async def test_undecryptable_skipped(self, service, record, user_x, credentials, audit_sink):
        stored = await credentials.get(record.id)
        stored.password = "broken"
        await credentials.update(stored)
        assert await service.export(user_x) == []
        entry = audit_sink.entries[-1]
        assert entry.action is AuditAction.EXPORT_DATA
        assert entry.details["failedCount"] == 1
        assert entry.details["credentialCount"] == 0

    @pytest.mark.asyncio
    async def test_admin_export_by_camel_case_client(self, service, record, admin, user_y, general_fields, audit_sink):
        other = await service.create(
            user_y, {**general_fields, "clientId": "client-2", "password": "Gl0bex!"},
        )
        exported = await service.export(admin, {"clientId": "client-2"})
        assert [(e.id, e.password) for e in exported] == [(other.id, "Gl0bex!")]
        assert audit_sink.entries[-1].details["clientId"] == "client-2"

    @pytest.mark.asyncio
    async def test_unknown_filter_key_rejected(self, service, record, admin):
        with pytest.raises(ValidationError):
            await service.export(admin, {"clientID": "client-2"})

    @pytest.mark.asyncio
    async def test_denied_export_audited(self, service, record, user_x, audit_sink, monkeypatch):
        monkeypatch.setattr(
            "credential_vault.service.can_export", lambda actor: False,
        )
        with pytest.raises(ForbiddenError):
            await service.export(user_x)
        assert _actions(audit_sink)[-1] == (AuditAction.EXPORT_DATA, False)


AUDITED_OPERATIONS = {
    "create": lambda svc, cid, x, y, f: svc.create(x, {**f, "serviceName": "GCP"}),
    "create_invalid": lambda svc, cid, x, y, f: svc.create(x, {**f, "username": "nope"}),
    "read": lambda svc, cid, x, y, f: svc.read(x, cid),
    "read_denied": lambda svc, cid, x, y, f: svc.read(y, cid),
    "update": lambda svc, cid, x, y, f: svc.update(x, cid, {"url": "https://new.example"}),
    "update_denied": lambda svc, cid, x, y, f: svc.update(y, cid, {"url": "https://evil.example"}),
    "update_invalid": lambda svc, cid, x, y, f: svc.update(x, cid, {"credentialType": "email"}),
    "delete": lambda svc, cid, x, y, f: svc.delete(x, cid),
    "delete_denied": lambda svc, cid, x, y, f: svc.delete(y, cid),
    "list": lambda svc, cid, x, y, f: svc.list(x),
    "decrypt": lambda svc, cid, x, y, f: svc.decrypt(x, cid),
    "decrypt_denied": lambda svc, cid, x, y, f: svc.decrypt(y, cid),
    "decrypt_corrupt": lambda svc, cid, x, y, f: svc.decrypt(x, cid),
}


def _summary(result):
    if result is None:
        return None
    if isinstance(result, list):
        return sorted(_summary(item) for item in result)
    if isinstance(result, DecryptedCredential):
        return ("decrypted", result.service_name, result.password)
    return ("record", result.service_name, result.url, result.client_id)


async def _outcome(name, sink, cipher, clients, user_x, user_y, general_fields):
    credentials = MemoryCredentialStore()
    service = CredentialService(cipher, credentials, clients, AuditRecorder(sink))
    record = await service.create(user_x, general_fields)
    if name == "decrypt_corrupt":
        stored = await credentials.get(record.id)
        stored.password = "broken"
        await credentials.update(stored)
    operation = AUDITED_OPERATIONS[name]
    try:
        result = await operation(service, record.id, user_x, user_y, general_fields)
    except VaultError as err:
        return (type(err), err.message), len(credentials)
    return _summary(result), len(credentials)


class TestFailures:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", sorted(AUDITED_OPERATIONS))
    async def test_audit_failure_leaves_outcome_unchanged(self, name, cipher, clients, failing_sink, user_x, user_y, general_fields):
        expected = await _outcome(
            name, MemoryAuditSink(), cipher, clients, user_x, user_y, general_fields,
        )
        observed = await _outcome(
            name, failing_sink, cipher, clients, user_x, user_y, general_fields,
        )
        assert observed == expected
        assert failing_sink.attempts >= 2

    @pytest.mark.asyncio
    async def test_failing_paths_keep_their_errors(self, cipher, clients, failing_sink, user_x, user_y, general_fields):
        outcomes = {
            name: (await _outcome(
                name, failing_sink, cipher, clients, user_x, user_y, general_fields,
            ))[0]
            for name in ("read_denied", "create_invalid", "decrypt_corrupt")
        }
        assert outcomes["read_denied"][0] is ForbiddenError
        assert outcomes["create_invalid"][0] is ValidationError
        assert outcomes["decrypt_corrupt"] == (DecryptionError, "Failed to decrypt credential")

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_block(self, cipher, credentials, clients, failing_sink, user_x, general_fields):
        service = CredentialService(
            cipher, credentials, clients, AuditRecorder(failing_sink),
        )
        record = await service.create(user_x, general_fields)
        decrypted = await service.decrypt(user_x, record.id)
        assert decrypted.password == "Secr3t!"
        assert failing_sink.attempts == 2

    @pytest.mark.asyncio
    async def test_storage_failure_is_internal(self, cipher, broken_credentials, clients, recorder, user_x):
        service = CredentialService(cipher, broken_credentials, clients, recorder)
        with pytest.raises(InternalError) as exc:
            await service.read(user_x, "cred-1")
        assert exc.value.status_code == 500
        with pytest.raises(InternalError):
            await service.list(user_x)
