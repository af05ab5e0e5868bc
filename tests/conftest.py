"""Shared fixtures for the credential vault test-suite."""
import os

import pytest

from credential_vault.audit import AuditRecorder, MemoryAuditSink
from credential_vault.crypto import Cipher, KeyProvider
from credential_vault.models import Actor, Client, Role, StaffMember
from credential_vault.service import AuditService, CredentialService
from credential_vault.staff import StaffService
from credential_vault.storage import (
    MemoryClientStore,
    MemoryCredentialStore,
    MemoryUserStore,
)


class FailingAuditSink:
    """Audit sink whose every append fails."""

    def __init__(self):
        self.attempts = 0

    async def append(self, entry):
        self.attempts += 1
        raise ConnectionError("audit database unavailable")

    async def find(self, filter, limit, offset):
        return []


class BrokenCredentialStore(MemoryCredentialStore):
    """Credential store that fails on every lookup."""

    async def get(self, credential_id):
        raise ConnectionError("connection reset by peer")

    async def find(self, filter, limit, offset):
        raise ConnectionError("connection reset by peer")


# --- Keys and ciphers ---

@pytest.fixture
def keys():
    return KeyProvider(os.urandom(32))


@pytest.fixture
def cipher(keys):
    return Cipher(keys)


@pytest.fixture
def other_cipher():
    """Cipher with an unrelated key."""
    return Cipher(KeyProvider(os.urandom(32)))


# --- Actors ---

@pytest.fixture
def user_x():
    return Actor(id="user-x", email="x@example.com", role=Role.USER)


@pytest.fixture
def user_y():
    return Actor(id="user-y", email="y@example.com", role=Role.USER)


@pytest.fixture
def admin():
    return Actor(id="admin-1", email="admin@example.com", role=Role.ADMIN)


# --- Stores ---

@pytest.fixture
def clients():
    return MemoryClientStore([
        Client(id="client-1", client_name="Acme Corp", contact_person="Ada"),
        Client(id="client-2", client_name="Globex", contact_person="Hank"),
    ])


@pytest.fixture
def credentials():
    return MemoryCredentialStore()


@pytest.fixture
def users(user_x, user_y, admin):
    return MemoryUserStore([
        StaffMember(id=actor.id, email=actor.email, role=actor.role)
        for actor in (user_x, user_y, admin)
    ])


@pytest.fixture
def audit_sink():
    return MemoryAuditSink()


@pytest.fixture
def recorder(audit_sink):
    return AuditRecorder(audit_sink)


# --- Services ---

@pytest.fixture
def service(cipher, credentials, clients, recorder):
    return CredentialService(cipher, credentials, clients, recorder)


@pytest.fixture
def staff(users, recorder):
    return StaffService(users, recorder)


@pytest.fixture
def audit_service(recorder):
    return AuditService(recorder)


# --- Payloads ---

@pytest.fixture
def general_fields():
    return {
        "clientId": "client-1",
        "serviceName": "AWS",
        "username": "a@b.com",
        "password": "Secr3t!",
        "url": "https://console.aws.amazon.com",
    }


@pytest.fixture
def email_fields():
    return {
        "credentialType": "email",
        "clientId": "client-1",
        "serviceName": "Company Mail",
        "incomingServer": "imap.example.com",
        "incomingPort": 993,
        "incomingUsername": "info@example.com",
        "incomingPassword": "imap-Pass1!",
        "incomingSSL": True,
        "outgoingServer": "smtp.example.com",
        "outgoingPort": 465,
        "outgoingUsername": "info@example.com",
        "outgoingPassword": "smtp-Pass2!",
        "outgoingSSL": True,
        "notes": "Shared mailbox",
    }


@pytest.fixture
def failing_sink():
    return FailingAuditSink()


@pytest.fixture
def broken_credentials():
    return BrokenCredentialStore()
