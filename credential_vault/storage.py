"""
Vault Storage — Persistence collaborators for credentials, clients and staff.

Two families are provided: in-memory stores (tests, single-process use) and
stores backed by an asyncpg-compatible pool. The ``postgres`` extra installs
asyncpg, whose ``asyncpg.Pool`` is the expected pool; any object whose
``acquire()`` yields a connection with ``execute``, ``fetch`` and
``fetchrow`` works too. Every write is a single statement, so a record is
either fully written or not written at all.
Concurrent updates to the same record are last-writer-wins.
"""
import logging
from typing import Any, Optional, Protocol
from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .models import (
    Client,
    CredentialRecord,
    CredentialType,
    Role,
    StaffMember,
)

logger = logging.getLogger("credential_vault.storage")


class CredentialFilter(BaseModel):
    """Equality filter over credential columns; unknown keys are rejected."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    client_id: Optional[str] = None
    created_by_id: Optional[str] = None
    credential_type: Optional[CredentialType] = None
    service_name: Optional[str] = None

    def matches(self, record: CredentialRecord) -> bool:
        for name, expected in self.model_dump(exclude_none=True).items():
            if getattr(record, name) != expected:
                return False
        return True


class CredentialStore(Protocol):
    async def get(self, credential_id: str) -> Optional[CredentialRecord]:
        ...

    async def insert(self, record: CredentialRecord) -> CredentialRecord:
        ...

    async def update(self, record: CredentialRecord) -> Optional[CredentialRecord]:
        """Replace a stored record; None if it no longer exists."""
        ...

    async def touch(self, credential_id: str, accessed_at: datetime) -> None:
        ...

    async def delete(self, credential_id: str) -> bool:
        ...

    async def find(
        self, filter: CredentialFilter, limit: int, offset: int,
    ) -> list[CredentialRecord]:
        """Return matching records, newest first."""
        ...


class ClientStore(Protocol):
    async def get(self, client_id: str) -> Optional[Client]:
        ...


class UserStore(Protocol):
    async def get(self, user_id: str) -> Optional[StaffMember]:
        ...

    async def list_all(self) -> list[StaffMember]:
        ...

    async def update_role(self, user_id: str, role: Role) -> Optional[StaffMember]:
        ...

    async def delete(self, user_id: str) -> bool:
        ...


# ---------------------------------------------------------------------------
# In-memory stores
# ---------------------------------------------------------------------------

class MemoryCredentialStore:
    """Dict-backed credential store; records are copied in and out."""

    def __init__(self):
        self._records: dict[str, CredentialRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, credential_id: object) -> bool:
        return credential_id in self._records

    async def get(self, credential_id: str) -> Optional[CredentialRecord]:
        record = self._records.get(credential_id)
        return record.model_copy(deep=True) if record else None

    async def insert(self, record: CredentialRecord) -> CredentialRecord:
        if record.id in self._records:
            raise KeyError(f"Credential {record.id} already exists")
        self._records[record.id] = record.model_copy(deep=True)
        return record.model_copy(deep=True)

    async def update(self, record: CredentialRecord) -> Optional[CredentialRecord]:
        if record.id not in self._records:
            return None
        self._records[record.id] = record.model_copy(deep=True)
        return record.model_copy(deep=True)

    async def touch(self, credential_id: str, accessed_at: datetime) -> None:
        record = self._records.get(credential_id)
        if record is not None:
            self._records[credential_id] = record.model_copy(
                update={"last_accessed_at": accessed_at},
            )

    async def delete(self, credential_id: str) -> bool:
        return self._records.pop(credential_id, None) is not None

    async def find(
        self, filter: CredentialFilter, limit: int, offset: int,
    ) -> list[CredentialRecord]:
        matches = [r for r in self._records.values() if filter.matches(r)]
        matches.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return [r.model_copy(deep=True) for r in matches[offset:offset + limit]]


class MemoryClientStore:
    def __init__(self, clients: Optional[list[Client]] = None):
        self._clients = {c.id: c for c in clients or []}

    def add(self, client: Client) -> None:
        self._clients[client.id] = client

    async def get(self, client_id: str) -> Optional[Client]:
        return self._clients.get(client_id)


class MemoryUserStore:
    def __init__(self, users: Optional[list[StaffMember]] = None):
        self._users = {u.id: u for u in users or []}

    def add(self, user: StaffMember) -> None:
        self._users[user.id] = user

    async def get(self, user_id: str) -> Optional[StaffMember]:
        return self._users.get(user_id)

    async def list_all(self) -> list[StaffMember]:
        return sorted(
            self._users.values(), key=lambda u: u.created_at, reverse=True,
        )

    async def update_role(self, user_id: str, role: Role) -> Optional[StaffMember]:
        user = self._users.get(user_id)
        if user is None:
            return None
        updated = user.model_copy(update={"role": role})
        self._users[user_id] = updated
        return updated

    async def delete(self, user_id: str) -> bool:
        return self._users.pop(user_id, None) is not None


# ---------------------------------------------------------------------------
# PostgreSQL stores
# ---------------------------------------------------------------------------

_CREDENTIAL_COLUMNS = (
    "id, client_id, client_name, service_name, username, password, url, "
    "notes, credential_type, created_by_id, created_at, updated_at, "
    "last_accessed_at"
)

_SELECT_CREDENTIAL = f"""
SELECT {_CREDENTIAL_COLUMNS}
FROM vault.credentials
WHERE id = $1
"""

_INSERT_CREDENTIAL = f"""
INSERT INTO vault.credentials ({_CREDENTIAL_COLUMNS})
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
"""

_UPDATE_CREDENTIAL = """
UPDATE vault.credentials
SET client_id = $2, client_name = $3, service_name = $4, username = $5,
    password = $6, url = $7, notes = $8, credential_type = $9,
    updated_at = $10
WHERE id = $1
"""

_TOUCH_CREDENTIAL = """
UPDATE vault.credentials
SET last_accessed_at = $2
WHERE id = $1
"""

_DELETE_CREDENTIAL = """
DELETE FROM vault.credentials
WHERE id = $1
"""

_FIND_CREDENTIALS = f"""
SELECT {_CREDENTIAL_COLUMNS}
FROM vault.credentials
{{where}}
ORDER BY created_at DESC, id DESC
LIMIT ${{limit_arg}}
OFFSET ${{offset_arg}}
"""

_SELECT_CLIENT = """
SELECT id, client_name, contact_person
FROM vault.clients
WHERE id = $1
"""

_USER_COLUMNS = "id, email, name, role, created_at"

_SELECT_USER = f"""
SELECT {_USER_COLUMNS}
FROM vault.users
WHERE id = $1
"""

_SELECT_USERS = f"""
SELECT {_USER_COLUMNS}
FROM vault.users
ORDER BY created_at DESC, id DESC
"""

_UPDATE_USER_ROLE = f"""
UPDATE vault.users
SET role = $2
WHERE id = $1
RETURNING {_USER_COLUMNS}
"""

_DELETE_USER = """
DELETE FROM vault.users
WHERE id = $1
"""


def _affected(status: str) -> int:
    """Row count from an asyncpg command status such as ``'DELETE 1'``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


def _type_value(record: CredentialRecord) -> Optional[str]:
    return record.credential_type.value if record.credential_type else None


class PostgresCredentialStore:
    """Credential store backed by an asyncpg-compatible connection pool.

    ``db_pool`` is normally an ``asyncpg.Pool`` (``postgres`` extra).
    Pages are ordered by ``created_at`` then ``id``, so offset paging is
    stable when timestamps tie.
    """

    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def get(self, credential_id: str) -> Optional[CredentialRecord]:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(_SELECT_CREDENTIAL, credential_id)
        return CredentialRecord.model_validate(dict(row)) if row else None

    async def insert(self, record: CredentialRecord) -> CredentialRecord:
        async with self._db.acquire() as conn:
            await conn.execute(
                _INSERT_CREDENTIAL,
                record.id,
                record.client_id,
                record.client_name,
                record.service_name,
                record.username,
                record.password,
                record.url,
                record.notes,
                _type_value(record),
                record.created_by_id,
                record.created_at,
                record.updated_at,
                record.last_accessed_at,
            )
        return record

    async def update(self, record: CredentialRecord) -> Optional[CredentialRecord]:
        async with self._db.acquire() as conn:
            status = await conn.execute(
                _UPDATE_CREDENTIAL,
                record.id,
                record.client_id,
                record.client_name,
                record.service_name,
                record.username,
                record.password,
                record.url,
                record.notes,
                _type_value(record),
                record.updated_at,
            )
        return record if _affected(status) else None

    async def touch(self, credential_id: str, accessed_at: datetime) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(_TOUCH_CREDENTIAL, credential_id, accessed_at)

    async def delete(self, credential_id: str) -> bool:
        async with self._db.acquire() as conn:
            status = await conn.execute(_DELETE_CREDENTIAL, credential_id)
        return _affected(status) > 0

    async def find(
        self, filter: CredentialFilter, limit: int, offset: int,
    ) -> list[CredentialRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in filter.model_dump(
            mode="json", exclude_none=True,
        ).items():
            params.append(value)
            clauses.append(f"{column} = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = _FIND_CREDENTIALS.format(
            where=where,
            limit_arg=len(params) + 1,
            offset_arg=len(params) + 2,
        )
        async with self._db.acquire() as conn:
            rows = await conn.fetch(sql, *params, limit, offset)
        return [CredentialRecord.model_validate(dict(row)) for row in rows]


class PostgresClientStore:
    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def get(self, client_id: str) -> Optional[Client]:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(_SELECT_CLIENT, client_id)
        return Client.model_validate(dict(row)) if row else None


class PostgresUserStore:
    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def get(self, user_id: str) -> Optional[StaffMember]:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(_SELECT_USER, user_id)
        return StaffMember.model_validate(dict(row)) if row else None

    async def list_all(self) -> list[StaffMember]:
        async with self._db.acquire() as conn:
            rows = await conn.fetch(_SELECT_USERS)
        return [StaffMember.model_validate(dict(row)) for row in rows]

    async def update_role(self, user_id: str, role: Role) -> Optional[StaffMember]:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(_UPDATE_USER_ROLE, user_id, role.value)
        return StaffMember.model_validate(dict(row)) if row else None

    async def delete(self, user_id: str) -> bool:
        async with self._db.acquire() as conn:
            status = await conn.execute(_DELETE_USER, user_id)
        return _affected(status) > 0
