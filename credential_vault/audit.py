"""
Audit Recorder — Append-only trail of security-relevant actions.

Entries are written through an injected ``AuditSink``. Recording is
best-effort: ``AuditRecorder.record`` never raises, it returns an
``AuditResult`` describing whether the append succeeded, and the caller is
free to discard it. Entries are never updated or deleted.

Security Note:
    Never put plaintext secrets in ``details``. As a second guard, detail
    keys naming a password are dropped before the entry is appended.
"""
import logging
from typing import Any, NamedTuple, Optional, Protocol

import orjson
from pydantic import BaseModel

from .config import MAX_PAGE_LIMIT
from .models import AuditAction, AuditEntry, AuditResource

logger = logging.getLogger("credential_vault.audit")

__all__ = [
    "AuditAction",
    "AuditResource",
    "AuditEntry",
    "AuditFilter",
    "AuditResult",
    "AuditSink",
    "AuditRecorder",
    "MemoryAuditSink",
    "PostgresAuditSink",
]


class AuditFilter(BaseModel):
    user_id: Optional[str] = None
    action: Optional[AuditAction] = None
    resource: Optional[AuditResource] = None

    def matches(self, entry: AuditEntry) -> bool:
        return (
            (self.user_id is None or entry.user_id == self.user_id)
            and (self.action is None or entry.action == self.action)
            and (self.resource is None or entry.resource == self.resource)
        )


class AuditResult(NamedTuple):
    ok: bool
    error: Optional[Exception] = None


class AuditSink(Protocol):
    """Storage for audit entries."""

    async def append(self, entry: AuditEntry) -> None:
        ...

    async def find(
        self, filter: AuditFilter, limit: int, offset: int,
    ) -> list[AuditEntry]:
        """Return matching entries, newest first."""
        ...


def _scrub(details: dict[str, Any]) -> dict[str, Any]:
    return {
        key: value for key, value in details.items()
        if "password" not in key.lower()
    }


class AuditRecorder:
    """Best-effort writer and reader of the audit trail."""

    def __init__(self, sink: AuditSink):
        self._sink = sink

    @property
    def sink(self) -> AuditSink:
        return self._sink

    async def record(self, entry: AuditEntry) -> AuditResult:
        """Append an entry; failures are logged and returned, never raised.

        Args:
            entry: Entry to append.

        Returns:
            AuditResult with ``ok=False`` and the error if the append failed.
        """
        scrubbed = _scrub(entry.details)
        if len(scrubbed) != len(entry.details):
            logger.warning(
                "Dropped password-like detail keys from %s audit entry",
                entry.action.value,
            )
            entry = entry.model_copy(update={"details": scrubbed})
        try:
            await self._sink.append(entry)
        except Exception as err:
            logger.error(
                "Audit append failed: action=%s resource=%s user=%s: %s",
                entry.action.value, entry.resource.value, entry.user_id, err,
            )
            return AuditResult(ok=False, error=err)
        return AuditResult(ok=True)

    async def query(
        self,
        filter: Optional[AuditFilter] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AuditEntry]:
        """Return entries newest first; ``limit`` is clamped to 1000."""
        limit = max(0, min(limit, MAX_PAGE_LIMIT))
        offset = max(0, offset)
        return await self._sink.find(filter or AuditFilter(), limit, offset)


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

class MemoryAuditSink:
    """In-process audit sink, for tests and single-process deployments."""

    def __init__(self):
        self._entries: list[AuditEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> tuple[AuditEntry, ...]:
        return tuple(self._entries)

    async def append(self, entry: AuditEntry) -> None:
        self._entries.append(entry)

    async def find(
        self, filter: AuditFilter, limit: int, offset: int,
    ) -> list[AuditEntry]:
        indexed = [
            (entry.timestamp, position, entry)
            for position, entry in enumerate(self._entries)
            if filter.matches(entry)
        ]
        indexed.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [entry for _, _, entry in indexed[offset:offset + limit]]


_INSERT_AUDIT = """
INSERT INTO vault.audit_logs (
    user_id, user_email, user_role, action, resource, resource_id,
    details, ip_address, user_agent, timestamp, success, error_message
)
VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10, $11, $12)
"""

_SELECT_AUDIT = """
SELECT user_id, user_email, user_role, action, resource, resource_id,
       details, ip_address, user_agent, timestamp, success, error_message
FROM vault.audit_logs
{where}
ORDER BY timestamp DESC
LIMIT ${limit_arg}
OFFSET ${offset_arg}
"""


class PostgresAuditSink:
    """Audit sink backed by an asyncpg-compatible connection pool.

    ``db_pool`` is normally an ``asyncpg.Pool`` (``postgres`` extra).
    """

    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def append(self, entry: AuditEntry) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(
                _INSERT_AUDIT,
                entry.user_id,
                entry.user_email,
                entry.user_role,
                entry.action.value,
                entry.resource.value,
                entry.resource_id,
                orjson.dumps(entry.details).decode("utf-8"),
                entry.ip_address,
                entry.user_agent,
                entry.timestamp,
                entry.success,
                entry.error_message,
            )

    async def find(
        self, filter: AuditFilter, limit: int, offset: int,
    ) -> list[AuditEntry]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in filter.model_dump(
            mode="json", exclude_none=True,
        ).items():
            params.append(value)
            clauses.append(f"{column} = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = _SELECT_AUDIT.format(
            where=where,
            limit_arg=len(params) + 1,
            offset_arg=len(params) + 2,
        )
        async with self._db.acquire() as conn:
            rows = await conn.fetch(sql, *params, limit, offset)
        entries = []
        for row in rows:
            data = dict(row)
            if isinstance(data.get("details"), (str, bytes)):
                data["details"] = orjson.loads(data["details"])
            entries.append(AuditEntry.model_validate(data))
        return entries
