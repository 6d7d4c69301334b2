"""Ledger storage backends.

Append-only storage for log records. Every backend enforces uniqueness of
(scope_id, category, sequence_num) atomically with the write, which is
what lets the chain appender detect lost races.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Protocol

import asyncpg
from pydantic import ValidationError

from ledger.audit.config import AuditConfig, StorageType
from ledger.audit.errors import Conflict, StorageUnavailable
from ledger.audit.models import (
    Actor,
    LedgerQuery,
    LogCategory,
    LogRecord,
    RequestContext,
    newest_first,
)

logger = logging.getLogger(__name__)

# Driver and network failures that leave the ledger unreachable. A closing
# pool raises InterfaceError, which is not a PostgresError.
DATABASE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class LedgerStore(Protocol):
    """Protocol for ledger storage backends.

    Implementations must provide append-only semantics: no update, no
    delete, and `append` must reject a duplicate sequence number with
    `Conflict` rather than renumbering.
    """

    async def append(self, record: LogRecord) -> LogRecord:
        """Insert a record; raise Conflict if its sequence is taken."""
        ...

    async def last_record(self, scope_id: str, category: LogCategory) -> LogRecord | None:
        """Get the record with the highest sequence in a chain."""
        ...

    async def range(
        self,
        scope_id: str,
        category: LogCategory,
        from_seq: int = 0,
        to_seq: int | None = None,
    ) -> list[LogRecord]:
        """Get records in a sequence range (inclusive), ordered by sequence."""
        ...

    async def count(self, query: LedgerQuery) -> int:
        """Count records matching a query."""
        ...

    async def page(self, query: LedgerQuery) -> list[LogRecord]:
        """Get one page of matching records, newest first."""
        ...

    async def scopes(self) -> list[str]:
        """List every scope holding at least one record."""
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...


def _in_range(record: LogRecord, from_seq: int, to_seq: int | None) -> bool:
    if record.sequence_num < from_seq:
        return False
    return to_seq is None or record.sequence_num <= to_seq


class InMemoryLedgerStore:
    """Process-local storage for tests and single-process deployments.

    A threading lock makes the duplicate check and the insert one step, so
    the store is safe to share across threads as well as tasks.
    """

    def __init__(self) -> None:
        self._chains: dict[tuple[str, LogCategory], dict[int, LogRecord]] = {}
        self._lock = threading.Lock()

    async def append(self, record: LogRecord) -> LogRecord:
        with self._lock:
            chain = self._chains.setdefault(record.chain_key, {})
            if record.sequence_num in chain:
                raise Conflict(record.scope_id, record.category, record.sequence_num)
            chain[record.sequence_num] = record
        return record

    async def last_record(self, scope_id: str, category: LogCategory) -> LogRecord | None:
        with self._lock:
            chain = self._chains.get((scope_id, category))
            if not chain:
                return None
            return chain[max(chain)]

    async def range(
        self,
        scope_id: str,
        category: LogCategory,
        from_seq: int = 0,
        to_seq: int | None = None,
    ) -> list[LogRecord]:
        with self._lock:
            chain = dict(self._chains.get((scope_id, category), {}))
        return [
            chain[seq]
            for seq in sorted(chain)
            if _in_range(chain[seq], from_seq, to_seq)
        ]

    def _all_records(self) -> list[LogRecord]:
        with self._lock:
            return [r for chain in self._chains.values() for r in chain.values()]

    async def count(self, query: LedgerQuery) -> int:
        return sum(1 for r in self._all_records() if query.matches(r))

    async def page(self, query: LedgerQuery) -> list[LogRecord]:
        matched = newest_first([r for r in self._all_records() if query.matches(r)])
        return matched[query.offset:query.offset + query.limit]

    async def scopes(self) -> list[str]:
        with self._lock:
            return sorted({scope for (scope, _), chain in self._chains.items() if chain})

    async def close(self) -> None:
        return None


class FileLedgerStore:
    """File-based storage for development and small deployments.

    Stores records in JSONL (JSON Lines) format, one record per line and one
    file per chain. Appends are serialized by an in-process lock that
    re-reads the chain before writing.

    WARNING: the lock does not span processes. Use PostgresLedgerStore when
    more than one process writes to the ledger.
    """

    def __init__(self, storage_path: str | Path):
        """Initialize file storage.

        Args:
            storage_path: Directory to store ledger files
        """
        self.storage_path = Path(storage_path)
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        logger.info("FileLedgerStore initialized at %s", self.storage_path)

    def _chain_file(self, scope_id: str, category: LogCategory) -> Path:
        """Get the file path for a chain."""
        # Sanitize scope_id to prevent path traversal; the digest keeps
        # scopes that sanitize to the same text apart.
        safe_id = "".join(c for c in scope_id if c.isalnum() or c in "-_")[:64]
        digest = hashlib.sha256(scope_id.encode("utf-8")).hexdigest()[:12]
        return self.storage_path / f"ledger_{safe_id}_{digest}__{category.value}.jsonl"

    def _read_file(self, file_path: Path) -> list[LogRecord]:
        if not file_path.exists():
            return []

        records = []
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                for line_no, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    try:
                        records.append(LogRecord.model_validate_json(line))
                    except ValidationError as exc:
                        raise StorageUnavailable(
                            f"Unreadable record at {file_path.name}:{line_no}"
                        ) from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise StorageUnavailable(f"Cannot read {file_path}") from exc

        return records

    def _read_chain(self, scope_id: str, category: LogCategory) -> list[LogRecord]:
        records = self._read_file(self._chain_file(scope_id, category))
        return sorted(records, key=lambda r: r.sequence_num)

    async def append(self, record: LogRecord) -> LogRecord:
        file_path = self._chain_file(record.scope_id, record.category)
        record_json = record.model_dump_json()

        with self._lock:
            existing = self._read_chain(record.scope_id, record.category)
            if any(r.sequence_num == record.sequence_num for r in existing):
                raise Conflict(record.scope_id, record.category, record.sequence_num)

            try:
                with open(file_path, "a", encoding="utf-8") as f:
                    f.write(record_json + "\n")
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as exc:
                raise StorageUnavailable(f"Cannot append to {file_path}") from exc

        logger.debug(
            "Appended ledger record: scope=%s category=%s seq=%d",
            record.scope_id,
            record.category.value,
            record.sequence_num,
        )
        return record

    async def last_record(self, scope_id: str, category: LogCategory) -> LogRecord | None:
        # Never read a line another thread is still writing
        with self._lock:
            records = self._read_chain(scope_id, category)
        return records[-1] if records else None

    async def range(
        self,
        scope_id: str,
        category: LogCategory,
        from_seq: int = 0,
        to_seq: int | None = None,
    ) -> list[LogRecord]:
        with self._lock:
            records = self._read_chain(scope_id, category)
        return [r for r in records if _in_range(r, from_seq, to_seq)]

    def _matching(self, query: LedgerQuery) -> list[LogRecord]:
        if query.scope_id is not None:
            categories = [query.category] if query.category else list(LogCategory)
            files = [self._chain_file(query.scope_id, c) for c in categories]
        else:
            files = sorted(self.storage_path.glob("ledger_*.jsonl"))

        records: list[LogRecord] = []
        for file_path in files:
            records.extend(r for r in self._read_file(file_path) if query.matches(r))
        return records

    async def count(self, query: LedgerQuery) -> int:
        return len(self._matching(query))

    async def page(self, query: LedgerQuery) -> list[LogRecord]:
        matched = newest_first(self._matching(query))
        return matched[query.offset:query.offset + query.limit]

    async def scopes(self) -> list[str]:
        scopes = set()
        for file_path in self.storage_path.glob("ledger_*.jsonl"):
            records = self._read_file(file_path)
            if records:
                scopes.add(records[0].scope_id)
        return sorted(scopes)

    async def close(self) -> None:
        return None


LEDGER_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS ledger_records (
    record_id       TEXT PRIMARY KEY,
    schema_version  TEXT NOT NULL,
    scope_id        TEXT NOT NULL,
    category        TEXT NOT NULL,
    sequence_num    BIGINT NOT NULL,
    timestamp       TIMESTAMPTZ NOT NULL,
    actor_user_id   TEXT,
    actor_email     TEXT,
    actor_name      TEXT,
    action          TEXT NOT NULL,
    resource        TEXT,
    resource_id     TEXT,
    ip_address      TEXT,
    user_agent      TEXT,
    payload         JSONB NOT NULL,
    severity        TEXT NOT NULL,
    audit_category  TEXT,
    previous_hash   TEXT,
    hash            TEXT,
    verified        BOOLEAN NOT NULL DEFAULT FALSE,
    CONSTRAINT ledger_records_chain_seq_key UNIQUE (scope_id, category, sequence_num)
);

CREATE INDEX IF NOT EXISTS ledger_records_timestamp_idx
    ON ledger_records (timestamp);
CREATE INDEX IF NOT EXISTS ledger_records_scope_timestamp_idx
    ON ledger_records (scope_id, timestamp);

CREATE OR REPLACE FUNCTION ledger_records_block_mutation() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'ledger_records is append-only';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS ledger_records_append_only ON ledger_records;
CREATE TRIGGER ledger_records_append_only
    BEFORE UPDATE OR DELETE ON ledger_records
    FOR EACH ROW EXECUTE FUNCTION ledger_records_block_mutation();
"""


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresLedgerStore:
    """PostgreSQL-based storage for production.

    Uses the ledger_records table, where a unique constraint on
    (scope_id, category, sequence_num) and an append-only trigger are
    enforced by the database. Safe across processes.
    """

    def __init__(self, connection_pool: Any):
        """Initialize PostgreSQL storage.

        Args:
            connection_pool: asyncpg connection pool
        """
        self.pool = connection_pool
        logger.info("PostgresLedgerStore initialized")

    async def ensure_schema(self) -> None:
        """Create the ledger table, indexes and triggers if missing."""
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(LEDGER_TABLE_DDL)
        except DATABASE_ERRORS as exc:
            raise StorageUnavailable("Cannot create ledger schema") from exc

    async def append(self, record: LogRecord) -> LogRecord:
        """Insert a record with a single conditional statement."""
        try:
            async with self.pool.acquire() as conn:
                inserted = await conn.fetchval(
                    """
                    INSERT INTO ledger_records (
                        record_id, schema_version, scope_id, category,
                        sequence_num, timestamp, actor_user_id, actor_email,
                        actor_name, action, resource, resource_id, ip_address,
                        user_agent, payload, severity, audit_category,
                        previous_hash, hash, verified
                    ) VALUES (
                        $1, $2, $3, $4, $5, $6, $7, $8, $9, $10,
                        $11, $12, $13, $14, $15, $16, $17, $18, $19, $20
                    )
                    ON CONFLICT (scope_id, category, sequence_num) DO NOTHING
                    RETURNING record_id
                    """,
                    record.record_id,
                    record.schema_version,
                    record.scope_id,
                    record.category.value,
                    record.sequence_num,
                    record.timestamp,
                    record.actor.user_id,
                    record.actor.email,
                    record.actor.name,
                    record.action,
                    record.resource,
                    record.resource_id,
                    record.context.ip_address,
                    record.context.user_agent,
                    record.payload.model_dump_json(),
                    record.severity,
                    record.audit_category.value if record.audit_category else None,
                    record.previous_hash,
                    record.hash,
                    record.verified,
                )
        except DATABASE_ERRORS as exc:
            raise StorageUnavailable("Cannot append ledger record") from exc

        if inserted is None:
            raise Conflict(record.scope_id, record.category, record.sequence_num)
        return record

    async def last_record(self, scope_id: str, category: LogCategory) -> LogRecord | None:
        row = await self._fetchrow(
            """
            SELECT * FROM ledger_records
            WHERE scope_id = $1 AND category = $2
            ORDER BY sequence_num DESC
            LIMIT 1
            """,
            scope_id,
            category.value,
        )
        return self._row_to_record(row) if row else None

    async def range(
        self,
        scope_id: str,
        category: LogCategory,
        from_seq: int = 0,
        to_seq: int | None = None,
    ) -> list[LogRecord]:
        if to_seq is None:
            rows = await self._fetch(
                """
                SELECT * FROM ledger_records
                WHERE scope_id = $1 AND category = $2 AND sequence_num >= $3
                ORDER BY sequence_num
                """,
                scope_id,
                category.value,
                from_seq,
            )
        else:
            rows = await self._fetch(
                """
                SELECT * FROM ledger_records
                WHERE scope_id = $1 AND category = $2
                  AND sequence_num >= $3 AND sequence_num <= $4
                ORDER BY sequence_num
                """,
                scope_id,
                category.value,
                from_seq,
                to_seq,
            )
        return [self._row_to_record(row) for row in rows]

    def _where(self, query: LedgerQuery) -> tuple[str, list[Any]]:
        """Build the WHERE clause and parameters for a query."""
        conditions: list[str] = []
        params: list[Any] = []

        def add(condition: str, value: Any) -> None:
            params.append(value)
            conditions.append(condition.format(n=len(params)))

        if query.scope_id is not None:
            add("scope_id = ${n}", query.scope_id)
        if query.record_id is not None:
            add("record_id = ${n}", query.record_id)
        if query.category is not None:
            add("category = ${n}", query.category.value)
        if query.actor_id is not None:
            add("actor_user_id = ${n}", query.actor_id)
        if query.action is not None:
            add("action = ${n}", query.action)
        if query.resource is not None:
            add("resource = ${n}", query.resource)
        if query.audit_category is not None:
            add("audit_category = ${n}", query.audit_category.value)
        if query.severity is not None:
            add("severity = ${n}", query.severity)
        if query.blocked is not None:
            add("(payload->>'blocked')::boolean = ${n}", query.blocked)
        if query.start_time is not None:
            add("timestamp >= ${n}", query.start_time)
        if query.end_time is not None:
            add("timestamp <= ${n}", query.end_time)
        if query.search:
            add(
                "(actor_email ILIKE ${n} OR actor_name ILIKE ${n} "
                "OR action ILIKE ${n} OR resource ILIKE ${n})",
                f"%{_escape_like(query.search)}%",
            )

        where_clause = " AND ".join(conditions) if conditions else "TRUE"
        return where_clause, params

    async def count(self, query: LedgerQuery) -> int:
        where_clause, params = self._where(query)
        try:
            async with self.pool.acquire() as conn:
                result = await conn.fetchval(
                    f"SELECT COUNT(*) FROM ledger_records WHERE {where_clause}",
                    *params,
                )
        except DATABASE_ERRORS as exc:
            raise StorageUnavailable("Cannot count ledger records") from exc
        return result or 0

    async def page(self, query: LedgerQuery) -> list[LogRecord]:
        where_clause, params = self._where(query)
        param_num = len(params) + 1
        rows = await self._fetch(
            f"""
            SELECT * FROM ledger_records
            WHERE {where_clause}
            ORDER BY timestamp DESC, sequence_num DESC
            LIMIT ${param_num} OFFSET ${param_num + 1}
            """,
            *params,
            query.limit,
            query.offset,
        )
        return [self._row_to_record(row) for row in rows]

    async def scopes(self) -> list[str]:
        rows = await self._fetch(
            "SELECT DISTINCT scope_id FROM ledger_records ORDER BY scope_id"
        )
        return [row["scope_id"] for row in rows]

    async def close(self) -> None:
        await self.pool.close()

    async def _fetch(self, sql: str, *args: Any) -> list[Any]:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetch(sql, *args)
        except DATABASE_ERRORS as exc:
            raise StorageUnavailable("Cannot read ledger records") from exc

    async def _fetchrow(self, sql: str, *args: Any) -> Any:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchrow(sql, *args)
        except DATABASE_ERRORS as exc:
            raise StorageUnavailable("Cannot read ledger records") from exc

    def _row_to_record(self, row: Any) -> LogRecord:
        """Convert database row to record."""
        payload = row["payload"]
        return LogRecord(
            schema_version=row["schema_version"],
            record_id=row["record_id"],
            scope_id=row["scope_id"],
            category=LogCategory(row["category"]),
            sequence_num=row["sequence_num"],
            timestamp=row["timestamp"],
            actor=Actor(
                user_id=row["actor_user_id"],
                email=row["actor_email"],
                name=row["actor_name"],
            ),
            action=row["action"],
            resource=row["resource"],
            resource_id=row["resource_id"],
            context=RequestContext(
                ip_address=row["ip_address"],
                user_agent=row["user_agent"],
            ),
            payload=payload if isinstance(payload, dict) else json.loads(payload),
            previous_hash=row["previous_hash"],
            hash=row["hash"],
            verified=row["verified"],
        )


async def create_ledger_store(config: AuditConfig) -> LedgerStore:
    """Get a ledger store instance based on configuration."""
    if config.storage_type == StorageType.POSTGRES:
        try:
            pool = await asyncpg.create_pool(
                dsn=config.database_url,
                min_size=config.database_pool_min_size,
                max_size=config.database_pool_max_size,
            )
        except DATABASE_ERRORS as exc:
            raise StorageUnavailable("Cannot connect to ledger database") from exc
        store = PostgresLedgerStore(pool)
        await store.ensure_schema()
        return store

    if config.storage_type == StorageType.MEMORY:
        return InMemoryLedgerStore()

    return FileLedgerStore(config.storage_path or "data/ledger")
