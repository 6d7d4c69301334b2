"""Hash chain appender.

Builds each new record on top of the current chain head. Two mechanisms
keep a chain from forking:
1. An asyncio lock per (scope_id, category) serializes appends made from
   the same event loop, so no two candidates are built from one head
2. The store rejects a duplicate sequence number with Conflict; the loser
   re-reads the head and tries again (writers in other threads or
   processes take this path)
"""

import asyncio
import logging
import random
import threading
import weakref
from typing import Any

from ledger.audit.errors import AppendContention, Conflict
from ledger.audit.hashing import ContentHasher
from ledger.audit.models import (
    Actor,
    LogCategory,
    LogRecord,
    RequestContext,
    utcnow,
)
from ledger.audit.storage import LedgerStore

logger = logging.getLogger(__name__)

ChainKey = tuple[str, LogCategory]


class ChainAppender:
    """Appends records to hash-linked chains.

    Usage:
        appender = ChainAppender(store)

        record = await appender.append(
            "company-123",
            LogCategory.GENERAL_AUDIT,
            action="DRIVER_CREATED",
            payload=GeneralAuditPayload(audit_category=AuditCategory.DATA_MODIFICATION),
            actor=Actor(user_id="user-1", email="admin@example.com"),
        )
    """

    def __init__(
        self,
        store: LedgerStore,
        hasher: ContentHasher | None = None,
        max_attempts: int = 5,
        retry_backoff_seconds: float = 0.01,
    ):
        """Initialize the appender.

        Args:
            store: Append-only storage backend
            hasher: Content hasher (default: SHA-256 canonical JSON)
            max_attempts: Attempts before raising AppendContention
            retry_backoff_seconds: Base delay between attempts
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.store = store
        self.hasher = hasher or ContentHasher()
        self.max_attempts = max_attempts
        self.retry_backoff_seconds = retry_backoff_seconds

        # asyncio locks belong to one event loop. A lock is dropped once no
        # append holds or waits on it.
        self._locks: weakref.WeakKeyDictionary[
            asyncio.AbstractEventLoop, weakref.WeakValueDictionary[ChainKey, asyncio.Lock]
        ] = weakref.WeakKeyDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: ChainKey) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        with self._locks_guard:
            locks = self._locks.get(loop)
            if locks is None:
                locks = weakref.WeakValueDictionary()
                self._locks[loop] = locks
            lock = locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                locks[key] = lock
            return lock

    def _backoff(self, attempt: int) -> float:
        delay = self.retry_backoff_seconds * (2 ** (attempt - 1))
        return delay * random.uniform(0.5, 1.5)

    async def append(
        self,
        scope_id: str,
        category: LogCategory,
        *,
        action: str,
        payload: Any,
        actor: Actor | None = None,
        resource: str | None = None,
        resource_id: str | None = None,
        context: RequestContext | None = None,
    ) -> LogRecord:
        """Create, hash and store the next record of a chain.

        Automatically handles:
        - Sequence number assignment (genesis is 0)
        - Previous hash linking
        - Record hash computation
        - Retry when another writer took the same sequence

        Returns:
            The stored record

        Raises:
            AppendContention: every attempt lost to another writer
            StorageUnavailable: the store could not be read or written
        """
        async with self._lock_for((scope_id, category)):
            for attempt in range(1, self.max_attempts + 1):
                previous = await self.store.last_record(scope_id, category)

                candidate = LogRecord(
                    scope_id=scope_id,
                    category=category,
                    sequence_num=previous.sequence_num + 1 if previous else 0,
                    timestamp=utcnow(),
                    actor=actor or Actor(),
                    action=action,
                    resource=resource,
                    resource_id=resource_id,
                    context=context or RequestContext(),
                    payload=payload,
                    previous_hash=previous.hash if previous else None,
                    verified=True,
                )
                record = candidate.model_copy(update={"hash": self.hasher.hash(candidate)})

                try:
                    await self.store.append(record)
                except Conflict:
                    logger.warning(
                        "Ledger append conflict: scope=%s category=%s seq=%d attempt=%d/%d",
                        scope_id,
                        category.value,
                        record.sequence_num,
                        attempt,
                        self.max_attempts,
                    )
                    if attempt < self.max_attempts:
                        await asyncio.sleep(self._backoff(attempt))
                    continue

                logger.debug(
                    "Appended ledger record: scope=%s category=%s seq=%d action=%s hash=%s",
                    scope_id,
                    category.value,
                    record.sequence_num,
                    action,
                    record.hash[:16] + "...",
                )
                return record

        raise AppendContention(scope_id, category, self.max_attempts)
