"""Canonical content hashing for log records."""

from __future__ import annotations

import hashlib
import json
import math
from datetime import UTC, datetime
from typing import Any

from pydantic_core import PydanticSerializationError

from ledger.audit.models import LogRecord

# Every hashed field is always present in the canonical form; absent values
# serialize as null rather than being dropped.
HASHED_FIELDS = (
    "schema_version",
    "record_id",
    "scope_id",
    "category",
    "sequence_num",
    "timestamp",
    "actor",
    "action",
    "resource",
    "resource_id",
    "context",
    "payload",
    "previous_hash",
)


def canonical_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with fixed microsecond precision."""
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _reject_non_finite(value: Any, path: str) -> None:
    # JSON mode would turn NaN and infinities into null
    if isinstance(value, float) and not math.isfinite(value):
        raise TypeError(f"Non-finite number at {path} cannot be hashed")
    if isinstance(value, dict):
        for key, item in value.items():
            _reject_non_finite(item, f"{path}.{key}")
    elif isinstance(value, (list, tuple, set, frozenset)):
        for index, item in enumerate(value):
            _reject_non_finite(item, f"{path}[{index}]")


class ContentHasher:
    """SHA-256 over the canonical JSON form of a record.

    Stable across processes: keys are sorted, separators are fixed, and
    nested values go through pydantic's JSON mode so a record reloaded from
    storage hashes the same as the one that was written.
    """

    HASH_ALGORITHM = "sha256"

    def content(self, record: LogRecord) -> dict[str, Any]:
        """Get the deterministic dictionary of hashed fields."""
        try:
            _reject_non_finite(record.model_dump(include=set(HASHED_FIELDS)), "record")
            content = record.model_dump(mode="json", include=set(HASHED_FIELDS))
        except PydanticSerializationError as exc:
            raise TypeError(f"Record {record.record_id} is not serializable: {exc}") from exc

        content["timestamp"] = canonical_timestamp(record.timestamp)
        return content

    def canonicalize(self, record: LogRecord) -> bytes:
        canonical = json.dumps(
            self.content(record),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
        return canonical.encode("utf-8")

    def hash(self, record: LogRecord) -> str:
        """Compute the hex digest for a record, ignoring its stored hash."""
        return hashlib.sha256(self.canonicalize(record)).hexdigest()
