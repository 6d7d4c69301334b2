"""Compliance export formats."""

from __future__ import annotations

import csv
import io
from collections.abc import Iterable, Iterator
from enum import Enum

from ledger.audit.hashing import canonical_timestamp
from ledger.audit.models import LogRecord

CSV_HEADERS = [
    "Timestamp",
    "Sequence",
    "User Email",
    "Action",
    "Resource",
    "Category",
    "Severity",
    "IP Address",
    "Status",
    "Hash",
]


class ExportFormat(str, Enum):
    """Supported export serializations."""

    NDJSON = "ndjson"
    CSV = "csv"

    @property
    def media_type(self) -> str:
        return "application/x-ndjson" if self is ExportFormat.NDJSON else "text/csv"


def export_ndjson(records: Iterable[LogRecord]) -> Iterator[str]:
    """One JSON document per line, using the persisted field names."""
    for record in records:
        yield record.model_dump_json() + "\n"


def _csv_line(values: list[object]) -> str:
    buffer = io.StringIO()
    csv.writer(buffer).writerow(values)
    return buffer.getvalue()


def export_csv(records: Iterable[LogRecord]) -> Iterator[str]:
    """Header row followed by one row per record."""
    yield _csv_line(CSV_HEADERS)
    for record in records:
        error_message = getattr(record.payload, "error_message", None)
        yield _csv_line([
            canonical_timestamp(record.timestamp),
            record.sequence_num,
            record.actor.email or "",
            record.action,
            record.resource or "",
            record.audit_category.value if record.audit_category else record.category.value,
            record.severity,
            record.context.ip_address or "",
            "FAILURE" if error_message else "SUCCESS",
            record.hash or "",
        ])


def export_lines(records: Iterable[LogRecord], fmt: ExportFormat) -> Iterator[str]:
    """Serialize records in the requested format."""
    if fmt is ExportFormat.CSV:
        return export_csv(records)
    return export_ndjson(records)
