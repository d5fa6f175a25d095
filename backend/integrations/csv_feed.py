"""
Carrier CSV Feed Parser

Carriers export tracking updates as CSV with their own header names. The
column resolver matches headers by keyword:

  tracking number   tracking, awb, waybill
  status            status, state
  timestamp         date, time, timestamp
  location          location, city
  description       description, remark, note

A file without a tracking or status column is rejected before any row is
read. Bad rows are skipped and reported; they never abort the file.
"""

import csv
import io
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from fulfillment.errors import CsvStructureError
from integrations.base import InboundStatusEvent, parse_timestamp

logger = structlog.get_logger()

COLUMN_KEYWORDS: dict[str, tuple[str, ...]] = {
    "tracking_number": ("tracking", "awb", "waybill"),
    "provider_status": ("status", "state"),
    "occurred_at": ("date", "time", "timestamp"),
    "location": ("location", "city"),
    "description": ("description", "remark", "note"),
}


@dataclass
class CsvParseResult:
    events: list[InboundStatusEvent] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def resolve_columns(headers: list[str]) -> dict[str, int]:
    """Map canonical field → column index. Each column is claimed at most once."""
    normalized = [(h or "").strip().lower() for h in headers]
    resolved: dict[str, int] = {}
    claimed: set[int] = set()
    for field_name, keywords in COLUMN_KEYWORDS.items():
        for idx, header in enumerate(normalized):
            if idx in claimed:
                continue
            if any(keyword in header for keyword in keywords):
                resolved[field_name] = idx
                claimed.add(idx)
                break
    return resolved


def _cell(row: list[str], idx: int | None) -> str:
    if idx is None or idx >= len(row):
        return ""
    return (row[idx] or "").strip()


def parse_shipping_csv(content: str, carrier: str, *, now: datetime | None = None) -> CsvParseResult:
    reader = csv.reader(io.StringIO((content or "").strip()))
    headers = next(reader, None)
    if not headers:
        raise CsvStructureError("CSV is empty; a header row is required")

    columns = resolve_columns(headers)
    missing = [name for name in ("tracking_number", "provider_status") if name not in columns]
    if missing:
        raise CsvStructureError(f"CSV must have tracking number and status columns (missing: {', '.join(missing)})")

    result = CsvParseResult()
    for line_no, row in enumerate(reader, start=2):
        if not any(cell.strip() for cell in row):
            continue

        tracking_number = _cell(row, columns["tracking_number"])
        provider_status = _cell(row, columns["provider_status"])
        if not tracking_number or not provider_status:
            result.errors.append(f"Row {line_no}: missing tracking number or status")
            continue

        raw_date = _cell(row, columns.get("occurred_at"))
        if raw_date:
            try:
                occurred_at = parse_timestamp(raw_date)
            except ValueError:
                result.errors.append(f"Row {line_no}: invalid date '{raw_date}'")
                continue
        else:
            occurred_at = now or datetime.utcnow()

        result.events.append(
            InboundStatusEvent(
                tracking_number=tracking_number,
                carrier=carrier,
                provider_status=provider_status,
                occurred_at=occurred_at,
                location=_cell(row, columns.get("location")) or None,
                description=_cell(row, columns.get("description")) or None,
                raw_data={headers[i].strip(): value for i, value in enumerate(row) if i < len(headers)},
            )
        )

    logger.info(
        "csv_feed.parsed",
        carrier=carrier,
        events=len(result.events),
        row_errors=len(result.errors),
    )
    return result
