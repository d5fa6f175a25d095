"""
Shipment feed integrations.

Every inbound carrier channel is reduced to InboundStatusEvent records:
  - API push                   (structured JSON, validated by the router)
  - CSV export                 (heuristic header resolution)
  - Email notification         (pattern-matched tracking numbers + keyword status)

Usage:
    from integrations import parse_shipping_csv

    parsed = parse_shipping_csv(csv_text, carrier="aramex")
    summary = await ingest_shipment_events(db, tenant_id, parsed.events, IngestionMode.CSV)
"""

from integrations.base import InboundStatusEvent, IngestionSummary, parse_timestamp
from integrations.csv_feed import CsvParseResult, parse_shipping_csv, resolve_columns
from integrations.email_feed import detect_status, extract_tracking_numbers, parse_shipping_email

__all__ = [
    "InboundStatusEvent",
    "IngestionSummary",
    "parse_timestamp",
    "CsvParseResult",
    "parse_shipping_csv",
    "resolve_columns",
    "parse_shipping_email",
    "extract_tracking_numbers",
    "detect_status",
]
