"""
Shipment Feed Containers

Every inbound channel (API push, CSV upload, email body) is reduced to a
list of InboundStatusEvent before it reaches the ingestion workflow, so the
rest of the pipeline is channel-agnostic.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

logger = structlog.get_logger()

_DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y/%m/%d",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y",
    "%d-%m-%Y %H:%M",
    "%d-%m-%Y",
    "%Y%m%d",
)


# ── Event container ───────────────────────────────────────────────────────


@dataclass
class InboundStatusEvent:
    """One carrier status update as received from any channel."""

    tracking_number: str
    carrier: str
    provider_status: str
    occurred_at: datetime
    location: str | None = None
    description: str | None = None
    raw_data: dict[str, Any] | None = None


# ── Ingestion summary ─────────────────────────────────────────────────────


@dataclass
class IngestionSummary:
    """Standardized return from every ingestion entry point."""

    processed: int = 0
    skipped: int = 0
    unmapped: int = 0
    errors: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None

    @property
    def success(self) -> bool:
        return not self.errors

    def complete(self) -> "IngestionSummary":
        self.completed_at = datetime.utcnow()
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "processed": self.processed,
            "skipped": self.skipped,
            "unmapped": self.unmapped,
            "errors": list(self.errors),
        }


def parse_timestamp(value: str) -> datetime:
    """Parse a feed timestamp into naive UTC. Raises ValueError when unparseable."""
    text = (value or "").strip()
    if not text:
        raise ValueError("empty timestamp")

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
        if parsed is None:
            raise ValueError(f"unrecognized timestamp: {text}")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
