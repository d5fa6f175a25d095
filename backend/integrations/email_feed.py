"""
Carrier Email Parser

Turns a free-text carrier notification into status events. Tracking numbers
are picked out of phrasings like "Tracking Number: 1Z999AA10123456784",
"AWB# 12345678901" or "Shipment 9876543210"; the status is the first keyword
found in the body. One event per distinct tracking number.
"""

import re
from datetime import datetime

import structlog

from integrations.base import InboundStatusEvent

logger = structlog.get_logger()

TRACKING_PATTERN = re.compile(
    r"(?:tracking|awb|waybill|shipment|order)(?:\s*(?:number|no\.?|#))?[:\s#]*((?=[A-Z]*\d)[A-Z0-9]{8,20})\b",
    re.IGNORECASE,
)

# Checked in order; first hit wins.
STATUS_KEYWORDS: tuple[tuple[re.Pattern, str], ...] = (
    (re.compile(r"delivered", re.IGNORECASE), "delivered"),
    (re.compile(r"out for delivery", re.IGNORECASE), "out_for_delivery"),
    (re.compile(r"in transit", re.IGNORECASE), "in_transit"),
    (re.compile(r"picked up", re.IGNORECASE), "picked_up"),
    (re.compile(r"return", re.IGNORECASE), "returned"),
    (re.compile(r"failed delivery", re.IGNORECASE), "delivery_failed"),
)

UNKNOWN_STATUS = "unknown"
DESCRIPTION_LIMIT = 200


def extract_tracking_numbers(content: str) -> list[str]:
    seen: list[str] = []
    for match in TRACKING_PATTERN.finditer(content or ""):
        number = match.group(1)
        if number not in seen:
            seen.append(number)
    return seen


def detect_status(content: str) -> str:
    for pattern, status in STATUS_KEYWORDS:
        if pattern.search(content or ""):
            return status
    return UNKNOWN_STATUS


def parse_shipping_email(content: str, carrier: str, *, now: datetime | None = None) -> list[InboundStatusEvent]:
    tracking_numbers = extract_tracking_numbers(content)
    status = detect_status(content)
    occurred_at = now or datetime.utcnow()
    description = (content or "")[:DESCRIPTION_LIMIT]

    events = [
        InboundStatusEvent(
            tracking_number=number,
            carrier=carrier,
            provider_status=status,
            occurred_at=occurred_at,
            description=description,
            raw_data={"source": "email"},
        )
        for number in tracking_numbers
    ]
    logger.info("email_feed.parsed", carrier=carrier, tracking_numbers=len(events), status=status)
    return events
