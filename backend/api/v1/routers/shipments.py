"""
Shipments Router — carrier status ingestion (API push, CSV upload, email body).
"""

from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_tenant_db, get_tenant_id
from fulfillment.errors import CsvStructureError, NotFoundError
from fulfillment.ingestion import ingest_csv, ingest_email, ingest_shipment_events
from fulfillment.state_machine import map_provider_status
from fulfillment.states import IngestionMode
from integrations.base import InboundStatusEvent

router = APIRouter(prefix="/api/v1/shipments", tags=["shipments"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class StatusEventIn(BaseModel):
    tracking_number: str = Field(min_length=1, max_length=100)
    carrier: str = Field(min_length=1, max_length=50)
    provider_status: str = Field(min_length=1, max_length=100)
    occurred_at: datetime
    location: str | None = None
    description: str | None = None
    raw_data: dict | None = None

    def to_event(self) -> InboundStatusEvent:
        occurred_at = self.occurred_at
        if occurred_at.tzinfo is not None:
            occurred_at = occurred_at.astimezone(timezone.utc).replace(tzinfo=None)
        return InboundStatusEvent(
            tracking_number=self.tracking_number,
            carrier=self.carrier,
            provider_status=self.provider_status,
            occurred_at=occurred_at,
            location=self.location,
            description=self.description,
            raw_data=self.raw_data,
        )


class StatusEventBatch(BaseModel):
    ingestion_mode: IngestionMode = IngestionMode.API
    events: list[StatusEventIn] = Field(min_length=1, max_length=1000)


class CsvUpload(BaseModel):
    carrier: str = Field(min_length=1, max_length=50)
    csv_content: str = Field(min_length=1)


class EmailUpload(BaseModel):
    carrier: str = Field(min_length=1, max_length=50)
    email_content: str = Field(min_length=1)


class IngestionSummaryResponse(BaseModel):
    success: bool
    processed: int
    skipped: int
    unmapped: int
    errors: list[str]


class TransitionResponse(BaseModel):
    updated: bool
    station: str | None
    from_state: str | None
    to_state: str | None
    rejected: bool
    skipped: bool
    reason: str | None


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/events", response_model=IngestionSummaryResponse)
async def ingest_events(
    body: StatusEventBatch,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Ingest structured carrier status events."""
    summary = await ingest_shipment_events(db, tenant_id, [e.to_event() for e in body.events], body.ingestion_mode)
    return summary.to_dict()


@router.post("/csv", response_model=IngestionSummaryResponse)
async def ingest_csv_upload(
    body: CsvUpload,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Ingest a carrier CSV export. Unresolvable headers reject the whole file."""
    try:
        summary = await ingest_csv(db, tenant_id, body.csv_content, body.carrier)
    except CsvStructureError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return summary.to_dict()


@router.post("/email", response_model=IngestionSummaryResponse)
async def ingest_email_body(
    body: EmailUpload,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Ingest a carrier notification email."""
    summary = await ingest_email(db, tenant_id, body.email_content, body.carrier)
    return summary.to_dict()


@router.post("/events/{event_id}/map", response_model=TransitionResponse)
async def map_event(
    event_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Re-apply a stored shipment event to its order."""
    try:
        result = await map_provider_status(db, tenant_id, event_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return result.as_dict()
