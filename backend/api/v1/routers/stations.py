"""
Stations Router — station queues, SLA summary, manual routing and SLA targets.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_tenant_db, get_tenant_id
from core.config import get_settings
from fulfillment.errors import NotFoundError
from fulfillment.stations import (
    get_orders_by_station,
    get_station_metrics_summary,
    route_to_station,
    set_station_sla_target,
)
from fulfillment.states import StationType

router = APIRouter(prefix="/api/v1/stations", tags=["stations"])
settings = get_settings()


# ─── Schemas ────────────────────────────────────────────────────────────────


class StationOrder(BaseModel):
    order_id: UUID
    order_number: str
    state: str
    customer_name: str | None
    total: float | None
    station: str
    entered_station_at: datetime
    elapsed_minutes: int
    sla_target_minutes: int
    sla_remaining_minutes: int
    sla_breached: bool


class StationQueueResponse(BaseModel):
    orders: list[StationOrder]
    total: int
    breached_count: int


class StationSummary(BaseModel):
    count: int
    breached: int
    avg_wait_minutes: int


class RouteRequest(BaseModel):
    order_id: UUID
    station: StationType
    idempotency_key: str | None = Field(default=None, max_length=400)


class RouteResponse(BaseModel):
    routed: bool
    station: str | None
    closed: int
    skipped: bool


class SlaTargetRequest(BaseModel):
    sla_target_minutes: int = Field(gt=0, le=60 * 24 * 30)


class SlaTargetResponse(BaseModel):
    station: str
    sla_target_minutes: int


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/metrics", response_model=dict[str, StationSummary])
async def station_metrics(
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Open-order count, breach count and average wait per station."""
    return await get_station_metrics_summary(db, tenant_id)


@router.get("/{station}/orders", response_model=StationQueueResponse)
async def station_orders(
    station: StationType,
    limit: int = Query(50, ge=1, le=settings.station_queue_max_limit),
    offset: int = Query(0, ge=0),
    include_breached: bool = True,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Orders currently at a station, oldest first, with live SLA remaining."""
    return await get_orders_by_station(
        db,
        tenant_id,
        station,
        limit=limit,
        offset=offset,
        include_breached=include_breached,
    )


@router.post("/route", response_model=RouteResponse)
async def route_order(
    body: RouteRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Manually hand an order to a station."""
    try:
        result = await route_to_station(
            db,
            tenant_id,
            body.order_id,
            body.station,
            idempotency_key=body.idempotency_key,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {
        "routed": result.routed,
        "station": result.station.value if result.station else None,
        "closed": result.closed,
        "skipped": result.skipped,
    }


@router.put("/{station}/sla", response_model=SlaTargetResponse)
async def update_sla_target(
    station: StationType,
    body: SlaTargetRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Set this tenant's SLA target for a station. Applies to newly opened intervals."""
    target = await set_station_sla_target(
        db,
        tenant_id,
        station,
        body.sla_target_minutes,
        performed_by=user.get("sub", "user"),
    )
    await db.commit()
    return {"station": target.station, "sla_target_minutes": target.sla_target_minutes}
