"""
Couriers Router — courier performance, smart routing recommendations and overrides.
"""

import datetime as dt
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_tenant_db, get_tenant_id
from fulfillment.courier_performance import compute_courier_performance, get_courier_performance
from fulfillment.errors import InvalidWeightsError, NotFoundError
from fulfillment.smart_routing import (
    get_routing_analytics,
    get_tenant_weights,
    recommend_carrier,
    save_routing_decision,
    set_carrier_override,
    update_tenant_weights,
)

router = APIRouter(prefix="/api/v1/couriers", tags=["couriers"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class ComputeRequest(BaseModel):
    target_date: dt.date | None = None


class ComputeResponse(BaseModel):
    date: str
    couriers_analyzed: int
    recommendations: list[dict]
    skipped: bool


class CourierPerformanceResponse(BaseModel):
    courier: str
    date: dt.date
    region: str
    total_shipments: int
    delivered_count: int
    returned_count: int
    failed_count: int
    avg_pickup_hours: float | None
    avg_delivery_hours: float | None
    avg_return_cycle_hours: float | None
    avg_cod_remittance_hours: float | None
    cod_collection_rate: float | None
    delivery_rate: float | None
    return_rate: float | None
    on_time_rate: float | None
    score: int
    recommendations: list[str] | None

    model_config = {"from_attributes": True}


class CarrierScoreOut(BaseModel):
    carrier: str
    scores: dict[str, int]
    weighted_score: int
    tier: str
    sample_size: int


class RecommendationResponse(BaseModel):
    best_carrier: str | None
    best_score: int
    backup_carrier: str | None
    backup_score: int | None
    confidence: str
    reasoning: str
    all_scores: list[CarrierScoreOut]


class WeightsPayload(BaseModel):
    pickup_speed: float = Field(ge=0, le=1)
    delivery_speed: float = Field(ge=0, le=1)
    success_rate: float = Field(ge=0, le=1)
    return_rate: float = Field(ge=0, le=1)
    cod_performance: float = Field(ge=0, le=1)
    region_performance: float = Field(ge=0, le=1)


class OverrideRequest(BaseModel):
    carrier: str = Field(min_length=1, max_length=50)
    is_disabled: bool = False
    is_forced: bool = False


class OverrideResponse(BaseModel):
    carrier: str
    is_disabled: bool
    is_forced: bool

    model_config = {"from_attributes": True}


class DecisionCreate(BaseModel):
    order_id: UUID
    recommended_carrier: str
    chosen_carrier: str
    score: float
    confidence: str = Field(pattern="^(high|medium|low)$")
    reasoning: str | None = None


class DecisionResponse(BaseModel):
    decision_id: UUID
    order_id: UUID
    recommended_carrier: str
    chosen_carrier: str
    score: float
    confidence: str
    reasoning: str | None
    overridden_by: str | None
    created_at: dt.datetime

    model_config = {"from_attributes": True}


class RoutingAnalyticsResponse(BaseModel):
    total_decisions: int
    followed_recommendation: int
    override_rate: int
    avg_score: int
    confidence_distribution: dict[str, int]


# ─── Performance ────────────────────────────────────────────────────────────


@router.post("/performance/compute", response_model=ComputeResponse)
async def compute_performance(
    body: ComputeRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Compute the daily courier scorecard. Repeat calls for the same day are skipped."""
    return await compute_courier_performance(db, tenant_id, body.target_date)


@router.get("/performance", response_model=list[CourierPerformanceResponse])
async def list_performance(
    days: int = Query(30, ge=1, le=90),
    courier: str | None = None,
    region: str | None = None,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Daily courier performance over the last N days."""
    return await get_courier_performance(db, tenant_id, days=days, courier=courier, region=region)


# ─── Smart routing ──────────────────────────────────────────────────────────


@router.get("/recommendation", response_model=RecommendationResponse)
async def get_recommendation(
    payment_method: str = Query(..., pattern="^(cod|prepaid)$"),
    order_value: float = Query(..., ge=0),
    region: str | None = None,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Ranked carrier recommendation for a pending shipment."""
    return await recommend_carrier(
        db,
        tenant_id,
        payment_method=payment_method,
        order_value=order_value,
        region=region,
    )


@router.get("/weights", response_model=WeightsPayload)
async def read_weights(
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    return (await get_tenant_weights(db, tenant_id)).as_dict()


@router.put("/weights", response_model=WeightsPayload)
async def write_weights(
    body: WeightsPayload,
    tenant_id: UUID = Depends(get_tenant_id),
    user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Replace the tenant's scoring weights. Weights must sum to 1."""
    try:
        weights = await update_tenant_weights(db, tenant_id, body.model_dump(), performed_by=user.get("sub", "user"))
    except InvalidWeightsError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    await db.commit()
    return weights.as_dict()


@router.put("/overrides", response_model=OverrideResponse)
async def write_override(
    body: OverrideRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Disable a carrier, or force a single carrier for every recommendation."""
    override = await set_carrier_override(
        db,
        tenant_id,
        body.carrier,
        is_disabled=body.is_disabled,
        is_forced=body.is_forced,
        performed_by=user.get("sub", "user"),
    )
    await db.commit()
    return override


@router.post("/decisions", response_model=DecisionResponse, status_code=201)
async def create_decision(
    body: DecisionCreate,
    tenant_id: UUID = Depends(get_tenant_id),
    user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Record which carrier was actually chosen for an order."""
    overridden_by = user.get("sub") if body.chosen_carrier != body.recommended_carrier else None
    try:
        decision = await save_routing_decision(
            db,
            tenant_id,
            order_id=body.order_id,
            recommended_carrier=body.recommended_carrier,
            chosen_carrier=body.chosen_carrier,
            score=body.score,
            confidence=body.confidence,
            reasoning=body.reasoning,
            overridden_by=overridden_by,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    await db.commit()
    return decision


@router.get("/decisions/analytics", response_model=RoutingAnalyticsResponse)
async def decision_analytics(
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    return await get_routing_analytics(db, tenant_id)
