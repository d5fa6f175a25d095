"""
Courier Performance Engine — daily courier scorecards.

For each (carrier, region) with shipments created in the trailing window:
  - Pickup delay       picked_up_at − created_at
  - Delivery duration  delivered_at − created_at
  - Return cycle       returned_at − created_at
  - COD remittance     cod_settled_at − delivered_at
  - Delivery / return / on-time (≤ 72h) rates, failed attempts, COD collection rate

Score (0–100):
  50 + 20·delivery_rate − 15·return_rate + 15·on_time_rate − 10·min(avg_pickup_hours/24, 1)

One computation per tenant per day, guarded by the idempotency ledger.
Rows are upserted on (tenant, courier, date, region).
"""

from __future__ import annotations

import math
import statistics
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Iterable

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import CourierPerformanceDaily, Shipment
from fulfillment.audit import record_audit
from fulfillment.dead_letters import register_replay_handler, workflow_boundary
from fulfillment.defaults import FulfillmentDefaults, get_fulfillment_defaults
from fulfillment.errors import DuplicateOperationError
from fulfillment.ledger import build_idempotency_key, record_execution, try_begin
from fulfillment.states import InternalOrderState

logger = structlog.get_logger()

WORKFLOW = "courier_performance"
ALL_REGIONS = "all"

S = InternalOrderState
_DELIVERED_STATES = frozenset({S.DELIVERED, S.FINANCE_PENDING, S.FINANCE_SETTLED})
_RETURNED_STATES = frozenset({S.RETURN_REQUESTED, S.RETURN_IN_TRANSIT, S.RETURN_RECEIVED})


def _hours(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600.0


def _mean(values: list[float]) -> float:
    return statistics.mean(values) if values else 0.0


@dataclass
class ShipmentStats:
    """Running totals for one courier (and optionally one region)."""

    courier: str
    region: str = ALL_REGIONS
    total: int = 0
    delivered: int = 0
    returned: int = 0
    failed: int = 0
    cod_total: int = 0
    cod_collected: int = 0
    pickup_hours: list[float] = field(default_factory=list)
    delivery_hours: list[float] = field(default_factory=list)
    return_cycle_hours: list[float] = field(default_factory=list)
    cod_remittance_hours: list[float] = field(default_factory=list)

    def add(self, shipment: Shipment) -> None:
        self.total += 1
        state = InternalOrderState(shipment.internal_status) if shipment.internal_status else None

        is_returned = shipment.returned_at is not None or state in _RETURNED_STATES
        is_delivered = not is_returned and (shipment.delivered_at is not None or state in _DELIVERED_STATES)
        if is_delivered:
            self.delivered += 1
        if is_returned:
            self.returned += 1
        if (shipment.failed_attempts or 0) > 0 and not is_delivered:
            self.failed += 1

        created = shipment.created_at
        if shipment.picked_up_at:
            self.pickup_hours.append(_hours(created, shipment.picked_up_at))
        if shipment.delivered_at:
            self.delivery_hours.append(_hours(created, shipment.delivered_at))
        if shipment.returned_at:
            self.return_cycle_hours.append(_hours(created, shipment.returned_at))
        if shipment.cod_amount:
            self.cod_total += 1
            if shipment.cod_collected:
                self.cod_collected += 1
            if shipment.cod_settled_at:
                anchor = shipment.delivered_at or created
                self.cod_remittance_hours.append(_hours(anchor, shipment.cod_settled_at))

    def derive(self, *, on_time_hours: float = 72.0) -> "CourierMetrics":
        on_time = sum(1 for h in self.delivery_hours if h <= on_time_hours)
        return CourierMetrics(
            courier=self.courier,
            region=self.region,
            total_shipments=self.total,
            delivered_count=self.delivered,
            returned_count=self.returned,
            failed_count=self.failed,
            avg_pickup_hours=_mean(self.pickup_hours),
            avg_delivery_hours=_mean(self.delivery_hours),
            avg_return_cycle_hours=_mean(self.return_cycle_hours),
            avg_cod_remittance_hours=_mean(self.cod_remittance_hours),
            delivery_rate=self.delivered / self.total if self.total else 0.0,
            return_rate=self.returned / self.total if self.total else 0.0,
            on_time_rate=on_time / len(self.delivery_hours) if self.delivery_hours else 0.0,
            cod_collection_rate=self.cod_collected / self.cod_total if self.cod_total else None,
            has_pickup_data=bool(self.pickup_hours),
            has_delivery_data=bool(self.delivery_hours),
        )


@dataclass(frozen=True)
class CourierMetrics:
    courier: str
    region: str
    total_shipments: int
    delivered_count: int
    returned_count: int
    failed_count: int
    avg_pickup_hours: float
    avg_delivery_hours: float
    avg_return_cycle_hours: float
    avg_cod_remittance_hours: float
    delivery_rate: float
    return_rate: float
    on_time_rate: float
    cod_collection_rate: float | None
    has_pickup_data: bool = False
    has_delivery_data: bool = False


def aggregate_shipments(
    shipments: Iterable[Shipment],
    *,
    by_region: bool = True,
    on_time_hours: float = 72.0,
) -> dict[tuple[str, str], CourierMetrics]:
    groups: dict[tuple[str, str], ShipmentStats] = {}
    for shipment in shipments:
        region = (shipment.region or ALL_REGIONS) if by_region else ALL_REGIONS
        key = (shipment.carrier, region)
        if key not in groups:
            groups[key] = ShipmentStats(courier=shipment.carrier, region=region)
        groups[key].add(shipment)
    return {key: stats.derive(on_time_hours=on_time_hours) for key, stats in groups.items()}


def score_courier(
    *,
    delivery_rate: float,
    return_rate: float,
    on_time_rate: float,
    avg_pickup_hours: float,
) -> int:
    score = 50.0
    score += delivery_rate * 20
    score -= return_rate * 15
    score += on_time_rate * 15
    score -= min(avg_pickup_hours / 24.0, 1.0) * 10
    score = max(0.0, min(100.0, score))
    return int(math.floor(score + 0.5))


def recommend_actions(metrics: CourierMetrics) -> list[str]:
    recommendations = []
    if metrics.delivery_rate > 0.9 and metrics.return_rate < 0.1:
        recommendations.append("Excellent performance - consider as primary carrier")
    elif metrics.return_rate > 0.2:
        recommendations.append("High return rate - investigate delivery quality")
    if metrics.avg_pickup_hours > 24:
        recommendations.append("Slow pickup times - consider for non-urgent orders only")
    if metrics.avg_cod_remittance_hours > 168:
        recommendations.append("Slow COD remittance - monitor cash flow impact")
    return recommendations


def analysis_window(target_date: date, lookback_days: int) -> tuple[datetime, datetime]:
    """[start, end) covering ``lookback_days`` days up to the end of target_date."""
    end = datetime.combine(target_date + timedelta(days=1), time.min)
    start = datetime.combine(target_date - timedelta(days=lookback_days), time.min)
    return start, end


async def load_window_shipments(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    *,
    start: datetime,
    end: datetime,
) -> list[Shipment]:
    result = await db.execute(
        select(Shipment).where(
            Shipment.tenant_id == tenant_id,
            Shipment.created_at >= start,
            Shipment.created_at < end,
        )
    )
    return list(result.scalars().all())


# ── Daily computation ─────────────────────────────────────────────────────


async def compute_courier_performance(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    target_date: date | None = None,
    *,
    now: datetime | None = None,
    defaults: FulfillmentDefaults | None = None,
) -> dict:
    defaults = defaults or get_fulfillment_defaults()
    target_date = target_date or (now or datetime.utcnow()).date()
    key = build_idempotency_key(WORKFLOW, tenant_id, target_date)
    skipped = {"date": target_date.isoformat(), "couriers_analyzed": 0, "recommendations": [], "skipped": True}

    try:
        async with workflow_boundary(
            db,
            workflow=WORKFLOW,
            tenant_id=tenant_id,
            payload={"date": target_date},
        ):
            if (await try_begin(db, key)).already_done:
                return skipped
            summary = await _compute(db, tenant_id, target_date, defaults)
            await record_execution(
                db,
                key=key,
                tenant_id=tenant_id,
                workflow=WORKFLOW,
                entity_id=target_date.isoformat(),
                entity_type="performance_report",
            )
    except DuplicateOperationError:
        return skipped

    logger.info(
        "courier_performance.computed",
        tenant_id=str(tenant_id),
        date=target_date.isoformat(),
        couriers_analyzed=summary["couriers_analyzed"],
    )
    return summary


async def _compute(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    target_date: date,
    defaults: FulfillmentDefaults,
) -> dict:
    start, end = analysis_window(target_date, defaults.courier_lookback_days)
    shipments = await load_window_shipments(db, tenant_id, start=start, end=end)
    grouped = aggregate_shipments(shipments, by_region=True, on_time_hours=defaults.on_time_delivery_hours)

    recommendations = []
    for (courier, region), metrics in grouped.items():
        score = score_courier(
            delivery_rate=metrics.delivery_rate,
            return_rate=metrics.return_rate,
            on_time_rate=metrics.on_time_rate,
            avg_pickup_hours=metrics.avg_pickup_hours,
        )
        actions = recommend_actions(metrics)
        await _upsert_daily(db, tenant_id, target_date, metrics, score, actions)
        if actions:
            recommendations.append(
                {"courier": courier, "region": region, "recommendation": actions[0], "score": score}
            )

    await record_audit(
        db,
        tenant_id=tenant_id,
        workflow=WORKFLOW,
        action="COURIER_PERFORMANCE_COMPUTED",
        entity_type="performance_report",
        entity_id=target_date.isoformat(),
        new_values={
            "couriers_analyzed": len(grouped),
            "recommendations_count": len(recommendations),
            "window_start": start,
            "window_end": end,
        },
    )
    return {
        "date": target_date.isoformat(),
        "couriers_analyzed": len(grouped),
        "recommendations": recommendations,
        "skipped": False,
    }


async def _upsert_daily(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    target_date: date,
    metrics: CourierMetrics,
    score: int,
    actions: list[str],
) -> CourierPerformanceDaily:
    result = await db.execute(
        select(CourierPerformanceDaily).where(
            CourierPerformanceDaily.tenant_id == tenant_id,
            CourierPerformanceDaily.courier == metrics.courier,
            CourierPerformanceDaily.date == target_date,
            CourierPerformanceDaily.region == metrics.region,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = CourierPerformanceDaily(
            tenant_id=tenant_id,
            courier=metrics.courier,
            date=target_date,
            region=metrics.region,
        )
        db.add(row)

    row.total_shipments = metrics.total_shipments
    row.delivered_count = metrics.delivered_count
    row.returned_count = metrics.returned_count
    row.failed_count = metrics.failed_count
    row.avg_pickup_hours = round(metrics.avg_pickup_hours, 1)
    row.avg_delivery_hours = round(metrics.avg_delivery_hours, 1)
    row.avg_return_cycle_hours = round(metrics.avg_return_cycle_hours, 1)
    row.avg_cod_remittance_hours = round(metrics.avg_cod_remittance_hours, 1)
    row.cod_collection_rate = (
        round(metrics.cod_collection_rate, 3) if metrics.cod_collection_rate is not None else None
    )
    row.delivery_rate = round(metrics.delivery_rate, 3)
    row.return_rate = round(metrics.return_rate, 3)
    row.on_time_rate = round(metrics.on_time_rate, 3)
    row.score = score
    row.recommendations = actions
    await db.flush()
    return row


@register_replay_handler(WORKFLOW)
async def _replay_compute(db: AsyncSession, tenant_id: uuid.UUID, payload: dict) -> dict:
    return await compute_courier_performance(db, tenant_id, date.fromisoformat(str(payload["date"])[:10]))


# ── Query surface ─────────────────────────────────────────────────────────


async def get_courier_performance(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    *,
    days: int = 30,
    courier: str | None = None,
    region: str | None = None,
    today: date | None = None,
) -> list[CourierPerformanceDaily]:
    start = (today or datetime.utcnow().date()) - timedelta(days=days)
    query = select(CourierPerformanceDaily).where(
        CourierPerformanceDaily.tenant_id == tenant_id,
        CourierPerformanceDaily.date >= start,
    )
    if courier:
        query = query.where(CourierPerformanceDaily.courier == courier)
    if region:
        query = query.where(CourierPerformanceDaily.region == region)
    result = await db.execute(
        query.order_by(CourierPerformanceDaily.date.desc(), CourierPerformanceDaily.courier.asc())
    )
    return list(result.scalars().all())
