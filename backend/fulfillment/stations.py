"""
Station Router & SLA Tracker

Each order occupies at most one station at a time. Residency is recorded in
order_station_metrics: routing closes every open interval for the order
before opening the new one, so there is never more than one open row.

SLA targets resolve in order:
  1. tenant override (tenant_sla_targets)
  2. FulfillmentDefaults (built-in table + STATION_SLA_OVERRIDES env)

Queue reads compute remaining SLA live at query time; there is no timer.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Order, OrderStationMetrics, TenantSlaTarget
from fulfillment.audit import record_audit
from fulfillment.dead_letters import register_replay_handler, workflow_boundary
from fulfillment.defaults import FulfillmentDefaults, get_fulfillment_defaults
from fulfillment.errors import DuplicateOperationError, NotFoundError
from fulfillment.ledger import build_idempotency_key, record_execution, try_begin
from fulfillment.states import StationType

logger = structlog.get_logger()

WORKFLOW = "station_routing"


@dataclass(frozen=True)
class RoutingResult:
    routed: bool
    station: StationType | None
    closed: int = 0
    skipped: bool = False


def elapsed_minutes(start: datetime, end: datetime) -> int:
    """Whole minutes between two instants, rounded half-up."""
    return int(math.floor((end - start).total_seconds() / 60.0 + 0.5))


async def _load_order(db: AsyncSession, tenant_id: uuid.UUID, order_id: uuid.UUID) -> Order:
    result = await db.execute(select(Order).where(Order.order_id == order_id, Order.tenant_id == tenant_id))
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFoundError("Order", order_id)
    return order


async def resolve_sla_target(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    station: StationType,
    *,
    defaults: FulfillmentDefaults | None = None,
) -> int:
    station = StationType(station)
    result = await db.execute(
        select(TenantSlaTarget.sla_target_minutes).where(
            TenantSlaTarget.tenant_id == tenant_id,
            TenantSlaTarget.station == station.value,
        )
    )
    override = result.scalar_one_or_none()
    if override is not None:
        return int(override)
    return (defaults or get_fulfillment_defaults()).sla_target_for(station)


async def _open_intervals(db: AsyncSession, tenant_id: uuid.UUID, order_id: uuid.UUID) -> list[OrderStationMetrics]:
    result = await db.execute(
        select(OrderStationMetrics)
        .where(
            OrderStationMetrics.tenant_id == tenant_id,
            OrderStationMetrics.order_id == order_id,
            OrderStationMetrics.exited_at.is_(None),
        )
        .order_by(OrderStationMetrics.entered_at.asc())
    )
    return list(result.scalars().all())


def _close_interval(row: OrderStationMetrics, now: datetime) -> dict:
    duration = max(elapsed_minutes(row.entered_at, now), 0)
    row.exited_at = now
    row.duration_minutes = duration
    row.sla_breached = duration > row.sla_target_minutes
    return {
        "station": row.station,
        "duration_minutes": duration,
        "sla_target_minutes": row.sla_target_minutes,
        "sla_breached": row.sla_breached,
    }


def _default_routing_key(
    tenant_id: uuid.UUID,
    order: Order,
    station: StationType,
    open_rows: list[OrderStationMetrics],
) -> str:
    """Scoped to the interval being left, so only an exact repeat of a hop is skipped."""
    leaving = open_rows[-1].id if open_rows else "none"
    return build_idempotency_key(WORKFLOW, tenant_id, order.order_id, station, order.transition_count, leaving)


# ── Routing ────────────────────────────────────────────────────────────────


async def route_to_station(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    order_id: uuid.UUID,
    station: StationType,
    *,
    now: datetime | None = None,
    idempotency_key: str | None = None,
    defaults: FulfillmentDefaults | None = None,
) -> RoutingResult:
    station = StationType(station)
    now = now or datetime.utcnow()
    payload = {"order_id": order_id, "station": station, "idempotency_key": idempotency_key}

    try:
        async with workflow_boundary(db, workflow=WORKFLOW, tenant_id=tenant_id, payload=payload):
            result = await _route(
                db,
                tenant_id,
                order_id,
                station,
                now=now,
                idempotency_key=idempotency_key,
                defaults=defaults,
            )
    except DuplicateOperationError:
        return RoutingResult(routed=False, station=station, skipped=True)
    return result


async def _route(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    order_id: uuid.UUID,
    station: StationType,
    *,
    now: datetime,
    idempotency_key: str | None,
    defaults: FulfillmentDefaults | None,
) -> RoutingResult:
    order = await _load_order(db, tenant_id, order_id)
    open_rows = await _open_intervals(db, tenant_id, order_id)
    key = idempotency_key or _default_routing_key(tenant_id, order, station, open_rows)
    if (await try_begin(db, key)).already_done:
        return RoutingResult(routed=False, station=station, skipped=True)

    if any(row.station == station.value for row in open_rows):
        if order.current_station != station.value:
            order.current_station = station.value
        return RoutingResult(routed=False, station=station)

    closed = [_close_interval(row, now) for row in open_rows]
    sla_target = await resolve_sla_target(db, tenant_id, station, defaults=defaults)
    db.add(
        OrderStationMetrics(
            tenant_id=tenant_id,
            order_id=order_id,
            station=station.value,
            entered_at=now,
            sla_target_minutes=sla_target,
            sla_breached=False,
        )
    )

    previous_station = order.current_station
    order.current_station = station.value
    order.updated_at = now
    await db.flush()

    await record_audit(
        db,
        tenant_id=tenant_id,
        workflow=WORKFLOW,
        action="ORDER_ROUTED_TO_STATION",
        entity_type="order",
        entity_id=order_id,
        old_values={"station": previous_station},
        new_values={"station": station, "state": order.state, "closed_intervals": closed},
    )
    await record_execution(
        db,
        key=key,
        tenant_id=tenant_id,
        workflow=WORKFLOW,
        entity_id=order_id,
        entity_type="order",
    )
    logger.info(
        "stations.routed",
        tenant_id=str(tenant_id),
        order_id=str(order_id),
        station=station.value,
        closed=len(closed),
        sla_target_minutes=sla_target,
    )
    return RoutingResult(routed=True, station=station, closed=len(closed))


async def release_order_from_stations(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    order_id: uuid.UUID,
    *,
    now: datetime | None = None,
) -> int:
    """Close every open interval and clear the station pointer. Used for terminal states."""
    now = now or datetime.utcnow()
    order = await _load_order(db, tenant_id, order_id)
    open_rows = await _open_intervals(db, tenant_id, order_id)
    if not open_rows and order.current_station is None:
        return 0

    closed = [_close_interval(row, now) for row in open_rows]
    previous_station = order.current_station
    order.current_station = None
    order.updated_at = now
    await db.flush()

    await record_audit(
        db,
        tenant_id=tenant_id,
        workflow=WORKFLOW,
        action="ORDER_RELEASED_FROM_STATIONS",
        entity_type="order",
        entity_id=order_id,
        old_values={"station": previous_station},
        new_values={"station": None, "state": order.state, "closed_intervals": closed},
    )
    logger.info("stations.released", tenant_id=str(tenant_id), order_id=str(order_id), closed=len(closed))
    return len(closed)


@register_replay_handler(WORKFLOW)
async def _replay_route(db: AsyncSession, tenant_id: uuid.UUID, payload: dict) -> RoutingResult:
    return await route_to_station(
        db,
        tenant_id,
        uuid.UUID(str(payload["order_id"])),
        StationType(payload["station"]),
        idempotency_key=payload.get("idempotency_key"),
    )


# ── Queue reads ────────────────────────────────────────────────────────────


async def _station_queue(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    station: StationType,
    now: datetime,
) -> list[dict]:
    result = await db.execute(
        select(Order, OrderStationMetrics)
        .join(OrderStationMetrics, OrderStationMetrics.order_id == Order.order_id)
        .where(
            Order.tenant_id == tenant_id,
            OrderStationMetrics.tenant_id == tenant_id,
            OrderStationMetrics.station == station.value,
            OrderStationMetrics.exited_at.is_(None),
        )
        .order_by(OrderStationMetrics.entered_at.asc())
    )
    queue = []
    for order, metric in result.all():
        elapsed = max(elapsed_minutes(metric.entered_at, now), 0)
        queue.append(
            {
                "order_id": str(order.order_id),
                "order_number": order.order_number,
                "state": order.state,
                "customer_name": order.customer_name,
                "total": order.total,
                "station": station.value,
                "entered_station_at": metric.entered_at,
                "elapsed_minutes": elapsed,
                "sla_target_minutes": metric.sla_target_minutes,
                "sla_remaining_minutes": metric.sla_target_minutes - elapsed,
                "sla_breached": elapsed > metric.sla_target_minutes,
            }
        )
    return queue


async def get_orders_by_station(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    station: StationType,
    *,
    limit: int = 50,
    offset: int = 0,
    include_breached: bool = True,
    now: datetime | None = None,
) -> dict:
    """Orders currently at ``station``, oldest first, with live SLA remaining."""
    station = StationType(station)
    queue = await _station_queue(db, tenant_id, station, now or datetime.utcnow())
    breached_count = sum(1 for row in queue if row["sla_breached"])
    if not include_breached:
        queue = [row for row in queue if not row["sla_breached"]]
    return {
        "orders": queue[offset : offset + limit],
        "total": len(queue),
        "breached_count": breached_count,
    }


async def get_station_metrics_summary(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    *,
    now: datetime | None = None,
) -> dict[str, dict]:
    now = now or datetime.utcnow()
    summary = {}
    for station in StationType:
        queue = await _station_queue(db, tenant_id, station, now)
        waits = [row["elapsed_minutes"] for row in queue]
        summary[station.value] = {
            "count": len(queue),
            "breached": sum(1 for row in queue if row["sla_breached"]),
            "avg_wait_minutes": round(sum(waits) / len(waits)) if waits else 0,
        }
    return summary


async def set_station_sla_target(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    station: StationType,
    minutes: int,
    *,
    performed_by: str = "user",
) -> TenantSlaTarget:
    """Tenant override for a station's SLA. Applies to intervals opened afterwards."""
    station = StationType(station)
    if minutes <= 0:
        raise ValueError("SLA target must be a positive number of minutes")

    result = await db.execute(
        select(TenantSlaTarget).where(
            TenantSlaTarget.tenant_id == tenant_id,
            TenantSlaTarget.station == station.value,
        )
    )
    target = result.scalar_one_or_none()
    old_minutes = target.sla_target_minutes if target else None
    if target is None:
        target = TenantSlaTarget(tenant_id=tenant_id, station=station.value, sla_target_minutes=minutes)
        db.add(target)
    else:
        target.sla_target_minutes = minutes
    await db.flush()

    await record_audit(
        db,
        tenant_id=tenant_id,
        action="STATION_SLA_TARGET_SET",
        entity_type="tenant_sla_target",
        entity_id=station.value,
        old_values={"sla_target_minutes": old_minutes},
        new_values={"sla_target_minutes": minutes},
        performed_by=performed_by,
    )
    logger.info("stations.sla_target_set", tenant_id=str(tenant_id), station=station.value, minutes=minutes)
    return target
