"""
Order State Machine

advance_order() moves an order to a new internal state, appends the timeline
event, audits the change, and hands the order to the station implied by the
new state. Terminal states with no owning station release the order from
every station.

Graph legality is checked against ALLOWED_TRANSITIONS:
  strict      — out-of-graph moves are rejected and audited, order untouched
  permissive  — out-of-graph moves are applied and flagged in the audit row
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Order, OrderInternalEvent, Shipment, ShipmentEvent
from fulfillment.audit import record_audit
from fulfillment.dead_letters import register_replay_handler, workflow_boundary
from fulfillment.defaults import FulfillmentDefaults, get_fulfillment_defaults
from fulfillment.errors import DuplicateOperationError, NotFoundError
from fulfillment.ledger import build_idempotency_key, record_execution, try_begin
from fulfillment.stations import release_order_from_stations, route_to_station
from fulfillment.states import (
    TERMINAL_STATES,
    InternalOrderState,
    StationType,
    TriggeredBy,
    coerce_state,
    is_legal_transition,
    station_for_state,
)

logger = structlog.get_logger()

WORKFLOW = "status_mapping"


@dataclass(frozen=True)
class TransitionResult:
    updated: bool
    station: StationType | None = None
    from_state: InternalOrderState | None = None
    to_state: InternalOrderState | None = None
    rejected: bool = False
    skipped: bool = False
    reason: str | None = None

    def as_dict(self) -> dict:
        return {
            "updated": self.updated,
            "station": self.station.value if self.station else None,
            "from_state": self.from_state.value if self.from_state else None,
            "to_state": self.to_state.value if self.to_state else None,
            "rejected": self.rejected,
            "skipped": self.skipped,
            "reason": self.reason,
        }


async def advance_order(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    order_id: uuid.UUID,
    to_state: InternalOrderState | str | None,
    *,
    triggered_by: TriggeredBy = TriggeredBy.AUTOMATION,
    notes: str | None = None,
    user_id: str | None = None,
    idempotency_key: str | None = None,
    now: datetime | None = None,
    defaults: FulfillmentDefaults | None = None,
) -> TransitionResult:
    to_state = coerce_state(to_state)
    if to_state is None:
        return TransitionResult(updated=False, reason="unmapped")

    now = now or datetime.utcnow()
    defaults = defaults or get_fulfillment_defaults()
    triggered_by = TriggeredBy(triggered_by)

    result = await db.execute(select(Order).where(Order.order_id == order_id, Order.tenant_id == tenant_id))
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFoundError("Order", order_id)

    if idempotency_key and (await try_begin(db, idempotency_key)).already_done:
        return TransitionResult(updated=False, to_state=to_state, skipped=True, reason="duplicate")

    from_state = coerce_state(order.state)
    if from_state == to_state:
        outcome = TransitionResult(updated=False, from_state=from_state, to_state=to_state, reason="no_change")
        await _record(db, idempotency_key, tenant_id, order_id)
        return outcome

    legal = is_legal_transition(from_state, to_state)
    if not legal and defaults.state_graph_mode == "strict":
        await record_audit(
            db,
            tenant_id=tenant_id,
            workflow=WORKFLOW,
            action="ORDER_TRANSITION_REJECTED",
            entity_type="order",
            entity_id=order_id,
            old_values={"state": from_state},
            new_values={"requested_state": to_state, "triggered_by": triggered_by},
            performed_by=user_id or triggered_by.value,
        )
        await _record(db, idempotency_key, tenant_id, order_id)
        logger.warning(
            "state_machine.transition_rejected",
            tenant_id=str(tenant_id),
            order_id=str(order_id),
            from_state=from_state.value if from_state else None,
            to_state=to_state.value,
        )
        return TransitionResult(
            updated=False,
            from_state=from_state,
            to_state=to_state,
            rejected=True,
            reason="illegal_transition",
        )
    if not legal:
        logger.warning(
            "state_machine.illegal_transition_applied",
            tenant_id=str(tenant_id),
            order_id=str(order_id),
            from_state=from_state.value if from_state else None,
            to_state=to_state.value,
        )

    station = station_for_state(to_state)
    previous_station = order.current_station
    order.state = to_state.value
    order.transition_count = (order.transition_count or 0) + 1
    order.updated_at = now
    db.add(
        OrderInternalEvent(
            tenant_id=tenant_id,
            order_id=order_id,
            from_state=from_state.value if from_state else None,
            to_state=to_state.value,
            station=station.value if station else None,
            triggered_by=triggered_by.value,
            user_id=user_id,
            notes=notes,
            created_at=now,
        )
    )
    await db.flush()

    new_values = {"state": to_state, "station": station}
    if not legal:
        new_values["illegal"] = True
    await record_audit(
        db,
        tenant_id=tenant_id,
        workflow=WORKFLOW,
        action="ORDER_STATE_CHANGED",
        entity_type="order",
        entity_id=order_id,
        old_values={"state": from_state, "station": previous_station},
        new_values=new_values,
        performed_by=user_id or triggered_by.value,
    )

    if station is not None:
        await route_to_station(db, tenant_id, order_id, station, now=now, defaults=defaults)
    elif to_state in TERMINAL_STATES:
        await release_order_from_stations(db, tenant_id, order_id, now=now)
    if to_state == InternalOrderState.FINANCE_SETTLED:
        await _mark_cod_settled(db, tenant_id, order_id, now)

    await _record(db, idempotency_key, tenant_id, order_id)
    logger.info(
        "state_machine.advanced",
        tenant_id=str(tenant_id),
        order_id=str(order_id),
        from_state=from_state.value if from_state else None,
        to_state=to_state.value,
        station=station.value if station else None,
    )
    return TransitionResult(updated=True, station=station, from_state=from_state, to_state=to_state)


async def _mark_cod_settled(db: AsyncSession, tenant_id: uuid.UUID, order_id: uuid.UUID, now: datetime) -> None:
    result = await db.execute(
        select(Shipment).where(
            Shipment.tenant_id == tenant_id,
            Shipment.order_id == order_id,
            Shipment.cod_collected.is_(True),
            Shipment.cod_settled_at.is_(None),
        )
    )
    for shipment in result.scalars().all():
        shipment.cod_settled_at = now
    await db.flush()


async def _record(db: AsyncSession, key: str | None, tenant_id: uuid.UUID, order_id: uuid.UUID) -> None:
    if key:
        await record_execution(
            db,
            key=key,
            tenant_id=tenant_id,
            workflow=WORKFLOW,
            entity_id=order_id,
            entity_type="order",
        )


# ── Provider status → order state ──────────────────────────────────────────


async def map_provider_status(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    shipment_event_id: uuid.UUID,
    *,
    now: datetime | None = None,
    defaults: FulfillmentDefaults | None = None,
) -> TransitionResult:
    """Advance the shipment's order to the event's internal status."""
    payload = {"shipment_event_id": shipment_event_id}
    try:
        async with workflow_boundary(db, workflow=WORKFLOW, tenant_id=tenant_id, payload=payload):
            result = await _map(db, tenant_id, shipment_event_id, now=now, defaults=defaults)
    except DuplicateOperationError:
        return TransitionResult(updated=False, skipped=True, reason="duplicate")
    return result


async def _map(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    shipment_event_id: uuid.UUID,
    *,
    now: datetime | None,
    defaults: FulfillmentDefaults | None,
) -> TransitionResult:
    result = await db.execute(
        select(ShipmentEvent.internal_status, ShipmentEvent.carrier, ShipmentEvent.provider_status, Shipment.order_id)
        .join(Shipment, Shipment.shipment_id == ShipmentEvent.shipment_id)
        .where(
            ShipmentEvent.event_id == shipment_event_id,
            ShipmentEvent.tenant_id == tenant_id,
        )
    )
    row = result.one_or_none()
    if row is None:
        raise NotFoundError("Shipment event", shipment_event_id)

    internal_status, carrier, provider_status, order_id = row
    if internal_status is None:
        return TransitionResult(updated=False, reason="unmapped")

    return await advance_order(
        db,
        tenant_id,
        order_id,
        internal_status,
        triggered_by=TriggeredBy.AUTOMATION,
        notes=f"{carrier} status {provider_status}",
        idempotency_key=build_idempotency_key(WORKFLOW, tenant_id, shipment_event_id),
        now=now,
        defaults=defaults,
    )


@register_replay_handler(WORKFLOW)
async def _replay_mapping(db: AsyncSession, tenant_id: uuid.UUID, payload: dict) -> TransitionResult:
    return await map_provider_status(db, tenant_id, uuid.UUID(str(payload["shipment_event_id"])))
