"""
Tests for the station router and SLA tracker.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from db.models import AuditLog, Order, OrderStationMetrics
from fulfillment.defaults import FulfillmentDefaults
from fulfillment.stations import (
    elapsed_minutes,
    get_orders_by_station,
    get_station_metrics_summary,
    release_order_from_stations,
    resolve_sla_target,
    route_to_station,
    set_station_sla_target,
)
from fulfillment.states import StationType

NOW = datetime(2026, 3, 10, 12, 0, 0)


async def _intervals(db, order_id):
    result = await db.execute(
        select(OrderStationMetrics)
        .where(OrderStationMetrics.order_id == order_id)
        .order_by(OrderStationMetrics.entered_at)
    )
    return result.scalars().all()


class TestElapsedMinutes:
    def test_rounds_half_up(self):
        assert elapsed_minutes(NOW, NOW + timedelta(minutes=60, seconds=29)) == 60
        assert elapsed_minutes(NOW, NOW + timedelta(minutes=60, seconds=30)) == 61

    def test_zero(self):
        assert elapsed_minutes(NOW, NOW) == 0


@pytest.mark.asyncio
class TestRouteToStation:
    async def test_at_most_one_open_interval(self, test_db, seeded_db):
        tid = seeded_db["tenant_id"]
        order_id = seeded_db["cod_order"].order_id

        await route_to_station(test_db, tid, order_id, StationType.CALL_CENTER, now=NOW)
        result = await route_to_station(test_db, tid, order_id, StationType.OPERATIONS, now=NOW + timedelta(minutes=30))

        assert result.routed is True
        assert result.closed == 1
        call_center, operations = await _intervals(test_db, order_id)
        assert call_center.exited_at == NOW + timedelta(minutes=30)
        assert call_center.duration_minutes == 30
        assert call_center.sla_breached is False
        assert operations.exited_at is None
        assert operations.sla_target_minutes == 240

        order = (await test_db.execute(select(Order).where(Order.order_id == order_id))).scalar_one()
        assert order.current_station == "operations"

    async def test_reentering_same_station_is_noop(self, test_db, seeded_db):
        tid = seeded_db["tenant_id"]
        order_id = seeded_db["cod_order"].order_id

        await route_to_station(test_db, tid, order_id, StationType.CALL_CENTER, now=NOW)
        again = await route_to_station(
            test_db, tid, order_id, StationType.CALL_CENTER, now=NOW + timedelta(minutes=5), idempotency_key="rerun-1"
        )

        assert again.routed is False
        assert again.skipped is False
        rows = await _intervals(test_db, order_id)
        assert len(rows) == 1
        assert rows[0].exited_at is None

    async def test_repeat_key_is_skipped(self, test_db, seeded_db):
        tid = seeded_db["tenant_id"]
        order_id = seeded_db["cod_order"].order_id

        await route_to_station(test_db, tid, order_id, StationType.CALL_CENTER, now=NOW, idempotency_key="hop-1")
        await route_to_station(
            test_db, tid, order_id, StationType.OPERATIONS, now=NOW + timedelta(minutes=5), idempotency_key="hop-2"
        )
        again = await route_to_station(
            test_db, tid, order_id, StationType.CALL_CENTER, now=NOW + timedelta(minutes=10), idempotency_key="hop-1"
        )

        assert again.skipped is True
        assert [row.station for row in await _intervals(test_db, order_id)] == ["call_center", "operations"]

    async def test_routing_back_to_previous_station(self, test_db, seeded_db):
        tid = seeded_db["tenant_id"]
        order_id = seeded_db["cod_order"].order_id

        await route_to_station(test_db, tid, order_id, StationType.CALL_CENTER, now=NOW)
        await route_to_station(test_db, tid, order_id, StationType.OPERATIONS, now=NOW + timedelta(minutes=5))
        back = await route_to_station(test_db, tid, order_id, StationType.CALL_CENTER, now=NOW + timedelta(minutes=10))

        assert back.routed is True
        assert back.skipped is False
        assert back.closed == 1
        rows = await _intervals(test_db, order_id)
        assert [(row.station, row.exited_at is None) for row in rows] == [
            ("call_center", False),
            ("operations", False),
            ("call_center", True),
        ]
        order = (await test_db.execute(select(Order).where(Order.order_id == order_id))).scalar_one()
        assert order.current_station == "call_center"

    async def test_duration_equal_to_target_not_breached(self, test_db, seeded_db):
        tid = seeded_db["tenant_id"]
        on_time = seeded_db["cod_order"].order_id
        late = seeded_db["prepaid_order"].order_id

        await route_to_station(test_db, tid, on_time, StationType.CALL_CENTER, now=NOW)
        await route_to_station(test_db, tid, late, StationType.CALL_CENTER, now=NOW)
        await route_to_station(test_db, tid, on_time, StationType.OPERATIONS, now=NOW + timedelta(minutes=60))
        await route_to_station(test_db, tid, late, StationType.OPERATIONS, now=NOW + timedelta(minutes=61))

        on_time_row = (await _intervals(test_db, on_time))[0]
        late_row = (await _intervals(test_db, late))[0]
        assert (on_time_row.duration_minutes, on_time_row.sla_breached) == (60, False)
        assert (late_row.duration_minutes, late_row.sla_breached) == (61, True)

    async def test_routing_is_audited(self, test_db, seeded_db):
        tid = seeded_db["tenant_id"]
        order_id = seeded_db["cod_order"].order_id

        await route_to_station(test_db, tid, order_id, StationType.CALL_CENTER, now=NOW)
        await route_to_station(test_db, tid, order_id, StationType.FINANCE, now=NOW + timedelta(minutes=10))

        audits = (
            await test_db.execute(
                select(AuditLog).where(AuditLog.action == "ORDER_ROUTED_TO_STATION").order_by(AuditLog.created_at)
            )
        ).scalars().all()
        assert len(audits) == 2
        closed = [a.new_values["closed_intervals"] for a in audits]
        assert [] in closed
        assert {"station": "call_center", "duration_minutes": 10, "sla_target_minutes": 60, "sla_breached": False} in [
            c[0] for c in closed if c
        ]

    async def test_release_closes_open_interval(self, test_db, seeded_db):
        tid = seeded_db["tenant_id"]
        order_id = seeded_db["cod_order"].order_id

        await route_to_station(test_db, tid, order_id, StationType.RETURNS, now=NOW)
        closed = await release_order_from_stations(test_db, tid, order_id, now=NOW + timedelta(hours=2))

        assert closed == 1
        assert await release_order_from_stations(test_db, tid, order_id, now=NOW + timedelta(hours=3)) == 0
        row = (await _intervals(test_db, order_id))[0]
        assert row.duration_minutes == 120
        assert row.sla_breached is False


@pytest.mark.asyncio
class TestSlaTargets:
    async def test_defaults_and_env_overrides(self, test_db, seeded_db):
        tid = seeded_db["tenant_id"]
        assert await resolve_sla_target(test_db, tid, StationType.FINANCE, defaults=FulfillmentDefaults()) == 1440

        overridden = FulfillmentDefaults(
            sla_targets={
                StationType.CALL_CENTER: 15,
                StationType.OPERATIONS: 240,
                StationType.FINANCE: 1440,
                StationType.RETURNS: 2880,
            }
        )
        assert await resolve_sla_target(test_db, tid, StationType.CALL_CENTER, defaults=overridden) == 15

    async def test_tenant_override_applies_to_new_intervals(self, test_db, seeded_db):
        tid = seeded_db["tenant_id"]
        first = seeded_db["cod_order"].order_id
        second = seeded_db["prepaid_order"].order_id

        await route_to_station(test_db, tid, first, StationType.CALL_CENTER, now=NOW)
        await set_station_sla_target(test_db, tid, StationType.CALL_CENTER, 20)
        await set_station_sla_target(test_db, tid, StationType.CALL_CENTER, 25)
        await test_db.commit()
        await route_to_station(test_db, tid, second, StationType.CALL_CENTER, now=NOW)

        assert (await _intervals(test_db, first))[0].sla_target_minutes == 60
        assert (await _intervals(test_db, second))[0].sla_target_minutes == 25
        assert await resolve_sla_target(test_db, seeded_db["other_tenant_id"], StationType.CALL_CENTER) == 60

    async def test_non_positive_target_rejected(self, test_db, seeded_db):
        with pytest.raises(ValueError):
            await set_station_sla_target(test_db, seeded_db["tenant_id"], StationType.FINANCE, 0)


@pytest.mark.asyncio
class TestStationQueues:
    async def test_queue_computes_remaining_live(self, test_db, seeded_db):
        tid = seeded_db["tenant_id"]
        waiting_long = seeded_db["cod_order"].order_id
        just_arrived = seeded_db["prepaid_order"].order_id

        await route_to_station(test_db, tid, waiting_long, StationType.CALL_CENTER, now=NOW)
        await route_to_station(test_db, tid, just_arrived, StationType.CALL_CENTER, now=NOW + timedelta(minutes=80))

        queue = await get_orders_by_station(test_db, tid, StationType.CALL_CENTER, now=NOW + timedelta(minutes=90))

        assert queue["total"] == 2
        assert queue["breached_count"] == 1
        oldest, newest = queue["orders"]
        assert oldest["order_number"] == "ORD-1001"
        assert (oldest["elapsed_minutes"], oldest["sla_remaining_minutes"], oldest["sla_breached"]) == (90, -30, True)
        assert (newest["elapsed_minutes"], newest["sla_remaining_minutes"], newest["sla_breached"]) == (10, 50, False)

    async def test_queue_pagination_and_breach_filter(self, test_db, seeded_db):
        tid = seeded_db["tenant_id"]
        await route_to_station(test_db, tid, seeded_db["cod_order"].order_id, StationType.CALL_CENTER, now=NOW)
        await route_to_station(
            test_db, tid, seeded_db["prepaid_order"].order_id, StationType.CALL_CENTER, now=NOW + timedelta(minutes=80)
        )
        later = NOW + timedelta(minutes=90)

        page = await get_orders_by_station(test_db, tid, StationType.CALL_CENTER, limit=1, offset=1, now=later)
        assert [o["order_number"] for o in page["orders"]] == ["ORD-1002"]
        assert page["total"] == 2

        unbreached = await get_orders_by_station(
            test_db, tid, StationType.CALL_CENTER, include_breached=False, now=later
        )
        assert [o["order_number"] for o in unbreached["orders"]] == ["ORD-1002"]
        assert unbreached["breached_count"] == 1

    async def test_queue_is_tenant_scoped(self, test_db, seeded_db):
        await route_to_station(
            test_db, seeded_db["tenant_id"], seeded_db["cod_order"].order_id, StationType.CALL_CENTER, now=NOW
        )
        queue = await get_orders_by_station(test_db, seeded_db["other_tenant_id"], StationType.CALL_CENTER, now=NOW)
        assert queue == {"orders": [], "total": 0, "breached_count": 0}

    async def test_metrics_summary(self, test_db, seeded_db):
        tid = seeded_db["tenant_id"]
        await route_to_station(test_db, tid, seeded_db["cod_order"].order_id, StationType.CALL_CENTER, now=NOW)
        await route_to_station(
            test_db, tid, seeded_db["prepaid_order"].order_id, StationType.CALL_CENTER, now=NOW + timedelta(minutes=80)
        )

        summary = await get_station_metrics_summary(test_db, tid, now=NOW + timedelta(minutes=90))

        assert summary["call_center"] == {"count": 2, "breached": 1, "avg_wait_minutes": 50}
        assert summary["operations"] == {"count": 0, "breached": 0, "avg_wait_minutes": 0}
        assert set(summary) == {"call_center", "operations", "finance", "returns"}
