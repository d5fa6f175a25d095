"""
Tenant context for row-level security must hold for every transaction a
session opens, including the ones after a workflow commits.
"""

from datetime import datetime
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from db import session as session_module
from db.models import Order
from db.session import TENANT_CONTEXT_KEY, set_tenant_context
from fulfillment.ingestion import ingest_shipment_events
from fulfillment.states import IngestionMode
from integrations.base import InboundStatusEvent

NOW = datetime(2026, 3, 10, 12, 0, 0)


@pytest.fixture
def applied(monkeypatch):
    calls: list[str] = []

    def _record(connection, tenant_id):
        calls.append(tenant_id)

    monkeypatch.setattr(session_module, "_emit_tenant_setting", _record)
    return calls


@pytest.mark.asyncio
class TestTenantContext:
    async def test_context_reapplied_after_each_commit(self, test_db, seeded_db, applied):
        tid = seeded_db["tenant_id"]
        await set_tenant_context(test_db, tid)
        before = len(applied)

        summary = await ingest_shipment_events(
            test_db,
            tid,
            [InboundStatusEvent("AWB10000001", "aramex", "SHP", NOW)],
            IngestionMode.API,
        )

        assert summary.processed == 1
        # ingestion and status mapping commit separately
        assert len(applied) - before >= 2
        assert set(applied) == {str(tid)}

        order = (await test_db.execute(select(Order).where(Order.order_id == seeded_db["cod_order"].order_id))).scalar_one()
        assert order.state == "shipped"
        assert set(applied) == {str(tid)}

    async def test_sessions_without_tenant_apply_nothing(self, test_db, seeded_db, applied):
        await test_db.execute(select(Order))
        await test_db.commit()
        await test_db.execute(select(Order))

        assert applied == []
        assert TENANT_CONTEXT_KEY not in test_db.info

    async def test_setting_context_mid_transaction_applies_immediately(self, test_db, seeded_db, applied):
        await test_db.execute(select(Order))
        assert test_db.in_transaction()

        await set_tenant_context(test_db, seeded_db["tenant_id"])

        assert applied == [str(seeded_db["tenant_id"])]


def test_setting_is_transaction_local_on_postgres():
    executed = []
    connection = SimpleNamespace(
        dialect=SimpleNamespace(name="postgresql"),
        execute=lambda statement, params: executed.append((str(statement), params)),
    )

    session_module._emit_tenant_setting(connection, "00000000-0000-0000-0000-000000000001")

    assert executed == [
        (
            "SELECT set_config('app.current_tenant_id', :tid, true)",
            {"tid": "00000000-0000-0000-0000-000000000001"},
        )
    ]


def test_setting_skipped_on_other_dialects():
    connection = SimpleNamespace(dialect=SimpleNamespace(name="sqlite"), execute=None)
    session_module._emit_tenant_setting(connection, "00000000-0000-0000-0000-000000000001")
