"""
Append-only tables reject updates and deletes through the ORM.
"""

from datetime import datetime

import pytest
from sqlalchemy import select

from db.models import AuditLog, OrderInternalEvent, ShipmentEvent
from fulfillment.audit import list_audit_logs, record_audit
from fulfillment.errors import ImmutableRecordError
from fulfillment.ingestion import ingest_shipment_events
from fulfillment.states import IngestionMode
from integrations.base import InboundStatusEvent

NOW = datetime(2026, 3, 10, 12, 0, 0)


@pytest.mark.asyncio
class TestAppendOnlyRecords:
    async def test_audit_log_cannot_be_edited(self, test_db, seeded_db):
        entry = await record_audit(
            test_db, tenant_id=seeded_db["tenant_id"], action="DEMO", entity_type="order", new_values={"a": 1}
        )
        await test_db.commit()

        entry.action = "EDITED"
        with pytest.raises(ImmutableRecordError, match="audit_logs"):
            await test_db.flush()
        await test_db.rollback()

    async def test_audit_log_cannot_be_deleted(self, test_db, seeded_db):
        entry = await record_audit(test_db, tenant_id=seeded_db["tenant_id"], action="DEMO", entity_type="order")
        await test_db.commit()

        await test_db.delete(entry)
        with pytest.raises(ImmutableRecordError):
            await test_db.flush()
        await test_db.rollback()

    async def test_timeline_events_cannot_be_edited(self, test_db, seeded_db):
        await ingest_shipment_events(
            test_db,
            seeded_db["tenant_id"],
            [InboundStatusEvent("AWB10000001", "aramex", "SHP", NOW)],
            IngestionMode.API,
        )

        shipment_event = (await test_db.execute(select(ShipmentEvent))).scalar_one()
        shipment_event.provider_status = "DEL"
        with pytest.raises(ImmutableRecordError):
            await test_db.flush()
        await test_db.rollback()

        order_event = (await test_db.execute(select(OrderInternalEvent))).scalar_one()
        order_event.notes = "rewritten"
        with pytest.raises(ImmutableRecordError):
            await test_db.flush()
        await test_db.rollback()

    async def test_audit_listing_is_tenant_scoped_and_newest_first(self, test_db, seeded_db):
        tid = seeded_db["tenant_id"]
        await record_audit(test_db, tenant_id=tid, action="FIRST", entity_type="order", entity_id="o-1")
        await record_audit(test_db, tenant_id=tid, action="SECOND", entity_type="order", entity_id="o-1")
        await record_audit(test_db, tenant_id=seeded_db["other_tenant_id"], action="OTHER", entity_type="order")
        await test_db.commit()

        page = await list_audit_logs(test_db, tid, entity_id="o-1")
        assert page["total"] == 2
        assert {row.action for row in page["items"]} == {"FIRST", "SECOND"}

        limited = await list_audit_logs(test_db, tid, limit=1, offset=1)
        assert limited["total"] == 2
        assert len(limited["items"]) == 1

        other = await list_audit_logs(test_db, seeded_db["other_tenant_id"])
        assert [row.action for row in other["items"]] == ["OTHER"]

        unknown = await list_audit_logs(test_db, tid, action="MISSING")
        assert unknown == {"items": [], "total": 0}
