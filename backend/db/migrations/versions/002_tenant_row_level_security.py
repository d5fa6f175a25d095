"""Tenant isolation policies on every tenant-scoped table.

FORCE makes the policies apply to the table owner too.

Revision ID: 002
Revises: 001
Create Date: 2026-03-01
"""

from collections.abc import Sequence

from alembic import op

revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

TENANT_TABLES = [
    "orders",
    "shipments",
    "shipment_events",
    "order_internal_events",
    "audit_logs",
    "order_station_metrics",
    "tenant_sla_targets",
    "provider_status_mappings",
    "tenant_routing_configs",
    "carrier_overrides",
    "courier_performance_daily",
    "routing_decisions",
    "workflow_executions",
    "dead_letters",
]


def upgrade() -> None:
    for table in TENANT_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
        op.execute(
            f"CREATE POLICY tenant_isolation ON {table} "
            f"USING (tenant_id::text = current_setting('app.current_tenant_id', true))"
        )


def downgrade() -> None:
    for table in TENANT_TABLES:
        op.execute(f"DROP POLICY IF EXISTS tenant_isolation ON {table}")
        op.execute(f"ALTER TABLE {table} NO FORCE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")
