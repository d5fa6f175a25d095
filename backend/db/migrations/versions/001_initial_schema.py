"""
Initial schema - all 15 fulfillment tables

Revision ID: 001
Revises: None
Create Date: 2026-03-01
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

STATES = (
    "'new', 'call_center_pending', 'call_center_confirmed', 'operations_pending', "
    "'operations_processing', 'shipped', 'in_transit', 'out_for_delivery', 'delivered', "
    "'finance_pending', 'finance_settled', 'return_requested', 'return_in_transit', "
    "'return_received', 'cancelled'"
)
STATIONS = "'call_center', 'operations', 'finance', 'returns'"

# Tables that reject UPDATE and DELETE at the database level
APPEND_ONLY_TABLES = ["shipment_events", "order_internal_events", "audit_logs"]


def _id(name: str) -> sa.Column:
    return sa.Column(name, UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()"))


def _tenant(nullable: bool = False) -> sa.Column:
    return sa.Column("tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.tenant_id"), nullable=nullable)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now())


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    # 1. Tenants
    op.create_table(
        "tenants",
        _id("tenant_id"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        _created_at(),
        sa.CheckConstraint("status IN ('active', 'trial', 'inactive', 'churned')", name="ck_tenant_status"),
    )

    # 2. Orders
    op.create_table(
        "orders",
        _id("order_id"),
        _tenant(),
        sa.Column("order_number", sa.String(50), nullable=False),
        sa.Column("customer_name", sa.String(255)),
        sa.Column("total", sa.Float, server_default="0"),
        sa.Column("payment_method", sa.String(20), server_default="prepaid"),
        sa.Column("state", sa.String(40), nullable=False, server_default="new"),
        sa.Column("current_station", sa.String(20)),
        sa.Column("transition_count", sa.Integer, nullable=False, server_default="0"),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("tenant_id", "order_number", name="uq_order_number_per_tenant"),
        sa.CheckConstraint(f"state IN ({STATES})", name="ck_order_state"),
    )
    op.create_index("ix_orders_tenant_station", "orders", ["tenant_id", "current_station"])

    # 3. Shipments
    op.create_table(
        "shipments",
        _id("shipment_id"),
        _tenant(),
        sa.Column("order_id", UUID(as_uuid=True), sa.ForeignKey("orders.order_id"), nullable=False),
        sa.Column("carrier", sa.String(50), nullable=False),
        sa.Column("tracking_number", sa.String(100), nullable=False),
        sa.Column("region", sa.String(100)),
        sa.Column("status", sa.String(100), server_default="pending"),
        sa.Column("internal_status", sa.String(40)),
        sa.Column("is_terminal", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("last_event_at", sa.DateTime),
        sa.Column("picked_up_at", sa.DateTime),
        sa.Column("delivered_at", sa.DateTime),
        sa.Column("returned_at", sa.DateTime),
        sa.Column("failed_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("cod_amount", sa.Float),
        sa.Column("cod_collected", sa.Boolean, server_default="false"),
        sa.Column("cod_settled_at", sa.DateTime),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("tenant_id", "tracking_number", name="uq_shipment_tracking_per_tenant"),
    )
    op.create_index("ix_shipments_tenant_created", "shipments", ["tenant_id", "created_at"])
    op.create_index("ix_shipments_tenant_carrier", "shipments", ["tenant_id", "carrier"])

    # 4. Shipment events
    op.create_table(
        "shipment_events",
        _id("event_id"),
        _tenant(),
        sa.Column("shipment_id", UUID(as_uuid=True), sa.ForeignKey("shipments.shipment_id"), nullable=False),
        sa.Column("tracking_number", sa.String(100), nullable=False),
        sa.Column("carrier", sa.String(50), nullable=False),
        sa.Column("provider_status", sa.String(100), nullable=False),
        sa.Column("internal_status", sa.String(40)),
        sa.Column("location", sa.String(255)),
        sa.Column("description", sa.Text),
        sa.Column("occurred_at", sa.DateTime, nullable=False),
        sa.Column("ingestion_mode", sa.String(10), nullable=False),
        sa.Column("raw_data", JSONB),
        _created_at(),
        sa.CheckConstraint("ingestion_mode IN ('api', 'csv', 'email', 'manual')", name="ck_shipment_event_mode"),
    )
    op.create_index(
        "ix_shipment_events_tenant_tracking", "shipment_events", ["tenant_id", "tracking_number", "occurred_at"]
    )

    # 5. Order internal events
    op.create_table(
        "order_internal_events",
        _id("id"),
        _tenant(),
        sa.Column("order_id", UUID(as_uuid=True), sa.ForeignKey("orders.order_id"), nullable=False),
        sa.Column("from_state", sa.String(40)),
        sa.Column("to_state", sa.String(40), nullable=False),
        sa.Column("station", sa.String(20)),
        sa.Column("triggered_by", sa.String(20), nullable=False, server_default="automation"),
        sa.Column("user_id", sa.String(255)),
        sa.Column("notes", sa.Text),
        _created_at(),
        sa.CheckConstraint("triggered_by IN ('system', 'user', 'automation')", name="ck_internal_event_trigger"),
    )
    op.create_index(
        "ix_order_internal_events_order", "order_internal_events", ["tenant_id", "order_id", "created_at"]
    )

    # 6. Audit logs
    op.create_table(
        "audit_logs",
        _id("audit_id"),
        _tenant(),
        sa.Column("workflow", sa.String(50)),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(100)),
        sa.Column("old_values", JSONB),
        sa.Column("new_values", JSONB),
        sa.Column("performed_by", sa.String(255), nullable=False, server_default="automation"),
        _created_at(),
    )
    op.create_index("ix_audit_logs_tenant_created", "audit_logs", ["tenant_id", "created_at"])
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])

    # 7. Order station metrics
    op.create_table(
        "order_station_metrics",
        _id("id"),
        _tenant(),
        sa.Column("order_id", UUID(as_uuid=True), sa.ForeignKey("orders.order_id"), nullable=False),
        sa.Column("station", sa.String(20), nullable=False),
        sa.Column("entered_at", sa.DateTime, nullable=False),
        sa.Column("exited_at", sa.DateTime),
        sa.Column("duration_minutes", sa.Integer),
        sa.Column("sla_target_minutes", sa.Integer, nullable=False),
        sa.Column("sla_breached", sa.Boolean, nullable=False, server_default="false"),
        _created_at(),
        sa.CheckConstraint(f"station IN ({STATIONS})", name="ck_station_metrics_station"),
    )
    op.create_index("ix_station_metrics_open", "order_station_metrics", ["tenant_id", "order_id", "exited_at"])
    op.create_index("ix_station_metrics_station", "order_station_metrics", ["tenant_id", "station", "exited_at"])
    # At most one open interval per order
    op.create_index(
        "uq_station_metrics_one_open",
        "order_station_metrics",
        ["order_id"],
        unique=True,
        postgresql_where=sa.text("exited_at IS NULL"),
    )

    # 8. Tenant SLA targets
    op.create_table(
        "tenant_sla_targets",
        _id("id"),
        _tenant(),
        sa.Column("station", sa.String(20), nullable=False),
        sa.Column("sla_target_minutes", sa.Integer, nullable=False),
        _updated_at(),
        sa.UniqueConstraint("tenant_id", "station", name="uq_sla_target_per_station"),
        sa.CheckConstraint("sla_target_minutes > 0", name="ck_sla_target_positive"),
        sa.CheckConstraint(f"station IN ({STATIONS})", name="ck_sla_target_station"),
    )

    # 9. Provider status mappings
    op.create_table(
        "provider_status_mappings",
        _id("id"),
        _tenant(),
        sa.Column("carrier", sa.String(50), nullable=False),
        sa.Column("provider_status", sa.String(100), nullable=False),
        sa.Column("internal_status", sa.String(40), nullable=False),
        sa.Column("triggers_station", sa.String(20)),
        sa.Column("is_terminal", sa.Boolean, nullable=False, server_default="false"),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("tenant_id", "carrier", "provider_status", name="uq_status_mapping_per_tenant"),
        sa.CheckConstraint(f"internal_status IN ({STATES})", name="ck_status_mapping_state"),
    )

    # 10. Tenant routing configs
    op.create_table(
        "tenant_routing_configs",
        _id("id"),
        sa.Column(
            "tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.tenant_id"), nullable=False, unique=True
        ),
        sa.Column("weights", JSONB, nullable=False),
        _updated_at(),
    )

    # 11. Carrier overrides
    op.create_table(
        "carrier_overrides",
        _id("id"),
        _tenant(),
        sa.Column("carrier", sa.String(50), nullable=False),
        sa.Column("is_disabled", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("is_forced", sa.Boolean, nullable=False, server_default="false"),
        _updated_at(),
        sa.UniqueConstraint("tenant_id", "carrier", name="uq_carrier_override_per_tenant"),
    )

    # 12. Courier performance daily
    op.create_table(
        "courier_performance_daily",
        _id("id"),
        _tenant(),
        sa.Column("courier", sa.String(50), nullable=False),
        sa.Column("date", sa.Date, nullable=False),
        sa.Column("region", sa.String(100), nullable=False, server_default="all"),
        sa.Column("total_shipments", sa.Integer, nullable=False, server_default="0"),
        sa.Column("delivered_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("returned_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("avg_pickup_hours", sa.Float, server_default="0"),
        sa.Column("avg_delivery_hours", sa.Float, server_default="0"),
        sa.Column("avg_return_cycle_hours", sa.Float, server_default="0"),
        sa.Column("avg_cod_remittance_hours", sa.Float, server_default="0"),
        sa.Column("cod_collection_rate", sa.Float),
        sa.Column("delivery_rate", sa.Float, server_default="0"),
        sa.Column("return_rate", sa.Float, server_default="0"),
        sa.Column("on_time_rate", sa.Float, server_default="0"),
        sa.Column("score", sa.Integer, nullable=False, server_default="0"),
        sa.Column("recommendations", JSONB),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("tenant_id", "courier", "date", "region", name="uq_courier_performance_day"),
        sa.CheckConstraint("score >= 0 AND score <= 100", name="ck_courier_score_range"),
    )

    # 13. Routing decisions
    op.create_table(
        "routing_decisions",
        _id("decision_id"),
        _tenant(),
        sa.Column("order_id", UUID(as_uuid=True), sa.ForeignKey("orders.order_id"), nullable=False),
        sa.Column("recommended_carrier", sa.String(50), nullable=False),
        sa.Column("chosen_carrier", sa.String(50), nullable=False),
        sa.Column("score", sa.Float, nullable=False),
        sa.Column("confidence", sa.String(10), nullable=False),
        sa.Column("reasoning", sa.Text),
        sa.Column("overridden_by", sa.String(255)),
        _created_at(),
        sa.CheckConstraint("confidence IN ('high', 'medium', 'low')", name="ck_routing_decision_confidence"),
    )
    op.create_index("ix_routing_decisions_order", "routing_decisions", ["tenant_id", "order_id", "created_at"])

    # 14. Workflow executions
    op.create_table(
        "workflow_executions",
        _id("id"),
        sa.Column("idempotency_key", sa.String(500), nullable=False, unique=True),
        _tenant(),
        sa.Column("workflow", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(50)),
        sa.Column("entity_id", sa.String(100)),
        sa.Column("status", sa.String(20), nullable=False, server_default="completed"),
        _created_at(),
        sa.CheckConstraint("status IN ('completed', 'failed')", name="ck_workflow_execution_status"),
    )

    # 15. Dead letters
    op.create_table(
        "dead_letters",
        _id("id"),
        _tenant(nullable=True),
        sa.Column("workflow", sa.String(50), nullable=False),
        sa.Column("failed_step", sa.String(50)),
        sa.Column("trigger_payload", JSONB, nullable=False),
        sa.Column("error_message", sa.Text, nullable=False),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_retried_at", sa.DateTime),
        sa.Column("resolved_at", sa.DateTime),
        sa.Column("resolution", sa.Text),
        _created_at(),
    )
    op.create_index("ix_dead_letters_open", "dead_letters", ["tenant_id", "resolved_at", "created_at"])

    op.execute(
        """
        CREATE OR REPLACE FUNCTION reject_append_only_change() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION '% is append-only', TG_TABLE_NAME;
        END;
        $$ LANGUAGE plpgsql
        """
    )
    for table in APPEND_ONLY_TABLES:
        op.execute(
            f"CREATE TRIGGER {table}_append_only BEFORE UPDATE OR DELETE ON {table} "
            f"FOR EACH ROW EXECUTE FUNCTION reject_append_only_change()"
        )


def downgrade() -> None:
    for table in APPEND_ONLY_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS {table}_append_only ON {table}")
    op.execute("DROP FUNCTION IF EXISTS reject_append_only_change()")

    for table in [
        "dead_letters",
        "workflow_executions",
        "routing_decisions",
        "courier_performance_daily",
        "carrier_overrides",
        "tenant_routing_configs",
        "provider_status_mappings",
        "tenant_sla_targets",
        "order_station_metrics",
        "audit_logs",
        "order_internal_events",
        "shipment_events",
        "shipments",
        "orders",
        "tenants",
    ]:
        op.drop_table(table)
