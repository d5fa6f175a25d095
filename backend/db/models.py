"""
FulfillOps Database Models

Order-fulfillment backbone tables. Multi-tenant via tenant_id on all tables.

Tables:
  Core:
  1. tenants                   - Tenant organizations
  2. orders                    - Orders with internal state + current station
  3. shipments                 - Carrier shipments per order (lifecycle timestamps, COD)

  Pipeline (write-once):
  4. shipment_events           - Every inbound carrier status update
  5. order_internal_events     - Order state timeline
  6. audit_logs                - Before/after record of every state-changing action

  Station routing:
  7. order_station_metrics     - Per-station residency intervals + SLA breach flag
  8. tenant_sla_targets        - Per-tenant SLA target overrides

  Configuration:
  9. provider_status_mappings  - Carrier status → internal state rules
  10. tenant_routing_configs   - Smart routing weights
  11. carrier_overrides        - Disabled / forced carriers

  Courier analytics:
  12. courier_performance_daily - Daily per courier/region aggregate
  13. routing_decisions         - Recommended vs chosen carrier

  Reliability:
  14. workflow_executions      - Idempotency ledger
  15. dead_letters             - Failed workflow attempts
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    event,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


from sqlalchemy.orm import relationship

from db.session import Base
from fulfillment.errors import ImmutableRecordError

_STATE_VALUES = (
    "'new', 'call_center_pending', 'call_center_confirmed', 'operations_pending', "
    "'operations_processing', 'shipped', 'in_transit', 'out_for_delivery', 'delivered', "
    "'finance_pending', 'finance_settled', 'return_requested', 'return_in_transit', "
    "'return_received', 'cancelled'"
)
_STATION_VALUES = "'call_center', 'operations', 'finance', 'returns'"

# ─── 1. Tenants ─────────────────────────────────────────────────────────────


class Tenant(Base):
    __tablename__ = "tenants"

    tenant_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('active', 'trial', 'inactive', 'churned')", name="ck_tenant_status"),
    )

    orders = relationship("Order", back_populates="tenant", cascade="all, delete-orphan")


# ─── 2. Orders ──────────────────────────────────────────────────────────────


class Order(Base):
    __tablename__ = "orders"

    order_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    order_number = Column(String(50), nullable=False)
    customer_name = Column(String(255))
    total = Column(Float, default=0.0)
    payment_method = Column(String(20), default="prepaid")  # cod, prepaid
    state = Column(String(40), nullable=False, default="new")
    current_station = Column(String(20))  # null = no station owns the order
    transition_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "order_number", name="uq_order_number_per_tenant"),
        Index("ix_orders_tenant_station", "tenant_id", "current_station"),
        CheckConstraint(f"state IN ({_STATE_VALUES})", name="ck_order_state"),
    )

    tenant = relationship("Tenant", back_populates="orders")
    shipments = relationship("Shipment", back_populates="order")


# ─── 3. Shipments ───────────────────────────────────────────────────────────


class Shipment(Base):
    __tablename__ = "shipments"

    shipment_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    order_id = Column(GUID(), ForeignKey("orders.order_id"), nullable=False)
    carrier = Column(String(50), nullable=False)
    tracking_number = Column(String(100), nullable=False)
    region = Column(String(100))
    status = Column(String(100), default="pending")  # last raw carrier status
    internal_status = Column(String(40))
    is_terminal = Column(Boolean, nullable=False, default=False)
    last_event_at = Column(DateTime)

    # Lifecycle timestamps (feed courier performance)
    picked_up_at = Column(DateTime)
    delivered_at = Column(DateTime)
    returned_at = Column(DateTime)
    failed_attempts = Column(Integer, nullable=False, default=0)

    # Cash on delivery
    cod_amount = Column(Float)
    cod_collected = Column(Boolean, default=False)
    cod_settled_at = Column(DateTime)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "tracking_number", name="uq_shipment_tracking_per_tenant"),
        Index("ix_shipments_tenant_created", "tenant_id", "created_at"),
        Index("ix_shipments_tenant_carrier", "tenant_id", "carrier"),
    )

    order = relationship("Order", back_populates="shipments")


# ─── 4. Shipment Events ─────────────────────────────────────────────────────


class ShipmentEvent(Base):
    """Immutable record of one carrier status update. Never mutated."""

    __tablename__ = "shipment_events"

    event_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    shipment_id = Column(GUID(), ForeignKey("shipments.shipment_id"), nullable=False)
    tracking_number = Column(String(100), nullable=False)
    carrier = Column(String(50), nullable=False)
    provider_status = Column(String(100), nullable=False)
    internal_status = Column(String(40))  # null = unmapped
    location = Column(String(255))
    description = Column(Text)
    occurred_at = Column(DateTime, nullable=False)
    ingestion_mode = Column(String(10), nullable=False)
    raw_data = Column(JSON)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_shipment_events_tenant_tracking", "tenant_id", "tracking_number", "occurred_at"),
        CheckConstraint("ingestion_mode IN ('api', 'csv', 'email', 'manual')", name="ck_shipment_event_mode"),
    )


# ─── 5. Order Internal Events ───────────────────────────────────────────────


class OrderInternalEvent(Base):
    """Append-only order state timeline."""

    __tablename__ = "order_internal_events"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    order_id = Column(GUID(), ForeignKey("orders.order_id"), nullable=False)
    from_state = Column(String(40))
    to_state = Column(String(40), nullable=False)
    station = Column(String(20))
    triggered_by = Column(String(20), nullable=False, default="automation")
    user_id = Column(String(255))
    notes = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_order_internal_events_order", "tenant_id", "order_id", "created_at"),
        CheckConstraint("triggered_by IN ('system', 'user', 'automation')", name="ck_internal_event_trigger"),
    )


# ─── 6. Audit Logs ──────────────────────────────────────────────────────────


class AuditLog(Base):
    """Immutable before/after record of every state-changing action."""

    __tablename__ = "audit_logs"

    audit_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    workflow = Column(String(50))
    action = Column(String(100), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(100))
    old_values = Column(JSON)
    new_values = Column(JSON)
    performed_by = Column(String(255), nullable=False, default="automation")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_audit_logs_tenant_created", "tenant_id", "created_at"),
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
    )


# ─── 7. Order Station Metrics ───────────────────────────────────────────────


class OrderStationMetrics(Base):
    """One residency interval per (order, station). At most one open row per order."""

    __tablename__ = "order_station_metrics"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    order_id = Column(GUID(), ForeignKey("orders.order_id"), nullable=False)
    station = Column(String(20), nullable=False)
    entered_at = Column(DateTime, nullable=False)
    exited_at = Column(DateTime)
    duration_minutes = Column(Integer)
    sla_target_minutes = Column(Integer, nullable=False)
    sla_breached = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_station_metrics_open", "tenant_id", "order_id", "exited_at"),
        Index("ix_station_metrics_station", "tenant_id", "station", "exited_at"),
        CheckConstraint(f"station IN ({_STATION_VALUES})", name="ck_station_metrics_station"),
    )


# ─── 8. Tenant SLA Targets ──────────────────────────────────────────────────


class TenantSlaTarget(Base):
    __tablename__ = "tenant_sla_targets"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    station = Column(String(20), nullable=False)
    sla_target_minutes = Column(Integer, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "station", name="uq_sla_target_per_station"),
        CheckConstraint("sla_target_minutes > 0", name="ck_sla_target_positive"),
        CheckConstraint(f"station IN ({_STATION_VALUES})", name="ck_sla_target_station"),
    )


# ─── 9. Provider Status Mappings ────────────────────────────────────────────


class ProviderStatusMapping(Base):
    """Tenant rule translating (carrier, raw status) to an internal state. carrier='*' is the wildcard."""

    __tablename__ = "provider_status_mappings"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    carrier = Column(String(50), nullable=False)
    provider_status = Column(String(100), nullable=False)
    internal_status = Column(String(40), nullable=False)
    triggers_station = Column(String(20))
    is_terminal = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "carrier", "provider_status", name="uq_status_mapping_per_tenant"),
        CheckConstraint(f"internal_status IN ({_STATE_VALUES})", name="ck_status_mapping_state"),
    )


# ─── 10. Tenant Routing Configs ─────────────────────────────────────────────


class TenantRoutingConfig(Base):
    __tablename__ = "tenant_routing_configs"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False, unique=True)
    weights = Column(JSON, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


# ─── 11. Carrier Overrides ──────────────────────────────────────────────────


class CarrierOverride(Base):
    __tablename__ = "carrier_overrides"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    carrier = Column(String(50), nullable=False)
    is_disabled = Column(Boolean, nullable=False, default=False)
    is_forced = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (UniqueConstraint("tenant_id", "carrier", name="uq_carrier_override_per_tenant"),)


# ─── 12. Courier Performance Daily ──────────────────────────────────────────


class CourierPerformanceDaily(Base):
    __tablename__ = "courier_performance_daily"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    courier = Column(String(50), nullable=False)
    date = Column(Date, nullable=False)
    region = Column(String(100), nullable=False, default="all")
    total_shipments = Column(Integer, nullable=False, default=0)
    delivered_count = Column(Integer, nullable=False, default=0)
    returned_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    avg_pickup_hours = Column(Float, default=0.0)
    avg_delivery_hours = Column(Float, default=0.0)
    avg_return_cycle_hours = Column(Float, default=0.0)
    avg_cod_remittance_hours = Column(Float, default=0.0)
    cod_collection_rate = Column(Float)
    delivery_rate = Column(Float, default=0.0)
    return_rate = Column(Float, default=0.0)
    on_time_rate = Column(Float, default=0.0)
    score = Column(Integer, nullable=False, default=0)
    recommendations = Column(JSON, default=list)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "courier", "date", "region", name="uq_courier_performance_day"),
        CheckConstraint("score >= 0 AND score <= 100", name="ck_courier_score_range"),
    )


# ─── 13. Routing Decisions ──────────────────────────────────────────────────


class RoutingDecision(Base):
    __tablename__ = "routing_decisions"

    decision_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    order_id = Column(GUID(), ForeignKey("orders.order_id"), nullable=False)
    recommended_carrier = Column(String(50), nullable=False)
    chosen_carrier = Column(String(50), nullable=False)
    score = Column(Float, nullable=False)
    confidence = Column(String(10), nullable=False)
    reasoning = Column(Text)
    overridden_by = Column(String(255))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_routing_decisions_order", "tenant_id", "order_id", "created_at"),
        CheckConstraint("confidence IN ('high', 'medium', 'low')", name="ck_routing_decision_confidence"),
    )


# ─── 14. Workflow Executions (idempotency ledger) ───────────────────────────


class WorkflowExecution(Base):
    __tablename__ = "workflow_executions"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    idempotency_key = Column(String(500), nullable=False, unique=True)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    workflow = Column(String(50), nullable=False)
    entity_type = Column(String(50))
    entity_id = Column(String(100))
    status = Column(String(20), nullable=False, default="completed")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('completed', 'failed')", name="ck_workflow_execution_status"),
    )


# ─── 15. Dead Letters ───────────────────────────────────────────────────────


class DeadLetterEntry(Base):
    __tablename__ = "dead_letters"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"))
    workflow = Column(String(50), nullable=False)
    failed_step = Column(String(50))
    trigger_payload = Column(JSON, nullable=False)
    error_message = Column(Text, nullable=False)
    retry_count = Column(Integer, nullable=False, default=0)
    last_retried_at = Column(DateTime)
    resolved_at = Column(DateTime)
    resolution = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_dead_letters_open", "tenant_id", "resolved_at", "created_at"),)


# ─── Write-once enforcement ─────────────────────────────────────────────────


def _reject_mutation(mapper, connection, target):
    raise ImmutableRecordError(f"{target.__tablename__} rows are append-only")


for _model in (ShipmentEvent, OrderInternalEvent, AuditLog):
    event.listen(_model, "before_update", _reject_mutation)
    event.listen(_model, "before_delete", _reject_mutation)
