"""
Test Configuration — Fixtures for async DB, test client, and mock data.

Every test gets its own in-memory SQLite database. The pipeline commits at
the end of each workflow and uses SAVEPOINTs for nested steps, so the
pysqlite transaction handling is switched off and BEGIN is emitted by
SQLAlchemy itself.
"""

import uuid
from datetime import datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from api.deps import get_current_user, get_db, get_tenant_db
from api.main import app
from db.session import Base

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TENANT_ID = "00000000-0000-0000-0000-000000000001"
OTHER_TENANT_ID = "00000000-0000-0000-0000-000000000002"

NOW = datetime(2026, 3, 10, 12, 0, 0)


@pytest.fixture
async def test_engine():
    """Fresh in-memory database with all tables."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_user():
    """Mock authenticated user."""
    return {
        "sub": "auth0|test-user-id",
        "email": "ops@fulfillops.test",
        "tenant_id": TENANT_ID,
    }


@pytest.fixture
async def client(test_db, mock_user):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    def override_get_current_user():
        return mock_user

    async def override_get_tenant_db():
        """Return the test session directly."""
        return test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_tenant_db] = override_get_tenant_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def seeded_db(test_db):
    """Two tenants; the first has a COD order with an aramex shipment and a prepaid order with an smsa shipment."""
    from db.models import Order, Shipment, Tenant

    tenant_id = uuid.UUID(TENANT_ID)
    other_tenant_id = uuid.UUID(OTHER_TENANT_ID)

    test_db.add_all(
        [
            Tenant(tenant_id=tenant_id, name="Test Merchant", status="active"),
            Tenant(tenant_id=other_tenant_id, name="Other Merchant", status="active"),
        ]
    )
    await test_db.flush()

    cod_order = Order(
        tenant_id=tenant_id,
        order_number="ORD-1001",
        customer_name="Sara Ali",
        total=250.0,
        payment_method="cod",
        state="new",
        created_at=NOW - timedelta(days=2),
    )
    prepaid_order = Order(
        tenant_id=tenant_id,
        order_number="ORD-1002",
        customer_name="Omar Haddad",
        total=120.0,
        payment_method="prepaid",
        state="operations_processing",
        created_at=NOW - timedelta(days=1),
    )
    test_db.add_all([cod_order, prepaid_order])
    await test_db.flush()

    cod_shipment = Shipment(
        tenant_id=tenant_id,
        order_id=cod_order.order_id,
        carrier="aramex",
        tracking_number="AWB10000001",
        region="riyadh",
        cod_amount=250.0,
        created_at=NOW - timedelta(days=2),
    )
    prepaid_shipment = Shipment(
        tenant_id=tenant_id,
        order_id=prepaid_order.order_id,
        carrier="smsa",
        tracking_number="SMSA2000002",
        region="jeddah",
        created_at=NOW - timedelta(days=1),
    )
    test_db.add_all([cod_shipment, prepaid_shipment])
    await test_db.flush()

    await test_db.commit()

    return {
        "tenant_id": tenant_id,
        "other_tenant_id": other_tenant_id,
        "cod_order": cod_order,
        "prepaid_order": prepaid_order,
        "cod_shipment": cod_shipment,
        "prepaid_shipment": prepaid_shipment,
    }
