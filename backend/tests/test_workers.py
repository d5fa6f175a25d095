"""
Worker tests — tenant fan-out, daily courier scorecards, scheduled DLQ replay.

Tasks build their own engine from settings, so each test seeds a file-backed
SQLite database and points get_settings at it.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from types import SimpleNamespace

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db.session import Base
from workers.celery_app import celery_app
from workers.courier_metrics import compute_courier_performance
from workers.dead_letters import replay_open_dead_letters
from workers.scheduler import dispatch_active_tenants

TENANT_ID = "00000000-0000-0000-0000-000000000101"


def _seed_database(tmp_path, rows_factory) -> str:
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'worker.db'}"

    async def _seed() -> None:
        engine = create_async_engine(db_url, echo=False)
        session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            async with session_factory() as db:
                for batch in rows_factory():
                    db.add_all(batch)
                    await db.flush()
                await db.commit()
        finally:
            await engine.dispose()

    asyncio.run(_seed())
    return db_url


def _fetch(db_url, statement):
    async def _run():
        engine = create_async_engine(db_url, echo=False)
        try:
            async with async_sessionmaker(engine, class_=AsyncSession)() as db:
                return (await db.execute(statement)).scalars().all()
        finally:
            await engine.dispose()

    return asyncio.run(_run())


def _tenant_with_order():
    from db.models import Order, Shipment, Tenant

    order_id = uuid.UUID("00000000-0000-0000-0000-0000000000a1")
    created = datetime(2026, 3, 8, 9, 0, 0)
    yield [Tenant(tenant_id=TENANT_ID, name="Active Tenant", status="active")]
    yield [
        Order(
            order_id=order_id,
            tenant_id=TENANT_ID,
            order_number="ORD-9001",
            payment_method="cod",
            total=90.0,
            state="new",
        )
    ]
    yield [
        Shipment(
            tenant_id=TENANT_ID,
            order_id=order_id,
            carrier="aramex",
            tracking_number="AWB90000001",
            region="riyadh",
            created_at=created,
            picked_up_at=created + timedelta(hours=12),
            delivered_at=created + timedelta(hours=30),
            cod_amount=90.0,
            cod_collected=True,
        )
    ]


def test_beat_jobs_fan_out_through_scheduler():
    schedule = celery_app.conf.beat_schedule
    assert set(schedule) == {"compute-courier-performance-daily", "replay-dead-letters-hourly"}
    for job in schedule.values():
        assert job["task"] == "workers.scheduler.dispatch_active_tenants"
    assert {job["kwargs"]["task_name"] for job in schedule.values()} == {
        "workers.courier_metrics.compute_courier_performance",
        "workers.dead_letters.replay_open_dead_letters",
    }


def test_dispatch_active_tenants_fans_out_only_active_and_trial(tmp_path, monkeypatch):
    from db.models import Tenant

    def rows():
        yield [
            Tenant(tenant_id="00000000-0000-0000-0000-000000000101", name="Active Tenant", status="active"),
            Tenant(tenant_id="00000000-0000-0000-0000-000000000102", name="Trial Tenant", status="trial"),
            Tenant(tenant_id="00000000-0000-0000-0000-000000000103", name="Churned Tenant", status="churned"),
        ]

    db_url = _seed_database(tmp_path, rows)
    monkeypatch.setattr("core.config.get_settings", lambda: SimpleNamespace(database_url=db_url))

    dispatched_calls: list[tuple[str, dict]] = []

    def _capture_send_task(task_name: str, kwargs: dict):
        dispatched_calls.append((task_name, kwargs))
        return None

    monkeypatch.setattr("workers.scheduler.celery_app.send_task", _capture_send_task)

    result = dispatch_active_tenants.run(
        task_name="workers.courier_metrics.compute_courier_performance",
        task_kwargs={"target_date": "2026-03-10"},
    )
    assert result["status"] == "success"
    assert result["tenant_count"] == 2
    assert result["dispatched_count"] == 2
    assert result["statuses"] == ["active", "trial"]

    task_names = {task for task, _ in dispatched_calls}
    assert task_names == {"workers.courier_metrics.compute_courier_performance"}
    tenant_ids = {kwargs["tenant_id"] for _, kwargs in dispatched_calls}
    assert tenant_ids == {
        "00000000-0000-0000-0000-000000000101",
        "00000000-0000-0000-0000-000000000102",
    }
    assert all(kwargs["target_date"] == "2026-03-10" for _, kwargs in dispatched_calls)
    assert result["tenants_by_status"] == {"active": 1, "trial": 1}
    assert result["failed_tenants"] == []


def test_dispatch_rejects_foreign_task_names(monkeypatch):
    def _fail_send_task(*args, **kwargs):
        raise AssertionError("should not dispatch")

    monkeypatch.setattr("workers.scheduler.celery_app.send_task", _fail_send_task)
    result = dispatch_active_tenants.run(task_name="os.system")
    assert result == {"status": "failed", "reason": "invalid_task_name", "task_name": "os.system"}

    unlisted = dispatch_active_tenants.run(task_name="workers.scheduler.dispatch_active_tenants")
    assert unlisted["reason"] == "invalid_task_name"


def test_dispatch_continues_past_broker_errors(tmp_path, monkeypatch):
    from db.models import Tenant

    def rows():
        yield [
            Tenant(tenant_id="00000000-0000-0000-0000-000000000101", name="First Tenant", status="active"),
            Tenant(tenant_id="00000000-0000-0000-0000-000000000102", name="Second Tenant", status="active"),
        ]

    db_url = _seed_database(tmp_path, rows)
    monkeypatch.setattr("core.config.get_settings", lambda: SimpleNamespace(database_url=db_url))

    sent: list[str] = []

    def _flaky_send_task(task_name: str, kwargs: dict):
        if kwargs["tenant_id"].endswith("101"):
            raise ConnectionError("broker unavailable")
        sent.append(kwargs["tenant_id"])

    monkeypatch.setattr("workers.scheduler.celery_app.send_task", _flaky_send_task)

    result = dispatch_active_tenants.run(task_name="workers.dead_letters.replay_open_dead_letters")

    assert result["status"] == "partial"
    assert result["tenant_count"] == 2
    assert result["dispatched_count"] == 1
    assert result["failed_tenants"] == ["00000000-0000-0000-0000-000000000101"]
    assert sent == ["00000000-0000-0000-0000-000000000102"]


def test_courier_metrics_task_is_idempotent_per_day(tmp_path, monkeypatch):
    from db.models import CourierPerformanceDaily

    db_url = _seed_database(tmp_path, _tenant_with_order)
    monkeypatch.setattr("core.config.get_settings", lambda: SimpleNamespace(database_url=db_url))

    first = compute_courier_performance.run(tenant_id=TENANT_ID, target_date="2026-03-10")
    second = compute_courier_performance.run(tenant_id=TENANT_ID, target_date="2026-03-10")

    assert first["status"] == "success"
    assert first["couriers_analyzed"] == 1
    assert first["skipped"] is False
    assert first["run_id"] == "manual"
    assert second["skipped"] is True

    rows = _fetch(db_url, select(CourierPerformanceDaily))
    assert len(rows) == 1
    assert (rows[0].courier, rows[0].region, rows[0].score) == ("aramex", "riyadh", 80)


def test_dead_letter_task_replays_due_entries(tmp_path, monkeypatch):
    from db.models import DeadLetterEntry, Order

    long_ago = datetime.utcnow() - timedelta(days=1)

    def rows():
        yield from _tenant_with_order()
        yield [
            DeadLetterEntry(
                tenant_id=TENANT_ID,
                workflow="station_routing",
                failed_step="station_routing",
                trigger_payload={
                    "order_id": "00000000-0000-0000-0000-0000000000a1",
                    "station": "call_center",
                    "idempotency_key": None,
                },
                error_message="OperationalError: database is locked",
                retry_count=0,
                created_at=long_ago,
            ),
            DeadLetterEntry(
                tenant_id=TENANT_ID,
                workflow="station_routing",
                trigger_payload={"order_id": "00000000-0000-0000-0000-0000000000a1", "station": "finance"},
                error_message="OperationalError: database is locked",
                retry_count=3,
                created_at=long_ago,
            ),
        ]

    db_url = _seed_database(tmp_path, rows)
    monkeypatch.setattr(
        "core.config.get_settings",
        lambda: SimpleNamespace(database_url=db_url, dlq_max_retries=3, dlq_retry_base_minutes=15),
    )

    result = replay_open_dead_letters.run(tenant_id=TENANT_ID)

    assert result["status"] == "success"
    assert result["attempted"] == 1
    assert result["resolved"] == 1

    entries = _fetch(db_url, select(DeadLetterEntry).order_by(DeadLetterEntry.retry_count))
    replayed, exhausted = entries
    assert replayed.resolved_at is not None
    assert replayed.resolution == "replayed"
    assert exhausted.resolved_at is None
    assert exhausted.retry_count == 3

    order = _fetch(db_url, select(Order))[0]
    assert order.current_station == "call_center"
