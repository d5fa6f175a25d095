"""
Tenant Fan-out — beat entry point for tenant-scoped tasks.

Beat fires one dispatch per job; the dispatcher looks up every tenant in an
eligible status and sends the target task once per tenant with tenant_id
added to its kwargs. Only tasks listed in TENANT_TASKS can be dispatched.

A broker error for one tenant is reported in the summary and does not stop
the rest of the fan-out. The whole run is retried only when the tenant lookup
itself fails.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()

DEFAULT_ACTIVE_STATUSES = ("active", "trial")

TENANT_TASKS = frozenset(
    {
        "workers.courier_metrics.compute_courier_performance",
        "workers.dead_letters.replay_open_dead_letters",
    }
)


async def _eligible_tenants(database_url: str, statuses: tuple[str, ...]) -> list[tuple[str, str]]:
    from db.models import Tenant

    engine = create_async_engine(database_url)
    try:
        async_session = async_sessionmaker(engine, class_=AsyncSession)
        async with async_session() as db:
            result = await db.execute(
                select(Tenant.tenant_id, Tenant.status)
                .where(Tenant.status.in_(statuses))
                .order_by(Tenant.created_at)
            )
            return [(str(row.tenant_id), row.status) for row in result.all()]
    finally:
        await engine.dispose()


@celery_app.task(
    name="workers.scheduler.dispatch_active_tenants",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def dispatch_active_tenants(
    self,
    task_name: str,
    task_kwargs: dict | None = None,
    statuses: list[str] | None = None,
):
    """Send task_name once per eligible tenant."""
    from core.config import get_settings

    if task_name not in TENANT_TASKS:
        logger.warning("scheduler.task_rejected", task_name=task_name)
        return {"status": "failed", "reason": "invalid_task_name", "task_name": task_name}

    run_id = self.request.id or "manual"
    selected_statuses = tuple(statuses or DEFAULT_ACTIVE_STATUSES)

    try:
        tenants = asyncio.run(_eligible_tenants(get_settings().database_url, selected_statuses))
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.tenant_lookup_failed", task_name=task_name, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

    failed_tenants: list[str] = []
    for tenant_id, _status in tenants:
        try:
            celery_app.send_task(task_name, kwargs={**(task_kwargs or {}), "tenant_id": tenant_id})
        except Exception as exc:  # noqa: BLE001
            logger.error("scheduler.send_failed", task_name=task_name, tenant_id=tenant_id, error=str(exc))
            failed_tenants.append(tenant_id)

    by_status = Counter(status for _tenant_id, status in tenants)
    summary = {
        "status": "partial" if failed_tenants else "success",
        "task_name": task_name,
        "tenant_count": len(tenants),
        "dispatched_count": len(tenants) - len(failed_tenants),
        "failed_tenants": failed_tenants,
        "statuses": list(selected_statuses),
        "tenants_by_status": {status: by_status.get(status, 0) for status in selected_statuses},
        "triggered_at": datetime.now(timezone.utc).isoformat(),
        "run_id": run_id,
    }
    logger.info(
        "scheduler.dispatch_complete",
        task_name=task_name,
        run_id=run_id,
        tenant_count=summary["tenant_count"],
        dispatched_count=summary["dispatched_count"],
        failed_count=len(failed_tenants),
        **{f"tenants_{status}": count for status, count in summary["tenants_by_status"].items()},
    )
    return summary
