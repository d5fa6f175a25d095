"""
Courier Metrics Worker — Daily courier scorecard.

Aggregates the trailing window of shipments per courier and region into
courier_performance_daily and stores the recommendations for each courier.
The ledger key is per tenant and day, so a re-delivered task is a no-op.

Schedule: crontab(hour=1, minute=0) — daily at 1 AM
Queue: analytics
"""

import asyncio
import uuid
from datetime import date

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.courier_metrics.compute_courier_performance",
    bind=True,
    max_retries=2,
    default_retry_delay=120,
    acks_late=True,
)
def compute_courier_performance(self, tenant_id: str, target_date: str | None = None):
    """Compute the courier scorecard for target_date (default today) for one tenant."""
    run_id = self.request.id or "manual"
    logger.info("courier_metrics.started", tenant_id=tenant_id, run_id=run_id)

    async def _compute():
        from core.config import get_settings
        from fulfillment.courier_performance import compute_courier_performance as compute
        from db.session import set_tenant_context

        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                await set_tenant_context(db, tenant_id)
                day = date.fromisoformat(target_date) if target_date else None
                return await compute(db, uuid.UUID(tenant_id), day)
        finally:
            await engine.dispose()

    try:
        summary = asyncio.run(_compute())
    except Exception as exc:  # noqa: BLE001
        logger.error("courier_metrics.failed", tenant_id=tenant_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

    logger.info(
        "courier_metrics.completed",
        tenant_id=tenant_id,
        date=summary["date"],
        couriers_analyzed=summary["couriers_analyzed"],
        skipped=summary["skipped"],
    )
    return {"status": "success", "tenant_id": tenant_id, "run_id": run_id, **summary}
