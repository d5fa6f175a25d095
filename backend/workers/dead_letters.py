"""
Dead Letter Worker — Scheduled replay of failed workflow runs.

Picks open entries under the retry cap whose backoff window
(base · 2^retry_count minutes after the last attempt) has elapsed and
replays them one by one. Entries that hit the cap stay open for an operator.

Schedule: crontab(minute=15) — hourly
Queue: pipeline
"""

import asyncio
import uuid

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.dead_letters.replay_open_dead_letters",
    bind=True,
    max_retries=1,
    default_retry_delay=300,
    acks_late=True,
)
def replay_open_dead_letters(self, tenant_id: str):
    run_id = self.request.id or "manual"

    async def _replay():
        from core.config import get_settings
        from fulfillment.dead_letters import list_replayable, replay_dead_letter
        from db.session import set_tenant_context

        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                await set_tenant_context(db, tenant_id)
                tid = uuid.UUID(tenant_id)
                entry_ids = await list_replayable(
                    db,
                    tid,
                    max_retries=settings.dlq_max_retries,
                    base_minutes=settings.dlq_retry_base_minutes,
                )
                resolved = 0
                for entry_id in entry_ids:
                    outcome = await replay_dead_letter(db, tid, entry_id)
                    if outcome["resolved"]:
                        resolved += 1
                return {"attempted": len(entry_ids), "resolved": resolved}
        finally:
            await engine.dispose()

    try:
        counts = asyncio.run(_replay())
    except Exception as exc:  # noqa: BLE001
        logger.error("dead_letters.replay_run_failed", tenant_id=tenant_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

    logger.info("dead_letters.replay_run_complete", tenant_id=tenant_id, run_id=run_id, **counts)
    return {"status": "success", "tenant_id": tenant_id, "run_id": run_id, **counts}
