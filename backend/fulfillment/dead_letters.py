"""
Dead-letter queue and the workflow failure boundary.

Every workflow entry point runs inside ``workflow_boundary``. Boundaries nest:
each level is a SAVEPOINT, and only the outermost level commits. When the
outermost level sees an exception it rolls its savepoint back, persists a
DeadLetterEntry with the trigger payload, commits that, and re-raises. The
caller always sees the failure.

Not-found and duplicate-operation errors are outcomes, not failures, and are
never dead-lettered.

Entries are resolved by an operator, or replayed through the handler that
the owning workflow registered with ``register_replay_handler``.
"""

from __future__ import annotations

import importlib
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import DeadLetterEntry
from fulfillment.audit import to_jsonable
from fulfillment.errors import DuplicateOperationError, NotFoundError

logger = structlog.get_logger()

_DEPTH_KEY = "workflow_boundary_depth"
_FAILED_STEP_KEY = "workflow_failed_step"
_REPLAY_KEY = "workflow_replay_active"

_NOT_DEAD_LETTERED = (NotFoundError, DuplicateOperationError)

ReplayHandler = Callable[[AsyncSession, uuid.UUID, dict[str, Any]], Awaitable[Any]]

_REPLAY_HANDLERS: dict[str, ReplayHandler] = {}

# Modules that register replay handlers at import time.
_WORKFLOW_MODULES = (
    "fulfillment.ingestion",
    "fulfillment.state_machine",
    "fulfillment.stations",
    "fulfillment.courier_performance",
)


def register_replay_handler(workflow: str):
    """Decorator: register the coroutine that re-runs ``workflow`` from its stored payload."""

    def decorator(fn: ReplayHandler) -> ReplayHandler:
        _REPLAY_HANDLERS[workflow] = fn
        return fn

    return decorator


def get_replay_handler(workflow: str) -> ReplayHandler | None:
    if workflow not in _REPLAY_HANDLERS:
        for module in _WORKFLOW_MODULES:
            importlib.import_module(module)
    return _REPLAY_HANDLERS.get(workflow)


# ── Failure boundary ───────────────────────────────────────────────────────


@asynccontextmanager
async def workflow_boundary(
    db: AsyncSession,
    *,
    workflow: str,
    tenant_id: uuid.UUID | None,
    payload: dict[str, Any],
):
    depth = db.info.get(_DEPTH_KEY, 0)
    db.info[_DEPTH_KEY] = depth + 1
    savepoint = await db.begin_nested()
    try:
        yield
        await db.flush()
    except Exception as exc:
        db.info[_DEPTH_KEY] = depth
        if savepoint.is_active:
            await savepoint.rollback()

        dead_letter = not isinstance(exc, _NOT_DEAD_LETTERED)
        if dead_letter:
            db.info.setdefault(_FAILED_STEP_KEY, workflow)
        if depth > 0:
            raise

        failed_step = db.info.pop(_FAILED_STEP_KEY, workflow)
        if dead_letter and not db.info.get(_REPLAY_KEY):
            await _record_dead_letter(
                db,
                workflow=workflow,
                tenant_id=tenant_id,
                payload=payload,
                error=exc,
                failed_step=failed_step,
            )
        raise
    else:
        db.info[_DEPTH_KEY] = depth
        await savepoint.commit()
        if depth == 0:
            db.info.pop(_FAILED_STEP_KEY, None)
            await db.commit()


async def _record_dead_letter(
    db: AsyncSession,
    *,
    workflow: str,
    tenant_id: uuid.UUID | None,
    payload: dict[str, Any],
    error: Exception,
    failed_step: str,
) -> None:
    message = f"{type(error).__name__}: {error}"
    try:
        entry = DeadLetterEntry(
            tenant_id=tenant_id,
            workflow=workflow,
            failed_step=failed_step,
            trigger_payload=to_jsonable(payload),
            error_message=message[:4000],
            retry_count=0,
        )
        db.add(entry)
        await db.commit()
    except SQLAlchemyError:
        logger.exception("dead_letters.record_failed", workflow=workflow, tenant_id=str(tenant_id))
        await db.rollback()
        return
    logger.error(
        "dead_letters.recorded",
        workflow=workflow,
        failed_step=failed_step,
        tenant_id=str(tenant_id),
        error=message,
    )


# ── Operator surface ───────────────────────────────────────────────────────


async def get_dead_letter(db: AsyncSession, tenant_id: uuid.UUID, entry_id: uuid.UUID) -> DeadLetterEntry:
    result = await db.execute(
        select(DeadLetterEntry).where(
            DeadLetterEntry.id == entry_id,
            DeadLetterEntry.tenant_id == tenant_id,
        )
    )
    entry = result.scalar_one_or_none()
    if entry is None:
        raise NotFoundError("Dead letter", entry_id)
    return entry


async def list_dead_letters(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    *,
    workflow: str | None = None,
    include_resolved: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> dict:
    filters = [DeadLetterEntry.tenant_id == tenant_id]
    if workflow:
        filters.append(DeadLetterEntry.workflow == workflow)
    if not include_resolved:
        filters.append(DeadLetterEntry.resolved_at.is_(None))

    total = (await db.execute(select(func.count(DeadLetterEntry.id)).where(*filters))).scalar_one()
    rows = (
        await db.execute(
            select(DeadLetterEntry)
            .where(*filters)
            .order_by(DeadLetterEntry.created_at.asc())
            .limit(limit)
            .offset(offset)
        )
    ).scalars().all()
    return {"items": list(rows), "total": int(total)}


async def resolve_dead_letter(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    entry_id: uuid.UUID,
    *,
    resolution: str,
    now: datetime | None = None,
) -> DeadLetterEntry:
    entry = await get_dead_letter(db, tenant_id, entry_id)
    if entry.resolved_at is None:
        entry.resolved_at = now or datetime.utcnow()
        entry.resolution = resolution
        await db.commit()
        logger.info("dead_letters.resolved", entry_id=str(entry_id), tenant_id=str(tenant_id))
    return entry


async def replay_dead_letter(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    entry_id: uuid.UUID,
    *,
    now: datetime | None = None,
) -> dict:
    """Re-run the owning workflow with the stored payload.

    Success resolves the entry; failure bumps retry_count and keeps it open.
    Failures during replay never create a second entry.
    """
    entry = await get_dead_letter(db, tenant_id, entry_id)
    if entry.resolved_at is not None:
        return {"entry_id": str(entry_id), "replayed": False, "resolved": True, "error": None}

    workflow = entry.workflow
    payload = dict(entry.trigger_payload or {})
    handler = get_replay_handler(workflow)
    if handler is None:
        raise ValueError(f"No replay handler registered for workflow: {workflow}")

    replayed_at = now or datetime.utcnow()
    error: str | None = None
    db.info[_REPLAY_KEY] = True
    try:
        await handler(db, tenant_id, payload)
    except DuplicateOperationError:
        # Another attempt already completed the operation.
        pass
    except Exception as exc:
        error = f"{type(exc).__name__}: {exc}"
        logger.warning("dead_letters.replay_failed", entry_id=str(entry_id), workflow=workflow, error=error)
    finally:
        db.info.pop(_REPLAY_KEY, None)

    entry = await get_dead_letter(db, tenant_id, entry_id)
    entry.retry_count = (entry.retry_count or 0) + 1
    entry.last_retried_at = replayed_at
    if error is None:
        entry.resolved_at = replayed_at
        entry.resolution = "replayed"
    else:
        entry.error_message = error[:4000]
    await db.commit()

    logger.info(
        "dead_letters.replayed",
        entry_id=str(entry_id),
        workflow=workflow,
        resolved=error is None,
        retry_count=entry.retry_count,
    )
    return {"entry_id": str(entry_id), "replayed": True, "resolved": error is None, "error": error}


def next_retry_due(entry: DeadLetterEntry, *, base_minutes: int) -> datetime:
    """Exponential backoff from the last attempt: base · 2^retry_count."""
    anchor = entry.last_retried_at or entry.created_at
    return anchor + timedelta(minutes=base_minutes * (2 ** (entry.retry_count or 0)))


async def list_replayable(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    *,
    max_retries: int,
    base_minutes: int,
    now: datetime | None = None,
) -> list[uuid.UUID]:
    """Open entries under the retry cap whose backoff window has elapsed."""
    now = now or datetime.utcnow()
    rows = (
        await db.execute(
            select(DeadLetterEntry)
            .where(
                DeadLetterEntry.tenant_id == tenant_id,
                DeadLetterEntry.resolved_at.is_(None),
                DeadLetterEntry.retry_count < max_retries,
            )
            .order_by(DeadLetterEntry.created_at.asc())
        )
    ).scalars().all()
    return [row.id for row in rows if next_retry_due(row, base_minutes=base_minutes) <= now]
