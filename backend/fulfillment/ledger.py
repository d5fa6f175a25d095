"""
Idempotency ledger.

Every side-effecting workflow derives a deterministic key from its stable
inputs. try_begin() is a read-only pre-check to skip obvious repeats; the
unique constraint on workflow_executions.idempotency_key is what actually
decides. record_execution() inserts the row as the last step of the workflow,
so a crash part-way leaves the operation retryable, and a lost insert race
surfaces as DuplicateOperationError.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import WorkflowExecution
from fulfillment.errors import DuplicateOperationError

logger = structlog.get_logger()


@dataclass(frozen=True)
class LedgerCheck:
    already_done: bool


def _render_part(part: object) -> str:
    if isinstance(part, (datetime, date)):
        return part.isoformat()
    if hasattr(part, "value"):
        return str(part.value)
    return str(part)


def build_idempotency_key(workflow: str, *parts: object) -> str:
    """``workflow:part1:part2:…`` — deterministic across retries."""
    return ":".join([workflow, *(_render_part(p) for p in parts)])


async def try_begin(db: AsyncSession, key: str) -> LedgerCheck:
    result = await db.execute(
        select(WorkflowExecution.id).where(WorkflowExecution.idempotency_key == key).limit(1)
    )
    return LedgerCheck(already_done=result.scalar_one_or_none() is not None)


async def record_execution(
    db: AsyncSession,
    *,
    key: str,
    tenant_id: uuid.UUID,
    workflow: str,
    entity_id: object | None = None,
    entity_type: str | None = None,
    status: str = "completed",
) -> WorkflowExecution:
    row = WorkflowExecution(
        idempotency_key=key,
        tenant_id=tenant_id,
        workflow=workflow,
        entity_id=str(entity_id) if entity_id is not None else None,
        entity_type=entity_type,
        status=status,
    )
    try:
        async with db.begin_nested():
            db.add(row)
            await db.flush()
    except IntegrityError as exc:
        logger.info("ledger.duplicate", key=key, workflow=workflow)
        raise DuplicateOperationError(key) from exc
    return row
