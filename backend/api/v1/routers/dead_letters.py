"""
Dead Letters Router — inspect, resolve and replay failed workflow runs.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_tenant_db, get_tenant_id
from fulfillment.dead_letters import list_dead_letters, replay_dead_letter, resolve_dead_letter
from fulfillment.errors import NotFoundError

router = APIRouter(prefix="/api/v1/dead-letters", tags=["dead-letters"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class DeadLetterResponse(BaseModel):
    id: UUID
    workflow: str
    failed_step: str | None
    trigger_payload: dict
    error_message: str
    retry_count: int
    last_retried_at: datetime | None
    resolved_at: datetime | None
    resolution: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class DeadLetterPage(BaseModel):
    items: list[DeadLetterResponse]
    total: int


class ResolveRequest(BaseModel):
    resolution: str = Field(min_length=1, max_length=2000)


class ReplayResponse(BaseModel):
    entry_id: str
    replayed: bool
    resolved: bool
    error: str | None


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("", response_model=DeadLetterPage)
async def list_entries(
    workflow: str | None = None,
    include_resolved: bool = False,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    return await list_dead_letters(
        db,
        tenant_id,
        workflow=workflow,
        include_resolved=include_resolved,
        limit=limit,
        offset=offset,
    )


@router.post("/{entry_id}/resolve", response_model=DeadLetterResponse)
async def resolve_entry(
    entry_id: UUID,
    body: ResolveRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Close an entry without replaying it."""
    try:
        return await resolve_dead_letter(db, tenant_id, entry_id, resolution=body.resolution)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.post("/{entry_id}/replay", response_model=ReplayResponse)
async def replay_entry(
    entry_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Re-run the failed workflow with its stored payload."""
    try:
        return await replay_dead_letter(db, tenant_id, entry_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
