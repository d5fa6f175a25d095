"""
Status Mappings Router — per-tenant carrier status → internal state overrides.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_tenant_db, get_tenant_id
from fulfillment.normalizer import list_status_mappings, upsert_status_mapping
from fulfillment.states import InternalOrderState, StationType

router = APIRouter(prefix="/api/v1/status-mappings", tags=["status-mappings"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class StatusMappingResponse(BaseModel):
    id: str | None
    carrier: str
    provider_status: str
    internal_status: str
    triggers_station: str | None
    is_terminal: bool
    is_default: bool


class StatusMappingUpsert(BaseModel):
    carrier: str = Field(min_length=1, max_length=50)
    provider_status: str = Field(min_length=1, max_length=100)
    internal_status: InternalOrderState
    triggers_station: StationType | None = None
    is_terminal: bool = False


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("", response_model=list[StatusMappingResponse])
async def list_mappings(
    carrier: str | None = None,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Tenant overrides first, then the built-in defaults."""
    return await list_status_mappings(db, tenant_id, carrier=carrier)


@router.put("", response_model=StatusMappingResponse)
async def put_mapping(
    body: StatusMappingUpsert,
    tenant_id: UUID = Depends(get_tenant_id),
    user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Create or replace the tenant's mapping for one carrier status."""
    mapping = await upsert_status_mapping(
        db,
        tenant_id,
        carrier=body.carrier,
        provider_status=body.provider_status,
        internal_status=body.internal_status,
        triggers_station=body.triggers_station,
        is_terminal=body.is_terminal,
        performed_by=user.get("sub", "user"),
    )
    await db.commit()
    return {
        "id": str(mapping.id),
        "carrier": mapping.carrier,
        "provider_status": mapping.provider_status,
        "internal_status": mapping.internal_status,
        "triggers_station": mapping.triggers_station,
        "is_terminal": mapping.is_terminal,
        "is_default": False,
    }
