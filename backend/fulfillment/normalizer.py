"""
Status Normalizer — carrier status string → internal order state.

Lookup order:
  1. tenant mapping for (carrier, raw_status)   exact, case-sensitive
  2. tenant mapping for ("*", raw_status)       exact, case-sensitive
  3. built-in defaults                          carrier rows, then "*" rows; case-insensitive
  4. unmapped (None)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ProviderStatusMapping
from fulfillment.audit import record_audit
from fulfillment.defaults import WILDCARD_CARRIER, FulfillmentDefaults, get_fulfillment_defaults
from fulfillment.states import InternalOrderState, StationType

logger = structlog.get_logger()


@dataclass(frozen=True)
class NormalizedStatus:
    internal_state: InternalOrderState
    triggers_station: StationType | None
    is_terminal: bool
    source: str  # tenant, tenant_wildcard, default


def _from_row(row: ProviderStatusMapping, source: str) -> NormalizedStatus:
    return NormalizedStatus(
        internal_state=InternalOrderState(row.internal_status),
        triggers_station=StationType(row.triggers_station) if row.triggers_station else None,
        is_terminal=bool(row.is_terminal),
        source=source,
    )


async def normalize_status(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    carrier: str,
    raw_status: str,
    *,
    defaults: FulfillmentDefaults | None = None,
) -> NormalizedStatus | None:
    if not raw_status:
        return None

    result = await db.execute(
        select(ProviderStatusMapping).where(
            ProviderStatusMapping.tenant_id == tenant_id,
            ProviderStatusMapping.provider_status == raw_status,
            ProviderStatusMapping.carrier.in_([carrier, WILDCARD_CARRIER]),
        )
    )
    tenant_rows = {row.carrier: row for row in result.scalars().all()}
    if carrier in tenant_rows:
        return _from_row(tenant_rows[carrier], "tenant")
    if WILDCARD_CARRIER in tenant_rows:
        return _from_row(tenant_rows[WILDCARD_CARRIER], "tenant_wildcard")

    defaults = defaults or get_fulfillment_defaults()
    default_row = defaults.find_status_mapping(carrier, raw_status)
    if default_row is not None:
        return NormalizedStatus(
            internal_state=default_row.internal_status,
            triggers_station=default_row.triggers_station,
            is_terminal=default_row.is_terminal,
            source="default",
        )

    logger.info("normalizer.unmapped", tenant_id=str(tenant_id), carrier=carrier, raw_status=raw_status)
    return None


async def list_status_mappings(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    *,
    carrier: str | None = None,
    defaults: FulfillmentDefaults | None = None,
) -> list[dict]:
    """Tenant rows followed by the built-in defaults (flagged is_default)."""
    query = select(ProviderStatusMapping).where(ProviderStatusMapping.tenant_id == tenant_id)
    if carrier:
        query = query.where(ProviderStatusMapping.carrier.in_([carrier, WILDCARD_CARRIER]))
    rows = (
        await db.execute(query.order_by(ProviderStatusMapping.carrier, ProviderStatusMapping.provider_status))
    ).scalars().all()

    mappings = [
        {
            "id": str(row.id),
            "carrier": row.carrier,
            "provider_status": row.provider_status,
            "internal_status": row.internal_status,
            "triggers_station": row.triggers_station,
            "is_terminal": row.is_terminal,
            "is_default": False,
        }
        for row in rows
    ]

    defaults = defaults or get_fulfillment_defaults()
    for row in defaults.status_mappings:
        if carrier and row.carrier not in (carrier.lower(), WILDCARD_CARRIER):
            continue
        mappings.append(
            {
                "id": None,
                "carrier": row.carrier,
                "provider_status": row.provider_status,
                "internal_status": row.internal_status.value,
                "triggers_station": row.triggers_station.value if row.triggers_station else None,
                "is_terminal": row.is_terminal,
                "is_default": True,
            }
        )
    return mappings


async def upsert_status_mapping(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    *,
    carrier: str,
    provider_status: str,
    internal_status: InternalOrderState,
    triggers_station: StationType | None = None,
    is_terminal: bool = False,
    performed_by: str = "user",
) -> ProviderStatusMapping:
    internal_status = InternalOrderState(internal_status)
    triggers_station = StationType(triggers_station) if triggers_station else None

    result = await db.execute(
        select(ProviderStatusMapping).where(
            ProviderStatusMapping.tenant_id == tenant_id,
            ProviderStatusMapping.carrier == carrier,
            ProviderStatusMapping.provider_status == provider_status,
        )
    )
    mapping = result.scalar_one_or_none()
    old_values = None
    if mapping is None:
        mapping = ProviderStatusMapping(
            tenant_id=tenant_id,
            carrier=carrier,
            provider_status=provider_status,
        )
        db.add(mapping)
    else:
        old_values = {
            "internal_status": mapping.internal_status,
            "triggers_station": mapping.triggers_station,
            "is_terminal": mapping.is_terminal,
        }

    mapping.internal_status = internal_status.value
    mapping.triggers_station = triggers_station.value if triggers_station else None
    mapping.is_terminal = is_terminal
    await db.flush()

    await record_audit(
        db,
        tenant_id=tenant_id,
        action="STATUS_MAPPING_UPSERTED",
        entity_type="provider_status_mapping",
        entity_id=mapping.id,
        old_values=old_values,
        new_values={
            "carrier": carrier,
            "provider_status": provider_status,
            "internal_status": internal_status,
            "triggers_station": triggers_station,
            "is_terminal": is_terminal,
        },
        performed_by=performed_by,
    )
    logger.info(
        "normalizer.mapping_upserted",
        tenant_id=str(tenant_id),
        carrier=carrier,
        provider_status=provider_status,
        internal_status=internal_status.value,
    )
    return mapping
