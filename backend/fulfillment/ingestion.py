"""
Shipment status ingestion

Per inbound event:
  1. idempotency pre-check (tracking number + raw status + occurrence time)
  2. resolve the shipment (tenant-scoped)
  3. normalize the carrier status
  4. persist the ShipmentEvent, mapped or not
  5. update the shipment's status and lifecycle timestamps
  6. audit, then record the ledger row last
  7. mapped events are handed to map_provider_status as a separate unit of work

A batch never aborts on one bad event: failures land in the summary's errors
and, for real faults, in the dead-letter queue.
"""

from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Shipment, ShipmentEvent
from fulfillment.audit import record_audit
from fulfillment.dead_letters import register_replay_handler, workflow_boundary
from fulfillment.defaults import FulfillmentDefaults
from fulfillment.errors import DuplicateOperationError, NotFoundError
from fulfillment.ledger import build_idempotency_key, record_execution, try_begin
from fulfillment.normalizer import NormalizedStatus, normalize_status
from fulfillment.state_machine import TransitionResult, map_provider_status
from fulfillment.states import IngestionMode, InternalOrderState
from integrations.base import InboundStatusEvent, IngestionSummary, parse_timestamp
from integrations.csv_feed import parse_shipping_csv
from integrations.email_feed import parse_shipping_email

logger = structlog.get_logger()

WORKFLOW = "shipment_ingestion"

S = InternalOrderState
_PICKED_UP_STATES = frozenset({S.SHIPPED, S.IN_TRANSIT, S.OUT_FOR_DELIVERY, S.DELIVERED})
_RETURNED_STATES = frozenset({S.RETURN_IN_TRANSIT, S.RETURN_RECEIVED})
_FAILED_ATTEMPT_MARKERS = ("fail", "undeliver", "attempt")


@dataclass(frozen=True)
class EventOutcome:
    status: str  # processed, skipped, unmapped
    shipment_event_id: uuid.UUID | None = None
    transition: TransitionResult | None = None


def _event_payload(event: InboundStatusEvent, mode: IngestionMode) -> dict:
    return {"event": dataclasses.asdict(event), "ingestion_mode": mode}


def _apply_to_shipment(shipment: Shipment, event: InboundStatusEvent, normalized: NormalizedStatus | None) -> dict:
    before = {
        "status": shipment.status,
        "internal_status": shipment.internal_status,
        "is_terminal": shipment.is_terminal,
    }

    # Out-of-order deliveries must not roll the shipment's current status back.
    is_latest = shipment.last_event_at is None or event.occurred_at >= shipment.last_event_at
    if is_latest:
        shipment.status = event.provider_status
        shipment.last_event_at = event.occurred_at
        if normalized is not None:
            shipment.internal_status = normalized.internal_state.value
            shipment.is_terminal = normalized.is_terminal

    if any(marker in event.provider_status.lower() for marker in _FAILED_ATTEMPT_MARKERS):
        shipment.failed_attempts = (shipment.failed_attempts or 0) + 1

    if normalized is not None:
        state = normalized.internal_state
        if state in _PICKED_UP_STATES and shipment.picked_up_at is None:
            shipment.picked_up_at = event.occurred_at
        if state == S.DELIVERED and shipment.delivered_at is None:
            shipment.delivered_at = event.occurred_at
            if shipment.cod_amount:
                shipment.cod_collected = True
        if state in _RETURNED_STATES and shipment.returned_at is None:
            shipment.returned_at = event.occurred_at

    return before


async def ingest_shipment_event(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    event: InboundStatusEvent,
    ingestion_mode: IngestionMode,
    *,
    defaults: FulfillmentDefaults | None = None,
) -> EventOutcome:
    """Ingest one event, then map it onto its order. Failures propagate."""
    mode = IngestionMode(ingestion_mode)
    key = build_idempotency_key(WORKFLOW, tenant_id, event.tracking_number, event.provider_status, event.occurred_at)

    try:
        async with workflow_boundary(db, workflow=WORKFLOW, tenant_id=tenant_id, payload=_event_payload(event, mode)):
            if (await try_begin(db, key)).already_done:
                return EventOutcome(status="skipped")

            result = await db.execute(
                select(Shipment).where(
                    Shipment.tenant_id == tenant_id,
                    Shipment.tracking_number == event.tracking_number,
                )
            )
            shipment = result.scalar_one_or_none()
            if shipment is None:
                raise NotFoundError("Shipment", event.tracking_number)

            normalized = await normalize_status(db, tenant_id, event.carrier, event.provider_status, defaults=defaults)
            shipment_event = ShipmentEvent(
                tenant_id=tenant_id,
                shipment_id=shipment.shipment_id,
                tracking_number=event.tracking_number,
                carrier=event.carrier,
                provider_status=event.provider_status,
                internal_status=normalized.internal_state.value if normalized else None,
                location=event.location,
                description=event.description,
                occurred_at=event.occurred_at,
                ingestion_mode=mode.value,
                raw_data=event.raw_data,
            )
            db.add(shipment_event)
            before = _apply_to_shipment(shipment, event, normalized)
            await db.flush()
            shipment_event_id = shipment_event.event_id

            await record_audit(
                db,
                tenant_id=tenant_id,
                workflow=WORKFLOW,
                action="SHIPMENT_STATUS_INGESTED",
                entity_type="shipment",
                entity_id=shipment.shipment_id,
                old_values=before,
                new_values={
                    "status": event.provider_status,
                    "internal_status": normalized.internal_state if normalized else None,
                    "mapping_source": normalized.source if normalized else None,
                    "triggers_station": normalized.triggers_station if normalized else None,
                    "shipment_event_id": shipment_event_id,
                    "ingestion_mode": mode,
                },
            )
            await record_execution(
                db,
                key=key,
                tenant_id=tenant_id,
                workflow=WORKFLOW,
                entity_id=shipment_event_id,
                entity_type="shipment_event",
            )
    except DuplicateOperationError:
        return EventOutcome(status="skipped")

    logger.info(
        "ingestion.event_processed",
        tenant_id=str(tenant_id),
        tracking_number=event.tracking_number,
        provider_status=event.provider_status,
        mapped=normalized is not None,
    )
    if normalized is None:
        return EventOutcome(status="unmapped", shipment_event_id=shipment_event_id)

    transition = await map_provider_status(db, tenant_id, shipment_event_id, defaults=defaults)
    return EventOutcome(status="processed", shipment_event_id=shipment_event_id, transition=transition)


async def ingest_shipment_events(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    events: Iterable[InboundStatusEvent],
    ingestion_mode: IngestionMode,
    *,
    defaults: FulfillmentDefaults | None = None,
) -> IngestionSummary:
    summary = IngestionSummary()
    for event in events:
        try:
            outcome = await ingest_shipment_event(db, tenant_id, event, ingestion_mode, defaults=defaults)
        except NotFoundError as exc:
            summary.errors.append(str(exc))
            continue
        except Exception as exc:
            logger.error(
                "ingestion.event_failed",
                tenant_id=str(tenant_id),
                tracking_number=event.tracking_number,
                error=str(exc),
            )
            summary.errors.append(f"{event.tracking_number}: {exc}")
            continue

        if outcome.status == "skipped":
            summary.skipped += 1
        elif outcome.status == "unmapped":
            summary.processed += 1
            summary.unmapped += 1
        else:
            summary.processed += 1

    summary.complete()
    logger.info(
        "ingestion.batch_complete",
        tenant_id=str(tenant_id),
        mode=IngestionMode(ingestion_mode).value,
        processed=summary.processed,
        skipped=summary.skipped,
        unmapped=summary.unmapped,
        errors=len(summary.errors),
    )
    return summary


async def ingest_csv(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    csv_content: str,
    carrier: str,
    *,
    defaults: FulfillmentDefaults | None = None,
) -> IngestionSummary:
    """Raises CsvStructureError when the header cannot be resolved."""
    parsed = parse_shipping_csv(csv_content, carrier)
    summary = await ingest_shipment_events(db, tenant_id, parsed.events, IngestionMode.CSV, defaults=defaults)
    summary.errors = parsed.errors + summary.errors
    return summary


async def ingest_email(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    email_content: str,
    carrier: str,
    *,
    defaults: FulfillmentDefaults | None = None,
) -> IngestionSummary:
    events = parse_shipping_email(email_content, carrier)
    summary = await ingest_shipment_events(db, tenant_id, events, IngestionMode.EMAIL, defaults=defaults)
    if not events:
        summary.errors.append("No tracking numbers found in email")
    return summary


@register_replay_handler(WORKFLOW)
async def _replay_ingestion(db: AsyncSession, tenant_id: uuid.UUID, payload: dict) -> EventOutcome:
    raw = dict(payload["event"])
    occurred_at = raw.get("occurred_at")
    raw["occurred_at"] = occurred_at if isinstance(occurred_at, datetime) else parse_timestamp(occurred_at)
    event = InboundStatusEvent(**raw)
    return await ingest_shipment_event(db, tenant_id, event, IngestionMode(payload["ingestion_mode"]))
