"""
Built-in fulfillment defaults — carrier status mappings and station SLA targets.

Resolved once into an immutable FulfillmentDefaults and passed to the
normalizer and station router. Tenant rows (provider_status_mappings,
tenant_sla_targets) are layered on top by the callers.

Optional override payload from env:
  STATION_SLA_OVERRIDES='{"call_center": 30, "finance": 720}'
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from functools import lru_cache
from types import MappingProxyType
from typing import Mapping

import structlog

from core.config import get_settings
from fulfillment.states import InternalOrderState, StationType

logger = structlog.get_logger()

WILDCARD_CARRIER = "*"


@dataclass(frozen=True)
class DefaultStatusMapping:
    carrier: str
    provider_status: str
    internal_status: InternalOrderState
    triggers_station: StationType | None = None
    is_terminal: bool = False


S = InternalOrderState
ST = StationType

DEFAULT_STATUS_MAPPINGS: tuple[DefaultStatusMapping, ...] = (
    # Generic lifecycle
    DefaultStatusMapping("*", "pending", S.OPERATIONS_PENDING, ST.OPERATIONS),
    DefaultStatusMapping("*", "picked_up", S.SHIPPED, ST.OPERATIONS),
    DefaultStatusMapping("*", "in_transit", S.IN_TRANSIT),
    DefaultStatusMapping("*", "out_for_delivery", S.OUT_FOR_DELIVERY),
    DefaultStatusMapping("*", "delivered", S.DELIVERED, ST.FINANCE, True),
    DefaultStatusMapping("*", "returned", S.RETURN_RECEIVED, ST.RETURNS, True),
    DefaultStatusMapping("*", "cancelled", S.CANCELLED, None, True),
    # Aramex
    DefaultStatusMapping("aramex", "SHP", S.SHIPPED),
    DefaultStatusMapping("aramex", "OFD", S.OUT_FOR_DELIVERY),
    DefaultStatusMapping("aramex", "DEL", S.DELIVERED, ST.FINANCE, True),
    DefaultStatusMapping("aramex", "RTS", S.RETURN_IN_TRANSIT, ST.RETURNS),
    # SMSA
    DefaultStatusMapping("smsa", "Shipped", S.SHIPPED),
    DefaultStatusMapping("smsa", "Out for Delivery", S.OUT_FOR_DELIVERY),
    DefaultStatusMapping("smsa", "Delivered", S.DELIVERED, ST.FINANCE, True),
    # J&T
    DefaultStatusMapping("jnt", "PICKUP_DONE", S.SHIPPED),
    DefaultStatusMapping("jnt", "ON_DELIVERY", S.OUT_FOR_DELIVERY),
    DefaultStatusMapping("jnt", "DELIVERED", S.DELIVERED, ST.FINANCE, True),
)

DEFAULT_SLA_TARGETS: Mapping[StationType, int] = MappingProxyType(
    {
        ST.CALL_CENTER: 60,
        ST.OPERATIONS: 240,
        ST.FINANCE: 1440,
        ST.RETURNS: 2880,
    }
)


@dataclass(frozen=True)
class FulfillmentDefaults:
    status_mappings: tuple[DefaultStatusMapping, ...] = DEFAULT_STATUS_MAPPINGS
    sla_targets: Mapping[StationType, int] = field(default_factory=lambda: DEFAULT_SLA_TARGETS)
    state_graph_mode: str = "strict"
    courier_lookback_days: int = 30
    on_time_delivery_hours: float = 72.0

    def find_status_mapping(self, carrier: str, raw_status: str) -> DefaultStatusMapping | None:
        """Carrier-specific rows first, then wildcard rows. Case-insensitive."""
        carrier_key = (carrier or "").lower()
        status_key = (raw_status or "").lower()
        wildcard_hit = None
        for row in self.status_mappings:
            if row.provider_status.lower() != status_key:
                continue
            if row.carrier.lower() == carrier_key:
                return row
            if row.carrier == WILDCARD_CARRIER and wildcard_hit is None:
                wildcard_hit = row
        return wildcard_hit

    def sla_target_for(self, station: StationType) -> int:
        return int(self.sla_targets[StationType(station)])


def _load_sla_overrides(raw: str) -> dict[StationType, int]:
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("defaults.sla_overrides_invalid_json")
        return {}
    if not isinstance(payload, dict):
        return {}

    overrides: dict[StationType, int] = {}
    for key, minutes in payload.items():
        try:
            station = StationType(key)
            value = int(minutes)
        except (ValueError, TypeError):
            logger.warning("defaults.sla_override_ignored", station=key, minutes=minutes)
            continue
        if value > 0:
            overrides[station] = value
    return overrides


@lru_cache
def get_fulfillment_defaults() -> FulfillmentDefaults:
    """Defaults resolved from settings once per process."""
    settings = get_settings()
    sla_targets = dict(DEFAULT_SLA_TARGETS)
    sla_targets.update(_load_sla_overrides(settings.station_sla_overrides))
    return FulfillmentDefaults(
        sla_targets=MappingProxyType(sla_targets),
        state_graph_mode=settings.state_graph_mode,
        courier_lookback_days=settings.courier_lookback_days,
        on_time_delivery_hours=settings.on_time_delivery_hours,
    )
