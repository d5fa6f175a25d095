"""
Order lifecycle vocabulary — internal states, stations, ingestion channels.

The internal state graph:

    new → call_center_pending → call_center_confirmed → operations_pending
        → operations_processing → shipped → in_transit → out_for_delivery
        → delivered → finance_pending → finance_settled

    side branch:  return_requested → return_in_transit → return_received
    absorbing:    cancelled

Each state is owned by at most one station. States with no station are
either in the carrier's hands (shipped/in_transit/out_for_delivery) or done.
"""

from __future__ import annotations

from enum import Enum


class InternalOrderState(str, Enum):
    NEW = "new"
    CALL_CENTER_PENDING = "call_center_pending"
    CALL_CENTER_CONFIRMED = "call_center_confirmed"
    OPERATIONS_PENDING = "operations_pending"
    OPERATIONS_PROCESSING = "operations_processing"
    SHIPPED = "shipped"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    FINANCE_PENDING = "finance_pending"
    FINANCE_SETTLED = "finance_settled"
    RETURN_REQUESTED = "return_requested"
    RETURN_IN_TRANSIT = "return_in_transit"
    RETURN_RECEIVED = "return_received"
    CANCELLED = "cancelled"


class StationType(str, Enum):
    CALL_CENTER = "call_center"
    OPERATIONS = "operations"
    FINANCE = "finance"
    RETURNS = "returns"


class IngestionMode(str, Enum):
    API = "api"
    CSV = "csv"
    EMAIL = "email"
    MANUAL = "manual"


class TriggeredBy(str, Enum):
    SYSTEM = "system"
    AUTOMATION = "automation"
    USER = "user"


S = InternalOrderState

STATION_ROUTING_RULES: dict[InternalOrderState, StationType | None] = {
    S.NEW: StationType.CALL_CENTER,
    S.CALL_CENTER_PENDING: StationType.CALL_CENTER,
    S.CALL_CENTER_CONFIRMED: StationType.OPERATIONS,
    S.OPERATIONS_PENDING: StationType.OPERATIONS,
    S.OPERATIONS_PROCESSING: StationType.OPERATIONS,
    S.SHIPPED: None,
    S.IN_TRANSIT: None,
    S.OUT_FOR_DELIVERY: None,
    S.DELIVERED: StationType.FINANCE,
    S.FINANCE_PENDING: StationType.FINANCE,
    S.FINANCE_SETTLED: None,
    S.RETURN_REQUESTED: StationType.RETURNS,
    S.RETURN_IN_TRANSIT: StationType.RETURNS,
    S.RETURN_RECEIVED: StationType.RETURNS,
    S.CANCELLED: None,
}

TERMINAL_STATES = frozenset({S.FINANCE_SETTLED, S.RETURN_RECEIVED, S.CANCELLED})

MAIN_LIFECYCLE: tuple[InternalOrderState, ...] = (
    S.NEW,
    S.CALL_CENTER_PENDING,
    S.CALL_CENTER_CONFIRMED,
    S.OPERATIONS_PENDING,
    S.OPERATIONS_PROCESSING,
    S.SHIPPED,
    S.IN_TRANSIT,
    S.OUT_FOR_DELIVERY,
    S.DELIVERED,
    S.FINANCE_PENDING,
    S.FINANCE_SETTLED,
)

RETURN_BRANCH: tuple[InternalOrderState, ...] = (
    S.RETURN_REQUESTED,
    S.RETURN_IN_TRANSIT,
    S.RETURN_RECEIVED,
)

# Carriers report returns at any point once the parcel has left the warehouse.
_RETURN_ENTRY_STATES = frozenset({S.SHIPPED, S.IN_TRANSIT, S.OUT_FOR_DELIVERY, S.DELIVERED, S.FINANCE_PENDING})
_CANCELLABLE_STATES = frozenset(MAIN_LIFECYCLE[: MAIN_LIFECYCLE.index(S.DELIVERED)]) | {S.RETURN_REQUESTED}


def _build_allowed_transitions() -> dict[InternalOrderState, frozenset[InternalOrderState]]:
    allowed: dict[InternalOrderState, set[InternalOrderState]] = {state: set() for state in InternalOrderState}

    # Forward moves may skip steps: carriers rarely report every scan.
    for idx, state in enumerate(MAIN_LIFECYCLE):
        allowed[state].update(MAIN_LIFECYCLE[idx + 1 :])
    for idx, state in enumerate(RETURN_BRANCH):
        allowed[state].update(RETURN_BRANCH[idx + 1 :])

    for state in _RETURN_ENTRY_STATES:
        allowed[state].update(RETURN_BRANCH)
    for state in _CANCELLABLE_STATES:
        allowed[state].add(S.CANCELLED)

    for state in TERMINAL_STATES:
        allowed[state].clear()

    return {state: frozenset(targets) for state, targets in allowed.items()}


ALLOWED_TRANSITIONS = _build_allowed_transitions()


def station_for_state(state: InternalOrderState) -> StationType | None:
    """Station that owns an order in ``state`` (None while in transit or done)."""
    return STATION_ROUTING_RULES[state]


def is_legal_transition(from_state: InternalOrderState | None, to_state: InternalOrderState) -> bool:
    """Adjacency check for the internal state graph. Unknown origins are always legal."""
    if from_state is None:
        return True
    return to_state in ALLOWED_TRANSITIONS[from_state]


def coerce_state(value: str | InternalOrderState | None) -> InternalOrderState | None:
    if value is None or value == "":
        return None
    return InternalOrderState(value)


def _check_routing_table() -> None:
    missing = set(InternalOrderState) - set(STATION_ROUTING_RULES)
    if missing:
        raise RuntimeError(f"Station routing table missing states: {sorted(s.value for s in missing)}")


_check_routing_table()
