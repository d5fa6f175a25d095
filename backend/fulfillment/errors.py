"""Exception types raised by the fulfillment pipeline."""


class FulfillmentError(Exception):
    """Base class for fulfillment pipeline errors."""


class NotFoundError(FulfillmentError):
    """A referenced tenant-scoped row (shipment, order, event, entry) does not exist."""

    def __init__(self, entity: str, identifier: object):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} not found: {identifier}")


class DuplicateOperationError(FulfillmentError):
    """The idempotency key was claimed by another attempt."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Operation already recorded: {key}")


class CsvStructureError(FulfillmentError, ValueError):
    """The CSV header cannot be resolved to tracking-number and status columns."""


class InvalidWeightsError(FulfillmentError, ValueError):
    """Routing weights outside [0, 1] or not summing to 1."""


class ImmutableRecordError(FulfillmentError):
    """An append-only record was updated or deleted."""
