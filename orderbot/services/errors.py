"""Domain errors raised by the order core.

Each class maps to one recoverable kind the state machine knows how to
phrase for the customer. Collaborator adapters translate transport
errors into these before they reach the orchestration step.
"""

from typing import Optional


class OrderBotError(Exception):
    """Base class for every domain failure of the ordering core."""


class MalformedAddress(OrderBotError):
    def __init__(self, raw_address: Optional[str]):
        self.raw_address = raw_address
        super().__init__(f"No phone digits in address: {raw_address!r}")


class InvalidQuantity(OrderBotError):
    def __init__(self, quantity, max_quantity: int):
        self.quantity = quantity
        self.max_quantity = max_quantity
        super().__init__(f"Quantity {quantity!r} outside 1..{max_quantity}")


class QuantityExceedsMax(OrderBotError):
    def __init__(self, item_id: str, requested: int, existing: int, max_quantity: int):
        self.item_id = item_id
        self.requested = requested
        self.existing = existing
        self.max_quantity = max_quantity
        super().__init__(
            f"Item {item_id}: {existing} in cart + {requested} requested exceeds {max_quantity}"
        )

    @property
    def remaining(self) -> int:
        return max(self.max_quantity - self.existing, 0)


class LineNotFound(OrderBotError):
    def __init__(self, item_id: Optional[str] = None, index: Optional[int] = None):
        self.item_id = item_id
        self.index = index
        target = item_id if item_id is not None else f"#{index}"
        super().__init__(f"Cart line not found: {target}")


class GeocodeError(OrderBotError):
    def __init__(self, message: str = "Geocoding failed", timed_out: bool = False):
        self.timed_out = timed_out
        super().__init__(message)


class CatalogUnavailable(OrderBotError):
    def __init__(self, tenant_id: str, operation: str, reason: str = ""):
        self.tenant_id = tenant_id
        self.operation = operation
        self.reason = reason
        super().__init__(f"Catalog {operation} failed for {tenant_id}: {reason}")


class VersionConflict(OrderBotError):
    def __init__(self, key, expected: int, actual: Optional[int]):
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(f"Session {key} version conflict: expected {expected}, found {actual}")


class UnknownTenant(OrderBotError):
    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"Unknown tenant: {tenant_id}")
