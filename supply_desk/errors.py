from __future__ import annotations


class SupplyDeskError(Exception):
    """Base class for outcomes the fulfillment core reports to its callers."""


class ConflictError(SupplyDeskError):
    """The request changed underneath the caller; re-read and retry."""


class AlreadyAssignedError(SupplyDeskError):
    def __init__(self, request_id: int, fulfiller_id: int | None) -> None:
        super().__init__(f'Supply request {request_id} is already assigned')
        self.request_id = request_id
        self.fulfiller_id = fulfiller_id


class InsufficientStockError(SupplyDeskError):
    def __init__(self, item_id: int, available: int, requested: int) -> None:
        super().__init__(f'Insufficient stock for item {item_id}: available {available}, requested {requested}')
        self.item_id = item_id
        self.available = available
        self.requested = requested


class ValidationError(SupplyDeskError, ValueError):
    pass


class NotFoundError(SupplyDeskError, LookupError):
    pass


class PersistenceError(SupplyDeskError):
    """The store was unreachable or rejected a write for infrastructure reasons."""
