class SyncError(Exception):
    """Base class for failures that end a single batch item."""


class ItemValidationError(SyncError):
    pass


class ProductNotFoundError(SyncError):
    def __init__(self, product_id) -> None:
        super().__init__(f"product {product_id} not found")
        self.product_id = product_id


class InsufficientStockError(SyncError):
    def __init__(self, product_id, available, requested) -> None:
        super().__init__(
            f"insufficient stock for product {product_id}: available {available}, requested {requested}"
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class LedgerConflictError(SyncError):
    def __init__(self, key: str, server_id: int, attempted: int) -> None:
        super().__init__(
            f"idempotency key {key!r} already bound to {server_id}, refusing {attempted}"
        )
        self.key = key
        self.server_id = server_id
        self.attempted = attempted


class InvoiceNumberExhaustedError(SyncError):
    pass


class ItemTimeoutError(SyncError):
    pass
