"""Exception hierarchy for the inventory connector and the sync engine."""


class InventoryError(ValueError):
    """Base error raised by inventory connectors."""


class InventoryConnectionError(InventoryError):
    """Inventory endpoint unreachable (DNS, refused connection, timeout)."""


class InventoryRequestError(InventoryError):
    """Inventory endpoint answered with an unexpected error status."""


class InventoryItemNotFoundError(InventoryError):
    """The referenced inventory product does not exist."""


class InsufficientStockError(InventoryError):
    """A stock decrement would take the quantity below zero."""


class InventorySyncError(Exception):
    """Base error for engine-level failures."""


class SyncInProgressError(InventorySyncError):
    """A cycle was requested while another one holds the single-flight flag."""


class ConfigurationError(InventorySyncError, ValueError):
    """A setting value was rejected at the setter boundary."""


class SyncRecordNotFoundError(InventorySyncError, LookupError):
    pass


class RetryNotAllowedError(InventorySyncError):
    """The record is not in a retryable state."""
