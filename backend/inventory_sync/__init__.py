"""POS / inventory synchronization engine."""

from inventory_sync import logging_config  # noqa: F401  registers the TRACE level

__version__ = "1.0.0"
