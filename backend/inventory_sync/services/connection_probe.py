import asyncio
import logging

from inventory_sync.connectors.base import BaseInventoryConnector
from inventory_sync.schemas.sync import ConnectionStatus

log = logging.getLogger(__name__)


class ConnectionProbe:
    """Read-only reachability check of the inventory endpoint; never raises."""

    def __init__(self, connector: BaseInventoryConnector, timeout: float = 10.0):
        self.connector = connector
        self.timeout = timeout

    async def test_connection(self) -> ConnectionStatus:
        try:
            status = await asyncio.wait_for(self.connector.check_connection(), timeout=self.timeout)
        except asyncio.TimeoutError:
            log.warning(f"Inventory connection check timed out after {self.timeout}s")
            return ConnectionStatus(connected=False, message=f"Connection check timed out after {self.timeout}s")
        except Exception as e:
            log.warning(f"Inventory connection check failed: {e}")
            return ConnectionStatus(connected=False, message=f"Connection check failed: {e}")

        if status.connected:
            log.debug("Inventory connection check succeeded")
        else:
            log.warning(f"Inventory not reachable: {status.message}")
        return status
