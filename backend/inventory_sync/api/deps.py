from fastapi import Depends, Request, WebSocket

from inventory_sync.api.dispatch import SyncDispatcher
from inventory_sync.services.sync_coordinator import SyncCoordinator


def get_sync_coordinator(request: Request) -> SyncCoordinator:
    """Engine handle created at startup and kept on the application state."""
    return request.app.state.sync_coordinator


def get_ws_sync_coordinator(websocket: WebSocket) -> SyncCoordinator:
    return websocket.app.state.sync_coordinator


def get_dispatcher(coordinator: SyncCoordinator = Depends(get_sync_coordinator)) -> SyncDispatcher:
    return SyncDispatcher(coordinator)
