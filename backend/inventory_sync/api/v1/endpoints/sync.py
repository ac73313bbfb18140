import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session

from inventory_sync.api.deps import get_dispatcher, get_sync_coordinator, get_ws_sync_coordinator
from inventory_sync.api.dispatch import SyncDispatcher
from inventory_sync.database import get_db
from inventory_sync.models.sync_record import SyncRecord
from inventory_sync.schemas.dispatch import DispatchRequest, DispatchResponse
from inventory_sync.schemas.sync import SyncRecordResponse
from inventory_sync.services.event_notifier import OUTWARD_CHANNELS
from inventory_sync.services.sync_coordinator import SyncCoordinator

log = logging.getLogger(__name__)
router = APIRouter()


@router.post("/dispatch", response_model=DispatchResponse)
async def dispatch(
    request: DispatchRequest,
    dispatcher: SyncDispatcher = Depends(get_dispatcher),
):
    """Invoke a sync operation by method name."""
    return await dispatcher.dispatch(request.method, request.params)


@router.get("/status")
async def get_status(coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    """Current engine state: flag, timer, pending records and connection status."""
    return coordinator.get_status()


@router.get("/records", response_model=list[dict])
async def get_sync_records(
    skip: int = 0,
    limit: int = 20,
    status: Optional[str] = None,
    entity_type: Optional[str] = None,
    sync_type: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """Retrieve sync records, newest first."""
    q = db.query(SyncRecord).order_by(SyncRecord.created_at.desc(), SyncRecord.id.desc())
    if status and status != "all":
        q = q.filter(SyncRecord.status == status)
    if entity_type:
        q = q.filter(SyncRecord.entity_type == entity_type)
    if sync_type:
        q = q.filter(SyncRecord.sync_type == sync_type)
    records = q.offset(skip).limit(limit).all()
    return [SyncRecordResponse.model_validate(r).to_wire() for r in records]


@router.websocket("/events")
async def sync_events(
    websocket: WebSocket,
    coordinator: SyncCoordinator = Depends(get_ws_sync_coordinator),
):
    """Forward cycle-completion and config-change notifications to the client."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def forward(event_type, payload):
        # Publishers may run on another thread or event loop
        loop.call_soon_threadsafe(queue.put_nowait, {"event": event_type, "data": payload})

    async def pump():
        while True:
            await websocket.send_json(await queue.get())

    unsubscribers = [coordinator.notifier.subscribe(channel, forward) for channel in OUTWARD_CHANNELS]
    sender: Optional[asyncio.Task] = None
    try:
        await websocket.accept()
        log.debug("Sync event listener connected")
        sender = asyncio.create_task(pump())
        # Inbound frames are ignored; reading is how a disconnect is noticed while idle
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        log.debug("Sync event listener disconnected")
    finally:
        if sender is not None:
            sender.cancel()
        for unsubscribe in unsubscribers:
            unsubscribe()
