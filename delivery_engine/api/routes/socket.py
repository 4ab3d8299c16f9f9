import asyncio
import logging
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)

router = APIRouter(tags=["socket"])


@router.websocket("/socket")
async def agent_socket(websocket: WebSocket, token: str = ""):
    """
    Long-lived agent connection. The server only pushes events; anything the
    agent sends is ignored. Results come back through the HTTP callbacks.
    """
    service = websocket.app.state.socket_service
    transport = service.transport
    connection_id = uuid4().hex

    await websocket.accept()
    transport.register(connection_id, websocket, asyncio.get_running_loop())

    # Token lookup hits the store, keep it off the event loop
    cluster_socket = await run_in_threadpool(service.registry.on_connect, connection_id, token)
    if cluster_socket is None:
        transport.unregister(connection_id)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        transport.unregister(connection_id)
        await run_in_threadpool(service.registry.on_disconnect, connection_id)
