"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from delivery_engine.api.routes.callbacks import router as callbacks_router
from delivery_engine.api.routes.socket import router as socket_router
from delivery_engine.socketservice.service import SocketService

logger = logging.getLogger(__name__)


def create_app(socket_service: SocketService, start_loops: bool = True) -> FastAPI:
    """
    Build the agent-facing API around a socket service.

    The service's transport must be a WebSocketTransport. With start_loops
    the reconciliation loops run for the lifetime of the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_loops:
            socket_service.start()
        try:
            yield
        finally:
            if start_loops:
                socket_service.stop()

    app = FastAPI(title="Delivery Engine API", lifespan=lifespan)
    app.state.socket_service = socket_service

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "connected_clusters": len(socket_service.registry),
        }

    app.include_router(socket_router)
    app.include_router(callbacks_router)

    return app
