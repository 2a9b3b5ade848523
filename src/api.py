"""
Status API - Read-only HTTP view of a reconciler scope.

Serves sync status, the inventory, an endpoint to wake the reconciler loop
and a Server-Sent Events stream of sync activity.
"""

import asyncio
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse

from events import EventBus, SyncEvent
from status import InventoryResponse, ResourceRef, SyncStatus

logger = logging.getLogger(__name__)


def create_app(controller, event_bus: Optional[EventBus] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Routes:
    - Health check: GET /
    - Status: GET /api/v1/status
    - Inventory: GET /api/v1/inventory
    - Trigger a cycle: POST /api/v1/sync
    - Event stream: GET /api/v1/events
    """
    app = FastAPI(
        title="driftsync",
        description="GitOps reconciler status API",
        version="1.0.0",
    )

    @app.get("/")
    async def health_check():
        return {"status": "ok", "service": "driftsync", "scope": str(controller.scope)}

    @app.get("/api/v1/status", response_model=SyncStatus)
    async def get_status():
        return controller.status()

    @app.get("/api/v1/inventory", response_model=InventoryResponse)
    async def get_inventory():
        try:
            inventory = await controller.inventory()
        except Exception as e:
            logger.error(f"Error reading inventory: {e}")
            raise HTTPException(status_code=503, detail=str(e))
        return InventoryResponse(
            scope=str(controller.scope),
            name=inventory.name,
            namespace=inventory.namespace,
            resources=[
                ResourceRef(**rid.to_dict())
                for rid in sorted(inventory.ids, key=lambda r: r.sort_key)
            ],
        )

    @app.post("/api/v1/sync", status_code=202)
    async def trigger_sync():
        controller.trigger()
        return {"status": "accepted"}

    @app.get("/api/v1/events")
    async def stream_events(event_type: Optional[str] = None, kind: Optional[str] = None):
        """SSE stream of sync events, optionally filtered by type or kind."""
        if not event_bus:
            raise HTTPException(status_code=503, detail="Event streaming not available")

        def filter_fn(event: SyncEvent) -> bool:
            if event_type and event.event_type.value != event_type.upper():
                return False
            if kind and event.kind != kind:
                return False
            return True

        subscriber_id, subscription = await event_bus.subscribe(filter_fn)

        async def event_generator():
            try:
                async for event in subscription:
                    yield event.to_sse()
            except asyncio.CancelledError:
                logger.debug(f"Event stream {subscriber_id} closed by client")
            finally:
                await event_bus.unsubscribe(subscriber_id)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    return app


class StatusServer:
    """Runs the status API under uvicorn."""

    def __init__(
        self,
        controller,
        event_bus: Optional[EventBus] = None,
        host: str = "0.0.0.0",
        port: int = 8000,
        log_level: str = "info",
    ):
        self.app = create_app(controller, event_bus)
        self.host = host
        self.port = port
        self.log_level = log_level.lower()
        self.server: Optional[uvicorn.Server] = None

    async def start(self) -> None:
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting status API on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        logger.info("Stopping status API")
        if self.server:
            self.server.should_exit = True

    @property
    def started(self) -> bool:
        return bool(self.server and self.server.started)
