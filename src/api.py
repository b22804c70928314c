"""
HTTP API - Health probes, discovered capabilities and the reconcile event stream.
"""

import asyncio
import logging
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse

from capabilities import CapabilitySnapshot
from events import EventBus, ReconcileEvent

logger = logging.getLogger(__name__)


class APIServer:
    """
    FastAPI application served by uvicorn next to the controllers.

    ``/readyz`` reports 503 until :meth:`set_ready` is called with the names
    of the running controllers.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 8080,
        event_bus: Optional[EventBus] = None,
        log_level: str = "info",
    ):
        self.host = host
        self.port = port
        self.log_level = log_level.lower()
        self.event_bus = event_bus
        self.capabilities: Optional[CapabilitySnapshot] = None
        self.controllers: List[str] = []
        self.ready = False
        self.server: Optional[uvicorn.Server] = None

        self.app = FastAPI(
            title="APIManager Operator",
            description="Reconciles 3scale APIManager custom resources",
            version="1.0.0",
        )
        self._setup_routes()

    def set_capabilities(self, capabilities: CapabilitySnapshot) -> None:
        self.capabilities = capabilities

    def set_ready(self, controllers: List[str]) -> None:
        self.controllers = list(controllers)
        self.ready = True

    def _setup_routes(self) -> None:
        """
        Set up the FastAPI routes.

        - Liveness: GET /healthz
        - Readiness: GET /readyz
        - Capabilities: GET /api/v1/capabilities
        - Events: GET /api/v1/events (SSE)
        """

        @self.app.get("/healthz")
        async def healthz():
            """Liveness probe."""
            return {"status": "ok", "service": "apimanager-operator"}

        @self.app.get("/readyz")
        async def readyz():
            """Readiness probe."""
            if not self.ready:
                raise HTTPException(status_code=503, detail="Controllers not running")
            return {"status": "ready", "controllers": self.controllers}

        @self.app.get("/api/v1/capabilities")
        async def get_capabilities():
            """API kinds discovered at startup."""
            if self.capabilities is None:
                raise HTTPException(
                    status_code=503, detail="Capability discovery not finished"
                )
            return {
                "group_versions": sorted(self.capabilities.group_versions),
                "kinds": [
                    {"group": group, "kind": kind}
                    for group, kind in self.capabilities.kinds()
                ],
            }

        @self.app.get("/api/v1/events")
        async def stream_events(kind: Optional[str] = None, name: Optional[str] = None):
            """SSE stream of reconcile events.

            Optionally filter by object kind and name.
            """
            if not self.event_bus:
                raise HTTPException(
                    status_code=503,
                    detail="Event streaming not available",
                )

            def filter_fn(event: ReconcileEvent) -> bool:
                if kind and event.kind != kind:
                    return False
                if name and event.name != name:
                    return False
                return True

            subscriber_id, subscription = self.event_bus.subscribe(filter_fn)

            async def event_generator():
                try:
                    async for event in subscription:
                        yield event.to_sse()
                except asyncio.CancelledError:
                    pass
                finally:
                    self.event_bus.unsubscribe(subscriber_id)

            return StreamingResponse(
                event_generator(),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "X-Accel-Buffering": "no",
                },
            )

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP API on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP API")
        if self.server:
            self.server.should_exit = True
