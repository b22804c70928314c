"""
Main entry point for the APIManager operator.

This module wires the store, the capability snapshot, the reconcilers and
one controller per reconciled kind, and runs them next to the HTTP API.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from kubernetes_asyncio import config as kube_config
from kubernetes_asyncio.client import ApiClient

from api import APIServer
from apimanager.reconciler import APIManagerReconciler
from capabilities import CapabilityProbe, CapabilitySnapshot
from config import Config, KubernetesConfig, get_config
from controller import Controller
from events import EventBus, EventRecorder
from reconcilers.base import BaseReconciler
from reconcilers.registry import ReconcilerRegistry, discover_reconcilers
from store import ObjectStore, Scheme

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def create_api_client(k8s: KubernetesConfig) -> ApiClient:
    """Load cluster credentials and build the shared API client."""
    if k8s.in_cluster:
        kube_config.load_incluster_config()
    else:
        await kube_config.load_kube_config(
            config_file=k8s.kubeconfig, context=k8s.context
        )
    return ApiClient()


class Application:
    """Main application that orchestrates the controllers and the HTTP API."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.api_client: Optional[ApiClient] = None
        self.store: Optional[ObjectStore] = None
        self.capabilities: Optional[CapabilitySnapshot] = None
        self.event_bus: Optional[EventBus] = None
        self.registry: Optional[ReconcilerRegistry] = None
        self.controllers: List[Controller] = []
        self.api_server: Optional[APIServer] = None
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing APIManager operator")

        self.api_client = await create_api_client(self.config.kubernetes)
        self.store = ObjectStore(self.api_client, Scheme.default())

        # Discovered once, shared by every reconciler
        self.capabilities = await CapabilityProbe(self.api_client).discover()

        self.event_bus = EventBus()
        recorder = EventRecorder(self.event_bus)
        base = BaseReconciler(self.store, self.capabilities, recorder)

        self.registry = ReconcilerRegistry()
        self.registry.register(APIManagerReconciler(base))
        discovered = discover_reconcilers(self.registry, base)
        if discovered:
            logger.info(f"Discovered {discovered} reconciler(s) via entry points")

        namespace = self.config.kubernetes.watch_namespace
        for reconciler in self.registry.all():
            self.controllers.append(
                Controller(
                    reconciler,
                    self.store,
                    config=self.config.controller,
                    namespace=namespace,
                    recorder=recorder,
                )
            )

        api_config = self.config.api
        self.api_server = APIServer(
            host=api_config.host,
            port=api_config.port,
            event_bus=self.event_bus,
            log_level=api_config.log_level,
        )
        self.api_server.set_capabilities(self.capabilities)

        logger.info(
            f"All components initialized, watching "
            f"{namespace or 'all namespaces'}"
        )

    async def start(self):
        """Start the application."""
        if not self.controllers:
            await self.initialize()

        self.running = True
        logger.info("Starting APIManager operator")

        tasks = [asyncio.create_task(c.start()) for c in self.controllers]
        tasks.append(asyncio.create_task(self.api_server.start()))
        self.api_server.set_ready([c.name for c in self.controllers])

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        logger.info("Stopping APIManager operator")
        self.running = False

        for controller in self.controllers:
            await controller.stop()

        if self.api_server:
            await self.api_server.stop()

        if self.api_client:
            await self.api_client.close()
            self.api_client = None

        logger.info("APIManager operator stopped")


async def main():
    """Main entry point."""
    config = get_config()
    configure_logging(config.api.log_level)
    app = Application(config)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


if __name__ == "__main__":
    asyncio.run(main())
