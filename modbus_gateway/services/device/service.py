"""
Gateway Service

Runs the slave registry and the HTTP API on one event loop:
- Restores slaves and sources from storage
- Serves the request surface and the event stream
- Releases everything (storage untouched) on SIGINT/SIGTERM
"""

import asyncio
import signal

from aiohttp import web

from ...common.config import GatewayOptions
from ...common.logging_setup import get_service_logger
from ..bus.api import GatewayApi
from ..bus.objects import ObjectServer
from .context import ClientFactory, GatewayContext
from .registry import Registry

logger = get_service_logger("service")


class GatewayService:
    """
    Gateway process lifecycle.

    start() returns once the registry is restored and the API listens;
    run() additionally waits for a shutdown signal and stops.
    """

    def __init__(
        self,
        options: GatewayOptions | None = None,
        client_factory: ClientFactory | None = None,
    ):
        self.options = options or GatewayOptions()
        self.context = GatewayContext(
            options=self.options,
            objects=ObjectServer(),
            client_factory=client_factory,
        )
        self.registry = Registry(self.context)
        self.api = GatewayApi(self.registry)

        self._runner: web.AppRunner | None = None
        self._running = False
        self._shutdown_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Restore state and start serving"""
        logger.info(f"Starting gateway (storage: {self.options.storage_dir})")

        slaves = self.registry.start()

        if self.options.api.enabled:
            await self._start_api_server()

        self._running = True
        logger.info(
            f"Gateway started ({len(slaves)} slaves)",
            extra={"slave_count": len(slaves)},
        )

    async def stop(self) -> None:
        """Release every slave and stop serving"""
        if not self._running:
            return

        logger.info("Stopping gateway")
        self._running = False

        self.registry.stop()
        await self._stop_api_server()

        logger.info("Gateway stopped")

    async def run(self) -> None:
        """Start, wait for SIGINT/SIGTERM, stop"""
        await self.start()
        self._setup_signal_handlers()

        try:
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda s, f: self._handle_shutdown())

    def _handle_shutdown(self) -> None:
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    async def _start_api_server(self) -> None:
        self._runner = web.AppRunner(self.api.app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.options.api.host, self.options.api.port)
        await site.start()

        logger.info(f"API server listening on {self.options.api.host}:{self.options.api.port}")

    async def _stop_api_server(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
