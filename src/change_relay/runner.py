"""Process orchestrator: config → handlers → listener (+ health server)."""

from __future__ import annotations

import asyncio
import signal
from contextlib import suppress

import structlog

from change_relay.config.loader import build_handlers
from change_relay.config.models import ListenerConfig
from change_relay.listener import ChangeListener
from change_relay.observability.http_health import HealthServer
from change_relay.registry import HandlerRegistry

logger = structlog.get_logger()


class RelayRunner:
    """Builds the listener from config and runs it until shutdown.

    SIGINT/SIGTERM close the listener; the in-flight consumer call finishes
    first.  A fatal listener error propagates out of :meth:`start`.
    """

    def __init__(
        self,
        config: ListenerConfig,
        registry: HandlerRegistry | None = None,
        listener: ChangeListener | None = None,
    ) -> None:
        self._config = config
        self._registry = registry if registry is not None else HandlerRegistry()
        self._listener = listener or ChangeListener(config, registry=self._registry)
        self._health_server: HealthServer | None = None
        self._stop_task: asyncio.Task[None] | None = None

    @property
    def listener(self) -> ChangeListener:
        return self._listener

    def start(self) -> None:
        """Run until shutdown (blocking)."""
        asyncio.run(self.start_async())

    async def start_async(self) -> None:
        for table, handler in build_handlers(self._config).items():
            self._listener.register_handler(table, handler)

        if self._config.health_enabled:
            self._health_server = HealthServer(
                port=self._config.health_port,
                readiness_check=self._listener.health,
            )
            await self._health_server.start()

        self._install_signal_handlers()
        try:
            await self._listener.start()
        finally:
            await self._shutdown()

    async def stop(self) -> None:
        await self._listener.close()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            # Not available on Windows event loops.
            with suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, self._on_signal, sig)

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("runner.signal_received", signal=sig.name)
        self._stop_task = asyncio.get_running_loop().create_task(self.stop())

    async def _shutdown(self) -> None:
        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)
        logger.info("runner.stopped", listener_id=self._config.listener_id)
