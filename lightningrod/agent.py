"""Lightning-rod agent — wires board, session and capability modules.

Startup order:
  Board (settings.json) → status API → modules (load + reconcile registries)
  → WAMP connect → every module advertises its procedures
  → health-check and reconciliation loops run until cancelled.

Modules are connect listeners on the session, so they advertise again after
every reconnect under the new session id.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from lightningrod import __version__
from lightningrod.board import Board
from lightningrod.config import AgentConfig, ConfigurationError
from lightningrod.modules.base import CapabilityModule
from lightningrod.modules.device import DeviceManager
from lightningrod.modules.rest import RestManager
from lightningrod.modules.service import ServiceManager
from lightningrod.modules.webservice import NginxProxy, WebServiceManager
from lightningrod.session import SessionError, SessionManager, Transport

logger = logging.getLogger(__name__)


class LightningRod:
    """The board-side agent."""

    def __init__(
        self,
        config: AgentConfig,
        board: Optional[Board] = None,
        transport_factory: Callable[[], Transport] | None = None,
        proxy: Optional[NginxProxy] = None,
    ) -> None:
        self.config = config
        if board is None:
            board = Board(config.settings_path)
            board.load()
        self.board = board
        self.session = SessionManager(config, board, transport_factory)
        self.rest: Optional[RestManager] = None
        if config.lightningrod.rest_enabled:
            self.rest = RestManager(
                board,
                self.session,
                host=config.lightningrod.rest_host,
                port=config.lightningrod.rest_port,
            )

        self.modules: list[CapabilityModule] = []
        self._proxy = proxy
        self._tasks: list[asyncio.Task] = []
        self._running = False

    async def start(self) -> None:
        """Bring everything up and return once background loops are running."""
        if self._running:
            raise RuntimeError("lightning rod already running")
        self._running = True

        logger.info("Starting Lightning Rod %s...", __version__)

        if self.rest is not None:
            await self.rest.start()

        await self._init_modules()

        logger.info("Connecting to WAMP router...")
        try:
            await self.session.connect()
        except ConfigurationError:
            raise
        except SessionError as exc:
            logger.error("Initial connection failed, will retry in background: %s", exc)

        loop = asyncio.get_running_loop()
        self._tasks = [loop.create_task(self.session.keep_alive())]
        for module, interval in (
            (self._module(ServiceManager), self.config.services.reconcile_interval),
            (self._module(WebServiceManager), self.config.webservices.reconcile_interval),
        ):
            if module is not None and interval > 0:
                self._tasks.append(loop.create_task(self._reconcile_loop(module, interval)))

        logger.info("Lightning Rod started successfully")

    async def run(self) -> None:
        """Start, then block until cancelled; always stops on the way out."""
        try:
            await self.start()
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def stop(self) -> None:
        if not self._running:
            return
        logger.info("Stopping Lightning Rod...")

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        for module in reversed(self.modules):
            try:
                await module.stop()
            except Exception as exc:
                logger.error("Error stopping %s manager: %s", module.module_name, exc)

        await self.session.stop()

        if self.rest is not None:
            try:
                await self.rest.stop()
            except Exception as exc:
                logger.error("Error stopping REST API: %s", exc)

        self._running = False
        logger.info("Lightning Rod stopped")

    async def _init_modules(self) -> None:
        logger.info("Initializing modules...")
        self.modules = [
            DeviceManager(self.board, self.session),
            ServiceManager(self.config, self.board, self.session),
            WebServiceManager(self.config, self.board, self.session, proxy=self._proxy),
        ]
        for module in self.modules:
            await module.start()
            self.session.on_connect(module.advertise)
        logger.info("All modules initialized successfully")

    def _module(self, cls: type) -> Optional[CapabilityModule]:
        for module in self.modules:
            if isinstance(module, cls):
                return module
        return None

    @staticmethod
    async def _reconcile_loop(module: CapabilityModule, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await module.reconcile()
            except Exception:
                logger.exception("Reconciliation of %s failed", module.module_name)
