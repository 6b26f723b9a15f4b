"""WAMP transport built on autobahn's asyncio session.

Follows what :class:`autobahn.asyncio.wamp.ApplicationRunner` does, but
keeps the session object around so the session manager can connect,
disconnect and register procedures on its own schedule.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from typing import Any, Callable, Optional

from autobahn.asyncio.wamp import ApplicationSession
from autobahn.asyncio.websocket import WampWebSocketClientFactory
from autobahn.wamp.types import ComponentConfig
from autobahn.websocket.util import parse_url

from lightningrod.session import Handler, NotConnected, Transport

logger = logging.getLogger(__name__)


class _AgentSession(ApplicationSession):
    """Joins the realm and reports join / loss back to the transport."""

    def __init__(
        self,
        config: ComponentConfig,
        joined: asyncio.Future,
        lost: Callable[[], None],
    ) -> None:
        super().__init__(config)
        self._joined = joined
        self._lost = lost

    def onConnect(self):
        self.join(self.config.realm)

    def onJoin(self, details):
        if not self._joined.done():
            self._joined.set_result(details.session)

    def onLeave(self, details):
        logger.info("WAMP session left: %s", details.reason)
        self.disconnect()

    def onDisconnect(self):
        if not self._joined.done():
            self._joined.set_exception(ConnectionError("WAMP transport closed before join"))
            return
        self._lost()


class WampTransport(Transport):
    """One WAMP-over-WebSocket connection."""

    def __init__(self) -> None:
        self._session: Optional[_AgentSession] = None
        self._ws_transport: Optional[asyncio.BaseTransport] = None
        self._registrations: dict[str, Any] = {}
        self._closing = False

    async def open(self, url: str, realm: str, ssl_context: Optional[ssl.SSLContext]) -> str:
        loop = asyncio.get_running_loop()
        joined: asyncio.Future = loop.create_future()

        def create_session() -> _AgentSession:
            self._session = _AgentSession(ComponentConfig(realm=realm), joined, self._handle_lost)
            return self._session

        factory = WampWebSocketClientFactory(create_session, url=url)
        is_secure, host, port, _resource, _path, _params = parse_url(url)

        if is_secure:
            if ssl_context is None:
                ssl_context = ssl.create_default_context()
            self._ws_transport, _ = await loop.create_connection(
                factory, host, port, ssl=ssl_context, server_hostname=host
            )
        else:
            self._ws_transport, _ = await loop.create_connection(factory, host, port)

        session_id = await joined
        return str(session_id)

    async def close(self) -> None:
        self._closing = True
        self._registrations.clear()
        if self._ws_transport is not None:
            self._ws_transport.close()
            self._ws_transport = None
        self._session = None

    def _handle_lost(self) -> None:
        if self._closing:
            return
        self._registrations.clear()
        if self.on_lost is not None:
            self.on_lost()

    def _attached(self) -> _AgentSession:
        if self._session is None or not self._session.is_attached():
            raise NotConnected("WAMP session is not attached")
        return self._session

    async def register(self, procedure: str, handler: Handler) -> None:
        session = self._attached()
        self._registrations[procedure] = await session.register(handler, procedure)

    async def unregister(self, procedure: str) -> None:
        self._attached()
        registration = self._registrations.pop(procedure, None)
        if registration is not None:
            await registration.unregister()

    async def subscribe(self, topic: str, handler: Handler) -> None:
        await self._attached().subscribe(handler, topic)

    async def publish(self, topic: str, args: tuple, kwargs: dict) -> None:
        self._attached().publish(topic, *args, **kwargs)

    async def call(self, procedure: str, args: tuple, kwargs: dict) -> Any:
        return await self._attached().call(procedure, *args, **kwargs)
