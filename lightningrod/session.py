"""Control-plane session manager.

Owns the single WAMP connection to the IoTronic orchestrator:

  DISCONNECTED → CONNECTING → CONNECTED
        ↑                         │
        └──── transport lost ─────┘

A health-check loop (:meth:`SessionManager.keep_alive`) notices a dropped
connection on its next tick and reconnects after a fixed delay. Every
successful connect yields a new session id, which is written back into the
:class:`~lightningrod.board.Board` and announced to connect listeners so
that modules can re-advertise their procedures under the new name.
"""

from __future__ import annotations

import abc
import asyncio
import enum
import logging
import ssl
from typing import Any, Awaitable, Callable, Optional

from lightningrod.board import Board
from lightningrod.config import AgentConfig, ConfigurationError

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]
ConnectListener = Callable[[str], Awaitable[None]]


class SessionError(Exception):
    """Base error for control-plane session operations."""


class NotConnected(SessionError):
    """The session is not connected to the WAMP router."""


class CallTimeout(SessionError):
    """A remote call did not answer within the configured timeout."""


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Transport(abc.ABC):
    """Primitives of an underlying control-plane client.

    ``on_lost`` is invoked (synchronously) when the connection drops without
    :meth:`close` having been called.
    """

    on_lost: Optional[Callable[[], None]] = None

    @abc.abstractmethod
    async def open(self, url: str, realm: str, ssl_context: Optional[ssl.SSLContext]) -> str:
        """Connect and join *realm*; return the new session id."""
        raise NotImplementedError

    @abc.abstractmethod
    async def close(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def register(self, procedure: str, handler: Handler) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def unregister(self, procedure: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(self, topic: str, handler: Handler) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def publish(self, topic: str, args: tuple, kwargs: dict) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def call(self, procedure: str, args: tuple, kwargs: dict) -> Any:
        raise NotImplementedError


def _default_transport() -> Transport:
    from lightningrod.wamp import WampTransport

    return WampTransport()


class SessionManager:
    """Connection lifecycle plus register/call/publish/subscribe primitives."""

    def __init__(
        self,
        config: AgentConfig,
        board: Board,
        transport_factory: Callable[[], Transport] | None = None,
    ) -> None:
        self.config = config
        self.board = board
        self._transport_factory = transport_factory or _default_transport
        self._transport: Optional[Transport] = None
        self._state = SessionState.DISCONNECTED
        self._session_id = ""
        self._lock = asyncio.Lock()
        self._listeners: list[ConnectListener] = []
        self._procedures: set[str] = set()

    # ── Observers ─────────────────────────────────────────────────

    def on_connect(self, listener: ConnectListener) -> None:
        """Register a coroutine called with the session id after every connect."""
        self._listeners.append(listener)

    async def _notify_connected(self, session_id: str) -> bool:
        """Run every listener; return ``False`` if any of them failed."""
        ok = True
        for listener in list(self._listeners):
            try:
                await listener(session_id)
            except Exception:
                logger.exception("Connect listener %r failed", listener)
                ok = False
        return ok

    # ── Lifecycle ─────────────────────────────────────────────────

    async def connect(self) -> None:
        """Connect to the selected WAMP agent. No-op when already connected.

        Raises :class:`~lightningrod.config.ConfigurationError` when the
        board has no usable endpoint and :class:`SessionError` when the
        router cannot be reached or a connect listener fails.
        """
        async with self._lock:
            if self._state is SessionState.CONNECTED:
                return

            endpoint = self.board.endpoint
            if not endpoint.url or not endpoint.realm:
                raise ConfigurationError("WAMP configuration not available")

            self._state = SessionState.CONNECTING
            logger.info("Connecting to WAMP router: %s (realm: %s)", endpoint.url, endpoint.realm)

            transport = self._transport_factory()
            transport.on_lost = lambda: self._on_transport_lost(transport)
            try:
                session_id = await asyncio.wait_for(
                    transport.open(endpoint.url, endpoint.realm, self._ssl_context(endpoint.url)),
                    timeout=self.config.autobahn.join_timeout,
                )
            except Exception as exc:
                self._state = SessionState.DISCONNECTED
                transport.on_lost = None
                try:
                    await transport.close()
                except Exception:
                    logger.debug("Error closing failed transport", exc_info=True)
                if isinstance(exc, asyncio.TimeoutError):
                    raise SessionError(f"Timed out connecting to {endpoint.url}") from exc
                raise SessionError(f"Failed to connect to WAMP router: {exc}") from exc

            self._transport = transport
            self._session_id = str(session_id)
            self._procedures.clear()
            self._state = SessionState.CONNECTED
            self.board.set_session_id(self._session_id)
            logger.info("Connected to WAMP router (session ID: %s)", self._session_id)

        session_id = self._session_id
        if not await self._notify_connected(session_id):
            # A half-advertised session is unreachable; drop it so the
            # health check reconnects and advertises again.
            await self.disconnect()
            raise SessionError(f"Advertisement failed on session {session_id}, disconnected")

    async def disconnect(self) -> None:
        """Close the connection. No-op when already disconnected."""
        async with self._lock:
            transport = self._transport
            self._transport = None
            self._procedures.clear()
            was_connected = self._state is SessionState.CONNECTED
            self._state = SessionState.DISCONNECTED
            if transport is None:
                return
            transport.on_lost = None
            try:
                await transport.close()
            except Exception as exc:
                logger.warning("Error closing WAMP client: %s", exc)
            self.board.set_session_id("")
            if was_connected:
                logger.info("Disconnected from WAMP router")

    async def reconnect(self) -> None:
        """Disconnect (best-effort), wait ``connection_timer``, connect."""
        logger.info("Attempting to reconnect to WAMP router...")
        try:
            await self.disconnect()
        except Exception as exc:
            logger.warning("Error during disconnect before reconnect: %s", exc)

        await asyncio.sleep(self.config.autobahn.connection_timer)
        await self.connect()
        logger.info("Successfully reconnected to WAMP router")

    async def keep_alive(self) -> None:
        """Health-check loop; runs until cancelled."""
        interval = self.config.autobahn.alive_timer
        while True:
            await asyncio.sleep(interval)
            if self.connected:
                continue
            logger.warning("Connection lost, attempting to reconnect...")
            try:
                await self.reconnect()
            except Exception as exc:
                logger.error("Reconnection failed: %s", exc)

    async def stop(self) -> None:
        await self.disconnect()

    def _on_transport_lost(self, transport: Transport) -> None:
        if transport is not self._transport:
            return
        logger.warning("WAMP connection lost (session ID: %s)", self._session_id)
        self._transport = None
        self._procedures.clear()
        self._state = SessionState.DISCONNECTED
        self.board.set_session_id("")

    def _ssl_context(self, url: str) -> Optional[ssl.SSLContext]:
        if not url.startswith("wss://"):
            return None
        ctx = ssl.create_default_context()
        if self.config.lightningrod.skip_cert_verify:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        return ctx

    # ── Properties ────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is SessionState.CONNECTED

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def procedures(self) -> frozenset[str]:
        """Procedures registered on the current session."""
        return frozenset(self._procedures)

    # ── Primitives ────────────────────────────────────────────────

    def _require_transport(self) -> Transport:
        if self._state is not SessionState.CONNECTED or self._transport is None:
            raise NotConnected("not connected to WAMP router")
        return self._transport

    async def register(self, procedure: str, handler: Handler) -> None:
        transport = self._require_transport()
        try:
            await transport.register(procedure, handler)
        except SessionError:
            raise
        except Exception as exc:
            raise SessionError(f"failed to register procedure {procedure}: {exc}") from exc
        self._procedures.add(procedure)
        logger.debug("Registered RPC procedure: %s", procedure)

    async def unregister(self, procedure: str) -> None:
        transport = self._require_transport()
        try:
            await transport.unregister(procedure)
        except SessionError:
            raise
        except Exception as exc:
            raise SessionError(f"failed to unregister procedure {procedure}: {exc}") from exc
        self._procedures.discard(procedure)
        logger.debug("Unregistered RPC procedure: %s", procedure)

    async def subscribe(self, topic: str, handler: Handler) -> None:
        transport = self._require_transport()
        await transport.subscribe(topic, handler)
        logger.debug("Subscribed to topic: %s", topic)

    async def publish(self, topic: str, *args: Any, **kwargs: Any) -> None:
        transport = self._require_transport()
        await transport.publish(topic, args, kwargs)
        logger.debug("Published to topic: %s", topic)

    async def call(self, procedure: str, *args: Any, **kwargs: Any) -> Any:
        """Invoke a remote procedure, failing with :class:`CallTimeout`."""
        transport = self._require_transport()
        timeout = self.config.autobahn.call_timeout
        try:
            return await asyncio.wait_for(transport.call(procedure, args, kwargs), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise CallTimeout(f"call to {procedure} timed out after {timeout}s") from exc
