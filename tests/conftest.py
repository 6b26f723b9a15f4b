"""pytest configuration and shared fixtures for Lightning-rod tests."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from lightningrod.board import Board
from lightningrod.config import AgentConfig
from lightningrod.modules.webservice import NginxProxy, ProxyError
from lightningrod.session import SessionManager, Transport

MAIN_URL = "wss://orchestrator.example.com:8181/"
REGISTRATION_URL = "ws://registration.example.com:8181/"
BOARD_UUID = "8b4d7ee0-6f5a-4c4e-9a39-7c1d2b0d9a10"


# ── Fakes ─────────────────────────────────────────────────────────


class FakeTransport(Transport):
    """In-memory control-plane client."""

    def __init__(self, session_id: str, fail: Exception | None = None, open_delay: float = 0) -> None:
        self.session_id = session_id
        self.fail = fail
        self.open_delay = open_delay
        self.url = ""
        self.realm = ""
        self.ssl_context = None
        self.closed = False
        self.registered: dict = {}
        self.subscribed: dict = {}
        self.published: list = []
        self.calls: list = []
        self.call_result = None
        self.call_delay = 0.0
        self.register_error: Exception | None = None

    async def open(self, url, realm, ssl_context):
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.fail is not None:
            raise self.fail
        self.url, self.realm, self.ssl_context = url, realm, ssl_context
        return self.session_id

    async def close(self):
        self.closed = True

    async def register(self, procedure, handler):
        if self.register_error is not None:
            raise self.register_error
        self.registered[procedure] = handler

    async def unregister(self, procedure):
        self.registered.pop(procedure, None)

    async def subscribe(self, topic, handler):
        self.subscribed[topic] = handler

    async def publish(self, topic, args, kwargs):
        self.published.append((topic, args, kwargs))

    async def call(self, procedure, args, kwargs):
        if self.call_delay:
            await asyncio.sleep(self.call_delay)
        self.calls.append((procedure, args, kwargs))
        return self.call_result

    def drop(self) -> None:
        """Simulate the router going away."""
        if self.on_lost is not None:
            self.on_lost()


class TransportFactory:
    """Hands out a fresh FakeTransport (and session id) per connect."""

    def __init__(self) -> None:
        self.transports: list[FakeTransport] = []
        self.failures: list[Exception] = []
        self.register_failures: list[Exception] = []
        self.open_delay = 0.0
        self._next_id = 1000

    def __call__(self) -> FakeTransport:
        self._next_id += 1
        fail = self.failures.pop(0) if self.failures else None
        transport = FakeTransport(str(self._next_id), fail=fail, open_delay=self.open_delay)
        if self.register_failures:
            transport.register_error = self.register_failures.pop(0)
        self.transports.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]


class FakeProxy(NginxProxy):
    """nginx stand-in that writes real files but never shells out."""

    def __init__(self, conf_dir: Path) -> None:
        super().__init__("nginx", conf_dir)
        self.conf_dir.mkdir(parents=True, exist_ok=True)
        self.running = True
        self.validate_error: str | None = None
        self.reload_error: str | None = None
        self.validations = 0
        self.reloads = 0

    async def validate(self) -> None:
        self.validations += 1
        if self.validate_error:
            raise ProxyError(f"nginx config test failed: {self.validate_error}")

    async def reload(self) -> None:
        self.reloads += 1
        if self.reload_error:
            raise ProxyError(f"nginx reload failed: {self.reload_error}")

    def is_running(self) -> bool:
        return self.running


# ── Fixtures ──────────────────────────────────────────────────────


def settings_document(
    status: str = "registered",
    code: str = "BOARD-001",
    main: bool = True,
    registration: bool = True,
    board_type: str = "generic",
) -> dict:
    wamp: dict = {}
    if main:
        wamp["main-agent"] = {"url": MAIN_URL, "realm": "s4t"}
    if registration:
        wamp["registration-agent"] = {"url": REGISTRATION_URL, "realm": "s4t-reg"}
    return {
        "iotronic": {
            "board": {
                "uuid": BOARD_UUID,
                "code": code,
                "name": "test-board",
                "status": status,
                "type": board_type,
                "mobile": False,
                "agent": "agent-1",
                "created_at": "2024-01-01T00:00:00.000000",
                "updated_at": "2024-01-01T00:00:00.000000",
                "location": {"latitude": "38.19", "longitude": "15.55"},
                "extra": {},
            },
            "wamp": wamp,
            "extra": {},
        }
    }


@pytest.fixture
def make_settings():
    return settings_document


@pytest.fixture
def write_settings(tmp_path):
    """Write a settings.json into the test home and return its path."""

    def _write(**kwargs) -> Path:
        path = tmp_path / "settings.json"
        path.write_text(json.dumps(settings_document(**kwargs)))
        return path

    return _write


@pytest.fixture
def agent_config(tmp_path) -> AgentConfig:
    config = AgentConfig()
    config.lightningrod.home = str(tmp_path)
    config.lightningrod.rest_enabled = False
    config.autobahn.connection_timer = 0.01
    config.autobahn.alive_timer = 0.01
    config.autobahn.join_timeout = 1.0
    config.autobahn.call_timeout = 0.05
    config.services.reconcile_interval = 0
    config.webservices.reconcile_interval = 0
    config.webservices.conf_dir = str(tmp_path / "nginx")
    return config


@pytest.fixture
def board(write_settings) -> Board:
    b = Board(write_settings())
    b.load()
    return b


@pytest.fixture
def transport_factory() -> TransportFactory:
    return TransportFactory()


@pytest.fixture
def session(agent_config, board, transport_factory) -> SessionManager:
    return SessionManager(agent_config, board, transport_factory)


@pytest.fixture
async def connected_session(session):
    await session.connect()
    yield session
    await session.stop()


@pytest.fixture
def proxy(tmp_path) -> FakeProxy:
    return FakeProxy(tmp_path / "nginx")
