"""Tests for capability naming, result helpers and re-advertisement."""

from __future__ import annotations

import pytest

from lightningrod.modules.base import (
    RESULT_ERROR,
    RESULT_SUCCESS,
    CapabilityError,
    CapabilityModule,
    as_name,
    as_port,
    error,
    procedure_name,
    require_args,
    success,
)
from lightningrod.session import NotConnected

from conftest import BOARD_UUID


class EchoModule(CapabilityModule):
    module_name = "echo"

    def capabilities(self):
        return {
            "Echo": self.echo,
            "Fail": self.fail,
            "Crash": self.crash,
        }

    async def echo(self, *args):
        return success("echoed", list(args))

    async def fail(self, *args):
        raise CapabilityError("nope")

    async def crash(self, *args):
        raise KeyError("missing")


class TestHelpers:
    def test_procedure_name(self):
        assert procedure_name("4711", "uuid-1", "DevicePing") == "iotronic.4711.uuid-1.DevicePing"

    def test_success(self):
        assert success("done") == {"result": RESULT_SUCCESS, "message": "done"}
        assert success("done", {"a": 1}, pid=7) == {
            "result": RESULT_SUCCESS,
            "message": "done",
            "data": {"a": 1},
            "pid": 7,
        }

    def test_error(self):
        assert error("bad") == {"result": RESULT_ERROR, "message": "bad"}

    def test_require_args(self):
        require_args(("a", 1), ["name", "port"])
        with pytest.raises(CapabilityError, match="Missing arguments: name, port required"):
            require_args(("a",), ["name", "port"])

    def test_as_port(self):
        assert as_port(8080, "port") == 8080
        assert as_port("22", "port") == 22
        assert as_port(80.0, "port") == 80

    @pytest.mark.parametrize("value", [0, 65536, -1, 80.5, True, None, "http"])
    def test_as_port_rejects(self, value):
        with pytest.raises(CapabilityError):
            as_port(value, "port")

    def test_as_name(self):
        assert as_name("ssh", "service_name") == "ssh"
        with pytest.raises(CapabilityError, match="Invalid service_name type"):
            as_name(22, "service_name")
        with pytest.raises(CapabilityError):
            as_name("", "service_name")


class TestAdvertise:
    async def test_advertise_registers_every_verb(self, board, connected_session, transport_factory):
        module = EchoModule(board, connected_session)

        names = await module.advertise()

        assert names == [
            f"iotronic.1001.{BOARD_UUID}.Echo",
            f"iotronic.1001.{BOARD_UUID}.Fail",
            f"iotronic.1001.{BOARD_UUID}.Crash",
        ]
        assert set(names) <= set(transport_factory.last.registered)
        assert module.advertised == names

    async def test_readvertise_after_reconnect(self, board, session, transport_factory):
        module = EchoModule(board, session)
        session.on_connect(module.advertise)

        await session.connect()
        await session.reconnect()

        registered = transport_factory.last.registered
        assert f"iotronic.1002.{BOARD_UUID}.Echo" in registered
        assert not any(".1001." in name for name in registered)
        assert all(".1002." in name for name in module.advertised)

    async def test_advertise_while_disconnected(self, board, session):
        module = EchoModule(board, session)
        with pytest.raises(NotConnected):
            await module.advertise("1001")

    async def test_wrapped_handlers(self, board, connected_session, transport_factory):
        module = EchoModule(board, connected_session)
        await module.advertise()
        registered = transport_factory.last.registered
        prefix = f"iotronic.1001.{BOARD_UUID}"

        assert await registered[f"{prefix}.Echo"]("a", 1) == success("echoed", ["a", 1])
        assert await registered[f"{prefix}.Fail"]() == error("nope")

        crashed = await registered[f"{prefix}.Crash"]()
        assert crashed["result"] == RESULT_ERROR
        assert "Crash failed" in crashed["message"]
