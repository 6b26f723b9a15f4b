"""Base class for Lightning-rod capability modules.

A module exposes a set of verbs to the orchestrator. Each verb is
registered as the WAMP procedure ``iotronic.<session>.<board uuid>.<Verb>``.
The session id is part of the name, so the whole set is registered again
after every successful connect.
"""

from __future__ import annotations

import abc
import logging
from typing import Any, Awaitable, Callable

from lightningrod.board import Board
from lightningrod.session import SessionManager

logger = logging.getLogger(__name__)

RESULT_SUCCESS = "SUCCESS"
RESULT_ERROR = "ERROR"

Capability = Callable[..., Awaitable[dict[str, Any]]]


class CapabilityError(Exception):
    """A capability failed; the message is returned to the caller as-is."""


def procedure_name(session_id: str, board_uuid: str, verb: str) -> str:
    return f"iotronic.{session_id}.{board_uuid}.{verb}"


def success(message: str, data: Any = None, **extra: Any) -> dict[str, Any]:
    result: dict[str, Any] = {"result": RESULT_SUCCESS, "message": message}
    if data is not None:
        result["data"] = data
    result.update(extra)
    return result


def error(message: str) -> dict[str, Any]:
    return {"result": RESULT_ERROR, "message": message}


def require_args(args: tuple, names: list[str]) -> None:
    if len(args) < len(names):
        raise CapabilityError(f"Missing arguments: {', '.join(names)} required")


def as_port(value: Any, name: str) -> int:
    """Coerce an RPC argument into a TCP port number."""
    if isinstance(value, bool):
        raise CapabilityError(f"Invalid {name} type")
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise CapabilityError(f"Invalid {name} type") from None
    if port != value and not isinstance(value, str):
        raise CapabilityError(f"Invalid {name}: {value!r}")
    if not 0 < port < 65536:
        raise CapabilityError(f"Invalid {name}: {port}")
    return port


def as_name(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value:
        raise CapabilityError(f"Invalid {name} type")
    return value


class CapabilityModule(abc.ABC):
    """A group of remote-invocable verbs sharing one manager state."""

    #: Module name used in logs, e.g. ``"service"``
    module_name: str = ""

    def __init__(self, board: Board, session: SessionManager) -> None:
        self.board = board
        self.session = session
        self._advertised: list[str] = []

    @abc.abstractmethod
    def capabilities(self) -> dict[str, Capability]:
        """Map of verb → coroutine handler taking positional RPC arguments."""
        raise NotImplementedError

    async def start(self) -> None:
        """Load persisted state. Failures are fatal to the agent."""

    async def stop(self) -> None:
        """Release external resources. Best-effort."""

    async def reconcile(self) -> None:
        """Bring persisted state in line with live external state."""

    async def advertise(self, session_id: str | None = None) -> list[str]:
        """Register every capability under the current session id."""
        sid = session_id or self.board.session_id
        names = []
        for verb, handler in self.capabilities().items():
            name = procedure_name(sid, self.board.uuid, verb)
            await self.session.register(name, self._wrap(verb, handler))
            logger.info("Registered RPC: %s", name)
            names.append(name)
        self._advertised = names
        return names

    @property
    def advertised(self) -> list[str]:
        return list(self._advertised)

    def _wrap(self, verb: str, handler: Capability) -> Capability:
        async def invoke(*args: Any, **kwargs: Any) -> dict[str, Any]:
            logger.info("RPC %s called", verb)
            try:
                return await handler(*args, **kwargs)
            except CapabilityError as exc:
                logger.warning("RPC %s failed: %s", verb, exc)
                return error(str(exc))
            except Exception as exc:
                logger.exception("RPC %s raised", verb)
                return error(f"{verb} failed: {exc}")

        invoke.__name__ = verb
        return invoke
