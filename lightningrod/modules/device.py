"""Device module — DevicePing, DeviceInfo and DeviceStatus.

The board type picks a device variant from a registry, so new hardware only
needs a new :class:`Device` subclass decorated with :func:`register_device`.
"""

from __future__ import annotations

import abc
import logging
import platform
import socket
import time
from datetime import datetime
from pathlib import Path
from typing import Any

import psutil

from lightningrod.modules.base import Capability, CapabilityModule, success

logger = logging.getLogger(__name__)

_DEVICE_TYPES: dict[str, type[Device]] = {}


def register_device(*board_types: str):
    """Class decorator binding a :class:`Device` to one or more board types."""

    def decorator(cls: type[Device]) -> type[Device]:
        for board_type in board_types:
            _DEVICE_TYPES[board_type] = cls
        return cls

    return decorator


def create_device(board_type: str) -> Device:
    """Instantiate the variant for *board_type*, falling back to generic."""
    cls = _DEVICE_TYPES.get((board_type or "").lower())
    if cls is None:
        logger.debug("No device variant for type %r, using generic", board_type)
        cls = GenericDevice
    return cls(board_type)


class Device(abc.ABC):
    """Capability set every hardware variant provides."""

    def __init__(self, board_type: str) -> None:
        self.board_type = board_type

    @abc.abstractmethod
    def identify(self) -> str:
        raise NotImplementedError

    @abc.abstractmethod
    def describe(self) -> dict[str, Any]:
        raise NotImplementedError

    @abc.abstractmethod
    def health_check(self) -> dict[str, Any]:
        raise NotImplementedError


@register_device("generic", "server", "gateway")
class GenericDevice(Device):
    def identify(self) -> str:
        return self.board_type or "generic"

    def describe(self) -> dict[str, Any]:
        return {
            "type": self.identify(),
            "hostname": socket.gethostname(),
            "platform": platform.system(),
            "machine": platform.machine(),
        }

    def health_check(self) -> dict[str, Any]:
        mem = psutil.virtual_memory()
        return {
            "status": "online",
            "uptime": int(time.time() - psutil.boot_time()),
            "cpu_percent": psutil.cpu_percent(interval=None),
            "memory_percent": mem.percent,
        }


@register_device("raspberry", "raspberry_pi", "rpi")
class RaspberryPiDevice(GenericDevice):
    """Raspberry Pi boards: adds the model string and SoC temperature."""

    MODEL_PATH = Path("/proc/device-tree/model")

    def describe(self) -> dict[str, Any]:
        info = super().describe()
        info["model"] = _read_model(self.MODEL_PATH)
        return info

    def health_check(self) -> dict[str, Any]:
        status = super().health_check()
        status["cpu_temp"] = _read_cpu_temp()
        return status


class DeviceManager(CapabilityModule):
    module_name = "device"

    def __init__(self, board, session) -> None:
        super().__init__(board, session)
        self.device = create_device(board.type)
        logger.info("Device Manager initialized for type: %s", board.type)

    def capabilities(self) -> dict[str, Capability]:
        return {
            "DevicePing": self.device_ping,
            "DeviceInfo": self.device_info,
            "DeviceStatus": self.device_status,
        }

    async def device_ping(self, *args: Any) -> dict[str, Any]:
        stamp = datetime.now().strftime("%Y-%m-%dT%H:%M:%S.%f")
        return success(f"{socket.gethostname()} @ {stamp}")

    async def device_info(self, *args: Any) -> dict[str, Any]:
        return success("Device info retrieved", self.device.describe())

    async def device_status(self, *args: Any) -> dict[str, Any]:
        return success("Device status retrieved", self.device.health_check())


# ── System info helpers ───────────────────────────────────────────


def _read_model(path: Path) -> str:
    try:
        return path.read_text().strip("\x00\n ")
    except OSError:
        return ""


def _read_cpu_temp() -> float:
    """Read CPU temperature (Linux thermal zone)."""
    try:
        with open("/sys/class/thermal/thermal_zone0/temp") as f:
            return float(f.read().strip()) / 1000.0
    except (OSError, ValueError):
        return 0.0
