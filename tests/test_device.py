"""Tests for the device module and its hardware variants."""

from __future__ import annotations

import socket
from unittest.mock import patch

from lightningrod.modules.base import RESULT_SUCCESS
from lightningrod.modules.device import (
    Device,
    DeviceManager,
    GenericDevice,
    RaspberryPiDevice,
    _DEVICE_TYPES,
    create_device,
    register_device,
)

from conftest import BOARD_UUID


class TestDeviceRegistry:
    def test_generic_fallback(self):
        device = create_device("toaster")
        assert type(device) is GenericDevice
        assert device.identify() == "toaster"

    def test_empty_type(self):
        device = create_device("")
        assert device.identify() == "generic"

    def test_raspberry_variant(self):
        assert isinstance(create_device("Raspberry_Pi"), RaspberryPiDevice)

    def test_register_custom_variant(self):
        @register_device("arduino_yun")
        class YunDevice(GenericDevice):
            def identify(self):
                return "yun"

        try:
            assert create_device("arduino_yun").identify() == "yun"
        finally:
            _DEVICE_TYPES.pop("arduino_yun")

    def test_variants_are_devices(self):
        assert all(issubclass(cls, Device) for cls in _DEVICE_TYPES.values())


class TestRaspberryPi:
    def test_describe_reads_model(self, tmp_path):
        model = tmp_path / "model"
        model.write_text("Raspberry Pi 4 Model B Rev 1.4\x00")

        device = RaspberryPiDevice("raspberry_pi")
        with patch.object(RaspberryPiDevice, "MODEL_PATH", model):
            info = device.describe()

        assert info["model"] == "Raspberry Pi 4 Model B Rev 1.4"
        assert info["hostname"] == socket.gethostname()

    def test_health_check_includes_temperature(self):
        device = RaspberryPiDevice("raspberry_pi")
        with patch("lightningrod.modules.device._read_cpu_temp", return_value=48.3):
            status = device.health_check()
        assert status["cpu_temp"] == 48.3
        assert status["status"] == "online"


class TestDeviceManager:
    async def test_device_ping(self, board, session):
        manager = DeviceManager(board, session)
        result = await manager.device_ping()
        assert result["result"] == RESULT_SUCCESS
        assert result["message"].startswith(f"{socket.gethostname()} @ ")

    async def test_device_info(self, board, session):
        manager = DeviceManager(board, session)
        result = await manager.device_info()
        assert result["data"]["type"] == "generic"

    async def test_device_status(self, board, session):
        manager = DeviceManager(board, session)
        result = await manager.device_status()
        assert result["data"]["uptime"] >= 0
        assert 0 <= result["data"]["memory_percent"] <= 100

    async def test_advertised_verbs(self, board, connected_session):
        manager = DeviceManager(board, connected_session)
        names = await manager.advertise()
        assert sorted(n.rsplit(".", 1)[1] for n in names) == ["DeviceInfo", "DevicePing", "DeviceStatus"]
        assert all(BOARD_UUID in n for n in names)
