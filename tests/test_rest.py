"""Tests for the local status API."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from lightningrod import __version__
from lightningrod.modules.rest import RestManager, create_app

from conftest import BOARD_UUID, MAIN_URL


@pytest.fixture
def client(board, session):
    return TestClient(create_app(board, session))


class TestStatusApi:
    def test_health_offline(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "wamp_connected": False}

    async def test_health_online(self, board, connected_session):
        client = TestClient(create_app(board, connected_session))
        assert client.get("/health").json()["wamp_connected"] is True

    def test_info(self, client):
        data = client.get("/api/info").json()
        assert data["version"] == __version__
        assert data["board"]["uuid"] == BOARD_UUID
        assert data["wamp"]["url"] == MAIN_URL
        assert data["wamp"]["connected"] is False

    def test_status(self, client):
        data = client.get("/api/status").json()
        assert data["status"] == "offline"
        assert data["system"]["memory_total"] > 0
        assert data["uptime"] >= 0

    def test_board(self, client):
        data = client.get("/api/board").json()
        assert data["uuid"] == BOARD_UUID
        assert data["status"] == "registered"

    def test_unknown_route(self, client):
        assert client.get("/api/nope").status_code == 404


class TestRestManager:
    async def test_stop_without_start(self, board, session):
        manager = RestManager(board, session, host="127.0.0.1", port=0)
        await manager.stop()
