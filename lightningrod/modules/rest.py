"""Local status API.

Exposes:
  GET  /health       — liveness check
  GET  /api/info     — agent, board and WAMP connection summary
  GET  /api/status   — host resource metrics
  GET  /api/board    — full board identity

Read-only: handlers only use Board getters and the session's ``connected``
flag. Served by uvicorn inside the agent's event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
import time
from typing import Optional

import psutil
import uvicorn
from fastapi import FastAPI

from lightningrod import __version__
from lightningrod.board import Board
from lightningrod.session import SessionManager

logger = logging.getLogger(__name__)


def create_app(board: Board, session: SessionManager) -> FastAPI:
    app = FastAPI(title="Lightning-rod", version=__version__)

    @app.get("/health")
    async def health():
        return {"status": "ok", "wamp_connected": session.connected}

    @app.get("/api/info")
    async def info():
        return {
            "name": "Lightning-rod",
            "version": __version__,
            "board": {
                "uuid": board.uuid,
                "name": board.name,
                "type": board.type,
                "status": board.status,
                "hostname": socket.gethostname(),
            },
            "wamp": {
                "connected": session.connected,
                "session_id": board.session_id,
                "url": board.wamp_url,
                "realm": board.wamp_realm,
            },
        }

    @app.get("/api/status")
    async def status():
        mem = psutil.virtual_memory()
        return {
            "status": "online" if session.connected else "offline",
            "system": {
                "cpu_percent": psutil.cpu_percent(interval=None),
                "memory_percent": mem.percent,
                "memory_total": mem.total,
                "memory_used": mem.used,
            },
            "uptime": int(time.time() - psutil.boot_time()),
        }

    @app.get("/api/board")
    async def board_details():
        return board.to_dict()

    return app


class _Server(uvicorn.Server):
    """uvicorn server that leaves signal handling to the agent."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        pass


class RestManager:
    """Runs the status API on the agent's loop."""

    def __init__(self, board: Board, session: SessionManager, host: str = "0.0.0.0", port: int = 1474) -> None:
        self.app = create_app(board, session)
        self.host = host
        self.port = port
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        logger.info("Starting REST API server...")
        config = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="warning")
        self._server = _Server(config)
        self._task = asyncio.get_running_loop().create_task(self._serve())
        logger.info("REST API server listening on %s:%d", self.host, self.port)

    async def _serve(self) -> None:
        try:
            await self._server.serve()
        except SystemExit:
            logger.error("REST API server failed to start on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        logger.info("Stopping REST API server...")
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=5)
            except asyncio.TimeoutError:
                self._task.cancel()
            except asyncio.CancelledError:
                pass
            self._task = None
