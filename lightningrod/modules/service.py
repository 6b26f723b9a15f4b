"""Service module — expose local ports through wstun tunnels.

Every exposed service is a ``wstun client`` child process relaying a local
port to the orchestrator-side wstun server. The registry of tunnels is
persisted to ``<home>/services.json`` and reconciled against the live
process table on start and periodically afterwards: a tunnel whose process
has died is marked ``stopped``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlsplit

import psutil

from lightningrod.config import AgentConfig
from lightningrod.modules.base import (
    Capability,
    CapabilityError,
    CapabilityModule,
    as_name,
    as_port,
    require_args,
    success,
)
from lightningrod.registry import JsonRegistry

logger = logging.getLogger(__name__)

STATUS_RUNNING = "running"
STATUS_STOPPED = "stopped"

_KILL_WAIT = 5.0


class ServiceError(CapabilityError):
    """Base error for tunnel operations."""


class AlreadyExposed(ServiceError):
    pass


class ServiceNotFound(ServiceError):
    pass


class TunnelSpawnError(ServiceError):
    pass


@dataclass
class ServiceInfo:
    name: str
    local_port: int
    public_url: str
    pid: int = 0
    status: str = STATUS_RUNNING

    @classmethod
    def from_dict(cls, data: dict) -> ServiceInfo:
        return cls(
            name=data["name"],
            local_port=int(data["local_port"]),
            public_url=data.get("public_url", ""),
            pid=int(data.get("pid") or 0),
            status=data.get("status", STATUS_STOPPED),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def wstun_url_for(wamp_url: str, wstun_port: int) -> str:
    """Derive the wstun server URL from the WAMP agent URL."""
    parts = urlsplit(wamp_url)
    if not parts.hostname:
        raise ValueError(f"Cannot derive wstun host from WAMP URL {wamp_url!r}")
    protocol = "wss" if parts.scheme == "wss" else "ws"
    return f"{protocol}://{parts.hostname}:{wstun_port}"


def process_alive(pid: int) -> bool:
    """True if *pid* exists and is not a zombie."""
    if pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


class ServiceManager(CapabilityModule):
    """Tunnel registry and the ExposeService / UnexposeService verbs."""

    module_name = "service"

    def __init__(self, config: AgentConfig, board, session) -> None:
        super().__init__(board, session)
        self.config = config
        self.wstun_bin = config.services.wstun_bin
        self.wstun_url = wstun_url_for(board.endpoint.url, config.services.wstun_port)

        self._lock = asyncio.Lock()
        self._services: dict[str, ServiceInfo] = {}
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._registry: JsonRegistry[ServiceInfo] = JsonRegistry(
            config.home / "services.json",
            "services",
            ServiceInfo.from_dict,
            ServiceInfo.to_dict,
        )

        logger.info("WSTUN bin path: %s", self.wstun_bin)
        logger.info("WSTUN URL: %s", self.wstun_url)

    # ── Lifecycle ─────────────────────────────────────────────────

    async def start(self) -> None:
        logger.info("Starting Service Manager...")
        async with self._lock:
            self._services = self._registry.load()
        logger.info("Loaded %d service(s) from %s", len(self._services), self._registry.path)
        await self.reconcile()
        logger.info("Service Manager started successfully")

    async def stop(self) -> None:
        """Terminate every tunnel and empty the registry."""
        logger.info("Stopping Service Manager...")
        async with self._lock:
            for name in list(self._services):
                try:
                    await self._stop_service(name)
                except Exception as exc:
                    logger.error("Failed to stop service %s: %s", name, exc)

    async def reconcile(self) -> None:
        """Mark tunnels whose process died as stopped.

        A tunnel inherited from a previous run only counts as alive while
        its pid still belongs to a ``wstun client``.
        """
        async with self._lock:
            changed = False
            for name, svc in self._services.items():
                proc = self._processes.get(name)
                if proc is not None and proc.returncode is not None:
                    self._processes.pop(name, None)
                    proc = None
                if svc.status != STATUS_RUNNING:
                    continue
                alive = process_alive(svc.pid) and (
                    proc is not None or is_tunnel_process(svc.pid, self.wstun_bin)
                )
                if not alive:
                    logger.warning(
                        "Tunnel %s (PID %d) is no longer running, marking stopped", name, svc.pid
                    )
                    svc.status = STATUS_STOPPED
                    changed = True
            if changed:
                self._registry.save(self._services)

    # ── Operations ────────────────────────────────────────────────

    def list_services(self) -> list[dict[str, Any]]:
        return [svc.to_dict() for svc in self._services.values()]

    def get(self, name: str) -> Optional[ServiceInfo]:
        return self._services.get(name)

    async def expose_service(self, name: str, local_port: int) -> ServiceInfo:
        async with self._lock:
            if name in self._services:
                raise AlreadyExposed(f"service {name} already exposed")

            cmd = [
                self.wstun_bin,
                "client",
                "-s", self.wstun_url,
                "-t", f"127.0.0.1:{local_port}",
            ]
            try:
                proc = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.DEVNULL,
                )
            except OSError as exc:
                raise TunnelSpawnError(f"failed to start wstun: {exc}") from exc

            info = ServiceInfo(
                name=name,
                local_port=local_port,
                public_url=f"{self.wstun_url}/{name}",
                pid=proc.pid,
                status=STATUS_RUNNING,
            )
            self._services[name] = info
            self._processes[name] = proc
            self._registry.save(self._services)

        logger.info("Service %s exposed on port %d (PID: %d)", name, local_port, proc.pid)
        return info

    async def unexpose_service(self, name: str) -> None:
        async with self._lock:
            await self._stop_service(name)

    async def _stop_service(self, name: str) -> None:
        """Kill and forget a tunnel. The caller must hold ``self._lock``."""
        svc = self._services.get(name)
        if svc is None:
            raise ServiceNotFound(f"service {name} not found")

        proc = self._processes.pop(name, None)
        if proc is not None:
            await self._kill_child(proc)
        elif svc.status == STATUS_RUNNING and svc.pid > 0:
            _kill_pid(svc.pid, self.wstun_bin)

        del self._services[name]
        self._registry.save(self._services)
        logger.info("Service %s unexposed", name)

    @staticmethod
    async def _kill_child(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=_KILL_WAIT)
        except asyncio.TimeoutError:
            logger.warning("Process %d did not exit after SIGKILL", proc.pid)

    # ── Capabilities ──────────────────────────────────────────────

    def capabilities(self) -> dict[str, Capability]:
        return {
            "ExposeService": self.rpc_expose_service,
            "UnexposeService": self.rpc_unexpose_service,
            "ServicesList": self.rpc_services_list,
        }

    async def rpc_expose_service(self, *args: Any) -> dict[str, Any]:
        require_args(args, ["service_name", "local_port"])
        name = as_name(args[0], "service_name")
        port = as_port(args[1], "local_port")
        info = await self.expose_service(name, port)
        return success(
            f"Service {name} exposed on port {port}",
            {"public_url": info.public_url, "pid": info.pid},
        )

    async def rpc_unexpose_service(self, *args: Any) -> dict[str, Any]:
        require_args(args, ["service_name"])
        name = as_name(args[0], "service_name")
        await self.unexpose_service(name)
        return success(f"Service {name} unexposed")

    async def rpc_services_list(self, *args: Any) -> dict[str, Any]:
        return success("Services list retrieved", self.list_services())


def is_tunnel_process(pid: int, wstun_bin: str) -> bool:
    """True if *pid* is still a ``wstun client`` we could have spawned.

    Pids recorded by a previous run may since have been reused.
    """
    try:
        cmdline = psutil.Process(pid).cmdline()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return False
    binary = Path(wstun_bin).name
    return "client" in cmdline and any(Path(arg).name == binary for arg in cmdline)


def _kill_pid(pid: int, wstun_bin: str) -> None:
    """Kill a tunnel left over from a previous run, if it is still there."""
    if not is_tunnel_process(pid, wstun_bin):
        logger.info("PID %d is no longer a wstun tunnel, not killing it", pid)
        return
    try:
        psutil.Process(pid).kill()
    except psutil.NoSuchProcess:
        pass
    except psutil.AccessDenied as exc:
        logger.warning("Failed to kill process %d: %s", pid, exc)
