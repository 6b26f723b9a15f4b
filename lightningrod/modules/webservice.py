"""WebService module — reverse-proxy routes through nginx.

Enabling a webservice writes ``lr_<name>.conf`` into the proxy's
configuration directory, validates the whole configuration and reloads the
proxy. If either step fails the file is removed again, so a configuration
file exists exactly when the registry has an enabled entry for it.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

import psutil

from lightningrod.config import AgentConfig, ConfigurationError, WebServicesConfig
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

STATUS_ENABLED = "enabled"
STATUS_DISABLED = "disabled"

CONF_PREFIX = "lr_"

_SAFE_NAME = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.-]*")
# One or more server names separated by single spaces.
_SAFE_DOMAIN = re.compile(r"[A-Za-z0-9*._-]+( [A-Za-z0-9*._-]+)*")

NGINX_TEMPLATE = """\
# Generated by Lightning-rod for webservice {name}
server {{
    listen {public_port};
    server_name {server_name};

    location / {{
        proxy_pass http://127.0.0.1:{local_port};
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
    }}
}}
"""


class WebServiceError(CapabilityError):
    """Base error for webservice operations."""


class AlreadyEnabled(WebServiceError):
    pass


class ProxyError(WebServiceError):
    """The proxy rejected its configuration or could not be reloaded."""


@dataclass
class WebServiceInfo:
    name: str
    local_port: int
    public_port: int
    domain: str = ""
    status: str = STATUS_ENABLED

    @classmethod
    def from_dict(cls, data: dict) -> WebServiceInfo:
        return cls(
            name=data["name"],
            local_port=int(data["local_port"]),
            public_port=int(data["public_port"]),
            domain=data.get("domain") or "",
            status=data.get("status", STATUS_ENABLED),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ── Proxy backends ────────────────────────────────────────────────


class NginxProxy:
    """Drives an nginx instance through its CLI."""

    kind = "nginx"

    def __init__(self, binary: str = "nginx", conf_dir: str | Path = "/etc/nginx/conf.d") -> None:
        self.binary = binary
        self.conf_dir = Path(conf_dir)

    def conf_path(self, name: str) -> Path:
        return self.conf_dir / f"{CONF_PREFIX}{name}.conf"

    def managed_names(self) -> list[str]:
        """Names of every ``lr_*.conf`` file currently on disk."""
        if not self.conf_dir.is_dir():
            return []
        return [p.stem[len(CONF_PREFIX):] for p in self.conf_dir.glob(f"{CONF_PREFIX}*.conf")]

    def render(self, ws: WebServiceInfo) -> str:
        return NGINX_TEMPLATE.format(
            name=ws.name,
            public_port=ws.public_port,
            local_port=ws.local_port,
            server_name=ws.domain or "_",
        )

    async def validate(self) -> None:
        await self._run([self.binary, "-t"], "config test")

    async def reload(self) -> None:
        await self._run([self.binary, "-s", "reload"], "reload")

    def is_running(self) -> bool:
        target = Path(self.binary).name
        for proc in psutil.process_iter(["name"]):
            if proc.info.get("name") == target:
                return True
        return False

    async def _run(self, cmd: list[str], what: str) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise ProxyError(f"{self.kind} {what} failed: {exc}") from exc
        output_bytes, _ = await proc.communicate()
        output = output_bytes.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            raise ProxyError(f"{self.kind} {what} failed: {output.strip()[:500]}")
        return output


_PROXIES: dict[str, type[NginxProxy]] = {"nginx": NginxProxy}


def create_proxy(config: WebServicesConfig) -> NginxProxy:
    cls = _PROXIES.get(config.proxy)
    if cls is None:
        raise ConfigurationError(f"Unsupported proxy: {config.proxy!r}")
    return cls(binary=config.proxy_bin, conf_dir=config.conf_dir)


# ── Manager ───────────────────────────────────────────────────────


class WebServiceManager(CapabilityModule):
    """Reverse-proxy route registry and its verbs."""

    module_name = "webservice"

    def __init__(self, config: AgentConfig, board, session, proxy: NginxProxy | None = None) -> None:
        super().__init__(board, session)
        self.config = config
        self.proxy = proxy or create_proxy(config.webservices)
        self._lock = asyncio.Lock()
        self._webservices: dict[str, WebServiceInfo] = {}
        self._registry: JsonRegistry[WebServiceInfo] = JsonRegistry(
            config.home / "webservices.json",
            "webservices",
            WebServiceInfo.from_dict,
            WebServiceInfo.to_dict,
        )
        logger.info("Proxy used: %s", self.proxy.kind)

    # ── Lifecycle ─────────────────────────────────────────────────

    async def start(self) -> None:
        logger.info("Starting WebService Manager...")
        async with self._lock:
            self._webservices = self._registry.load()
        if not self.proxy.is_running():
            logger.warning("%s does not appear to be running", self.proxy.kind)
        await self.reconcile()
        logger.info("WebService Manager started successfully")

    async def stop(self) -> None:
        """Remove every route and empty the registry."""
        logger.info("Stopping WebService Manager...")
        async with self._lock:
            for name in list(self._webservices):
                try:
                    await self._remove_webservice(name)
                except Exception as exc:
                    logger.error("Failed to remove webservice %s: %s", name, exc)

    async def reconcile(self) -> None:
        """Regenerate missing route files and delete orphaned ones.

        Regenerated files that the proxy rejects are removed again and their
        entries marked disabled until re-enabled.
        """
        async with self._lock:
            changed = False
            regenerated: list[str] = []
            for name, ws in self._webservices.items():
                if ws.status == STATUS_DISABLED:
                    continue
                path = self.proxy.conf_path(name)
                if path.exists():
                    continue
                if not _valid_domain(ws.domain):
                    logger.error("Webservice %s has an invalid domain %r, disabling it", name, ws.domain)
                    ws.status = STATUS_DISABLED
                    self._registry.save(self._webservices)
                    continue
                logger.warning("Configuration for webservice %s is missing, regenerating", name)
                try:
                    path.write_text(self.proxy.render(ws))
                    regenerated.append(name)
                    changed = True
                except OSError as exc:
                    logger.error("Failed to regenerate %s: %s", path, exc)

            for name in self.proxy.managed_names():
                if name in self._webservices:
                    continue
                logger.warning("Removing orphaned proxy configuration for %s", name)
                try:
                    self.proxy.conf_path(name).unlink(missing_ok=True)
                    changed = True
                except OSError as exc:
                    logger.error("Failed to remove orphaned configuration %s: %s", name, exc)

            if not changed:
                return
            try:
                await self.proxy.validate()
            except ProxyError as exc:
                if not regenerated:
                    logger.error("Proxy configuration test after reconciliation failed: %s", exc)
                    return
                self._disable_regenerated(regenerated, exc)
                try:
                    await self.proxy.validate()
                except ProxyError as retry_exc:
                    logger.error("Proxy configuration still invalid after rollback: %s", retry_exc)
                    return
            try:
                await self.proxy.reload()
            except ProxyError as exc:
                logger.error("Proxy reload after reconciliation failed: %s", exc)

    def _disable_regenerated(self, names: list[str], exc: ProxyError) -> None:
        """Take back regenerated files the proxy rejected. The caller holds the lock."""
        for name in names:
            path = self.proxy.conf_path(name)
            logger.error("Regenerated %s was rejected (%s), disabling webservice %s", path, exc, name)
            try:
                path.unlink(missing_ok=True)
            except OSError as unlink_exc:
                logger.error("Failed to remove %s: %s", path, unlink_exc)
            self._webservices[name].status = STATUS_DISABLED
        self._registry.save(self._webservices)

    # ── Operations ────────────────────────────────────────────────

    def list_webservices(self) -> list[dict[str, Any]]:
        return [ws.to_dict() for ws in self._webservices.values()]

    def get(self, name: str) -> Optional[WebServiceInfo]:
        return self._webservices.get(name)

    async def enable_webservice(
        self, name: str, local_port: int, public_port: int, domain: str = ""
    ) -> WebServiceInfo:
        if not _SAFE_NAME.fullmatch(name):
            raise WebServiceError(f"Invalid webservice name: {name!r}")
        if not _valid_domain(domain):
            raise WebServiceError(f"Invalid domain: {domain!r}")

        async with self._lock:
            existing = self._webservices.get(name)
            if existing is not None and existing.status != STATUS_DISABLED:
                raise AlreadyEnabled(f"webservice {name} already enabled")

            ws = WebServiceInfo(
                name=name,
                local_port=local_port,
                public_port=public_port,
                domain=domain,
                status=STATUS_ENABLED,
            )
            path = self.proxy.conf_path(name)
            try:
                path.write_text(self.proxy.render(ws))
            except OSError as exc:
                raise WebServiceError(f"failed to write {self.proxy.kind} config: {exc}") from exc

            try:
                await self.proxy.validate()
                await self.proxy.reload()
            except ProxyError:
                path.unlink(missing_ok=True)
                raise

            self._webservices[name] = ws
            self._registry.save(self._webservices)

        logger.info("Webservice %s enabled (local:%d -> public:%d)", name, local_port, public_port)
        return ws

    async def disable_webservice(self, name: str) -> bool:
        """Remove a route. Returns ``False`` if nothing was registered."""
        if not _SAFE_NAME.fullmatch(name):
            raise WebServiceError(f"Invalid webservice name: {name!r}")
        async with self._lock:
            return await self._remove_webservice(name)

    async def _remove_webservice(self, name: str) -> bool:
        """The caller must hold ``self._lock``."""
        path = self.proxy.conf_path(name)
        existed = name in self._webservices

        removed_file = path.exists()
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to remove %s config: %s", self.proxy.kind, exc)

        if existed or removed_file:
            try:
                await self.proxy.reload()
            except ProxyError as exc:
                logger.warning("Failed to reload %s: %s", self.proxy.kind, exc)

        if existed:
            del self._webservices[name]
            self._registry.save(self._webservices)
            logger.info("Webservice %s disabled", name)
        else:
            logger.info("Webservice %s was not enabled", name)
        return existed

    def proxy_info(self) -> dict[str, Any]:
        return {
            "type": self.proxy.kind,
            "status": "running" if self.proxy.is_running() else "stopped",
        }

    # ── Capabilities ──────────────────────────────────────────────

    def capabilities(self) -> dict[str, Capability]:
        return {
            "EnableWebService": self.rpc_enable_webservice,
            "DisableWebService": self.rpc_disable_webservice,
            "WebServicesList": self.rpc_webservices_list,
            "ProxyInfo": self.rpc_proxy_info,
        }

    async def rpc_enable_webservice(self, *args: Any) -> dict[str, Any]:
        require_args(args, ["name", "local_port", "public_port"])
        name = as_name(args[0], "name")
        local_port = as_port(args[1], "local_port")
        public_port = as_port(args[2], "public_port")
        domain = args[3] if len(args) > 3 and args[3] is not None else ""
        if not isinstance(domain, str):
            raise CapabilityError("Invalid domain type")
        ws = await self.enable_webservice(name, local_port, public_port, domain)
        return success(f"Webservice {name} enabled", ws.to_dict())

    async def rpc_disable_webservice(self, *args: Any) -> dict[str, Any]:
        require_args(args, ["name"])
        name = as_name(args[0], "name")
        if await self.disable_webservice(name):
            return success(f"Webservice {name} disabled")
        return success(f"Webservice {name} already disabled")

    async def rpc_webservices_list(self, *args: Any) -> dict[str, Any]:
        return success("Webservices list retrieved", self.list_webservices())

    async def rpc_proxy_info(self, *args: Any) -> dict[str, Any]:
        return success("Proxy info retrieved", self.proxy_info())


def _valid_domain(domain: str) -> bool:
    """Empty (catch-all) or a space-separated list of server names."""
    return not domain or _SAFE_DOMAIN.fullmatch(domain) is not None
