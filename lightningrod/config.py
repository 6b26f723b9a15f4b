"""Configuration for the Lightning-rod agent — loaded from iotronic.conf.

The file is INI formatted::

    [lightningrod]
    home = /var/lib/iotronic
    log_level = info
    skip_cert_verify = true

    [autobahn]
    connection_timer = 10
    alive_timer = 600

    [services]
    wstun_bin = /usr/bin/wstun

    [webservices]
    proxy = nginx
"""

from __future__ import annotations

import configparser
import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "/etc/iotronic/iotronic.conf"


class ConfigurationError(Exception):
    """Raised when the agent cannot start because of bad configuration."""


@dataclass
class LightningRodConfig:
    home: str = "/var/lib/iotronic"
    log_level: str = "info"
    log_file: str = ""
    skip_cert_verify: bool = True
    rest_host: str = "0.0.0.0"
    rest_port: int = 1474
    rest_enabled: bool = True


@dataclass
class AutobahnConfig:
    connection_timer: float = 10.0  # delay before a reconnect attempt
    alive_timer: float = 600.0  # health-check interval
    call_timeout: float = 30.0
    join_timeout: float = 10.0


@dataclass
class ServicesConfig:
    wstun_bin: str = "/usr/bin/wstun"
    wstun_port: int = 8080
    reconcile_interval: float = 60.0


@dataclass
class WebServicesConfig:
    proxy: str = "nginx"
    proxy_bin: str = "nginx"
    conf_dir: str = "/etc/nginx/conf.d"
    reconcile_interval: float = 60.0


@dataclass
class AgentConfig:
    """Agent configuration, one dataclass per INI section."""

    lightningrod: LightningRodConfig = field(default_factory=LightningRodConfig)
    autobahn: AutobahnConfig = field(default_factory=AutobahnConfig)
    services: ServicesConfig = field(default_factory=ServicesConfig)
    webservices: WebServicesConfig = field(default_factory=WebServicesConfig)

    @classmethod
    def load(cls, path: str | Path = DEFAULT_CONFIG_FILE) -> AgentConfig:
        path = Path(path)
        config = cls()
        if not path.exists():
            logger.warning("Config not found at %s, using defaults", path)
            return config

        parser = configparser.ConfigParser()
        try:
            parser.read(path)
        except configparser.Error as exc:
            raise ConfigurationError(f"Failed to read config {path}: {exc}") from exc

        for section in parser.sections():
            target = getattr(config, section, None)
            if not dataclasses.is_dataclass(target):
                logger.debug("Ignoring unknown config section [%s]", section)
                continue
            _apply_section(target, section, parser[section])
        return config

    @property
    def settings_path(self) -> Path:
        """Location of the board settings document."""
        if not self.lightningrod.home:
            return Path("/etc/iotronic/settings.json")
        return Path(self.lightningrod.home) / "settings.json"

    @property
    def home(self) -> Path:
        return Path(self.lightningrod.home or "/etc/iotronic")


def _apply_section(target: Any, name: str, values: configparser.SectionProxy) -> None:
    known = {f.name: f for f in dataclasses.fields(target)}
    for key in values:
        f = known.get(key)
        if f is None:
            continue
        current = getattr(target, key)
        try:
            if isinstance(current, bool):
                value: Any = values.getboolean(key)
            elif isinstance(current, int):
                value = values.getint(key)
            elif isinstance(current, float):
                value = values.getfloat(key)
            else:
                value = values.get(key)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid value for [{name}] {key}: {exc}") from exc
        setattr(target, key, value)
