"""Board identity, status state machine and control-plane endpoint selection.

The board is loaded from ``settings.json``. Its status decides which WAMP
agent the session connects to:

  main-agent configured                      → main-agent
  status in {"", registered, first_boot}     → registration-agent
  anything else                              → configuration error,
                                               status forced to first_boot

Every status change is written through to disk before the call returns.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from lightningrod.config import ConfigurationError
from lightningrod.settings import BoardSettings, WampAgent, load_settings, save_settings

logger = logging.getLogger(__name__)

REGISTRATION_TOKEN = "<REGISTRATION-TOKEN>"

STATUS_FIRST_BOOT = "first_boot"
STATUS_REGISTERED = "registered"
STATUS_ONLINE = "online"
STATUS_ERROR = "error"

VALID_STATUSES = frozenset({STATUS_FIRST_BOOT, STATUS_REGISTERED, STATUS_ONLINE, STATUS_ERROR})

# Statuses under which the registration agent may be used.
_REGISTRATION_STATUSES = frozenset({"", STATUS_REGISTERED, STATUS_FIRST_BOOT})

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"


class EndpointSelectionError(ConfigurationError):
    """No usable control-plane endpoint for the current board status."""


class Board:
    """The board this agent runs on."""

    def __init__(self, settings_path: str | Path) -> None:
        self._lock = threading.Lock()
        self._settings_path = Path(settings_path)
        self._settings = BoardSettings()

        self.uuid = ""
        self.code = ""
        self.name = ""
        self.status = ""
        self.type = ""
        self.mobile = False
        self.agent = ""
        self.created_at = ""
        self.updated_at = ""
        self.location: dict[str, Any] = {}
        self.extra: dict[str, Any] = {}

        self._session_id = ""
        self._endpoint: Optional[WampAgent] = None
        self._endpoint_kind = ""
        self.endpoint_error: Optional[str] = None

    # ── Loading ───────────────────────────────────────────────────

    def load(self) -> None:
        """Read settings from disk and recompute endpoint selection."""
        with self._lock:
            self._load_locked()

    def _load_locked(self) -> None:
        settings = load_settings(self._settings_path)
        self._settings = settings

        cfg = settings.iotronic.board
        self.uuid = cfg.uuid
        self.code = cfg.code
        self.name = cfg.name
        self.status = cfg.status
        self.type = cfg.type
        self.mobile = cfg.mobile
        self.agent = cfg.agent
        self.created_at = cfg.created_at
        self.updated_at = cfg.updated_at
        self.location = dict(cfg.location)
        self.extra = dict(cfg.extra)

        logger.info("Board settings:")
        logger.info(" - code: %s", self.code)
        logger.info(" - uuid: %s", self.uuid)

        self._select_endpoint()

        if self.code == REGISTRATION_TOKEN:
            logger.info("FIRST BOOT procedure started")
            self.status = STATUS_FIRST_BOOT

    def _select_endpoint(self) -> None:
        wamp = self._settings.iotronic.wamp
        self.endpoint_error = None

        if wamp.main_agent is not None:
            self._endpoint = wamp.main_agent
            self._endpoint_kind = "main-agent"
            logger.info("WAMP Agent settings:")
        elif self.status in _REGISTRATION_STATUSES and wamp.registration_agent is not None:
            self._endpoint = wamp.registration_agent
            self._endpoint_kind = "registration-agent"
            logger.info("Registration Agent settings:")
        else:
            self._endpoint = None
            self._endpoint_kind = ""
            self.endpoint_error = (
                f"WAMP Agent configuration is wrong for board status {self.status!r}... "
                "please check settings.json"
            )
            logger.error(self.endpoint_error)
            self._set_status_locked(STATUS_FIRST_BOOT)
            return

        logger.info(" - agent: %s", self.agent)
        logger.info(" - url: %s", self._endpoint.url)
        logger.info(" - realm: %s", self._endpoint.realm)

    # ── Write-through mutations ───────────────────────────────────

    def update_status(self, status: str) -> None:
        """Set the board status and persist it.

        Raises ``ValueError`` for an unknown status and ``OSError`` when the
        settings file cannot be written.
        """
        if status not in VALID_STATUSES:
            raise ValueError(f"Unknown board status: {status!r}")
        with self._lock:
            self._set_status_locked(status)
        logger.info("Board status changed to %s", status)

    def _set_status_locked(self, status: str) -> None:
        self.status = status
        self._settings.iotronic.board.status = status
        save_settings(self._settings_path, self._settings)

    def touch_updated_time(self) -> str:
        """Stamp ``updated_at`` with the current time and persist it."""
        with self._lock:
            timestamp = datetime.now().strftime(_TIMESTAMP_FORMAT)
            self.updated_at = timestamp
            self._settings.iotronic.board.updated_at = timestamp
            save_settings(self._settings_path, self._settings)
        return timestamp

    def replace_settings(self, settings: BoardSettings | dict) -> None:
        """Persist a whole new settings document, then reload from disk."""
        if isinstance(settings, dict):
            settings = BoardSettings.model_validate(settings)
        with self._lock:
            save_settings(self._settings_path, settings)
            self._load_locked()

    # ── Getters ───────────────────────────────────────────────────

    @property
    def endpoint(self) -> WampAgent:
        """The selected control-plane endpoint.

        Raises :class:`EndpointSelectionError` when selection failed.
        """
        with self._lock:
            if self._endpoint is None:
                raise EndpointSelectionError(
                    self.endpoint_error or "Board settings have not been loaded"
                )
            return self._endpoint

    @property
    def endpoint_kind(self) -> str:
        return self._endpoint_kind

    @property
    def wamp_url(self) -> str:
        return self._endpoint.url if self._endpoint else ""

    @property
    def wamp_realm(self) -> str:
        return self._endpoint.realm if self._endpoint else ""

    @property
    def session_id(self) -> str:
        return self._session_id

    def set_session_id(self, session_id: str) -> None:
        """Called by the session manager after every successful connect."""
        with self._lock:
            self._session_id = session_id

    @property
    def is_first_boot(self) -> bool:
        return self.status == STATUS_FIRST_BOOT

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "uuid": self.uuid,
                "code": self.code,
                "name": self.name,
                "type": self.type,
                "status": self.status,
                "mobile": self.mobile,
                "agent": self.agent,
                "created_at": self.created_at,
                "updated_at": self.updated_at,
                "location": dict(self.location),
                "extra": dict(self.extra),
            }
