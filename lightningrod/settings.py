"""Board settings document (settings.json).

Shape::

    {
      "iotronic": {
        "board": {"uuid": ..., "code": ..., "status": ..., ...},
        "wamp": {
          "main-agent": {"url": "wss://...", "realm": "s4t"},
          "registration-agent": {"url": "wss://...", "realm": "s4t"}
        },
        "extra": {}
      }
    }
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from lightningrod.config import ConfigurationError
from lightningrod.registry import write_json_atomic


class SettingsError(ConfigurationError):
    """The settings document is missing or malformed."""


class WampAgent(BaseModel):
    """A control-plane endpoint."""
    url: str
    realm: str


class WampConfiguration(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    main_agent: Optional[WampAgent] = Field(default=None, alias="main-agent")
    registration_agent: Optional[WampAgent] = Field(default=None, alias="registration-agent")


class BoardConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    uuid: str = ""
    code: str = ""
    name: str = ""
    status: str = ""
    type: str = ""
    mobile: bool = False
    agent: str = ""
    created_at: str = ""
    updated_at: str = ""
    location: dict[str, Any] = Field(default_factory=dict)
    extra: dict[str, Any] = Field(default_factory=dict)

    @field_validator("location", "extra", mode="before")
    @classmethod
    def _null_to_empty(cls, v: Any) -> Any:
        return {} if v is None else v


class IotronicSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    board: BoardConfig = Field(default_factory=BoardConfig)
    wamp: WampConfiguration = Field(default_factory=WampConfiguration)
    extra: dict[str, Any] = Field(default_factory=dict)

    @field_validator("extra", mode="before")
    @classmethod
    def _null_to_empty(cls, v: Any) -> Any:
        return {} if v is None else v


class BoardSettings(BaseModel):
    iotronic: IotronicSettings = Field(default_factory=IotronicSettings)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def load_settings(path: str | Path) -> BoardSettings:
    path = Path(path)
    try:
        with open(path) as f:
            data = json.load(f)
    except OSError as exc:
        raise SettingsError(f"Failed to read settings file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise SettingsError(f"Failed to parse settings file {path}: {exc}") from exc

    try:
        return BoardSettings.model_validate(data)
    except ValidationError as exc:
        raise SettingsError(f"Invalid settings file {path}: {exc}") from exc


def save_settings(path: str | Path, settings: BoardSettings) -> None:
    """Persist *settings*. ``OSError`` propagates to the caller."""
    write_json_atomic(path, settings.to_document())
