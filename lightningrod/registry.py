"""Persisted JSON registries for the resource managers.

Each manager keeps a mapping ``name -> record`` and rewrites the whole
document on every mutation. Writes go to a temporary sibling first and are
renamed into place, so a reader never sees a half-written file.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RegistryError(Exception):
    """Raised when a registry document cannot be read or written."""


def write_json_atomic(path: str | Path, data: Any) -> None:
    """Serialize *data* to *path* via a temporary file + rename.

    ``OSError`` propagates to the caller.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    with open(tmp, "w") as f:
        json.dump(data, f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


class JsonRegistry(Generic[T]):
    """A ``{root_key: {name: record}}`` JSON document on disk.

    Parameters
    ----------
    path:
        Location of the document.
    root_key:
        Top-level key wrapping the mapping (``"services"``, ``"webservices"``).
    from_dict / to_dict:
        Record (de)serializers.
    """

    def __init__(
        self,
        path: str | Path,
        root_key: str,
        from_dict: Callable[[dict], T],
        to_dict: Callable[[T], dict],
    ) -> None:
        self.path = Path(path)
        self.root_key = root_key
        self._from_dict = from_dict
        self._to_dict = to_dict

    def load(self) -> dict[str, T]:
        """Read the document; a missing file yields an empty registry."""
        if not self.path.exists():
            logger.info("No registry at %s, starting empty", self.path)
            return {}
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise RegistryError(f"Failed to read {self.path}: {exc}") from exc

        records = (data or {}).get(self.root_key) or {}
        entries: dict[str, T] = {}
        for name, raw in records.items():
            try:
                entries[name] = self._from_dict({**raw, "name": name})
            except (TypeError, ValueError, KeyError) as exc:
                logger.warning("Skipping malformed %s entry %r: %s", self.root_key, name, exc)
        return entries

    def save(self, entries: dict[str, T]) -> None:
        """Rewrite the full document from *entries*."""
        doc = {self.root_key: {name: self._to_dict(e) for name, e in entries.items()}}
        try:
            write_json_atomic(self.path, doc)
        except OSError as exc:
            raise RegistryError(f"Failed to write {self.path}: {exc}") from exc
