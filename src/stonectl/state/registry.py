"""Helpers for interacting with the stonectl state registry.

The registry directory (``/var/lib/stonectl/registry`` by default) stores YAML
artifacts such as ``instances.yml``. Every write goes to a temporary file in
the same directory which is then moved into place with :func:`os.replace`, so
a crash mid-write leaves either the previous or the new contents on disk,
never a truncated file.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage stonectl state. Install with `pip install stonectl`."
    ) from exc

INSTANCES_FILE = "instances.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StateRegistryError(f"Failed to prepare registry {self.root}: {exc}") from exc

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        except OSError as exc:
            raise StateRegistryError(f"Failed to read registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        try:
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        except OSError as exc:
            raise StateRegistryError(f"Failed to write registry file {path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        except OSError as exc:
            raise StateRegistryError(f"Failed to write registry file {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    # Instance helpers -------------------------------------------------
    def read_instances(self) -> list[dict[str, Any]]:
        """Return the entries of ``instances.yml`` (empty list if missing)."""
        value = self.read(INSTANCES_FILE, default={"instances": []})
        if not isinstance(value, Mapping):
            raise StateRegistryError(f"{INSTANCES_FILE} must contain a mapping.")
        raw_instances = value.get("instances") or []
        if not isinstance(raw_instances, list):
            raise StateRegistryError(f"{INSTANCES_FILE} 'instances' must be a list.")
        return [dict(entry) for entry in raw_instances if isinstance(entry, Mapping)]

    def write_instances(self, instances: Iterable[Mapping[str, object]]) -> None:
        """Persist instance entries to ``instances.yml``."""
        self.write(INSTANCES_FILE, {"instances": [dict(entry) for entry in instances]})

    def get_instance(self, name: str) -> dict[str, Any] | None:
        """Return the instance mapping for *name* if registered."""
        for entry in self.read_instances():
            if entry.get("name") == name:
                return entry
        return None

    def add_instance(self, entry: Mapping[str, object]) -> None:
        """Register a new instance entry; names must be unique."""
        name = entry.get("name")
        if not isinstance(name, str) or not name.strip():
            raise StateRegistryError("Instance entry missing 'name'.")
        instances = self.read_instances()
        if any(existing.get("name") == name for existing in instances):
            raise StateRegistryError(f"Instance '{name}' already registered")
        instances.append(dict(entry))
        self.write_instances(instances)

    def update_instance(self, name: str, updates: Mapping[str, object]) -> None:
        """Apply *updates* to the registered instance named *name*."""
        instances: list[dict[str, Any]] = []
        found = False
        for entry in self.read_instances():
            if entry.get("name") == name:
                entry.update(updates)
                found = True
            instances.append(entry)
        if not found:
            raise StateRegistryError(f"Instance '{name}' not found in registry")
        self.write_instances(instances)

    def remove_instance(self, name: str) -> None:
        """Remove the instance named *name* from the registry."""
        instances = self.read_instances()
        filtered = [entry for entry in instances if entry.get("name") != name]
        if len(filtered) == len(instances):
            raise StateRegistryError(f"Instance '{name}' not found in registry")
        self.write_instances(filtered)


__all__ = ["StateRegistry", "StateRegistryError"]
