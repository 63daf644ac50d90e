"""Configuration loader for stonectl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/stonectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``STONECTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export STONECTL_AVAILABLE_MEMORY=4096
    export STONECTL_TOOLS__RAKE_BIN=/usr/local/bin/rake

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
import signal
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load stonectl configuration. Install with "
        "`pip install stonectl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "STONECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ToolsConfig:
    """Locations of the external GemStone/MagLev tooling."""

    rake_bin: str = "rake"
    gemstone_bin_dir: Path | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "rake_bin": self.rake_bin,
            "gemstone_bin_dir": (
                str(self.gemstone_bin_dir) if self.gemstone_bin_dir is not None else None
            ),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for stonectl."""

    config_file: Path
    node_id: str
    local_ip: str
    base_dir: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    available_memory: int
    max_memory: int
    maglev_home: Path | None
    name_prefix: str
    shutdown_signal: signal.Signals
    bind_errors: str
    tools: ToolsConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "node_id": self.node_id,
            "local_ip": self.local_ip,
            "base_dir": str(self.base_dir),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "available_memory": self.available_memory,
            "max_memory": self.max_memory,
            "maglev_home": str(self.maglev_home) if self.maglev_home else None,
            "name_prefix": self.name_prefix,
            "shutdown_signal": self.shutdown_signal.name,
            "bind_errors": self.bind_errors,
            "tools": self.tools.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/stonectl/config.yml",
    "node_id": "maglev_node_0",
    "local_ip": "127.0.0.1",
    "base_dir": "/var/lib/stonectl/instances",
    "state_dir": "/var/lib/stonectl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/stonectl",
    "runtime_dir": "/run/stonectl",
    "lock_timeout": 30.0,
    "available_memory": 4096,
    "max_memory": 512,
    "maglev_home": None,
    "name_prefix": "maglev",
    "shutdown_signal": "SIGTERM",
    "bind_errors": "strict",
    "tools": {
        "rake_bin": "rake",
        "gemstone_bin_dir": None,  # derived from maglev_home when absent
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_BIND_ERROR_MODES = {"strict", "legacy"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    bind_errors = raw.get("bind_errors")
    if bind_errors is not None and str(bind_errors) not in ALLOWED_BIND_ERROR_MODES:
        allowed = ", ".join(sorted(ALLOWED_BIND_ERROR_MODES))
        raise ConfigError(f"Unsupported bind_errors mode '{bind_errors}'. Allowed: {allowed}.")

    tools = raw.get("tools")
    if tools is not None:
        tools_map = _as_dict(tools, "tools")
        unknown = set(tools_map.keys()) - {"rake_bin", "gemstone_bin_dir"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown tools configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    base_dir = _to_path(raw.get("base_dir"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    available_memory = _expect_int(raw.get("available_memory"), "available_memory", default=4096)
    if available_memory < 0:
        raise ConfigError("available_memory must be non-negative.")
    max_memory = _expect_int(raw.get("max_memory"), "max_memory", default=512)
    if max_memory <= 0:
        raise ConfigError("max_memory must be greater than zero.")

    maglev_home_value = raw.get("maglev_home")
    maglev_home: Path | None = None
    if isinstance(maglev_home_value, (str, Path)):
        if str(maglev_home_value).strip():
            maglev_home = _to_path(maglev_home_value)
    elif maglev_home_value is not None:
        raise ConfigError("maglev_home must be a string, Path, or null.")

    name_prefix = str(raw.get("name_prefix", "maglev")).strip()
    if not name_prefix:
        raise ConfigError("name_prefix must be a non-empty string.")

    tools_mapping = _as_dict(raw.get("tools"), "tools")
    bin_dir_value = tools_mapping.get("gemstone_bin_dir")
    gemstone_bin_dir: Path | None
    if bin_dir_value:
        gemstone_bin_dir = _to_path(bin_dir_value)
    elif maglev_home is not None:
        gemstone_bin_dir = maglev_home / "gemstone" / "bin"
    else:
        gemstone_bin_dir = None
    tools = ToolsConfig(
        rake_bin=str(tools_mapping.get("rake_bin", "rake")),
        gemstone_bin_dir=gemstone_bin_dir,
    )

    return AppConfig(
        config_file=config_file,
        node_id=str(raw.get("node_id", "maglev_node_0")),
        local_ip=str(raw.get("local_ip", "127.0.0.1")),
        base_dir=base_dir,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        available_memory=available_memory,
        max_memory=max_memory,
        maglev_home=maglev_home,
        name_prefix=name_prefix,
        shutdown_signal=_parse_signal(raw.get("shutdown_signal"), "shutdown_signal"),
        bind_errors=str(raw.get("bind_errors", "strict")),
        tools=tools,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _parse_signal(value: object | None, label: str) -> signal.Signals:
    if value is None:
        return signal.SIGTERM
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a signal name. Got boolean {value!r}.")
    if isinstance(value, int):
        try:
            return signal.Signals(value)
        except ValueError as exc:
            raise ConfigError(f"Unknown signal number for {label}: {value!r}.") from exc
    text = str(value).strip().upper()
    if not text.startswith("SIG"):
        text = f"SIG{text}"
    try:
        return signal.Signals[text]
    except KeyError as exc:
        raise ConfigError(f"Unknown signal name for {label}: {value!r}.") from exc


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "ToolsConfig",
    "load_config",
]
