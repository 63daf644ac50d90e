"""Instance records and the store that persists them in the registry."""
from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import InvalidPlan, PersistenceError
from .registry import StateRegistry, StateRegistryError

LOGGER = logging.getLogger(__name__)


class Plan(str, Enum):
    """Service tiers a stone can be provisioned under."""

    FREE = "free"

    @classmethod
    def parse(cls, value: object) -> Plan:
        """Return the plan named by *value* (``free``, ``:free`` or a ``Plan``)."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lstrip(":").lower() if value is not None else ""
        try:
            return cls(text)
        except ValueError:
            raise InvalidPlan(f"Invalid plan: {value}") from None


# Memory quota (MB) assigned to a stone for each plan.
PLAN_MEMORY: dict[Plan, int] = {
    Plan.FREE: 256,
}


def memory_for_plan(plan: object) -> int:
    """Return the fixed memory quota for *plan*."""
    return PLAN_MEMORY[Plan.parse(plan)]


@dataclass(slots=True)
class InstanceRecord:
    """One provisioned stone.

    ``name`` doubles as the GemStone stone name and as the registry key. The
    ``pid`` is that of ``stoned`` and may be stale after a host restart.
    """

    name: str
    memory: int
    plan: Plan
    home_path: Path
    pid: int | None = None

    @property
    def config_file(self) -> Path:
        """``$MAGLEV_HOME/etc/conf.d/<name>.conf``."""
        return self.home_path / "etc" / "conf.d" / f"{self.name}.conf"

    @property
    def data_dir(self) -> Path:
        """``$MAGLEV_HOME/data/<name>``."""
        return self.home_path / "data" / self.name

    @property
    def extent_file(self) -> Path:
        """The primary extent that proves the stone repository exists."""
        return self.data_dir / "extent" / "extent0.ruby.dbf"

    def to_dict(self) -> dict[str, object]:
        """Return the registry representation."""
        return {
            "name": self.name,
            "memory": self.memory,
            "plan": self.plan.value,
            "pid": self.pid,
            "home_path": str(self.home_path),
        }

    @classmethod
    def from_mapping(cls, entry: Mapping[str, Any]) -> InstanceRecord:
        """Build a record from a registry entry."""
        name = entry.get("name")
        if not isinstance(name, str) or not name.strip():
            raise StateRegistryError("Instance entry missing 'name'.")
        memory = entry.get("memory")
        if isinstance(memory, bool) or not isinstance(memory, int):
            raise StateRegistryError(f"Instance '{name}' has invalid memory {memory!r}.")
        home_path = entry.get("home_path")
        if not isinstance(home_path, str) or not home_path.strip():
            raise StateRegistryError(f"Instance '{name}' missing 'home_path'.")
        try:
            plan = Plan.parse(entry.get("plan"))
        except InvalidPlan as exc:
            raise StateRegistryError(f"Instance '{name}': {exc}") from exc
        pid = entry.get("pid")
        if pid is not None and (isinstance(pid, bool) or not isinstance(pid, int)):
            raise StateRegistryError(f"Instance '{name}' has invalid pid {pid!r}.")
        return cls(name=name, memory=memory, plan=plan, home_path=Path(home_path), pid=pid)


@dataclass(frozen=True)
class InstanceStore:
    """Persist :class:`InstanceRecord` objects keyed by name.

    The store has no cross-record constraints; memory accounting lives in the
    ledger.
    """

    registry: StateRegistry

    def open(self) -> None:
        """Ensure the backing registry exists."""
        try:
            self.registry.ensure_root()
        except StateRegistryError as exc:
            raise PersistenceError(str(exc)) from exc

    def all(self) -> list[InstanceRecord]:
        """Return every persisted record."""
        return [InstanceRecord.from_mapping(entry) for entry in self.registry.read_instances()]

    def iter_entries(self) -> Iterator[InstanceRecord]:
        """Yield every readable record, logging and skipping malformed entries.

        A registry file that cannot be read at all still raises
        :class:`StateRegistryError`.
        """
        for entry in self.registry.read_instances():
            try:
                yield InstanceRecord.from_mapping(entry)
            except StateRegistryError as exc:
                LOGGER.warning("Skipping registry entry %s: %s", entry.get("name"), exc)

    def get(self, name: str) -> InstanceRecord | None:
        """Return the record named *name*, or ``None``."""
        entry = self.registry.get_instance(name)
        return InstanceRecord.from_mapping(entry) if entry is not None else None

    def save(self, record: InstanceRecord) -> None:
        """Insert *record*; fails if the name is already taken."""
        try:
            self.registry.add_instance(record.to_dict())
        except StateRegistryError as exc:
            raise PersistenceError(f"Could not save entry {record.name}: {exc}") from exc

    def update_pid(self, name: str, pid: int | None) -> None:
        """Record a new pid for *name*."""
        try:
            self.registry.update_instance(name, {"pid": pid})
        except StateRegistryError as exc:
            raise PersistenceError(f"Could not update entry {name}: {exc}") from exc

    def destroy(self, name: str) -> bool:
        """Remove the record for *name*; returns ``False`` when it was absent."""
        try:
            if self.registry.get_instance(name) is None:
                return False
            self.registry.remove_instance(name)
        except StateRegistryError as exc:
            raise PersistenceError(f"Could not destroy entry {name}: {exc}") from exc
        return True


__all__ = ["InstanceRecord", "InstanceStore", "PLAN_MEMORY", "Plan", "memory_for_plan"]
