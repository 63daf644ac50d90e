"""Node controller: the single entry point the orchestration layer talks to.

The controller ties together the memory ledger, the instance store, the
filesystem provisioner and the process supervisor. ``provision`` reserves
memory first and then lays down files, starts the stone and persists the
record; any failure after the reservation rolls the instance back and gives
the memory back before the error propagates.
"""
from __future__ import annotations

import logging
import re
import signal
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .config import AppConfig, ConfigError
from .errors import CleanupError, InvalidPlan, NotFound, PersistenceError
from .ledger import MemoryLedger
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .providers.files import FilesystemProvisioner
from .providers.process import ProcessSupervisor
from .state import PLAN_MEMORY, InstanceRecord, InstanceStore, Plan, StateRegistry

LOGGER = logging.getLogger(__name__)

NAME_PATTERN = re.compile(
    r"^(?P<prefix>[A-Za-z0-9_.]+)-"
    r"[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$"
)


@dataclass
class NodeController:
    """Provision, bind and tear down stones on this host."""

    store: InstanceStore
    supervisor: ProcessSupervisor
    provisioner: FilesystemProvisioner
    ledger: MemoryLedger
    logger: StructuredLogger
    locks: LockManager
    base_dir: Path
    maglev_home: Path
    max_memory: int
    local_ip: str = "127.0.0.1"
    node_id: str = "maglev_node_0"
    name_prefix: str = "maglev"
    shutdown_signal: signal.Signals = signal.SIGTERM
    bind_errors: str = "strict"

    @classmethod
    def from_config(cls, config: AppConfig) -> NodeController:
        """Wire a controller and its collaborators from *config*."""
        if config.maglev_home is None:
            raise ConfigError("Maglev home not set: configure 'maglev_home'.")
        return cls(
            store=InstanceStore(StateRegistry(config.registry_dir)),
            supervisor=ProcessSupervisor(
                base_dir=config.base_dir,
                gemstone_bin_dir=config.tools.gemstone_bin_dir,
            ),
            provisioner=FilesystemProvisioner(
                base_dir=config.base_dir,
                rake_bin=config.tools.rake_bin,
            ),
            ledger=MemoryLedger(config.available_memory),
            logger=StructuredLogger(config.logs_dir),
            locks=LockManager(config.runtime_dir, config.lock_timeout),
            base_dir=config.base_dir,
            maglev_home=config.maglev_home,
            max_memory=config.max_memory,
            local_ip=config.local_ip,
            node_id=config.node_id,
            name_prefix=config.name_prefix,
            shutdown_signal=config.shutdown_signal,
            bind_errors=config.bind_errors,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def initialize(self, *, reconcile: bool = True) -> int:
        """Open the store and rebuild the ledger; returns available memory.

        With *reconcile* every persisted stone that is not already running is
        started again. A stone that fails to start is logged and skipped so a
        stale record cannot keep the node from booting; its memory is not
        counted as committed.
        """
        with self.logger.operation(
            "node initialize",
            args={"reconcile": reconcile},
            target={"kind": "node", "node_id": self.node_id},
        ) as op:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            self.store.open()
            with self.locks.mutate_instances() as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                records = list(self.store.iter_entries())
                if reconcile:
                    committed = [
                        record.memory for record in records if self._reconcile(record, op)
                    ]
                else:
                    committed = [record.memory for record in records]
                available = self.ledger.reset(committed)

            failed = len(records) - len(committed)
            context = {"available_memory": available, "instances": len(records)}
            if failed:
                op.warning(
                    f"{failed} instance(s) could not be restarted.",
                    changed=len(committed),
                    context=context,
                )
            else:
                op.success("Node initialised.", changed=len(committed), context=context)
            return available

    def _reconcile(self, record: InstanceRecord, op: OperationScope) -> bool:
        if self.supervisor.confirm_running(record):
            op.add_step("reconcile.running", status="skipped", detail=record.name)
            return True
        try:
            pid = self.supervisor.start(record)
            self.store.update_pid(record.name, pid)
        except Exception as exc:
            LOGGER.warning("Could not restart %s: %s", record.name, exc)
            op.add_step("reconcile.start", status="error", detail=f"{record.name}: {exc}")
            return False
        op.add_step("reconcile.start", status="success", detail=f"{record.name}:{pid}")
        return True

    def shutdown(self) -> None:
        """Signal every persisted stone; records and files are left alone."""
        LOGGER.info("Shutting down instances..")
        with self.logger.operation(
            "node shutdown",
            args={"signal": self.shutdown_signal.name},
            target={"kind": "node", "node_id": self.node_id},
        ) as op:
            errors: list[str] = []
            try:
                records = list(self.store.iter_entries())
            except Exception as exc:
                LOGGER.warning("Could not read instance records: %s", exc)
                records = []
                errors.append(str(exc))
            for record in records:
                try:
                    sent = self.supervisor.kill(record, self.shutdown_signal)
                except OSError as exc:
                    LOGGER.warning("Could not signal %s: %s", record.name, exc)
                    errors.append(f"{record.name}: {exc}")
                    continue
                op.add_step(
                    "process.kill",
                    status="success" if sent else "skipped",
                    detail=f"{record.name}:{record.pid}",
                )
            self.provisioner.close()
            if errors:
                op.warning("Shutdown completed with errors.", errors=errors)
            else:
                op.success("Shutdown complete.", changed=len(records))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def announcement(self) -> dict[str, int]:
        """Capacity advertised to the orchestration layer."""
        return {"available_memory": self.ledger.available}

    def provision(self, plan: object) -> dict[str, object]:
        """Create and start a new stone under *plan*."""
        with self.logger.operation(
            "provision",
            args={"plan": str(plan)},
            target={"kind": "instance", "node_id": self.node_id},
        ) as op:
            memory = self.memory_for_plan(plan)
            record = InstanceRecord(
                name=self.generate_name(),
                memory=memory,
                plan=Plan.parse(plan),
                home_path=self.maglev_home,
            )
            LOGGER.debug("provision(): starting %s", record.name)

            with self.locks.mutate_instances([record.name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                remaining = self.ledger.reserve(memory)
                op.add_step("ledger.reserve", detail=f"{memory} (remaining {remaining})")
                try:
                    created = self.provisioner.create(record)
                    op.add_step(
                        "files.create",
                        status="success" if created else "skipped",
                        detail=str(record.extent_file),
                    )
                    record.pid = self.supervisor.start(record)
                    op.add_step("process.start", detail=record.pid)
                    self.store.save(record)
                    op.add_step("registry.save", detail=record.name)
                except Exception:
                    self._rollback_provision(record, op)
                    self.ledger.credit(memory)
                    op.add_step("ledger.credit", detail=memory)
                    raise

            response: dict[str, object] = {
                "hostname": self.local_ip,
                "name": record.name,
                "pid": record.pid,
            }
            op.success("Instance provisioned.", changed=3, context=response)
            LOGGER.debug("provision(): response: %s", response)
            return response

    def unprovision(self, name: str, bindings: object = None) -> None:
        """Tear down the stone *name* and release its memory."""
        with self.logger.operation(
            "unprovision",
            args={"name": name},
            target={"kind": "instance", "name": name},
        ) as op:
            with self.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                record = self.store.get(name)
                if record is None:
                    raise NotFound(f"Could not find service: {name}")
                self._destroy_record(record, op)
                try:
                    self._teardown(record, op)
                finally:
                    remaining = self.ledger.credit(record.memory)
                    op.add_step(
                        "ledger.credit", detail=f"{record.memory} (remaining {remaining})"
                    )
            op.success("Instance unprovisioned.", changed=4)
            LOGGER.debug("Successfully fulfilled unprovision request: %s.", name)

    def bind(self, name: str, bind_opts: Mapping[str, object] | None = None) -> dict[str, str] | None:
        """Return connection details for *name*.

        Unknown names raise :class:`NotFound`; any other failure is logged and
        reported as ``None``.
        """
        LOGGER.debug("Bind request: name=%s, bind_opts=%s", name, bind_opts)
        with self.logger.operation(
            "bind",
            args={"name": name, "bind_opts": dict(bind_opts or {})},
            target={"kind": "instance", "name": name},
        ) as op:
            record = self._lookup_for_binding(name, op)
            if record is None:
                return None
            response = {"hostname": self.local_ip, "stonename": record.name}
            op.success("Bind resolved.", changed=0, context=response)
            return response

    def unbind(self, credentials: Mapping[str, object]) -> None:
        """Release a binding; only checks that the instance exists."""
        name = credentials.get("name") if isinstance(credentials, Mapping) else None
        LOGGER.debug("Unbind request: name=%s", name)
        with self.logger.operation(
            "unbind",
            args={"name": name},
            target={"kind": "instance", "name": name},
        ) as op:
            if self._lookup_for_binding(str(name or ""), op) is not None:
                op.success("Unbind complete.", changed=0)
        return None

    def list_instances(self) -> list[dict[str, object]]:
        """Return the persisted records annotated with process liveness."""
        entries: list[dict[str, object]] = []
        for record in self.store.iter_entries():
            entry = record.to_dict()
            entry["running"] = self.supervisor.is_running(record)
            entries.append(entry)
        return entries

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------
    def cleanup_instance(self, record: InstanceRecord, op: OperationScope | None = None) -> None:
        """Remove the record, kill the stone, destroy its files.

        Steps already completed are not undone when a later one fails.
        """
        LOGGER.debug("Killing %s started with pid %s", record.name, record.pid)
        self._destroy_record(record, op)
        self._teardown(record, op)

    def _destroy_record(self, record: InstanceRecord, op: OperationScope | None) -> None:
        try:
            removed = self.store.destroy(record.name)
        except PersistenceError as exc:
            raise CleanupError(f"Could not cleanup service {record.name}: {exc}") from exc
        _step(op, "registry.destroy", "success" if removed else "skipped", record.name)

    def _teardown(self, record: InstanceRecord, op: OperationScope | None) -> None:
        try:
            killed = self.supervisor.kill(record)
            _step(op, "process.kill", "success" if killed else "skipped", record.pid)
            destroyed = self.provisioner.destroy(record)
            _step(
                op,
                "files.destroy",
                "success" if destroyed.returncode == 0 else "warning",
                f"exit {destroyed.returncode}",
            )
            self.provisioner.remove_working_directory(record)
            _step(op, "files.remove_working_directory", "scheduled", record.name)
        except Exception as exc:
            LOGGER.warning("Cleanup of %s failed: %s", record.name, exc)
            raise CleanupError(f"Could not cleanup service {record.name}: {exc}") from exc

    def _rollback_provision(self, record: InstanceRecord, op: OperationScope) -> None:
        try:
            self.cleanup_instance(record, op)
        except CleanupError as exc:
            LOGGER.warning("Rollback of %s incomplete: %s", record.name, exc)
            op.add_step("rollback", status="error", detail=str(exc))
        else:
            op.add_step("rollback", status="success", detail=record.name)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def memory_for_plan(self, plan: object) -> int:
        """Memory quota for *plan*, bounded by the per-instance ceiling."""
        memory = PLAN_MEMORY[Plan.parse(plan)]
        if memory > self.max_memory:
            raise InvalidPlan(
                f"Plan {Plan.parse(plan).value} needs {memory}, above max_memory {self.max_memory}"
            )
        return memory

    def generate_name(self) -> str:
        """Return a fresh, globally unique instance name."""
        return f"{self.name_prefix}-{uuid.uuid4()}"

    def _lookup_for_binding(self, name: str, op: OperationScope) -> InstanceRecord | None:
        try:
            record = self.store.get(name) if name else None
            if record is None:
                raise NotFound(f"Could not find service: {name}")
        except NotFound as exc:
            if self.bind_errors != "legacy":
                raise
            LOGGER.warning("%s", exc)
            op.warning(str(exc), errors=[str(exc)])
            return None
        except Exception as exc:
            LOGGER.warning("Lookup of %s failed: %s", name, exc)
            op.warning(str(exc), errors=[str(exc)])
            return None
        return record


def _step(op: OperationScope | None, name: str, status: str, detail: object) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


__all__ = ["NAME_PATTERN", "NodeController"]
