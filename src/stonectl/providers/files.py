"""Filesystem provisioner for stone repositories and working directories."""
from __future__ import annotations

import concurrent.futures
import logging
import os
import shutil
import subprocess
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import ProvisionFilesFailed
from ..state.records import InstanceRecord

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class CleanupOutcome:
    """Result of an asynchronous working-directory removal."""

    name: str
    path: Path
    removed: bool
    error: str | None = None


@dataclass(slots=True)
class FilesystemProvisioner:
    """Create and destroy the on-disk artefacts of a stone.

    Repository files live inside the MagLev installation and are managed by
    its ``rake stone:*`` tasks. The node-local working directory under
    *base_dir* is removed off the request path on a small thread pool.
    """

    base_dir: Path
    rake_bin: str = "rake"
    max_workers: int = 2
    _executor: concurrent.futures.ThreadPoolExecutor | None = field(
        default=None, init=False, repr=False
    )
    _pending: set[concurrent.futures.Future[CleanupOutcome]] = field(
        default_factory=set, init=False, repr=False
    )
    _guard: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def create(self, record: InstanceRecord) -> bool:
        """Ensure the stone's config and extent exist; returns whether rake ran."""
        if record.config_file.exists() or record.extent_file.exists():
            return False
        result = self._rake(record, f"stone:create[{record.name}]")
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip() or "no output"
            LOGGER.warning("stone:create for %s exited %s: %s", record.name, result.returncode, message)
        if not record.extent_file.exists():
            raise ProvisionFilesFailed(f"Failed to create stone dbf for {record.name}")
        return True

    def destroy(self, record: InstanceRecord) -> subprocess.CompletedProcess[str]:
        """Remove the stone's repository; the outcome is logged, not verified."""
        result = self._rake(record, f"stone:destroy[{record.name}]")
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip() or "no output"
            LOGGER.warning("stone:destroy for %s exited %s: %s", record.name, result.returncode, message)
        return result

    def working_directory(self, record: InstanceRecord) -> Path:
        """Node-local directory for *record*."""
        return self.base_dir / record.name

    def remove_working_directory(
        self,
        record: InstanceRecord,
    ) -> concurrent.futures.Future[CleanupOutcome]:
        """Schedule deletion of the node-local working directory."""
        path = self.working_directory(record)
        with self._guard:
            if self._executor is None:
                self._executor = concurrent.futures.ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix="stonectl-cleanup",
                )
            future = self._executor.submit(_remove_tree, record.name, path)
            self._pending.add(future)
        future.add_done_callback(self._on_removed)
        return future

    def pending(self) -> int:
        """Number of removals not yet finished."""
        with self._guard:
            return len(self._pending)

    def wait(self, timeout: float | None = None) -> list[CleanupOutcome]:
        """Wait for scheduled removals and return their outcomes."""
        with self._guard:
            futures = list(self._pending)
        done, _ = concurrent.futures.wait(futures, timeout=timeout)
        return [future.result() for future in done]

    def close(self) -> None:
        """Finish outstanding removals and stop the worker threads."""
        with self._guard:
            executor = self._executor
            self._executor = None
        if executor is not None:
            executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    def _on_removed(self, future: concurrent.futures.Future[CleanupOutcome]) -> None:
        with self._guard:
            self._pending.discard(future)
        outcome = future.result()
        if outcome.error:
            LOGGER.warning("Failed to remove %s for %s: %s", outcome.path, outcome.name, outcome.error)
        else:
            LOGGER.debug("Removed working directory %s for %s", outcome.path, outcome.name)

    def _rake(self, record: InstanceRecord, task: str) -> subprocess.CompletedProcess[str]:
        env = dict(os.environ)
        env["MAGLEV_HOME"] = str(record.home_path)
        return self._run_command([self.rake_bin, task], cwd=record.home_path, env=env)

    def _run_command(
        self,
        args: Sequence[str],
        *,
        cwd: Path,
        env: dict[str, str],
    ) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(  # noqa: S603, S607
                list(args),
                cwd=str(cwd),
                env=env,
                capture_output=True,
                text=True,
                check=False,
            )
        except (FileNotFoundError, NotADirectoryError) as exc:
            raise ProvisionFilesFailed(f"{args[0]} failed to run in {cwd}: {exc}") from exc


def _remove_tree(name: str, path: Path) -> CleanupOutcome:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return CleanupOutcome(name=name, path=path, removed=False)
    except OSError as exc:
        return CleanupOutcome(name=name, path=path, removed=False, error=str(exc))
    return CleanupOutcome(name=name, path=path, removed=True)


__all__ = ["CleanupOutcome", "FilesystemProvisioner"]
