"""Process supervisor for GemStone stone workers."""
from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import StartupFailed
from ..state.records import InstanceRecord

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ProcessSupervisor:
    """Start, check and signal the ``stoned`` process of an instance.

    ``startstone`` daemonises the real stone, so the pid of the spawned child
    is not the pid we supervise. After ``waitstone`` reports readiness the
    authoritative pid is read back from ``gslist``.
    """

    base_dir: Path
    gemstone_bin_dir: Path | None = None

    def working_directory(self, record: InstanceRecord) -> Path:
        """Node-local directory holding the instance's log and scratch data."""
        return self.base_dir / record.name

    def start(self, record: InstanceRecord) -> int:
        """Launch the stone for *record* and return the confirmed pid."""
        self._check_gemstone(record)
        workdir = self.working_directory(record)
        try:
            (workdir / "data").mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StartupFailed(f"Cannot prepare {workdir}: {exc}") from exc

        command = [str(self.tool_path(record, "startstone")), record.name]
        LOGGER.debug("Starting stone %s: %s", record.name, " ".join(command))
        try:
            with (workdir / "log").open("ab") as log_handle:
                process = subprocess.Popen(  # noqa: S603
                    command,
                    env=self.worker_environment(record),
                    cwd=str(workdir),
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as exc:
            raise StartupFailed(f"Failed to launch stone {record.name}: {exc}") from exc

        self._detach(process, record.name)
        pid = self.wait_for_stone(record)
        LOGGER.debug("Stone %s started with pid %s", record.name, pid)
        return pid

    def wait_for_stone(self, record: InstanceRecord) -> int:
        """Block until ``waitstone`` returns, then resolve the pid via ``gslist``."""
        env = self.gemstone_environment(record)
        waited = self._run_command(
            [str(self.tool_path(record, "waitstone")), record.name],
            env=env,
        )
        if waited.returncode != 0:
            message = (waited.stderr or waited.stdout or "").strip() or "no output"
            LOGGER.warning(
                "waitstone %s exited %s: %s", record.name, waited.returncode, message
            )

        pid = self._gslist_pid(record, env)
        if not pid_is_running(pid):
            raise StartupFailed(f"gslist returned bad pid {pid} for {record.name}")
        return pid

    def is_running(self, record: InstanceRecord) -> bool:
        """Return whether the recorded pid refers to a live process."""
        return pid_is_running(record.pid)

    def confirm_running(self, record: InstanceRecord) -> bool:
        """Return whether the recorded pid is the stone ``gslist`` reports.

        A live pid alone is not enough: after a host restart it may belong to
        an unrelated process.
        """
        if not self.is_running(record):
            return False
        try:
            pid = self._gslist_pid(record, self.gemstone_environment(record))
        except StartupFailed as exc:
            LOGGER.warning("Cannot confirm stone %s: %s", record.name, exc)
            return False
        return pid == record.pid

    def kill(self, record: InstanceRecord, sig: int = signal.SIGKILL) -> bool:
        """Send *sig* to the stone if it is running; returns whether a signal was sent."""
        pid = record.pid
        if pid is None or not self.is_running(record):
            return False
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return False
        LOGGER.debug("Sent signal %s to %s (pid %s)", int(sig), record.name, pid)
        return True

    # ------------------------------------------------------------------
    def tool_path(self, record: InstanceRecord, tool: str) -> Path:
        """Return the path of a GemStone binary for *record*'s installation."""
        bin_dir = self.gemstone_bin_dir or (record.home_path / "gemstone" / "bin")
        return bin_dir / tool

    def gemstone_environment(self, record: InstanceRecord) -> dict[str, str]:
        """Environment for node-wide GemStone tools (``waitstone``, ``gslist``)."""
        env = dict(os.environ)
        env.setdefault("GEMSTONE", str(record.home_path / "gemstone"))
        env.setdefault("GEMSTONE_GLOBAL_DIR", str(record.home_path))
        return env

    def worker_environment(self, record: InstanceRecord) -> dict[str, str]:
        """Full per-stone environment handed to ``startstone``."""
        home = record.home_path
        log_dir = home / "log" / record.name
        env = dict(os.environ)
        env.update(
            {
                "MAGLEV_HOME": str(home),
                "GEMSTONE": str(home / "gemstone"),
                "GEMSTONE_GLOBAL_DIR": str(home),
                "GEMSTONE_LOGDIR": str(log_dir),
                "GEMSTONE_LOG": str(log_dir / f"{record.name}.log"),
                "GEMSTONE_DATADIR": str(record.data_dir),
                "GEMSTONE_SYS_CONF": str(home / "etc" / "system.conf"),
            }
        )
        return env

    def _check_gemstone(self, record: InstanceRecord) -> None:
        env = self.gemstone_environment(record)
        for key in ("GEMSTONE_GLOBAL_DIR", "GEMSTONE"):
            if not Path(env[key]).exists():
                raise StartupFailed(f"${key} does not exist: {env[key]!r}")

    def _gslist_pid(self, record: InstanceRecord, env: Mapping[str, str]) -> int:
        listed = self._run_command(
            [str(self.tool_path(record, "gslist")), "-p", record.name],
            env=env,
        )
        return _parse_pid(listed.stdout)

    def _detach(self, process: subprocess.Popen[bytes], name: str) -> None:
        reaper = threading.Thread(
            target=process.wait,
            name=f"reap-{name}",
            daemon=True,
        )
        reaper.start()

    def _run_command(
        self,
        args: Sequence[str],
        *,
        env: Mapping[str, str],
    ) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
                env=dict(env),
            )
        except FileNotFoundError as exc:
            raise StartupFailed(f"{args[0]} not found: {exc}") from exc


def pid_is_running(pid: int | None) -> bool:
    """Return ``True`` when *pid* names a live process."""
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _parse_pid(output: str | None) -> int:
    text = (output or "").strip().splitlines()
    if not text:
        return 0
    try:
        return int(text[0].strip())
    except ValueError:
        return 0


__all__ = ["ProcessSupervisor", "pid_is_running"]
