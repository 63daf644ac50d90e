"""Tests for the stone process supervisor."""
from __future__ import annotations

import os
import signal
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import pytest

from stonectl.errors import StartupFailed
from stonectl.providers.process import ProcessSupervisor, pid_is_running
from stonectl.state import InstanceRecord, Plan


class FakePopen:
    """Stand-in for ``subprocess.Popen`` recording its invocation."""

    calls: list[dict[str, Any]] = []

    def __init__(self, args: Sequence[str], **kwargs: Any) -> None:
        """Record the call."""
        self.args = list(args)
        self.pid = 999_999
        FakePopen.calls.append({"args": self.args, **kwargs})

    def wait(self, timeout: float | None = None) -> int:
        """Pretend the immediate child exited."""
        return 0


@pytest.fixture(autouse=True)
def _clean_gemstone_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ("GEMSTONE", "GEMSTONE_GLOBAL_DIR"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def maglev_home(tmp_path: Path) -> Path:
    """Create a minimal MagLev installation tree."""
    home = tmp_path / "maglev"
    (home / "gemstone" / "bin").mkdir(parents=True)
    return home


@pytest.fixture
def supervisor(tmp_path: Path) -> ProcessSupervisor:
    """Supervisor rooted in a temporary base directory."""
    return ProcessSupervisor(base_dir=tmp_path / "instances")


def _record(home: Path, *, pid: int | None = None) -> InstanceRecord:
    return InstanceRecord(
        name="maglev-alpha",
        memory=256,
        plan=Plan.FREE,
        home_path=home,
        pid=pid,
    )


def _fake_tools(
    monkeypatch: pytest.MonkeyPatch,
    *,
    gslist_output: str,
    waitstone_rc: int = 0,
) -> list[list[str]]:
    commands: list[list[str]] = []

    def fake_run(
        self: ProcessSupervisor,
        args: Sequence[str],
        *,
        env: Mapping[str, str],
    ) -> subprocess.CompletedProcess[str]:
        commands.append(list(args))
        assert env["GEMSTONE"].endswith("gemstone")
        if Path(args[0]).name == "waitstone":
            return subprocess.CompletedProcess(list(args), waitstone_rc, "", "timed out")
        return subprocess.CompletedProcess(list(args), 0, gslist_output, "")

    monkeypatch.setattr(ProcessSupervisor, "_run_command", fake_run)
    return commands


def test_start_spawns_with_explicit_environment(
    monkeypatch: pytest.MonkeyPatch,
    supervisor: ProcessSupervisor,
    maglev_home: Path,
    tmp_path: Path,
) -> None:
    """startstone receives a per-stone environment; ours is left untouched."""
    FakePopen.calls = []
    monkeypatch.setattr(subprocess, "Popen", FakePopen)
    monkeypatch.delenv("MAGLEV_HOME", raising=False)
    commands = _fake_tools(monkeypatch, gslist_output=f"{os.getpid()}\n")
    record = _record(maglev_home)

    pid = supervisor.start(record)

    assert pid == os.getpid()
    (call,) = FakePopen.calls
    assert call["args"] == [str(maglev_home / "gemstone" / "bin" / "startstone"), record.name]
    assert call["start_new_session"] is True
    env = call["env"]
    assert env["MAGLEV_HOME"] == str(maglev_home)
    assert env["GEMSTONE"] == str(maglev_home / "gemstone")
    assert env["GEMSTONE_GLOBAL_DIR"] == str(maglev_home)
    assert env["GEMSTONE_DATADIR"] == str(maglev_home / "data" / record.name)
    assert env["GEMSTONE_LOG"] == str(maglev_home / "log" / record.name / f"{record.name}.log")
    assert env["GEMSTONE_SYS_CONF"] == str(maglev_home / "etc" / "system.conf")
    assert "MAGLEV_HOME" not in os.environ

    workdir = tmp_path / "instances" / record.name
    assert (workdir / "data").is_dir()
    assert (workdir / "log").exists()
    assert [Path(command[0]).name for command in commands] == ["waitstone", "gslist"]
    assert commands[1][1:] == ["-p", record.name]


def test_start_tolerates_waitstone_failure_when_pid_is_live(
    monkeypatch: pytest.MonkeyPatch,
    supervisor: ProcessSupervisor,
    maglev_home: Path,
) -> None:
    """The pid from gslist is authoritative even if waitstone complains."""
    monkeypatch.setattr(subprocess, "Popen", FakePopen)
    _fake_tools(monkeypatch, gslist_output=str(os.getpid()), waitstone_rc=1)

    assert supervisor.start(_record(maglev_home)) == os.getpid()


@pytest.mark.parametrize("output", ["", "0", "not-a-pid", "-1"])
def test_start_fails_when_gslist_pid_is_bad(
    monkeypatch: pytest.MonkeyPatch,
    supervisor: ProcessSupervisor,
    maglev_home: Path,
    output: str,
) -> None:
    """StartupFailed is raised when no live pid can be confirmed."""
    monkeypatch.setattr(subprocess, "Popen", FakePopen)
    _fake_tools(monkeypatch, gslist_output=output)

    with pytest.raises(StartupFailed, match="bad pid"):
        supervisor.start(_record(maglev_home))


def test_start_requires_gemstone_installation(
    supervisor: ProcessSupervisor,
    tmp_path: Path,
) -> None:
    """A missing $GEMSTONE directory is reported before spawning."""
    with pytest.raises(StartupFailed, match="does not exist"):
        supervisor.start(_record(tmp_path / "nowhere"))


def test_start_reports_missing_startstone(
    monkeypatch: pytest.MonkeyPatch,
    supervisor: ProcessSupervisor,
    maglev_home: Path,
) -> None:
    """Launch errors surface as StartupFailed."""

    def fail_popen(*args: object, **kwargs: object) -> None:
        raise FileNotFoundError("startstone")

    monkeypatch.setattr(subprocess, "Popen", fail_popen)

    with pytest.raises(StartupFailed, match="Failed to launch"):
        supervisor.start(_record(maglev_home))


def test_missing_tool_binary_raises_startup_failed(
    monkeypatch: pytest.MonkeyPatch,
    supervisor: ProcessSupervisor,
    maglev_home: Path,
) -> None:
    """A missing waitstone binary is a startup failure."""

    def fail_run(*args: object, **kwargs: object) -> None:
        raise FileNotFoundError("waitstone")

    monkeypatch.setattr(subprocess, "run", fail_run)

    with pytest.raises(StartupFailed, match="not found"):
        supervisor.wait_for_stone(_record(maglev_home))


def test_custom_gemstone_bin_dir(tmp_path: Path, maglev_home: Path) -> None:
    """An explicit bin directory overrides the installation default."""
    supervisor = ProcessSupervisor(base_dir=tmp_path, gemstone_bin_dir=Path("/usr/gs/bin"))

    assert supervisor.tool_path(_record(maglev_home), "gslist") == Path("/usr/gs/bin/gslist")


def test_is_running_checks_pid(maglev_home: Path, supervisor: ProcessSupervisor) -> None:
    """Liveness follows the recorded pid and never raises."""
    assert supervisor.is_running(_record(maglev_home, pid=os.getpid())) is True
    assert supervisor.is_running(_record(maglev_home, pid=None)) is False
    assert supervisor.is_running(_record(maglev_home, pid=0)) is False


@pytest.mark.parametrize("output", ["", "1\n"])
def test_confirm_running_rejects_reused_pid(
    monkeypatch: pytest.MonkeyPatch,
    supervisor: ProcessSupervisor,
    maglev_home: Path,
    output: str,
) -> None:
    """A live pid that gslist does not report for the stone is not the stone."""
    commands = _fake_tools(monkeypatch, gslist_output=output)

    assert supervisor.confirm_running(_record(maglev_home, pid=os.getpid())) is False
    assert commands == [[str(maglev_home / "gemstone" / "bin" / "gslist"), "-p", "maglev-alpha"]]


def test_confirm_running_accepts_matching_pid(
    monkeypatch: pytest.MonkeyPatch,
    supervisor: ProcessSupervisor,
    maglev_home: Path,
) -> None:
    """The stone counts as running when gslist reports the recorded pid."""
    _fake_tools(monkeypatch, gslist_output=f"{os.getpid()}\n")

    assert supervisor.confirm_running(_record(maglev_home, pid=os.getpid())) is True


def test_confirm_running_skips_gslist_for_dead_pid(
    monkeypatch: pytest.MonkeyPatch,
    supervisor: ProcessSupervisor,
    maglev_home: Path,
) -> None:
    """Without a live pid there is nothing to confirm."""
    commands = _fake_tools(monkeypatch, gslist_output=f"{os.getpid()}\n")

    assert supervisor.confirm_running(_record(maglev_home, pid=None)) is False
    assert commands == []


def test_confirm_running_treats_missing_gslist_as_stopped(
    monkeypatch: pytest.MonkeyPatch,
    supervisor: ProcessSupervisor,
    maglev_home: Path,
) -> None:
    """A gslist that cannot run leaves the stone to be restarted."""

    def fail_run(self: ProcessSupervisor, args: Sequence[str], *, env: Mapping[str, str]) -> None:
        raise StartupFailed(f"{args[0]} not found")

    monkeypatch.setattr(ProcessSupervisor, "_run_command", fail_run)

    assert supervisor.confirm_running(_record(maglev_home, pid=os.getpid())) is False


def test_pid_is_running_handles_lookup_and_permission(monkeypatch: pytest.MonkeyPatch) -> None:
    """Vanished processes are dead; foreign ones are alive."""

    def fake_kill(pid: int, sig: int) -> None:
        if pid == 1:
            raise PermissionError("not ours")
        raise ProcessLookupError(pid)

    monkeypatch.setattr(os, "kill", fake_kill)

    assert pid_is_running(1) is True
    assert pid_is_running(31337) is False


def test_kill_is_noop_when_stopped(
    monkeypatch: pytest.MonkeyPatch,
    maglev_home: Path,
    supervisor: ProcessSupervisor,
) -> None:
    """Killing a stopped stone sends nothing and does not raise."""
    sent: list[tuple[int, int]] = []

    def fake_kill(pid: int, sig: int) -> None:
        if sig == 0:
            raise ProcessLookupError(pid)
        sent.append((pid, sig))

    monkeypatch.setattr(os, "kill", fake_kill)
    record = _record(maglev_home, pid=31337)

    assert supervisor.kill(record) is False
    assert supervisor.kill(record) is False
    assert supervisor.kill(_record(maglev_home, pid=None)) is False
    assert sent == []


def test_kill_signals_running_stone(
    monkeypatch: pytest.MonkeyPatch,
    maglev_home: Path,
    supervisor: ProcessSupervisor,
) -> None:
    """Running stones receive SIGKILL by default or the requested signal."""
    sent: list[tuple[int, int]] = []

    def fake_kill(pid: int, sig: int) -> None:
        if sig != 0:
            sent.append((pid, sig))

    monkeypatch.setattr(os, "kill", fake_kill)
    record = _record(maglev_home, pid=4242)

    assert supervisor.kill(record) is True
    assert supervisor.kill(record, signal.SIGTERM) is True
    assert sent == [(4242, signal.SIGKILL), (4242, signal.SIGTERM)]
