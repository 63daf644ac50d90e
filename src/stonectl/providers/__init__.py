"""Provider interfaces for stonectl."""
from __future__ import annotations

from .files import CleanupOutcome, FilesystemProvisioner
from .process import ProcessSupervisor, pid_is_running

__all__ = [
    "CleanupOutcome",
    "FilesystemProvisioner",
    "ProcessSupervisor",
    "pid_is_running",
]
