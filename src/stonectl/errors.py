"""Exception taxonomy shared by the node controller and its providers."""
from __future__ import annotations

from .exit_codes import ExitCode


class NodeError(RuntimeError):
    """Base class for failures surfaced by node operations."""

    exit_code: ExitCode = ExitCode.PROVIDER


class InvalidPlan(NodeError):
    """Raised when a provision request names an unknown service plan."""

    exit_code = ExitCode.VALIDATION


class NotFound(NodeError):
    """Raised when an instance name has no persisted record."""

    exit_code = ExitCode.VALIDATION


class InsufficientMemory(NodeError):
    """Raised when the memory ledger cannot cover a reservation."""

    exit_code = ExitCode.ENVIRONMENT


class StartupFailed(NodeError):
    """Raised when a stone process does not reach a verifiable running state."""


class ProvisionFilesFailed(NodeError):
    """Raised when the stone build tooling fails to produce its data files."""


class PersistenceError(NodeError):
    """Raised when an instance record cannot be saved or destroyed."""


class CleanupError(NodeError):
    """Raised when rollback of an instance fails part way."""


__all__ = [
    "CleanupError",
    "InsufficientMemory",
    "InvalidPlan",
    "NodeError",
    "NotFound",
    "PersistenceError",
    "ProvisionFilesFailed",
    "StartupFailed",
]
