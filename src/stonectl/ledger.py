"""In-memory accounting of the memory a node can still hand out."""
from __future__ import annotations

import threading
from collections.abc import Iterable

from .errors import InsufficientMemory


class MemoryLedger:
    """Remaining allocatable memory, serialised behind a lock.

    Reservations that would drive the balance negative are refused.
    """

    def __init__(self, total: int) -> None:
        """Start with *total* memory available."""
        if total < 0:
            raise ValueError("Ledger total must be non-negative.")
        self._lock = threading.Lock()
        self._total = total
        self._available = total

    @property
    def total(self) -> int:
        """Configured capacity of the node."""
        return self._total

    @property
    def available(self) -> int:
        """Memory not currently reserved."""
        with self._lock:
            return self._available

    def reserve(self, amount: int) -> int:
        """Subtract *amount*, returning the new balance."""
        _check_amount(amount)
        with self._lock:
            if amount > self._available:
                raise InsufficientMemory(
                    f"Cannot reserve {amount}; only {self._available} available."
                )
            self._available -= amount
            return self._available

    def credit(self, amount: int) -> int:
        """Give *amount* back, returning the new balance."""
        _check_amount(amount)
        with self._lock:
            self._available += amount
            return self._available

    def reset(self, committed: Iterable[int] = ()) -> int:
        """Recompute the balance as total minus the *committed* reservations."""
        used = sum(committed)
        with self._lock:
            self._available = self._total - used
            return self._available


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"Ledger amounts must be positive integers, got {amount!r}.")


__all__ = ["MemoryLedger"]
