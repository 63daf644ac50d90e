"""State registry and instance record persistence."""
from __future__ import annotations

from .records import PLAN_MEMORY, InstanceRecord, InstanceStore, Plan, memory_for_plan
from .registry import StateRegistry, StateRegistryError

__all__ = [
    "InstanceRecord",
    "InstanceStore",
    "PLAN_MEMORY",
    "Plan",
    "StateRegistry",
    "StateRegistryError",
    "memory_for_plan",
]
