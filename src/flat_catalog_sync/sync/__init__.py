"""Sync engine module."""

from .availability import FieldAvailabilityIndex, PriorityDecision, build_field_availability
from .engine import SyncEngine

__all__ = ["SyncEngine", "FieldAvailabilityIndex", "PriorityDecision", "build_field_availability"]
