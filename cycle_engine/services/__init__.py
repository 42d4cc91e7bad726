# cycle_engine/services/__init__.py
"""Services package for the cycle engine."""

from .engine import CycleEngine

__all__ = ["CycleEngine"]
