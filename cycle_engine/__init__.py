# cycle_engine/__init__.py
"""Cycle Engine - per-tenant cycle scheduling and telemetry snapshots."""

__version__ = "1.0.0"
__title__ = "Cycle Engine"
__description__ = "Schedule per-tenant collection cycles and keep ESI telemetry snapshots"
