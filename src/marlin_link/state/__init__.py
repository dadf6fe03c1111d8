"""
State package - Structured printer state published by the engine.

This package provides:
- TelemetryAggregator: Current temperatures/position and sample history
- BedMeshAssembler: Dense bed mesh rebuilt from reported fragments
- SettingsSnapshot: Structured record parsed from a settings dump
"""

from .bed_mesh import BedMesh, BedMeshAssembler, GridSize, MeshPoint, MeshState
from .settings import SETTINGS_PREFIXES, SettingsSnapshot, parse_settings_dump
from .telemetry import (
    HeaterReading,
    Position,
    TelemetryAggregator,
    TelemetrySample,
    TelemetrySnapshot,
    TemperatureReport,
)

__all__ = [
    "BedMesh",
    "BedMeshAssembler",
    "GridSize",
    "MeshPoint",
    "MeshState",
    "SETTINGS_PREFIXES",
    "SettingsSnapshot",
    "parse_settings_dump",
    "HeaterReading",
    "Position",
    "TelemetryAggregator",
    "TelemetrySample",
    "TelemetrySnapshot",
    "TemperatureReport",
]
