"""Marlin Link - Serial communication engine for Marlin 3D printers."""

__version__ = "0.1.0"

from .core import (
    AckResult,
    AckStatus,
    BusyTimeoutError,
    Config,
    DeviceError,
    ExecutionJob,
    JobStateError,
    JobStatus,
    MarlinLinkError,
    SerialConnectionError,
    SerialDeviceNotFoundError,
    WriteError,
)
from .device import ConnectionStatus, MarlinPrinter, SimulatedPrinter
from .state import BedMesh, SettingsSnapshot, TelemetrySnapshot

__all__ = [
    "AckResult",
    "AckStatus",
    "BusyTimeoutError",
    "Config",
    "DeviceError",
    "ExecutionJob",
    "JobStateError",
    "JobStatus",
    "MarlinLinkError",
    "SerialConnectionError",
    "SerialDeviceNotFoundError",
    "WriteError",
    "ConnectionStatus",
    "MarlinPrinter",
    "SimulatedPrinter",
    "BedMesh",
    "SettingsSnapshot",
    "TelemetrySnapshot",
    "__version__",
]
