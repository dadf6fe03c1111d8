"""
Core package - Contains core utilities and infrastructure.

This package provides:
- Config: Configuration loading and management
- Logging: VERBOSE level and communication file logger
- Utils: Exception taxonomy and serial port discovery
- CommLog: Bounded diagnostic log ring
- Events: Subscription bus for published engine state
- Task: Command, AckResult and ExecutionJob records
"""

from .comm_log import LogDirection, LogEntry, LogRing
from .config import Config
from .events import EVENT_NAMES, EventBus
from .task import (
    AckResult,
    AckStatus,
    CancelToken,
    Command,
    ExecutionJob,
    JobResult,
    JobStatus,
)
from .utils import (
    BusyTimeoutError,
    DeviceError,
    JobStateError,
    MarlinLinkError,
    SerialConnectionError,
    SerialDeviceNotFoundError,
    WriteError,
    find_serial_port_by_usb_id,
    resolve_port,
)

__all__ = [
    "LogDirection",
    "LogEntry",
    "LogRing",
    "Config",
    "EVENT_NAMES",
    "EventBus",
    "AckResult",
    "AckStatus",
    "CancelToken",
    "Command",
    "ExecutionJob",
    "JobResult",
    "JobStatus",
    "BusyTimeoutError",
    "DeviceError",
    "JobStateError",
    "MarlinLinkError",
    "SerialConnectionError",
    "SerialDeviceNotFoundError",
    "WriteError",
    "find_serial_port_by_usb_id",
    "resolve_port",
]
