"""
Device package - Contains the serial communication engine.

This package provides:
- MarlinPrinter: Engine facade owning one printer connection
- PortSession: Serial port ownership and baud negotiation
- SerialLineProtocol: asyncio.Protocol decoding the serial byte stream into lines
- CommandChannel: Single-writer gate with acknowledgment correlation
- ProgramStreamer: Multi-line program streaming as tracked jobs
- classify: Response line classification
- SimulatedPrinter: In-process Marlin double for dry runs and tests
"""

from .channel import AckWaiter, CommandChannel, DeviceActivity
from .classifier import EventKind, ResponseEvent, classify
from .interface import LineDecoder, SerialLineProtocol
from .printer import MarlinPrinter
from .session import ConnectionStatus, PortSession, open_serial_connection
from .simulator import ScriptedReply, SimulatedPrinter
from .streamer import ProgramStreamer, StreamOptions

__all__ = [
    "AckWaiter",
    "CommandChannel",
    "DeviceActivity",
    "EventKind",
    "ResponseEvent",
    "classify",
    "LineDecoder",
    "SerialLineProtocol",
    "MarlinPrinter",
    "ConnectionStatus",
    "PortSession",
    "open_serial_connection",
    "ScriptedReply",
    "SimulatedPrinter",
    "ProgramStreamer",
    "StreamOptions",
]
