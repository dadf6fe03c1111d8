"""
Utility functions and exception types for Marlin Link.

This module provides the exception taxonomy shared by the engine and
helpers for serial port discovery.
"""

import re

import serial.tools.list_ports

from marlin_link.core.logging import get_logger

logger = get_logger()

# USB vendor ids of the USB-serial bridges commonly found on printer boards
KNOWN_PRINTER_VENDORS: dict[int, str] = {
    0x1A86: "WCH CH340/CH341",
    0x0403: "FTDI",
    0x10C4: "Silicon Labs CP210x",
    0x2341: "Arduino",
    0x0483: "STMicroelectronics",
}


class MarlinLinkError(Exception):
    """Base class for all errors raised by Marlin Link."""

    pass


class SerialDeviceNotFoundError(MarlinLinkError):
    """Raised when the specified USB device cannot be found."""

    pass


class SerialConnectionError(MarlinLinkError):
    """Raised when the connection cannot be opened, validated, or is lost."""

    pass


class WriteError(SerialConnectionError):
    """Raised when writing to an open connection fails mid-session."""

    pass


class DeviceError(MarlinLinkError):
    """Raised when the firmware reports an explicit error line."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BusyTimeoutError(MarlinLinkError):
    """Raised when the printer stays busy past the safety ceiling."""

    pass


class JobStateError(MarlinLinkError):
    """Raised on invalid job lifecycle requests (e.g. a second active job)."""

    pass


def find_serial_port_by_usb_id(usb_id: str) -> str:
    """
    Find the serial port path for a given USB device ID.

    Args:
        usb_id: USB device ID in vendor:product format (e.g., "1a86:7523").

    Returns:
        The serial port path (e.g., "/dev/ttyUSB0" or "COM3").

    Raises:
        SerialDeviceNotFoundError: If no matching device is found.
    """
    try:
        vendor_id, product_id = usb_id.lower().split(":")
        vendor_id_int = int(vendor_id, 16)
        product_id_int = int(product_id, 16)
    except (ValueError, AttributeError) as e:
        raise ValueError(
            f"Invalid USB ID format '{usb_id}'. "
            "Expected format: 'vendor:product' (e.g., '1a86:7523')"
        ) from e

    ports = serial.tools.list_ports.comports()

    for port in ports:
        if port.vid == vendor_id_int and port.pid == product_id_int:
            logger.debug(f"Found device {usb_id} at {port.device}")
            return port.device

    available = [
        f"{p.device} (VID:PID={p.vid:04x}:{p.pid:04x})"
        for p in ports
        if p.vid is not None and p.pid is not None
    ]

    logger.debug(f"Device {usb_id} not found. Available devices: {available}")

    raise SerialDeviceNotFoundError(
        f"USB device with ID '{usb_id}' not found. "
        f"Available USB serial devices: {available or 'none'}"
    )


def find_printer_port() -> str:
    """
    Find the first serial port that looks like a printer board.

    Ports are matched by the USB vendor id of their USB-serial bridge.

    Raises:
        SerialDeviceNotFoundError: If no candidate port is present.
    """
    ports = serial.tools.list_ports.comports()

    for port in ports:
        if port.vid in KNOWN_PRINTER_VENDORS:
            logger.info(
                f"Found {KNOWN_PRINTER_VENDORS[port.vid]} adapter at {port.device}"
            )
            return port.device

    raise SerialDeviceNotFoundError(
        "No USB-serial printer adapter found. "
        f"Available ports: {[p.device for p in ports] or 'none'}"
    )


def resolve_port(usb_id: str | None = None, dev_path: str | None = None) -> str:
    """
    Resolve the serial port to open.

    An explicit device path wins over a USB id; with neither, the port is
    auto-detected from the known adapter vendors.
    """
    if dev_path:
        return dev_path
    if usb_id:
        return find_serial_port_by_usb_id(usb_id)
    return find_printer_port()


_INLINE_COMMENT_RE = re.compile(r";.*$")


def normalize_command(text: str) -> str:
    """
    Normalize a command line for the wire: strip inline comments and
    surrounding whitespace, then upper-case.

    Example:
        >>> normalize_command("g1 x10 ; move")
        "G1 X10"
    """
    return _INLINE_COMMENT_RE.sub("", text).strip().upper()


def is_program_line(line: str) -> bool:
    """Check whether a program line carries a command (not blank, not a comment)."""
    stripped = line.strip()
    return bool(stripped) and not stripped.startswith((";", "#"))
