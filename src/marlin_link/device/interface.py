"""
Serial Protocol Interface - line-based serial communication with Marlin printers.

This module provides the SerialLineProtocol class for handling low-level
serial communication using asyncio: decoding the incoming byte stream into
lines and writing terminated command lines.
"""

import asyncio
import codecs
from typing import cast

import serial

from marlin_link.core.logging import get_logger
from marlin_link.core.utils import WriteError

logger = get_logger()

LINE_TERMINATOR = "\r\n"
MAX_LINE_QUEUE_SIZE = 1000  # serial input lines


class LineDecoder:
    """
    Incremental newline splitter.

    Keeps the unterminated tail of the stream between feeds, so a line split
    across any number of reads is emitted exactly once, without its LF and
    trailing CR.
    """

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> list[str]:
        # Multi-byte characters may also straddle reads
        text = self._decoder.decode(data)
        if not text:
            return []

        parts = (self._buffer + text).split("\n")
        # Last element is the incomplete carry-over (empty if data ended on LF)
        self._buffer = parts.pop()

        return [part.rstrip("\r") for part in parts]

    @property
    def pending(self) -> str:
        return self._buffer

    def reset(self) -> None:
        self._decoder.reset()
        self._buffer = ""


class SerialLineProtocol(asyncio.Protocol):
    """
    asyncio.Protocol implementation for serial communication with Marlin.

    Complete lines are pushed onto `line_queue`. When the connection goes
    away, `closed` is resolved with the exception that caused it (or None for
    a clean close) and `CONNECTION_LOST` is queued so readers wake up.
    """

    CONNECTION_LOST = None

    def __init__(self, line_queue: "asyncio.Queue[str | None] | None" = None):
        """
        Initialize the protocol.

        Args:
            line_queue: Queue receiving decoded lines. One is created if not given.
        """
        self.line_queue: asyncio.Queue[str | None] = (
            line_queue if line_queue is not None else asyncio.Queue(maxsize=MAX_LINE_QUEUE_SIZE)
        )
        self.transport: asyncio.Transport | None = None
        self._decoder = LineDecoder()
        loop = asyncio.get_running_loop()
        self.closed: asyncio.Future[Exception | None] = loop.create_future()
        self.first_line: asyncio.Future[str] = loop.create_future()

    @property
    def is_open(self) -> bool:
        return self.transport is not None and not self.closed.done()

    def connection_made(self, transport) -> None:
        """Called when the connection is established."""
        self.transport = cast(asyncio.Transport, transport)
        logger.debug("Serial connection established")

    def connection_lost(self, exc: Exception | None) -> None:
        """Called when the connection is lost."""
        if exc:
            logger.warning(f"Serial connection lost: {exc}")
        else:
            logger.debug("Serial connection closed")
        self.transport = None

        if not self.closed.done():
            self.closed.set_result(exc)
        self._enqueue(self.CONNECTION_LOST)

    def data_received(self, data: bytes) -> None:
        """
        Called when data is received from the serial device.

        Args:
            data: Raw bytes received from the serial device.
        """
        logger.verbose(f"Raw serial data received: {data!r}")

        for line in self._decoder.feed(data):
            if not line.strip():
                continue
            if not self.first_line.done():
                self.first_line.set_result(line)
            self._enqueue(line)

    def _enqueue(self, item: str | None) -> None:
        try:
            self.line_queue.put_nowait(item)
        except asyncio.QueueFull:
            # Drop the oldest line rather than the newest
            self.line_queue.get_nowait()
            self.line_queue.put_nowait(item)
            logger.warning("Serial input queue full, dropped oldest line")

    def write_line(self, text: str) -> str:
        """
        Write one command line to the device.

        The text is upper-cased and terminated with CR+LF.

        Returns:
            The line as written, without the terminator.

        Raises:
            WriteError: If the transport is gone or the write fails.
        """
        if not self.is_open or self.transport is None:
            raise WriteError("Cannot write: serial connection is not open")

        line = text.strip().upper()
        try:
            self.transport.write((line + LINE_TERMINATOR).encode("utf-8"))
        except (OSError, serial.SerialException) as e:
            raise WriteError(f"Failed to write {line!r}: {e}") from e

        logger.verbose(f"Raw serial data sent: {line + LINE_TERMINATOR!r}")
        return line

    def close(self) -> None:
        """Close the serial connection."""
        if self.transport:
            self.transport.close()
