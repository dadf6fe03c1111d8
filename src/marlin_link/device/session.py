"""
Port session - ownership of the physical serial connection.

A PortSession opens the port with fixed 8N1 framing and no flow control,
negotiates a baud rate from a candidate list and validates each attempt by
waiting for the printer to say something. Only one connection is held at a
time; every new attempt tears the previous one down first.
"""

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import serial
import serial_asyncio

from marlin_link.core.comm_log import LogDirection, LogRing
from marlin_link.core.logging import get_logger
from marlin_link.core.utils import SerialConnectionError, WriteError
from marlin_link.device.interface import SerialLineProtocol

logger = get_logger()

DEFAULT_HANDSHAKE_TIMEOUT = 2.0  # s
DEFAULT_OPEN_SETTLE_DELAY = 0.5  # s
CLOSE_TIMEOUT = 1.0  # s
HANDSHAKE_PROBE = "M115"

ConnectionFactory = Callable[..., Awaitable[tuple[Any, SerialLineProtocol]]]


class ConnectionStatus(str, Enum):
    """Lifecycle states of the serial connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"

    def __str__(self) -> str:
        return self.value


async def open_serial_connection(
    loop: asyncio.AbstractEventLoop,
    protocol_factory: Callable[[], SerialLineProtocol],
    port: str,
    baudrate: int,
) -> tuple[Any, SerialLineProtocol]:
    """Open a real serial port with 8N1 framing and no flow control."""
    return await serial_asyncio.create_serial_connection(
        loop,
        protocol_factory,
        port,
        baudrate=baudrate,
        bytesize=serial.EIGHTBITS,
        parity=serial.PARITY_NONE,
        stopbits=serial.STOPBITS_ONE,
        xonxoff=False,
        rtscts=False,
    )


class PortSession:
    """
    Owner of one serial port and its protocol.

    Args:
        port: Serial device path (e.g. /dev/ttyUSB0).
        connection_factory: Coroutine opening the port; replaced by the
            simulator for dry runs and tests.
        handshake_timeout: Seconds to wait for the first line per baud rate.
        open_settle_delay: Seconds to let the boot output finish after a
            successful handshake.
        log_ring: Diagnostic log for session notices and the probe write.
    """

    def __init__(
        self,
        port: str,
        connection_factory: ConnectionFactory = open_serial_connection,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        open_settle_delay: float = DEFAULT_OPEN_SETTLE_DELAY,
        log_ring: LogRing | None = None,
    ):
        self.port = port
        self.connection_factory = connection_factory
        self.handshake_timeout = handshake_timeout
        self.open_settle_delay = open_settle_delay
        self.log_ring = log_ring

        self.status = ConnectionStatus.DISCONNECTED
        self.baud_rate: int | None = None
        self.protocol: SerialLineProtocol | None = None

    @property
    def is_connected(self) -> bool:
        return (
            self.status == ConnectionStatus.CONNECTED
            and self.protocol is not None
            and self.protocol.is_open
        )

    def _log(self, direction: LogDirection, text: str) -> None:
        if self.log_ring is not None:
            self.log_ring.append(direction, text)

    async def connect(self, baud_rates: list[int]) -> SerialLineProtocol:
        """
        Open the port, trying each baud rate in order.

        Returns:
            The open, validated protocol.

        Raises:
            SerialConnectionError: If no candidate baud rate works; chained to
                the last underlying failure.
        """
        if not baud_rates:
            raise SerialConnectionError("No baud rates to try")

        self.status = ConnectionStatus.CONNECTING
        last_error: Exception | None = None

        for baud in baud_rates:
            await self.close()
            self.status = ConnectionStatus.CONNECTING
            self._log(LogDirection.SYS, f"Trying {self.port} at {baud} baud")

            try:
                protocol = await self._open(baud)
            except (OSError, serial.SerialException, SerialConnectionError) as e:
                logger.debug(f"Failed to open {self.port} at {baud} baud: {e}")
                self._log(LogDirection.ERR, f"Open failed at {baud} baud: {e}")
                last_error = e
                continue

            self.protocol = protocol
            try:
                await self._handshake(protocol)
            except SerialConnectionError as e:
                logger.debug(f"No response from {self.port} at {baud} baud: {e}")
                self._log(LogDirection.ERR, f"No response at {baud} baud")
                last_error = e
                continue

            self.baud_rate = baud
            self.status = ConnectionStatus.CONNECTED
            logger.info(f"Connected to {self.port} at {baud} baud")
            self._log(LogDirection.SYS, f"Connected at {baud} baud")

            if self.open_settle_delay > 0:
                await asyncio.sleep(self.open_settle_delay)
            return protocol

        await self.close()
        raise SerialConnectionError(
            f"Could not connect to {self.port} at any of {baud_rates} baud"
        ) from last_error

    async def _open(self, baud: int) -> SerialLineProtocol:
        loop = asyncio.get_running_loop()
        _, protocol = await self.connection_factory(
            loop,
            SerialLineProtocol,
            self.port,
            baud,
        )
        return protocol

    async def _handshake(self, protocol: SerialLineProtocol) -> None:
        """
        Wait for any line from the printer.

        Boards that reset on open announce themselves; boards that do not are
        probed with M115 once half the window has passed in silence.

        Raises:
            SerialConnectionError: If the window passes without a line or the
                port closes.
        """
        half = self.handshake_timeout / 2
        waiting: set[asyncio.Future] = {protocol.first_line, protocol.closed}

        done, _ = await asyncio.wait(waiting, timeout=half, return_when=asyncio.FIRST_COMPLETED)
        if not done:
            try:
                protocol.write_line(HANDSHAKE_PROBE)
                self._log(LogDirection.TX, HANDSHAKE_PROBE)
            except WriteError as e:
                raise SerialConnectionError(f"Handshake probe failed: {e}") from e
            done, _ = await asyncio.wait(
                waiting, timeout=self.handshake_timeout - half, return_when=asyncio.FIRST_COMPLETED
            )

        if protocol.first_line.done():
            logger.debug(f"Handshake line: {protocol.first_line.result()!r}")
            return
        if protocol.closed.done():
            raise SerialConnectionError(f"Port closed during handshake: {protocol.closed.result()}")
        raise SerialConnectionError(f"No response within {self.handshake_timeout}s")

    async def close(self) -> None:
        """Close the port if open. Safe to call repeatedly."""
        protocol = self.protocol
        self.protocol = None
        self.baud_rate = None
        self.status = ConnectionStatus.DISCONNECTED

        if protocol is None:
            return

        try:
            protocol.close()
        except (OSError, serial.SerialException) as e:
            logger.warning(f"Error closing serial connection: {e}")
            return

        try:
            await asyncio.wait_for(asyncio.shield(protocol.closed), timeout=CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"Serial port {self.port} did not confirm close")
