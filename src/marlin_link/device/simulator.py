"""
Simulated printer - Marlin device double for dry runs and tests.

This module provides SimulatedPrinter, an in-process stand-in for a printer
on the other end of the serial link. It plugs into PortSession through
`connection_factory()` and answers commands the way Marlin does: `ok` after
every line, canned replies for the common reporting commands, and scriptable
busy cycles, errors and silence. Replies can be split into arbitrary read
chunks to exercise line reassembly.
"""

import asyncio
import re
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from marlin_link.core.logging import get_logger
from marlin_link.device.interface import SerialLineProtocol

logger = get_logger()

DEFAULT_FIRMWARE_NAME = "Marlin 2.1.2.1 (Jun 1 2023 12:00:00)"
DEFAULT_MESH = [
    [0.100, 0.050, -0.020, -0.050, -0.080],
    [0.060, 0.020, -0.010, -0.060, -0.100],
    [0.030, 0.000, -0.040, -0.090, -0.130],
    [0.010, -0.030, -0.070, -0.120, -0.170],
    [-0.010, -0.050, -0.100, -0.150, -0.210],
]
DEFAULT_SETTINGS_DUMP = [
    "echo:; Steps per unit:",
    "echo:  M92 X80.00 Y80.00 Z400.00 E93.00",
    "echo:; Max feedrates (units/s):",
    "echo:  M203 X500.00 Y500.00 Z5.00 E25.00",
    "echo:; Max Acceleration (units/s2):",
    "echo:  M201 X500.00 Y500.00 Z100.00 E5000.00",
    "echo:; Acceleration (units/s2) (P<print-accel> R<retract-accel> T<travel-accel>):",
    "echo:  M204 P500.00 R500.00 T500.00",
    "echo:; Advanced (B<min_segment_time_us> S<min_feedrate> T<min_travel_feedrate> J<junc_dev>):",
    "echo:  M205 B20000.00 S0.00 T0.00 X10.00 Y10.00 Z0.30 E5.00",
    "echo:; Home offset:",
    "echo:  M206 X0.00 Y0.00 Z0.00",
    "echo:; Auto Bed Leveling:",
    "echo:  M420 S1 Z10.00",
    "echo:; Material heatup parameters:",
    "echo:  M145 S0 H200.00 B60.00 F0",
    "echo:  M145 S1 H240.00 B110.00 F0",
    "echo:; Hotend PID:",
    "echo:  M301 P21.73 I1.54 D73.76",
    "echo:; Bed PID:",
    "echo:  M304 P301.25 I24.20 D73.76",
    "echo:; Power-loss recovery:",
    "echo:  M413 S1",
    "echo:; Z-Probe Offset:",
    "echo:  M851 X-36.00 Y-8.00 Z-1.50",
    "echo:; Linear Advance:",
    "echo:  M900 K0.00",
    "echo:; Filament load/unload:",
    "echo:  M603 L400.00 U420.00",
]

_PARAM_RE = re.compile(r"([A-Z])(-?\d+\.?\d*)")


@dataclass
class ScriptedReply:
    """
    Behaviour override for one command.

    Attributes:
        busy: Number of `busy: processing` reports before the reply.
        wait_for_user: Number of `paused for user` reports before the reply.
        error: If set, reply with `Error:<error>` (followed by `ok`).
        silent: Send no reply at all.
        lines: Extra lines sent before the final `ok`.
    """

    busy: int = 0
    wait_for_user: int = 0
    error: str | None = None
    silent: bool = False
    lines: list[str] = field(default_factory=list)


class SimulatedTransport(asyncio.Transport):
    """Transport handing host writes to the simulator."""

    def __init__(self, printer: "SimulatedPrinter", protocol: SerialLineProtocol):
        super().__init__()
        self._printer = printer
        self._protocol = protocol
        self._closing = False

    def write(self, data: bytes) -> None:
        if self._closing:
            raise OSError("write on closed simulated port")
        self._printer._receive(data)

    def is_closing(self) -> bool:
        return self._closing

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        self._printer._on_transport_closed(self)
        asyncio.get_running_loop().call_soon(self._protocol.connection_lost, None)

    def abort(self) -> None:
        self.close()


class SimulatedPrinter:
    """
    In-process Marlin printer.

    Args:
        baud_rates: Baud rates the board answers at; None accepts any.
        boot_banner: Announce `start` on open, like a board that resets.
        chunk_size: Split every reply into reads of this many bytes.
        reply_delay: Seconds before each reply starts.
        busy_interval: Seconds between busy/wait-for-user reports.
        mesh: Bed mesh rows reported by M420 V and G29; None means no mesh.
        settings_dump: Echo lines reported by M503.
    """

    def __init__(
        self,
        baud_rates: list[int] | None = None,
        boot_banner: bool = True,
        chunk_size: int | None = None,
        reply_delay: float = 0.0,
        busy_interval: float = 0.02,
        mesh: list[list[float]] | None = DEFAULT_MESH,
        settings_dump: list[str] | None = None,
        firmware_name: str = DEFAULT_FIRMWARE_NAME,
    ):
        self.baud_rates = baud_rates
        self.boot_banner = boot_banner
        self.chunk_size = chunk_size
        self.reply_delay = reply_delay
        self.busy_interval = busy_interval
        self.mesh = mesh
        self.settings_dump = list(settings_dump if settings_dump is not None else DEFAULT_SETTINGS_DUMP)
        self.firmware_name = firmware_name

        self.hotend = [21.0, 0.0]
        self.bed = [20.0, 0.0]
        self.position = {"X": 0.0, "Y": 0.0, "Z": 0.0, "E": 0.0}

        self.received: list[str] = []
        self.overlapped_writes = 0
        self.open_count = 0
        self.opened_bauds: list[int] = []
        self.killed = False

        self._scripts: dict[str, ScriptedReply] = {}
        self._one_shot: deque[ScriptedReply] = deque()
        self._commands: asyncio.Queue[str] | None = None
        self._answering = False
        self._outstanding = 0
        self._partial = ""
        self._protocol: SerialLineProtocol | None = None
        self._transport: SimulatedTransport | None = None
        self._worker: asyncio.Task | None = None

    # -- scripting -----------------------------------------------------------

    def script(self, command: str, reply: ScriptedReply) -> None:
        """Override the reply for every command starting with `command`."""
        self._scripts[command.upper()] = reply

    def script_next(self, reply: ScriptedReply) -> None:
        """Override the reply for the next command only."""
        self._one_shot.append(reply)

    def emit(self, line: str) -> None:
        """Send an unsolicited line to the host."""
        self._send(line)

    def drop_connection(self, exc: Exception | None = None) -> None:
        """Simulate the cable being pulled."""
        transport, protocol = self._transport, self._protocol
        if transport is None or protocol is None:
            return
        transport._closing = True
        self._on_transport_closed(transport)
        protocol.connection_lost(exc or OSError("device disconnected"))

    @property
    def is_open(self) -> bool:
        return self._transport is not None

    def connection_factory(self) -> Callable[..., Any]:
        """Return a coroutine function usable as a PortSession connection factory."""

        async def factory(loop, protocol_factory, port, baudrate):
            return self._open(protocol_factory, baudrate)

        return factory

    # -- transport side --------------------------------------------------------

    def _open(
        self,
        protocol_factory: Callable[[], SerialLineProtocol],
        baudrate: int,
    ) -> tuple[SimulatedTransport, SerialLineProtocol]:
        if self._transport is not None:
            raise OSError("simulated port already open")

        protocol = protocol_factory()
        transport = SimulatedTransport(self, protocol)
        self._protocol = protocol
        self._transport = transport
        self._partial = ""
        self._outstanding = 0
        self._commands = asyncio.Queue()
        self.open_count += 1
        self.opened_bauds.append(baudrate)

        protocol.connection_made(transport)

        self._answering = self.baud_rates is None or baudrate in self.baud_rates
        if self._answering:
            self._worker = asyncio.create_task(self._run())
            if self.boot_banner:
                self._send("start")
                self._send(f"echo:{self.firmware_name}")
        else:
            # Wrong baud rate: line noise without newlines
            self._deliver(b"\xf8\x80\xfe\x00")

        return transport, protocol

    def _on_transport_closed(self, transport: SimulatedTransport) -> None:
        if transport is not self._transport:
            return
        if self._worker is not None:
            self._worker.cancel()
        self._worker = None
        self._transport = None
        self._protocol = None
        self._commands = None

    def _receive(self, data: bytes) -> None:
        if not self._answering or self._commands is None:
            return

        text = self._partial + data.decode("utf-8", errors="replace")
        *lines, self._partial = text.split("\n")
        for line in lines:
            line = line.strip()
            if not line:
                continue
            self.received.append(line)
            if self._outstanding > 0:
                self.overlapped_writes += 1
            self._outstanding += 1
            self._commands.put_nowait(line)

    def _deliver(self, data: bytes) -> None:
        if self._protocol is None:
            return
        if not self.chunk_size:
            self._protocol.data_received(data)
            return
        for start in range(0, len(data), self.chunk_size):
            self._protocol.data_received(data[start:start + self.chunk_size])

    def _send(self, line: str) -> None:
        self._deliver((line + "\n").encode("utf-8"))

    # -- firmware side ---------------------------------------------------------

    async def _run(self) -> None:
        assert self._commands is not None
        commands = self._commands
        while True:
            line = await commands.get()
            try:
                await self._answer(line)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Simulator failed to answer {line!r}: {e}")
            finally:
                self._outstanding = max(0, self._outstanding - 1)

    def _reply_for(self, line: str) -> ScriptedReply | None:
        if self._one_shot:
            return self._one_shot.popleft()
        for prefix, reply in self._scripts.items():
            if line.startswith(prefix):
                return reply
        return None

    async def _answer(self, line: str) -> None:
        if self.reply_delay:
            await asyncio.sleep(self.reply_delay)

        word = line.split()[0]
        params = dict((k, float(v)) for k, v in _PARAM_RE.findall(line[len(word):]))

        if word == "M112":
            self.killed = True
            return

        scripted = self._reply_for(line)
        if scripted is not None:
            for _ in range(scripted.busy):
                self._send("echo:busy: processing")
                await asyncio.sleep(self.busy_interval)
            for _ in range(scripted.wait_for_user):
                self._send("echo:busy: paused for user")
                await asyncio.sleep(self.busy_interval)
            if scripted.silent:
                return
            for extra in scripted.lines:
                self._send(extra)
            if scripted.error is not None:
                self._send(f"Error:{scripted.error}")
                self._send("ok")
                return

        for reply in self._builtin_reply(word, line, params):
            self._send(reply)
        self._send(self._ok_line(word))

    def _ok_line(self, word: str) -> str:
        if word == "M105":
            return f"ok {self._temperature_report()}"
        return "ok"

    def _temperature_report(self) -> str:
        return (
            f"T:{self.hotend[0]:.2f} /{self.hotend[1]:.2f} "
            f"B:{self.bed[0]:.2f} /{self.bed[1]:.2f} @:0 B@:0"
        )

    def _builtin_reply(self, word: str, line: str, params: dict[str, float]) -> list[str]:
        if word in ("G0", "G1", "G92"):
            for axis in "XYZE":
                if axis in params:
                    self.position[axis] = params[axis]
            return []

        if word == "G28":
            for axis in "XYZ":
                self.position[axis] = 0.0
            return []

        if word in ("M104", "M109") and "S" in params:
            self.hotend = [params["S"], params["S"]]
            return []

        if word in ("M140", "M190") and "S" in params:
            self.bed = [params["S"], params["S"]]
            return []

        if word == "M114":
            p = self.position
            return [
                f"X:{p['X']:.2f} Y:{p['Y']:.2f} Z:{p['Z']:.2f} E:{p['E']:.2f} Count X:0 Y:0 Z:0"
            ]

        if word == "M115":
            return [
                f"FIRMWARE_NAME:{self.firmware_name} "
                "SOURCE_CODE_URL:github.com/MarlinFirmware/Marlin "
                "PROTOCOL_VERSION:1.0 MACHINE_TYPE:Simulated Printer EXTRUDER_COUNT:1",
                "Cap:EEPROM:1",
                "Cap:AUTOREPORT_TEMP:1",
            ]

        if word == "M503":
            lines = list(self.settings_dump)
            if self.mesh:
                lines.append("echo:; Mesh points:")
                for j, row in enumerate(self.mesh):
                    for i, z in enumerate(row):
                        lines.append(f"echo:  G29 W I{i} J{j} Z{z:.5f}")
            return lines

        if word == "M420" and "V" in line[len(word):]:
            if not self.mesh:
                return ["echo:No bed leveling data", "echo:Bed Leveling OFF"]
            return self._grid_report() + ["echo:Bed Leveling ON"]

        if word == "G29":
            if not self.mesh:
                return ["Error:Probing failed"]
            return self._grid_report() + ["G29 finished"]

        return []

    def _grid_report(self) -> list[str]:
        assert self.mesh is not None
        width = len(self.mesh[0])
        lines = [
            "Bilinear Leveling Grid:",
            "      " + " ".join(f"{i:>6}" for i in range(width)),
        ]
        for j, row in enumerate(self.mesh):
            lines.append(f" {j} " + " ".join(f"{z:+.3f}" for z in row))
        return lines
