"""
Marlin Printer - the communication engine for one serial-attached printer.

MarlinPrinter owns the connection and everything scoped to it: the response
loop that classifies incoming lines and fans them out, the command channel
shared by interactive sends, polling and program streaming, and the
published state (telemetry, bed mesh, settings snapshot, diagnostic log).
Collaborators read snapshots through the accessor methods and follow changes
with subscribe().
"""

import asyncio
import time
from collections.abc import Callable, Iterable
from typing import Any

from marlin_link.core.comm_log import LogDirection, LogEntry, LogRing
from marlin_link.core.config import Config
from marlin_link.core.events import (
    EVENT_BED_MESH,
    EVENT_CONNECTION,
    EVENT_JOB_FINISHED,
    EVENT_JOB_PROGRESS,
    EVENT_LINE,
    EVENT_NAMES,
    EVENT_SETTINGS,
    EVENT_TELEMETRY,
    EventBus,
)
from marlin_link.core.logging import get_logger
from marlin_link.core.task import JOB_FINISHED, AckResult, Command, ExecutionJob
from marlin_link.core.utils import (
    DeviceError,
    MarlinLinkError,
    SerialConnectionError,
    WriteError,
    normalize_command,
    resolve_port,
)
from marlin_link.device.channel import CommandChannel
from marlin_link.device.classifier import EventKind, classify
from marlin_link.device.interface import SerialLineProtocol
from marlin_link.device.session import (
    ConnectionFactory,
    ConnectionStatus,
    PortSession,
    open_serial_connection,
)
from marlin_link.device.streamer import ProgramStreamer, StreamOptions
from marlin_link.state.bed_mesh import BedMesh, BedMeshAssembler
from marlin_link.state.settings import SettingsSnapshot, parse_settings_dump
from marlin_link.state.telemetry import TelemetryAggregator, TelemetrySample, TelemetrySnapshot

logger = get_logger()

LOG_CLEANUP_INTERVAL = 600.0  # s
POLL_TIMEOUT = 5.0  # s
LEVELING_TIMEOUT = 600.0  # s


def _ms(value: float) -> float:
    return value / 1000


class MarlinPrinter:
    """
    Communication engine for a Marlin printer.

    Args:
        config: Engine configuration; defaults are used when omitted.
        connection_factory: Coroutine opening the port. Defaults to a real
            serial port; pass `SimulatedPrinter.connection_factory()` for a
            dry run.
        clock: Wall-clock source for log and telemetry timestamps.
    """

    def __init__(
        self,
        config: Config | None = None,
        connection_factory: ConnectionFactory | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or Config()
        self._connection_factory = connection_factory or open_serial_connection

        self.log_ring = LogRing(
            max_entries=self.config.log.max_entries,
            max_age=self.config.log.max_age,
            clock=clock,
        )
        self.telemetry = TelemetryAggregator(
            history_size=self.config.telemetry.history_size, clock=clock
        )
        self.bed_mesh = BedMeshAssembler(on_publish=self._on_mesh_published, clock=clock)
        self.streamer = ProgramStreamer(
            get_channel=self._require_channel,
            log_ring=self.log_ring,
            busy_ceiling=_ms(self.config.streaming.busy_ceiling),
            busy_heartbeat=_ms(self.config.streaming.busy_heartbeat),
            emergency_stop=self.config.streaming.emergency_stop,
            history_size=self.config.streaming.history_size,
            on_connection_failure=self._on_connection_failure,
        )
        self._events = EventBus(EVENT_NAMES)

        self._session: PortSession | None = None
        self._channel: CommandChannel | None = None
        self._settings = SettingsSnapshot()
        self._settings_lines: list[str] = []
        self._collecting_settings = False
        self._firmware_info: dict[str, str] = {}
        self.settings_fetched = False

        self._response_task: asyncio.Task | None = None
        self._poll_task: asyncio.Task | None = None
        self._cleanup_task: asyncio.Task | None = None
        self._fetch_task: asyncio.Task | None = None
        self._teardown_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._disconnecting = False

    # -- lifecycle -------------------------------------------------------------

    @property
    def status(self) -> ConnectionStatus:
        if self._session is None:
            return ConnectionStatus.DISCONNECTED
        return self._session.status

    @property
    def is_connected(self) -> bool:
        return self._session is not None and self._session.is_connected and self._channel is not None

    @property
    def baud_rate(self) -> int | None:
        return self._session.baud_rate if self._session else None

    async def connect(
        self,
        port: str | None = None,
        baud_rates: list[int] | None = None,
    ) -> None:
        """
        Open the connection and start the response loop.

        Args:
            port: Serial device path. Resolved from the configuration (path,
                USB id, then auto-detection) when omitted.
            baud_rates: Candidate baud rates in priority order.

        Raises:
            SerialConnectionError: If the port cannot be opened at any baud rate.
            SerialDeviceNotFoundError: If no port can be resolved.
        """
        if self._session is not None:
            logger.warning("Already connected to printer")
            return

        connection = self.config.connection
        if port is None:
            port = resolve_port(usb_id=connection.usb_id, dev_path=connection.path)

        session = PortSession(
            port,
            connection_factory=self._connection_factory,
            handshake_timeout=_ms(connection.handshake_timeout),
            open_settle_delay=_ms(connection.open_settle_delay),
            log_ring=self.log_ring,
        )
        self._session = session
        self._events.emit(EVENT_CONNECTION, ConnectionStatus.CONNECTING, None)

        try:
            protocol = await session.connect(baud_rates or connection.baud_rates)
        except SerialConnectionError as e:
            self._session = None
            self.log_ring.append(LogDirection.ERR, f"Connection failed: {e}")
            self._events.emit(EVENT_CONNECTION, ConnectionStatus.DISCONNECTED, e)
            raise

        channel_config = self.config.channel
        self._channel = CommandChannel(
            protocol,
            log_ring=self.log_ring,
            ack_timeout=_ms(channel_config.ack_timeout),
            busy_hold=_ms(channel_config.busy_hold),
            no_ack_delay=_ms(channel_config.no_ack_delay),
            error_ok_grace=_ms(channel_config.error_ok_grace),
            on_write_error=self._on_write_error,
        )
        self.telemetry.set_connected(True)

        self._response_task = asyncio.create_task(self._response_loop(protocol))
        self._cleanup_task = asyncio.create_task(self._log_cleanup_loop())
        if self.config.telemetry.poll_interval > 0:
            self._poll_task = asyncio.create_task(self._poll_loop())

        self._events.emit(EVENT_CONNECTION, ConnectionStatus.CONNECTED, None)

        if connection.auto_fetch and not self.settings_fetched:
            self._fetch_task = asyncio.create_task(self._auto_fetch())

    async def disconnect(self, reason: str = "disconnected") -> None:
        """
        Close the connection and drop all connection-scoped state.

        Job history and the settings snapshot survive; telemetry, the
        in-flight command and any running job do not.
        """
        if self._session is None or self._disconnecting:
            return

        self._disconnecting = True
        current = asyncio.current_task()
        try:
            await self.streamer.shutdown(reason)

            if self._channel is not None:
                self._channel.connection_lost()

            tasks = [
                self._fetch_task,
                self._poll_task,
                self._cleanup_task,
                self._response_task,
                *self._background,
            ]
            for task in tasks:
                if task is None or task is current or task.done():
                    continue
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

            await self._session.close()
        finally:
            self._session = None
            self._channel = None
            self._response_task = None
            self._poll_task = None
            self._cleanup_task = None
            self._fetch_task = None
            self._background.clear()

            self.telemetry.set_connected(False)
            self.bed_mesh.cancel()
            self._collecting_settings = False
            self._firmware_info = {}
            self.settings_fetched = False
            self._disconnecting = False

            logger.info(f"Disconnected from printer ({reason})")
            self.log_ring.append(LogDirection.SYS, f"Disconnected: {reason}")
            self._events.emit(EVENT_CONNECTION, ConnectionStatus.DISCONNECTED, None)

    def _require_channel(self) -> CommandChannel:
        if self._channel is None or not self.is_connected:
            raise SerialConnectionError("Not connected to printer")
        return self._channel

    async def _on_connection_failure(self, error: Exception) -> None:
        self._schedule_teardown(str(error))

    def _on_write_error(self, error: WriteError) -> None:
        logger.error(str(error))
        self.log_ring.append(LogDirection.ERR, str(error))
        self._schedule_teardown(str(error))

    def _schedule_teardown(self, reason: str) -> None:
        if self._teardown_task is not None and not self._teardown_task.done():
            return
        self._teardown_task = asyncio.create_task(self.disconnect(reason))

    # -- response handling -----------------------------------------------------

    async def _response_loop(self, protocol: SerialLineProtocol) -> None:
        """Consume decoded lines until the connection goes away."""
        logger.info("Printer response loop started")

        try:
            while True:
                line = await protocol.line_queue.get()
                if line is SerialLineProtocol.CONNECTION_LOST:
                    break
                try:
                    self._handle_line(line)
                except Exception as e:
                    logger.error(f"Error handling response line {line!r}: {e}")
        except asyncio.CancelledError:
            logger.info("Printer response loop stopped")
            raise

        if self._channel is not None:
            self._channel.connection_lost()

        reason = "serial stream ended"
        exc = protocol.closed.result() if protocol.closed.done() else None
        if exc is not None:
            error = SerialConnectionError(f"Serial read failed: {exc}")
            logger.error(str(error))
            self.log_ring.append(LogDirection.ERR, str(error))
            reason = str(error)

        if not self._disconnecting:
            self._schedule_teardown(reason)

    def _handle_line(self, line: str) -> None:
        self.log_ring.append(LogDirection.RX, line)
        events = classify(line)
        self._events.emit(EVENT_LINE, line, events)

        if self._channel is not None:
            self._channel.handle_events(events)

        finished_mesh = False
        no_mesh = False

        for event in events:
            kind = event.kind
            if kind == EventKind.TEMPERATURE:
                self._publish_sample(self.telemetry.record_temperature(event.payload))
            elif kind == EventKind.POSITION:
                self._publish_sample(self.telemetry.record_position(event.payload))
            elif kind == EventKind.SETTINGS_ECHO:
                if self._collecting_settings:
                    self._settings_lines.append(line)
            elif kind == EventKind.MESH_POINT:
                self.bed_mesh.add_point(event.payload)
            elif kind == EventKind.MESH_ROW:
                self.bed_mesh.add_row(event.payload)
            elif kind == EventKind.GRID_SIZE:
                self.bed_mesh.set_grid_size(event.payload)
            elif kind == EventKind.LEVELING_COMPLETE:
                finished_mesh = True
            elif kind == EventKind.NO_MESH_DATA:
                no_mesh = True
            elif kind == EventKind.FIRMWARE_INFO:
                self._firmware_info = dict(event.payload)
                logger.info(f"Firmware: {self._firmware_info.get('FIRMWARE_NAME', 'unknown')}")
            elif kind == EventKind.DEVICE_ERROR:
                self.log_ring.append(LogDirection.ERR, f"Printer error: {event.payload}")

        if self.bed_mesh.collecting:
            if no_mesh:
                self.bed_mesh.mark_no_data()
            elif finished_mesh:
                self.bed_mesh.process()

    def _publish_sample(self, sample: TelemetrySample | None) -> None:
        if sample is not None:
            self._events.emit(EVENT_TELEMETRY, self.telemetry.current())

    def _on_mesh_published(self, mesh: BedMesh) -> None:
        self.log_ring.append(LogDirection.SYS, f"Bed mesh {mesh.state}")
        self._events.emit(EVENT_BED_MESH, mesh)

    # -- background tasks ------------------------------------------------------

    async def _log_cleanup_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(LOG_CLEANUP_INTERVAL)
                self.log_ring.cleanup()
        except asyncio.CancelledError:
            logger.debug("Log cleanup task stopped")
            raise

    async def _poll_loop(self) -> None:
        """Periodically request temperatures (and position) through the channel."""
        interval = _ms(self.config.telemetry.poll_interval)
        logger.info(f"Telemetry poller started (interval: {interval * 1000:.0f}ms)")

        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    channel = self._require_channel()
                    await channel.send(Command("M105", timeout=POLL_TIMEOUT))
                    if self.config.telemetry.poll_position:
                        await channel.send(Command("M114", timeout=POLL_TIMEOUT))
                except SerialConnectionError as e:
                    logger.warning(f"Telemetry poll failed: {e}")
                    return
                except MarlinLinkError as e:
                    logger.error(f"Error in telemetry poller: {e}")
        except asyncio.CancelledError:
            logger.info("Telemetry poller stopped")
            raise

    async def _auto_fetch(self) -> None:
        try:
            await self.fetch_settings()
            await self.fetch_bed_mesh()
        except asyncio.CancelledError:
            raise
        except MarlinLinkError as e:
            logger.warning(f"Initial settings fetch failed: {e}")
            self.log_ring.append(LogDirection.ERR, f"Initial settings fetch failed: {e}")

    # -- commands --------------------------------------------------------------

    def _begin_collection_for(self, text: str) -> None:
        """Interactive leveling commands start a mesh collection of their own."""
        command = normalize_command(text)
        word = command.split()[0] if command else ""
        if word == "G29" and " W" not in command:
            self.bed_mesh.begin()
        elif word == "M420" and "V" in command[4:]:
            self.bed_mesh.begin()

    async def send_interactive(
        self,
        text: str,
        wait: bool = True,
        timeout: float | None = None,
    ) -> AckResult | None:
        """
        Send a single command.

        Args:
            text: Command text; comments are stripped and it is upper-cased.
            wait: Wait for the result. When False the command is still
                serialized through the channel, but in the background.
            timeout: Ack timeout in seconds; None uses the configured default.

        Returns:
            The AckResult, or None for a background send.

        Raises:
            SerialConnectionError: If not connected or the connection drops.
            WriteError: If the write fails; the connection is torn down and
                any running job is cancelled.
        """
        channel = self._require_channel()
        self._begin_collection_for(text)
        command = Command(text=text, timeout=timeout)

        if wait:
            return await channel.send(command)

        task = asyncio.create_task(self._send_in_background(channel, command))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return None

    async def _send_in_background(self, channel: CommandChannel, command: Command) -> None:
        try:
            result = await channel.send(command)
            if not result.succeeded:
                logger.warning(f"{command.text!r} failed: {result.message}")
        except SerialConnectionError as e:
            logger.error(f"Background send of {command.text!r} failed: {e}")
            self._schedule_teardown(str(e))

    async def send_commands(
        self,
        lines: Iterable[str],
        pace: float = 0.0,
    ) -> list[AckResult]:
        """Send several commands in order, without job tracking."""
        channel = self._require_channel()
        results = []
        for line in lines:
            if not normalize_command(line):
                continue
            results.append(await channel.send(line))
            if pace > 0:
                await asyncio.sleep(pace)
        return results

    def stream_program(
        self,
        lines: Iterable[str],
        label: str = "program",
        pace: float | None = None,
        wait_for_ack: bool | None = None,
        line_timeout: float | None = None,
    ) -> ExecutionJob:
        """
        Start streaming a program.

        Args:
            lines: Program text lines.
            label: Human readable job name.
            pace: Delay after each line in seconds; defaults to the configuration.
            wait_for_ack: Wait for ok per line; defaults to the configuration.
            line_timeout: Ack timeout per line in seconds.

        Returns:
            The running job. Progress and completion are also published as
            `job_progress` and `job_finished` events.

        Raises:
            JobStateError: If a job is already active.
            SerialConnectionError: If not connected.
        """
        streaming = self.config.streaming
        options = StreamOptions(
            pace=pace if pace is not None else _ms(streaming.pace),
            wait_for_ack=wait_for_ack if wait_for_ack is not None else streaming.wait_for_ack,
            line_timeout=line_timeout,
        )
        job = self.streamer.start(lines, label=label, options=options)
        job.subscribe(
            lambda sent, total: self._events.emit(EVENT_JOB_PROGRESS, job, sent, total)
        )
        job.subscribe(lambda j: self._events.emit(EVENT_JOB_FINISHED, j), JOB_FINISHED)
        return job

    def abort(self, job: ExecutionJob | None = None) -> None:
        """Cancel a running job; the emergency stop sequence follows."""
        self.streamer.abort(job)

    async def emergency_stop(self) -> None:
        """
        Stop the printer now.

        A running job is cancelled (which sends the stop sequence once its
        current line resolves); otherwise the stop sequence is sent directly.
        """
        job = self.streamer.active_job
        if job is not None and job.is_active:
            self.streamer.abort(job, reason="emergency stop")
            await job.wait()
            return
        await self.streamer.emergency_stop(self._require_channel())

    async def fetch_settings(self) -> SettingsSnapshot:
        """
        Request the settings dump (M503) and publish the parsed snapshot.

        If the printer reports nothing recognizable, the previous snapshot is kept.

        Raises:
            DeviceError: If the printer rejects M503.
        """
        channel = self._require_channel()
        self._settings_lines = []
        self._collecting_settings = True
        self.log_ring.append(LogDirection.SYS, "Fetching printer settings (M503)")
        try:
            result = await channel.send(Command("M503"))
        finally:
            self._collecting_settings = False

        if not result.succeeded:
            raise DeviceError(result.message or "M503 rejected")

        lines, self._settings_lines = self._settings_lines, []
        if not lines:
            logger.warning("Settings dump contained no recognizable lines")
            return self._settings

        self._settings = parse_settings_dump(lines)
        self.settings_fetched = True
        self.log_ring.append(LogDirection.SYS, f"Parsed {len(lines)} settings lines")
        self._events.emit(EVENT_SETTINGS, self._settings)
        return self._settings

    async def fetch_bed_mesh(self) -> BedMesh:
        """
        Request the stored bed mesh (M420 V) and publish it.

        Raises:
            DeviceError: If the printer rejects the request.
        """
        channel = self._require_channel()
        self.bed_mesh.begin()
        result = await channel.send(Command("M420 V"))
        if not result.succeeded:
            self.bed_mesh.cancel()
            raise DeviceError(result.message or "M420 V rejected")

        if self.bed_mesh.collecting:
            self.bed_mesh.process()
        return self.bed_mesh.mesh

    async def run_bed_leveling(self, timeout: float = LEVELING_TIMEOUT) -> BedMesh:
        """
        Home and probe the bed (G28, G29), then publish the resulting mesh.

        Raises:
            DeviceError: If homing or probing fails.
        """
        channel = self._require_channel()
        self.log_ring.append(LogDirection.SYS, "Starting automatic bed leveling")

        result = await channel.send(Command("G28", timeout=timeout))
        if not result.succeeded:
            raise DeviceError(result.message or "G28 failed")

        self.bed_mesh.begin()
        result = await channel.send(Command("G29", timeout=timeout))
        if not result.succeeded:
            self.bed_mesh.cancel()
            raise DeviceError(result.message or "G29 failed")

        if self.bed_mesh.collecting:
            self.bed_mesh.process()
        return self.bed_mesh.mesh

    def process_bed_mesh(self) -> BedMesh | None:
        """Assemble whatever mesh fragments have been collected so far."""
        return self.bed_mesh.process()

    # -- snapshots -------------------------------------------------------------

    def current_telemetry(self) -> TelemetrySnapshot:
        return self.telemetry.current()

    def telemetry_history(self) -> list[TelemetrySample]:
        return self.telemetry.history()

    def current_bed_mesh(self) -> BedMesh:
        return self.bed_mesh.mesh

    def current_settings_snapshot(self) -> SettingsSnapshot:
        return self._settings

    def recent_log(self, n: int | None = None) -> list[LogEntry]:
        return self.log_ring.recent(n)

    def firmware_info(self) -> dict[str, str]:
        return dict(self._firmware_info)

    def job_history(self) -> list[ExecutionJob]:
        return self.streamer.history()

    def active_job(self) -> ExecutionJob | None:
        return self.streamer.active_job

    def clear_job_history(self) -> None:
        self.streamer.clear_history()

    def subscribe(self, event: str, callback: Callable[..., Any]) -> Callable[[], None]:
        """
        Follow engine state changes.

        Events and callback arguments:
            line: (line, events)
            telemetry: (TelemetrySnapshot,)
            bed_mesh: (BedMesh,)
            settings: (SettingsSnapshot,)
            connection: (ConnectionStatus, error or None)
            job_progress: (job, sent, total)
            job_finished: (job,)

        Returns:
            A function removing the subscription.
        """
        return self._events.subscribe(event, callback)

    async def __aenter__(self) -> "MarlinPrinter":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()
