"""Tests for MarlinPrinter: connection lifecycle, fetches and published state."""

import asyncio

import pytest

from marlin_link.core.comm_log import LogDirection
from marlin_link.core.task import AckStatus, JobStatus
from marlin_link.core.utils import DeviceError, SerialConnectionError, WriteError
from marlin_link.device.printer import MarlinPrinter
from marlin_link.device.session import ConnectionStatus
from marlin_link.device.simulator import SimulatedPrinter
from marlin_link.state.bed_mesh import GridSize, MeshState
from marlin_link.state.settings import AxesE
from marlin_link.state.telemetry import HeaterReading

PORT = "/dev/ttySIM0"


async def wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestConnection:
    """Tests for connect/disconnect."""

    @pytest.mark.asyncio
    async def test_connect_and_disconnect_events(self, printer):
        events = []
        printer.subscribe("connection", lambda status, error: events.append((status, error)))

        await printer.connect(port=PORT)
        assert printer.is_connected
        assert printer.status == ConnectionStatus.CONNECTED
        assert printer.baud_rate == 115200

        await printer.disconnect()
        assert not printer.is_connected
        assert printer.status == ConnectionStatus.DISCONNECTED

        assert events == [
            (ConnectionStatus.CONNECTING, None),
            (ConnectionStatus.CONNECTED, None),
            (ConnectionStatus.DISCONNECTED, None),
        ]

    @pytest.mark.asyncio
    async def test_connect_failure_reports_error(self, fast_config):
        async def failing_factory(loop, protocol_factory, port, baudrate):
            raise OSError(13, "Permission denied")

        printer = MarlinPrinter(fast_config, connection_factory=failing_factory)
        events = []
        printer.subscribe("connection", lambda status, error: events.append((status, error)))

        with pytest.raises(SerialConnectionError):
            await printer.connect(port=PORT)

        assert printer.status == ConnectionStatus.DISCONNECTED
        assert events[-1][0] == ConnectionStatus.DISCONNECTED
        assert isinstance(events[-1][1], SerialConnectionError)
        assert any(e.direction == LogDirection.ERR for e in printer.recent_log())

    @pytest.mark.asyncio
    async def test_send_requires_connection(self, printer):
        with pytest.raises(SerialConnectionError):
            await printer.send_interactive("M105")

    @pytest.mark.asyncio
    async def test_read_error_tears_down_connection(self, printer, simulator):
        events = []
        printer.subscribe("connection", lambda status, error: events.append(status))

        await printer.connect(port=PORT)
        simulator.drop_connection(OSError("device reports readiness to read but returned no data"))
        await wait_until(lambda: printer.status == ConnectionStatus.DISCONNECTED)

        assert events[-1] == ConnectionStatus.DISCONNECTED
        assert events.count(ConnectionStatus.DISCONNECTED) == 1
        assert any(
            e.direction == LogDirection.ERR and "Serial read failed" in e.text
            for e in printer.recent_log()
        )

    @pytest.mark.asyncio
    async def test_write_error_tears_down_connection_and_cancels_job(self, printer):
        await printer.connect(port=PORT)
        job = printer.stream_program(["G28", "G1 X10", "G1 X20"], pace=10)
        await wait_until(lambda: job.sent == 1)

        def failing_write(data):
            raise OSError(5, "Input/output error")

        printer._session.protocol.transport.write = failing_write

        with pytest.raises(WriteError):
            await printer.send_interactive("M105")

        await wait_until(lambda: not printer.is_connected)
        await asyncio.wait_for(job.wait(), timeout=1)
        assert job.status == JobStatus.CANCELLED
        assert printer.status == ConnectionStatus.DISCONNECTED
        assert any(
            e.direction == LogDirection.ERR and "Failed to write" in e.text
            for e in printer.recent_log()
        )

    @pytest.mark.asyncio
    async def test_write_error_in_fetch_tears_down_connection(self, printer):
        await printer.connect(port=PORT)

        def failing_write(data):
            raise OSError(5, "Input/output error")

        printer._session.protocol.transport.write = failing_write

        with pytest.raises(WriteError):
            await printer.fetch_settings()

        await wait_until(lambda: not printer.is_connected)

    @pytest.mark.asyncio
    async def test_context_manager_uses_configured_path(self, fast_config):
        fast_config.connection.path = PORT
        simulator = SimulatedPrinter()

        async with MarlinPrinter(fast_config, connection_factory=simulator.connection_factory()) as printer:
            assert printer.is_connected
            await printer.send_interactive("M105")

        assert not printer.is_connected
        assert simulator.received == ["M105"]


class TestInteractiveCommands:
    """Tests for send_interactive and send_commands."""

    @pytest.mark.asyncio
    async def test_send_records_traffic_in_log(self, printer):
        await printer.connect(port=PORT)
        try:
            result = await printer.send_interactive("m105")
        finally:
            await printer.disconnect()

        assert result.status == AckStatus.OK
        log = printer.recent_log()
        assert any(e.direction == LogDirection.TX and e.text == "M105" for e in log)
        assert any(e.direction == LogDirection.RX and e.text.startswith("ok T:") for e in log)

    @pytest.mark.asyncio
    async def test_background_send(self, printer, simulator):
        await printer.connect(port=PORT)
        try:
            assert await printer.send_interactive("G1 X42 Y7", wait=False) is None
            await asyncio.sleep(0.05)
            await printer.send_interactive("M114")
            position = printer.current_telemetry().position
        finally:
            await printer.disconnect()

        assert simulator.received == ["G1 X42 Y7", "M114"]
        assert (position.x, position.y) == (42.0, 7.0)

    @pytest.mark.asyncio
    async def test_send_commands_skips_comments(self, printer, simulator):
        await printer.connect(port=PORT)
        try:
            results = await printer.send_commands(["G28", "; comment", "", "M84"])
        finally:
            await printer.disconnect()

        assert [r.status for r in results] == [AckStatus.OK, AckStatus.OK]
        assert simulator.received == ["G28", "M84"]

    @pytest.mark.asyncio
    async def test_firmware_info(self, printer):
        await printer.connect(port=PORT)
        try:
            await printer.send_interactive("M115")
            info = printer.firmware_info()
        finally:
            await printer.disconnect()

        assert info["FIRMWARE_NAME"].startswith("Marlin 2.1.2.1")
        assert info["MACHINE_TYPE"] == "Simulated Printer"
        assert printer.firmware_info() == {}


class TestTelemetry:
    """Tests for telemetry tracking through the printer."""

    @pytest.mark.asyncio
    async def test_telemetry_is_reset_on_disconnect(self, printer, simulator):
        snapshots = []
        printer.subscribe("telemetry", snapshots.append)

        await printer.connect(port=PORT)
        await printer.send_interactive("M104 S200")
        await printer.send_interactive("M105")

        assert printer.current_telemetry().hotend == HeaterReading(200.0, 200.0)
        assert len(printer.telemetry_history()) == 1
        assert snapshots

        await printer.disconnect()
        assert printer.current_telemetry().hotend == HeaterReading()
        assert printer.telemetry_history() == []

        await printer.connect(port=PORT)
        try:
            assert printer.telemetry_history() == []
            await printer.send_interactive("M105")
            assert len(printer.telemetry_history()) == 1
        finally:
            await printer.disconnect()

    @pytest.mark.asyncio
    async def test_poller(self, fast_config):
        fast_config.telemetry.poll_interval = 20
        fast_config.telemetry.poll_position = True
        simulator = SimulatedPrinter()
        printer = MarlinPrinter(fast_config, connection_factory=simulator.connection_factory())

        await printer.connect(port=PORT)
        try:
            await wait_until(lambda: len(printer.telemetry_history()) >= 4)
        finally:
            await printer.disconnect()

        assert "M105" in simulator.received
        assert "M114" in simulator.received
        assert simulator.overlapped_writes == 0


class TestSettings:
    """Tests for fetch_settings."""

    @pytest.mark.asyncio
    async def test_fetch_settings(self, printer):
        published = []
        printer.subscribe("settings", published.append)

        await printer.connect(port=PORT)
        try:
            snapshot = await printer.fetch_settings()
        finally:
            await printer.disconnect()

        assert snapshot.steps_per_unit == AxesE(80.0, 80.0, 400.0, 93.0)
        assert snapshot.acceleration.max == 5000.0
        assert snapshot.acceleration.print == 500.0
        assert snapshot.material_heating["abs"].bed == 110.0
        assert snapshot.z_probe_offset.z == -1.5
        assert snapshot.filament.unload_length == 420.0
        assert snapshot.bed_leveling.enabled
        assert len(snapshot.bed_leveling.mesh) == 25
        assert snapshot.bed_leveling.mesh[0] == (0, 0, 0.1)
        assert published == [snapshot]
        assert printer.current_settings_snapshot() is snapshot

    @pytest.mark.asyncio
    async def test_settings_survive_disconnect(self, printer):
        await printer.connect(port=PORT)
        snapshot = await printer.fetch_settings()
        assert printer.settings_fetched
        await printer.disconnect()

        assert not printer.settings_fetched
        assert printer.current_settings_snapshot() is snapshot

    @pytest.mark.asyncio
    async def test_auto_fetch_on_connect(self, fast_config):
        fast_config.connection.auto_fetch = True
        simulator = SimulatedPrinter()
        printer = MarlinPrinter(fast_config, connection_factory=simulator.connection_factory())

        await printer.connect(port=PORT)
        try:
            await asyncio.wait_for(printer._fetch_task, timeout=2)
            mesh = printer.current_bed_mesh()
        finally:
            await printer.disconnect()

        assert printer.current_settings_snapshot().pid_bed.p == 301.25
        assert simulator.received == ["M503", "M420 V"]
        assert mesh.is_valid


class TestBedMesh:
    """Tests for mesh fetches and leveling runs."""

    @pytest.mark.asyncio
    async def test_fetch_bed_mesh(self, printer):
        published = []
        printer.subscribe("bed_mesh", published.append)

        await printer.connect(port=PORT)
        try:
            mesh = await printer.fetch_bed_mesh()
        finally:
            await printer.disconnect()

        assert mesh.state == MeshState.VALID
        assert mesh.grid_size == GridSize(5, 5)
        assert mesh.grid[0][0] == pytest.approx(0.1)
        assert mesh.grid[4][4] == pytest.approx(-0.21)
        assert mesh.max == pytest.approx(0.1)
        assert mesh.min == pytest.approx(-0.21)
        assert mesh.range == pytest.approx(0.31)
        assert published == [mesh]

    @pytest.mark.asyncio
    async def test_no_mesh_data(self, fast_config):
        simulator = SimulatedPrinter(mesh=None)
        printer = MarlinPrinter(fast_config, connection_factory=simulator.connection_factory())

        await printer.connect(port=PORT)
        try:
            mesh = await printer.fetch_bed_mesh()
        finally:
            await printer.disconnect()

        assert mesh.state == MeshState.EMPTY
        assert not mesh.is_valid
        assert mesh.grid == ()

    @pytest.mark.asyncio
    async def test_run_bed_leveling(self, printer, simulator):
        published = []
        printer.subscribe("bed_mesh", published.append)

        await printer.connect(port=PORT)
        try:
            mesh = await printer.run_bed_leveling(timeout=1)
        finally:
            await printer.disconnect()

        assert simulator.received == ["G28", "G29"]
        assert mesh.is_valid
        assert mesh.grid_size == GridSize(5, 5)
        assert published == [mesh]

    @pytest.mark.asyncio
    async def test_failed_leveling_raises(self, fast_config):
        simulator = SimulatedPrinter(mesh=None)
        printer = MarlinPrinter(fast_config, connection_factory=simulator.connection_factory())

        await printer.connect(port=PORT)
        try:
            with pytest.raises(DeviceError, match="Probing failed"):
                await printer.run_bed_leveling(timeout=1)
            assert not printer.bed_mesh.collecting
        finally:
            await printer.disconnect()

        assert printer.current_bed_mesh().state == MeshState.NONE

    @pytest.mark.asyncio
    async def test_interactive_g29_collects_mesh(self, printer):
        await printer.connect(port=PORT)
        try:
            await printer.send_interactive("G29")
            mesh = printer.current_bed_mesh()
        finally:
            await printer.disconnect()

        assert mesh.is_valid
        assert mesh.grid[0] == pytest.approx((0.1, 0.05, -0.02, -0.05, -0.08))

    @pytest.mark.asyncio
    async def test_manual_process(self, printer):
        await printer.connect(port=PORT)
        try:
            await printer.send_interactive("M420 V")
            assert printer.bed_mesh.collecting
            mesh = printer.process_bed_mesh()
        finally:
            await printer.disconnect()

        assert mesh is not None
        assert mesh.is_valid
        assert printer.current_bed_mesh() is mesh

    @pytest.mark.asyncio
    async def test_point_report_assembled_on_completion_marker(self, printer):
        published = []
        printer.subscribe("bed_mesh", published.append)
        heights = {(0, 0): 0.10, (4, 4): -0.21}

        printer.bed_mesh.begin()
        for j in range(5):
            for i in range(5):
                printer._handle_line(f"echo:  G29 W I{i} J{j} Z{heights.get((i, j), 0.0):.5f}")
        assert published == []

        printer._handle_line("Bed leveling done.")

        mesh = printer.current_bed_mesh()
        assert published == [mesh]
        assert mesh.state == MeshState.VALID
        assert mesh.grid_size == GridSize(5, 5)
        assert mesh.max == pytest.approx(0.10)
        assert mesh.min == pytest.approx(-0.21)
        assert mesh.range == pytest.approx(0.31)
        assert not printer.bed_mesh.collecting
