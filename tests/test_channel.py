"""Tests for the command channel: serialized writes and ack correlation."""

import asyncio
from contextlib import asynccontextmanager

import pytest

from marlin_link.core.comm_log import LogDirection, LogRing
from marlin_link.core.task import AckStatus, CancelToken, Command
from marlin_link.core.utils import SerialConnectionError, WriteError
from marlin_link.device.channel import CommandChannel, DeviceActivity
from marlin_link.device.classifier import classify
from marlin_link.device.interface import SerialLineProtocol
from marlin_link.device.session import PortSession
from marlin_link.device.simulator import ScriptedReply, SimulatedPrinter


async def _pump(protocol: SerialLineProtocol, channel: CommandChannel) -> None:
    """Minimal response loop: classify every line and hand it to the channel."""
    while True:
        line = await protocol.line_queue.get()
        if line is SerialLineProtocol.CONNECTION_LOST:
            channel.connection_lost()
            return
        channel.handle_events(classify(line))


@asynccontextmanager
async def open_channel(simulator: SimulatedPrinter, ack_timeout: float = 0.5):
    session = PortSession(
        "/dev/ttySIM0",
        connection_factory=simulator.connection_factory(),
        handshake_timeout=0.2,
        open_settle_delay=0,
    )
    protocol = await session.connect([115200])
    channel = CommandChannel(
        protocol,
        log_ring=LogRing(),
        ack_timeout=ack_timeout,
        busy_hold=0.1,
        no_ack_delay=0.001,
        error_ok_grace=0.02,
    )
    pump = asyncio.create_task(_pump(protocol, channel))
    try:
        yield channel
    finally:
        pump.cancel()
        try:
            await pump
        except asyncio.CancelledError:
            pass
        await session.close()


class TestDeviceActivity:
    """Tests for busy and wait-for-user tracking."""

    def test_busy_holds_for_window(self):
        now = [100.0]
        activity = DeviceActivity(busy_hold=3.0, clock=lambda: now[0])

        activity.note_busy()
        assert activity.busy and activity.suspended

        now[0] += 2.9
        assert activity.busy

        now[0] += 0.2
        assert not activity.busy
        assert not activity.suspended

    def test_wait_for_user_is_sticky_until_resolved(self):
        now = [0.0]
        activity = DeviceActivity(busy_hold=1.0, clock=lambda: now[0])

        activity.note_wait_for_user()
        now[0] += 1000
        assert activity.suspended

        activity.note_resolved()
        assert not activity.suspended


class TestCommandChannel:
    """Tests for CommandChannel against the simulated printer."""

    @pytest.mark.asyncio
    async def test_plain_ok(self):
        simulator = SimulatedPrinter()
        async with open_channel(simulator) as channel:
            result = await channel.send("m105")

        assert result.status == AckStatus.OK
        assert simulator.received == ["M105"]

    @pytest.mark.asyncio
    async def test_busy_suspends_the_ack_timeout(self):
        """A command that stays busy far longer than the ack timeout still resolves OK."""
        simulator = SimulatedPrinter(busy_interval=0.02)
        simulator.script("G28", ScriptedReply(busy=15))

        async with open_channel(simulator, ack_timeout=0.1) as channel:
            result = await channel.send("G28")

        assert result.status == AckStatus.OK
        assert simulator.received == ["G28"]

    @pytest.mark.asyncio
    async def test_wait_for_user_suspends_the_ack_timeout(self):
        simulator = SimulatedPrinter(busy_interval=0.02)
        simulator.script("M0", ScriptedReply(wait_for_user=15))

        async with open_channel(simulator, ack_timeout=0.1) as channel:
            result = await channel.send("M0 Click to continue")
            assert not channel.activity.waiting_for_user

        assert result.status == AckStatus.OK

    @pytest.mark.asyncio
    async def test_missing_ok_times_out_leniently(self):
        simulator = SimulatedPrinter()
        simulator.script("G4", ScriptedReply(silent=True))

        async with open_channel(simulator) as channel:
            result = await channel.send(Command("G4 P100", timeout=0.1))
            follow_up = await channel.send("M105")
            log = channel.log_ring.recent()

        assert result.status == AckStatus.TIMEOUT
        assert result.succeeded
        assert follow_up.status == AckStatus.OK
        assert any(
            e.direction == LogDirection.SYS and "Timeout" in e.text for e in log
        )

    @pytest.mark.asyncio
    async def test_device_error_does_not_leak_into_next_command(self):
        """The ok Marlin sends after an error is not taken as the next command's ack."""
        simulator = SimulatedPrinter(reply_delay=0.01)
        simulator.script_next(ScriptedReply(error="Unknown command"))

        async with open_channel(simulator) as channel:
            failed = await channel.send("G999")
            next_result = await channel.send("G28")

        assert failed.status == AckStatus.DEVICE_ERROR
        assert failed.message == "Error:Unknown command"
        assert not failed.succeeded
        assert next_result.status == AckStatus.OK
        assert simulator.received == ["G999", "G28"]

    @pytest.mark.asyncio
    async def test_concurrent_senders_never_overlap(self):
        simulator = SimulatedPrinter(reply_delay=0.002)

        async with open_channel(simulator) as channel:
            results = await asyncio.gather(*(channel.send(f"G1 X{i}") for i in range(20)))

        assert all(r.status == AckStatus.OK for r in results)
        assert simulator.overlapped_writes == 0
        assert sorted(simulator.received) == sorted(f"G1 X{i}" for i in range(20))

    @pytest.mark.asyncio
    async def test_fire_and_forget_does_not_wait(self):
        simulator = SimulatedPrinter()

        async with open_channel(simulator, ack_timeout=5) as channel:
            result = await asyncio.wait_for(
                channel.send(Command("M112", wait_for_ack=False)), timeout=1
            )

        assert result.status == AckStatus.OK
        assert simulator.received == ["M112"]

    @pytest.mark.asyncio
    async def test_empty_command_is_not_written(self):
        simulator = SimulatedPrinter()
        async with open_channel(simulator) as channel:
            result = await channel.send("   ; just a comment")

        assert result.status == AckStatus.OK
        assert simulator.received == []

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_busy_suspension(self):
        """With a cancelled token a busy command falls back to the plain timeout."""
        simulator = SimulatedPrinter(busy_interval=0.02)
        simulator.script("G28", ScriptedReply(busy=100))
        token = CancelToken()
        token.cancel("stop")

        async with open_channel(simulator, ack_timeout=0.1) as channel:
            result = await asyncio.wait_for(channel.send("G28", token=token), timeout=1.5)

        assert result.status == AckStatus.TIMEOUT

    @pytest.mark.asyncio
    async def test_connection_drop_while_waiting(self):
        simulator = SimulatedPrinter()
        simulator.script("G4", ScriptedReply(silent=True))

        async with open_channel(simulator, ack_timeout=5) as channel:
            send = asyncio.create_task(channel.send("G4 S10"))
            await asyncio.sleep(0.05)
            simulator.drop_connection()

            with pytest.raises(SerialConnectionError):
                await asyncio.wait_for(send, timeout=1)

    @pytest.mark.asyncio
    async def test_write_failure_is_reported_and_releases_the_gate(self):
        simulator = SimulatedPrinter()
        failures = []

        async with open_channel(simulator) as channel:
            channel.on_write_error = failures.append
            transport = channel.protocol.transport
            original_write = transport.write

            def failing_write(data):
                raise OSError(5, "Input/output error")

            transport.write = failing_write
            with pytest.raises(WriteError):
                await channel.send("M105")

            assert len(failures) == 1
            assert isinstance(failures[0], WriteError)
            assert not channel.in_flight
            assert not channel.waiter.armed

            transport.write = original_write
            result = await channel.send("M105")

        assert result.status == AckStatus.OK
