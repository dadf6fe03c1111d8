"""
Command channel - serialized writes with acknowledgment correlation.

Marlin answers every command with `ok` (or an error line) but gives no hint
which command the answer belongs to. The channel therefore lets exactly one
command be in flight: a caller holds the writer lock from the write until
its acknowledgment, device error or timeout has been resolved.

While the printer reports `busy: processing` or waits for the user, the
acknowledgment timeout clock is suspended; long moves, homing and heating
never trip it.
"""

import asyncio
from collections.abc import Callable

from marlin_link.core.comm_log import LogDirection, LogRing
from marlin_link.core.logging import get_logger
from marlin_link.core.task import AckResult, AckStatus, CancelToken, Command
from marlin_link.core.utils import SerialConnectionError, WriteError, normalize_command
from marlin_link.device.classifier import EventKind, ResponseEvent
from marlin_link.device.interface import SerialLineProtocol

logger = get_logger()

DEFAULT_ACK_TIMEOUT = 60.0  # s
DEFAULT_BUSY_HOLD = 3.0  # s
DEFAULT_NO_ACK_DELAY = 0.05  # s
DEFAULT_ERROR_OK_GRACE = 0.2  # s
ACK_POLL_INTERVAL = 0.05  # s

_CONNECTION_LOST = None


class DeviceActivity:
    """
    Tracks whether the printer is busy or waiting for the user.

    Marlin repeats `busy: processing` every couple of seconds while working,
    so a busy report holds for `busy_hold` seconds. A wait-for-user report
    holds until the next acknowledgment or error.
    """

    def __init__(
        self,
        busy_hold: float = DEFAULT_BUSY_HOLD,
        clock: Callable[[], float] | None = None,
    ):
        self.busy_hold = busy_hold
        self._clock = clock or asyncio.get_running_loop().time
        self._busy_until = 0.0
        self._waiting_for_user = False

    @property
    def busy(self) -> bool:
        return self._clock() < self._busy_until

    @property
    def waiting_for_user(self) -> bool:
        return self._waiting_for_user

    @property
    def suspended(self) -> bool:
        """True while acknowledgment timeouts must not advance."""
        return self.busy or self._waiting_for_user

    def note_busy(self) -> None:
        self._busy_until = self._clock() + self.busy_hold

    def note_wait_for_user(self) -> None:
        self._waiting_for_user = True

    def note_resolved(self) -> None:
        self._busy_until = 0.0
        self._waiting_for_user = False

    def reset(self) -> None:
        self.note_resolved()


class AckWaiter:
    """
    Collects acknowledgments for the single command in flight.

    The waiter is armed right before a write and disarmed once the result is
    resolved; acknowledgments arriving while disarmed belong to nobody and
    are dropped.
    """

    def __init__(self, activity: DeviceActivity):
        self.activity = activity
        self._results: asyncio.Queue[AckResult | None] | None = None

    @property
    def armed(self) -> bool:
        return self._results is not None

    def arm(self) -> None:
        self._results = asyncio.Queue()

    def disarm(self) -> None:
        self._results = None

    def feed(self, events: frozenset[ResponseEvent]) -> None:
        """Route classified events of one line to the waiting command."""
        error: str | None = None
        acked = False
        for event in events:
            if event.kind == EventKind.BUSY:
                self.activity.note_busy()
            elif event.kind == EventKind.WAIT_FOR_USER:
                self.activity.note_wait_for_user()
            elif event.kind == EventKind.DEVICE_ERROR:
                error = event.payload
            elif event.kind == EventKind.ACK:
                acked = True

        if error is None and not acked:
            return

        self.activity.note_resolved()

        if self._results is None:
            if acked and error is None:
                logger.debug("Dropping acknowledgment with no command in flight")
            return

        # An error line that also says ok is still an error
        if error is not None:
            self._results.put_nowait(AckResult.device_error(error))
        else:
            self._results.put_nowait(AckResult.ok())

    def connection_lost(self) -> None:
        if self._results is not None:
            self._results.put_nowait(_CONNECTION_LOST)

    def drain(self) -> int:
        """Discard queued results, returning how many were dropped."""
        dropped = 0
        if self._results is not None:
            while not self._results.empty():
                self._results.get_nowait()
                dropped += 1
        return dropped

    async def wait(self, timeout: float, token: CancelToken | None = None) -> AckResult:
        """
        Wait for the armed command's result.

        Time spent while the printer is busy or waiting for the user does not
        count against `timeout`, unless `token` has been cancelled.

        Raises:
            SerialConnectionError: If the connection drops while waiting.
        """
        if self._results is None:
            raise RuntimeError("AckWaiter.wait() called while not armed")

        results = self._results
        loop = asyncio.get_running_loop()
        remaining = timeout

        def suspended() -> bool:
            return self.activity.suspended and not (token is not None and token.cancelled)

        while True:
            was_suspended = suspended()
            step = ACK_POLL_INTERVAL if was_suspended else min(remaining, ACK_POLL_INTERVAL)
            started = loop.time()

            try:
                result = await asyncio.wait_for(results.get(), timeout=max(step, 0))
            except asyncio.TimeoutError:
                # A busy report during the step suspends the whole step
                if not was_suspended and not suspended():
                    remaining -= loop.time() - started
                if remaining <= 0:
                    return AckResult.timeout()
                continue

            if result is _CONNECTION_LOST:
                raise SerialConnectionError("Connection lost while waiting for acknowledgment")
            return result


class CommandChannel:
    """
    Single-writer gate in front of the serial connection.

    Args:
        protocol: Open serial protocol to write to.
        log_ring: Diagnostic log receiving every written line.
        ack_timeout: Default acknowledgment timeout in seconds.
        busy_hold: How long one busy report suspends the timeout, in seconds.
        no_ack_delay: Pause after a write that does not wait for ok, in seconds.
        error_ok_grace: How long to keep the gate closed after a device error
            to absorb the `ok` Marlin sends after most errors, in seconds.
        on_write_error: Called with the WriteError before it is raised, so the
            owner can tear the connection down.
    """

    def __init__(
        self,
        protocol: SerialLineProtocol,
        log_ring: LogRing | None = None,
        ack_timeout: float = DEFAULT_ACK_TIMEOUT,
        busy_hold: float = DEFAULT_BUSY_HOLD,
        no_ack_delay: float = DEFAULT_NO_ACK_DELAY,
        error_ok_grace: float = DEFAULT_ERROR_OK_GRACE,
        on_write_error: Callable[[WriteError], None] | None = None,
    ):
        self.protocol = protocol
        self.log_ring = log_ring
        self.ack_timeout = ack_timeout
        self.no_ack_delay = no_ack_delay
        self.error_ok_grace = error_ok_grace
        self.on_write_error = on_write_error
        self.activity = DeviceActivity(busy_hold=busy_hold)
        self.waiter = AckWaiter(self.activity)
        self._lock = asyncio.Lock()

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    def handle_events(self, events: frozenset[ResponseEvent]) -> None:
        self.waiter.feed(events)

    def connection_lost(self) -> None:
        self.waiter.connection_lost()

    async def send(
        self,
        command: Command | str,
        token: CancelToken | None = None,
    ) -> AckResult:
        """
        Write one command and wait for its result.

        Args:
            command: Command or raw text.
            token: Optional job cancel token. Cancelling it does not abort the
                wait for a command already written, it only stops busy reports
                from extending that wait.

        Returns:
            The AckResult. A timeout is reported as TIMEOUT, which counts as
            success.

        Raises:
            WriteError: If the write fails.
            SerialConnectionError: If the connection drops while waiting.
        """
        if isinstance(command, str):
            command = Command(text=command)

        text = normalize_command(command.text)
        if not text:
            return AckResult.ok()

        async with self._lock:
            self.waiter.arm()
            try:
                try:
                    line = self.protocol.write_line(text)
                except WriteError as e:
                    if self.on_write_error is not None:
                        self.on_write_error(e)
                    raise
                if self.log_ring is not None:
                    self.log_ring.append(LogDirection.TX, line)

                if not command.wait_for_ack:
                    await asyncio.sleep(self.no_ack_delay)
                    return AckResult.ok()

                timeout = command.timeout if command.timeout is not None else self.ack_timeout
                result = await self.waiter.wait(timeout, token)

                if result.status == AckStatus.TIMEOUT:
                    logger.warning(f"No acknowledgment for {line!r} after {timeout}s, continuing")
                    if self.log_ring is not None:
                        self.log_ring.append(LogDirection.SYS, f"Timeout waiting for ok: {line}")
                elif not result.succeeded:
                    logger.warning(f"Printer rejected {line!r}: {result.message}")
                    await asyncio.sleep(self.error_ok_grace)
                    dropped = self.waiter.drain()
                    if dropped:
                        logger.debug(f"Swallowed {dropped} acknowledgment(s) trailing an error")

                return result
            finally:
                self.waiter.disarm()
