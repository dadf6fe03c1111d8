"""
Program streaming - sending a multi-line G-code program as a tracked job.

The streamer walks the program one line at a time through the command
channel: it checks for cancellation, waits while the printer reports busy or
waits for the user, sends the line, records progress, then optionally paces.
Only one job can be active; finished jobs are kept in a short history.
"""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from marlin_link.core.comm_log import LogDirection, LogRing
from marlin_link.core.logging import get_logger
from marlin_link.core.task import CancelToken, Command, ExecutionJob, JobStatus
from marlin_link.core.utils import (
    BusyTimeoutError,
    JobStateError,
    MarlinLinkError,
    SerialConnectionError,
    is_program_line,
    normalize_command,
)
from marlin_link.device.channel import CommandChannel

logger = get_logger()

DEFAULT_BUSY_CEILING = 900.0  # s
DEFAULT_BUSY_HEARTBEAT = 5.0  # s
BUSY_POLL_INTERVAL = 0.1  # s
DEFAULT_HISTORY_SIZE = 10
DEFAULT_EMERGENCY_STOP = ("M112", "M410", "M84")


@dataclass
class StreamOptions:
    """
    Per-job streaming options.

    Attributes:
        pace: Delay after each line, in seconds.
        wait_for_ack: Wait for ok after each line.
        line_timeout: Ack timeout per line in seconds; None uses the channel default.
    """

    pace: float = 0.0
    wait_for_ack: bool = True
    line_timeout: float | None = None


class _JobCancelled(Exception):
    pass


def prepare_program(lines: Iterable[str]) -> list[str]:
    """Drop blank and comment lines and strip inline comments."""
    program = []
    for line in lines:
        if not is_program_line(line):
            continue
        text = normalize_command(line)
        if text:
            program.append(text)
    return program


class ProgramStreamer:
    """
    Runs ExecutionJobs against the current command channel.

    Args:
        get_channel: Returns the channel of the live connection; raises
            SerialConnectionError when disconnected.
        log_ring: Diagnostic log for job notices.
        busy_ceiling: Longest tolerated busy/wait-for-user stretch before a
            line, in seconds.
        busy_heartbeat: Interval of "still waiting" notices, in seconds.
        emergency_stop: Commands sent when a job is cancelled.
        history_size: Number of finished jobs kept.
        on_connection_failure: Awaited when a job dies on a connection error.
    """

    def __init__(
        self,
        get_channel: Callable[[], CommandChannel],
        log_ring: LogRing | None = None,
        busy_ceiling: float = DEFAULT_BUSY_CEILING,
        busy_heartbeat: float = DEFAULT_BUSY_HEARTBEAT,
        emergency_stop: Iterable[str] = DEFAULT_EMERGENCY_STOP,
        history_size: int = DEFAULT_HISTORY_SIZE,
        on_connection_failure: Callable[[Exception], Awaitable[None]] | None = None,
    ):
        self._get_channel = get_channel
        self.log_ring = log_ring
        self.busy_ceiling = busy_ceiling
        self.busy_heartbeat = busy_heartbeat
        self.emergency_stop_commands = list(emergency_stop)
        self._on_connection_failure = on_connection_failure

        self._active: ExecutionJob | None = None
        self._task: asyncio.Task | None = None
        self._history: deque[ExecutionJob] = deque(maxlen=history_size)

    @property
    def active_job(self) -> ExecutionJob | None:
        return self._active

    def history(self) -> list[ExecutionJob]:
        """Finished jobs, oldest first."""
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()

    def _log(self, direction: LogDirection, text: str) -> None:
        if self.log_ring is not None:
            self.log_ring.append(direction, text)

    def start(
        self,
        lines: Iterable[str],
        label: str = "program",
        options: StreamOptions | None = None,
    ) -> ExecutionJob:
        """
        Start streaming a program as a new job.

        Returns:
            The running job.

        Raises:
            JobStateError: If another job is still active.
            SerialConnectionError: If there is no connection.
        """
        if self._active is not None and self._active.is_active:
            raise JobStateError(
                f"Job {self._active.id} ({self._active.label}) is still {self._active.status}"
            )

        channel = self._get_channel()
        program = prepare_program(lines)
        job = ExecutionJob(label=label, total=len(program))
        self._active = job
        self._log(LogDirection.SYS, f"Starting job {job.id} '{label}' ({job.total} lines)")
        logger.info(f"Starting job {job.id} '{label}' with {job.total} lines")

        self._task = asyncio.create_task(self._run(job, channel, program, options or StreamOptions()))
        return job

    def abort(self, job: ExecutionJob | None = None, reason: str = "cancelled by user") -> None:
        """
        Request cancellation of a job.

        Raises:
            JobStateError: If the job is not the active one or already finished.
        """
        job = job or self._active
        if job is None or not job.is_active:
            raise JobStateError("No active job to abort")
        if job is not self._active:
            raise JobStateError(f"Job {job.id} is not the active job")
        logger.info(f"Cancelling job {job.id}: {reason}")
        job.cancel(reason)

    async def shutdown(self, reason: str = "connection closed") -> None:
        """Stop the running job without sending the emergency stop sequence."""
        task = self._task
        if task is None or task.done() or task is asyncio.current_task():
            return
        if self._active is not None and self._active.is_active:
            self._active.token.cancel(reason)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(
        self,
        job: ExecutionJob,
        channel: CommandChannel,
        program: list[str],
        options: StreamOptions,
    ) -> None:
        try:
            for index, line in enumerate(program):
                if job.token.cancelled:
                    raise _JobCancelled()

                if job.paused:
                    await job.wait_resumed()
                    if job.token.cancelled:
                        raise _JobCancelled()

                await self._wait_until_ready(channel, job.token)

                command = Command(
                    text=line,
                    wait_for_ack=options.wait_for_ack,
                    timeout=options.line_timeout,
                )
                result = await channel.send(command, token=job.token)
                if not result.succeeded:
                    self._log(LogDirection.ERR, f"Job {job.id} stopped at line {index + 1}: {result.message}")
                    job.finish(JobStatus.ERROR, result.message)
                    return

                job.progress(index + 1)

                if options.pace > 0:
                    await asyncio.sleep(options.pace)

            job.finish(JobStatus.COMPLETED)
            self._log(LogDirection.SYS, f"Job {job.id} completed ({job.sent}/{job.total})")

        except _JobCancelled:
            reason = job.token.reason or "cancelled"
            self._log(LogDirection.SYS, f"Job {job.id} cancelled after {job.sent} lines: {reason}")
            await self.emergency_stop(channel)
            job.finish(JobStatus.CANCELLED, reason)

        except BusyTimeoutError as e:
            self._log(LogDirection.ERR, f"Job {job.id} aborted: {e}")
            job.finish(JobStatus.ERROR, str(e))

        except SerialConnectionError as e:
            logger.error(f"Job {job.id} lost the connection: {e}")
            self._log(LogDirection.ERR, f"Job {job.id} cancelled: {e}")
            job.finish(JobStatus.CANCELLED, str(e))
            if self._on_connection_failure is not None:
                await self._on_connection_failure(e)

        except asyncio.CancelledError:
            job.finish(JobStatus.CANCELLED, job.token.reason or "stream task cancelled")
            raise

        finally:
            if not job.is_active:
                self._history.append(job)
            if self._active is job:
                self._active = None
            logger.info(f"Job {job.id} finished: {job.status} ({job.sent}/{job.total})")

    async def _wait_until_ready(self, channel: CommandChannel, token: CancelToken) -> None:
        """
        Block while the printer is busy or waiting for the user.

        Raises:
            _JobCancelled: If the token is cancelled while waiting.
            BusyTimeoutError: If the printer stays busy past the ceiling.
        """
        activity = channel.activity
        if not activity.suspended:
            return

        loop = asyncio.get_running_loop()
        started = last_heartbeat = loop.time()

        while activity.suspended:
            if token.cancelled:
                raise _JobCancelled()

            now = loop.time()
            if now - started >= self.busy_ceiling:
                raise BusyTimeoutError(
                    f"Printer still busy after {self.busy_ceiling:g}s, giving up"
                )
            if now - last_heartbeat >= self.busy_heartbeat:
                last_heartbeat = now
                state = "waiting for user" if activity.waiting_for_user else "busy"
                logger.info(f"Printer {state}, waiting ({now - started:.0f}s)")
                self._log(LogDirection.SYS, f"Printer {state} for {now - started:.0f}s")

            await asyncio.sleep(BUSY_POLL_INTERVAL)

    async def emergency_stop(self, channel: CommandChannel | None = None) -> None:
        """
        Send the emergency stop sequence without waiting for acknowledgments.

        Failures of individual commands are logged, not raised.
        """
        if channel is None:
            try:
                channel = self._get_channel()
            except SerialConnectionError as e:
                logger.error(f"Cannot send emergency stop: {e}")
                return

        self._log(LogDirection.SYS, "Emergency stop")
        for text in self.emergency_stop_commands:
            try:
                await channel.send(Command(text=text, wait_for_ack=False))
            except MarlinLinkError as e:
                logger.error(f"Emergency stop command {text} failed: {e}")
