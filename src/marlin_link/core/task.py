"""
Command and job records for Marlin Link.

This module provides the Command sent through the channel, the AckResult
produced for each command, the CancelToken used to unblock waits, and the
ExecutionJob tracking one streamed program.
"""

import asyncio
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from marlin_link.core.events import EventBus
from marlin_link.core.logging import get_logger

logger = get_logger()

JOB_PROGRESS = "progress"
JOB_FINISHED = "finished"


@dataclass
class Command:
    """
    A single line in flight to the printer.

    Attributes:
        text: Raw command text; normalized (upper-cased, comments removed)
              before it is written.
        wait_for_ack: Whether the sender waits for an explicit ok/error.
        timeout: Per-command ack timeout in seconds. None uses the channel default.
    """

    text: str
    wait_for_ack: bool = True
    timeout: float | None = None


class AckStatus(str, Enum):
    """Outcome of a command on the wire."""

    OK = "ok"
    DEVICE_ERROR = "device_error"
    TIMEOUT = "timeout"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class AckResult:
    """
    Result of one command, produced exactly once per send.

    A TIMEOUT counts as success: the printer never said no.
    """

    status: AckStatus
    message: str | None = None

    @classmethod
    def ok(cls) -> "AckResult":
        return cls(AckStatus.OK)

    @classmethod
    def device_error(cls, message: str) -> "AckResult":
        return cls(AckStatus.DEVICE_ERROR, message)

    @classmethod
    def timeout(cls) -> "AckResult":
        return cls(AckStatus.TIMEOUT)

    @property
    def succeeded(self) -> bool:
        return self.status != AckStatus.DEVICE_ERROR


class CancelToken:
    """One-shot cancellation flag that can be awaited."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class JobStatus(str, Enum):
    """Lifecycle states of an ExecutionJob."""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.ERROR)


@dataclass(frozen=True)
class JobResult:
    """Terminal summary of a job."""

    sent: int
    total: int
    error: str | None = None


@dataclass
class ExecutionJob:
    """
    One tracked run of a multi-line program.

    The streamer owns the state transitions; callers observe progress via
    subscribe(), steer the job with pause()/resume()/cancel(), and await
    completion with wait().
    """

    label: str
    total: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    sent: int = 0
    status: JobStatus = JobStatus.RUNNING
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    result: JobResult | None = None
    token: CancelToken = field(default_factory=CancelToken, repr=False)

    def __post_init__(self) -> None:
        self._events = EventBus(frozenset({JOB_PROGRESS, JOB_FINISHED}))
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._finished_event = asyncio.Event()

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    @property
    def paused(self) -> bool:
        return self.status == JobStatus.PAUSED

    def subscribe(self, callback: Callable[..., Any], event: str = JOB_PROGRESS) -> Callable[[], None]:
        """
        Subscribe to job events.

        Progress callbacks receive (sent, total); finished callbacks receive the job.
        """
        return self._events.subscribe(event, callback)

    def pause(self) -> None:
        if self.status == JobStatus.RUNNING:
            self.status = JobStatus.PAUSED
            self._resume_event.clear()
            logger.info(f"Job {self.id} paused at {self.sent}/{self.total}")

    def resume(self) -> None:
        if self.status == JobStatus.PAUSED:
            self.status = JobStatus.RUNNING
            self._resume_event.set()
            logger.info(f"Job {self.id} resumed")

    def cancel(self, reason: str = "cancelled by user") -> None:
        if self.is_active:
            self.token.cancel(reason)
            # A paused job must wake up to observe the cancellation
            self._resume_event.set()

    async def wait_resumed(self) -> None:
        await self._resume_event.wait()

    async def wait(self) -> "ExecutionJob":
        """Wait until the job reaches a terminal state."""
        await self._finished_event.wait()
        return self

    def progress(self, sent: int) -> None:
        self.sent = sent
        self._events.emit(JOB_PROGRESS, self.sent, self.total)

    def finish(self, status: JobStatus, error: str | None = None) -> None:
        if not status.is_terminal:
            raise ValueError(f"{status} is not a terminal job status")
        if self.status.is_terminal:
            return
        self.status = status
        self.finished_at = time.time()
        self.result = JobResult(sent=self.sent, total=self.total, error=error)
        self._resume_event.set()
        self._finished_event.set()
        self._events.emit(JOB_FINISHED, self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "status": self.status.value,
            "sent": self.sent,
            "total": self.total,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.result.error if self.result else None,
        }
