"""
Event subscription for engine state changes.

Collaborators subscribe callbacks by event name and the engine publishes
snapshots through `emit`. Callbacks may be plain functions or coroutine
functions; coroutine results are scheduled as tasks on the running loop.
Exceptions raised by subscribers are logged and never reach the publisher.
"""

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

from marlin_link.core.logging import get_logger

logger = get_logger()

EVENT_LINE = "line"
EVENT_TELEMETRY = "telemetry"
EVENT_BED_MESH = "bed_mesh"
EVENT_SETTINGS = "settings"
EVENT_CONNECTION = "connection"
EVENT_JOB_PROGRESS = "job_progress"
EVENT_JOB_FINISHED = "job_finished"

EVENT_NAMES = frozenset({
    EVENT_LINE,
    EVENT_TELEMETRY,
    EVENT_BED_MESH,
    EVENT_SETTINGS,
    EVENT_CONNECTION,
    EVENT_JOB_PROGRESS,
    EVENT_JOB_FINISHED,
})

Callback = Callable[..., Any]


class EventBus:
    """Name-keyed publish/subscribe registry."""

    def __init__(self, names: frozenset[str] | None = None) -> None:
        self._names = names
        self._subscribers: dict[str, list[Callback]] = {}
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, name: str, callback: Callback) -> Callable[[], None]:
        """
        Register a callback for an event.

        Returns:
            A function that removes the subscription when called.
        """
        if self._names is not None and name not in self._names:
            raise ValueError(f"Unknown event '{name}'. Known events: {sorted(self._names)}")

        self._subscribers.setdefault(name, []).append(callback)

        def unsubscribe() -> None:
            self.unsubscribe(name, callback)

        return unsubscribe

    def unsubscribe(self, name: str, callback: Callback) -> None:
        callbacks = self._subscribers.get(name, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def emit(self, name: str, *args: Any) -> None:
        for callback in list(self._subscribers.get(name, [])):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._on_callback_done)
            except Exception as e:
                logger.error(f"Subscriber for '{name}' failed: {e}")

    def _on_callback_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Async subscriber failed: {exc}")

    def clear(self) -> None:
        self._subscribers.clear()
