"""
Telemetry aggregation.

Keeps the latest temperature and position readings plus a bounded,
time-ordered history of samples for charting. Samples are only recorded
while the connection is up; disconnecting clears both the history and the
current values.
"""

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from marlin_link.core.logging import get_logger

logger = get_logger()

DEFAULT_HISTORY_SIZE = 60


@dataclass(frozen=True)
class HeaterReading:
    """Current and target temperature of one heater."""

    current: float = 0.0
    target: float = 0.0


@dataclass(frozen=True)
class TemperatureReport:
    """
    Temperatures parsed from one telemetry line.

    A heater that did not appear on the line is None.
    """

    hotend: HeaterReading | None = None
    bed: HeaterReading | None = None


@dataclass(frozen=True)
class Position:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    e: float | None = None


@dataclass(frozen=True)
class TelemetrySample:
    """One timestamped history entry."""

    timestamp: float
    hotend: HeaterReading | None = None
    bed: HeaterReading | None = None
    position: Position | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"timestamp": self.timestamp}
        if self.hotend is not None:
            data["hotend"] = {"current": self.hotend.current, "target": self.hotend.target}
        if self.bed is not None:
            data["bed"] = {"current": self.bed.current, "target": self.bed.target}
        if self.position is not None:
            data["position"] = {"x": self.position.x, "y": self.position.y, "z": self.position.z}
        return data


@dataclass(frozen=True)
class TelemetrySnapshot:
    """Latest known readings."""

    hotend: HeaterReading = field(default_factory=HeaterReading)
    bed: HeaterReading = field(default_factory=HeaterReading)
    position: Position = field(default_factory=Position)
    updated_at: float | None = None


class TelemetryAggregator:
    """
    Rolling store of printer telemetry.

    Args:
        history_size: Maximum number of retained samples.
        clock: Wall-clock source, injectable for tests.
    """

    def __init__(
        self,
        history_size: int = DEFAULT_HISTORY_SIZE,
        clock: Callable[[], float] = time.time,
    ):
        self._clock = clock
        self._history: deque[TelemetrySample] = deque(maxlen=history_size)
        self._current = TelemetrySnapshot()
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def set_connected(self, connected: bool) -> None:
        """Follow the connection state; going offline drops all telemetry."""
        self._connected = connected
        if not connected:
            self.reset()

    def reset(self) -> None:
        self._history.clear()
        self._current = TelemetrySnapshot()

    def record_temperature(self, report: TemperatureReport) -> TelemetrySample | None:
        if not self._connected:
            return None
        if report.hotend is None and report.bed is None:
            return None

        now = self._clock()
        self._current = TelemetrySnapshot(
            hotend=report.hotend or self._current.hotend,
            bed=report.bed or self._current.bed,
            position=self._current.position,
            updated_at=now,
        )
        sample = TelemetrySample(timestamp=now, hotend=report.hotend, bed=report.bed)
        self._history.append(sample)
        return sample

    def record_position(self, position: Position) -> TelemetrySample | None:
        if not self._connected:
            return None

        now = self._clock()
        self._current = TelemetrySnapshot(
            hotend=self._current.hotend,
            bed=self._current.bed,
            position=position,
            updated_at=now,
        )
        sample = TelemetrySample(timestamp=now, position=position)
        self._history.append(sample)
        return sample

    def current(self) -> TelemetrySnapshot:
        return self._current

    def history(self) -> list[TelemetrySample]:
        """Samples oldest first."""
        return list(self._history)
