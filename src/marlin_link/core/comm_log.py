"""
Diagnostic communication log.

A bounded in-memory ring of everything that crossed the serial link plus
engine notices. Entries are trimmed by count on append and by age on
cleanup. The ring is purely diagnostic: no engine decision is made by
reading it back.
"""

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from marlin_link.core.logging import get_logger, log_line_recv, log_line_sent

logger = get_logger()

DEFAULT_MAX_ENTRIES = 1000
DEFAULT_MAX_AGE = 3600.0  # seconds


class LogDirection(str, Enum):
    """Origin of a log entry."""

    TX = "tx"
    RX = "rx"
    SYS = "sys"
    ERR = "err"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class LogEntry:
    """A single diagnostic log line."""

    timestamp: float
    direction: LogDirection
    text: str


class LogRing:
    """
    Ring of LogEntry bounded by both count and age.

    Args:
        max_entries: Maximum number of retained entries.
        max_age: Maximum entry age in seconds, enforced by cleanup().
        clock: Wall-clock source, injectable for tests.
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        max_age: float = DEFAULT_MAX_AGE,
        clock: Callable[[], float] = time.time,
    ):
        self.max_entries = max_entries
        self.max_age = max_age
        self._clock = clock
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)

    def __len__(self) -> int:
        return len(self._entries)

    def append(
        self,
        direction: LogDirection,
        text: str,
        timestamp: float | None = None,
    ) -> LogEntry:
        entry = LogEntry(
            timestamp=self._clock() if timestamp is None else timestamp,
            direction=direction,
            text=text,
        )
        self._entries.append(entry)

        if direction == LogDirection.TX:
            log_line_sent(text)
            logger.verbose(f">> {text}")
        elif direction == LogDirection.RX:
            log_line_recv(text)
            logger.verbose(f"<< {text}")
        elif direction == LogDirection.ERR:
            logger.warning(text)
        else:
            logger.verbose(f"-- {text}")

        return entry

    def cleanup(self, now: float | None = None) -> int:
        """
        Drop entries older than max_age.

        Returns:
            The number of removed entries.
        """
        now = self._clock() if now is None else now
        kept = [e for e in self._entries if now - e.timestamp < self.max_age]
        removed = len(self._entries) - len(kept)
        if removed:
            self._entries = deque(kept, maxlen=self.max_entries)
            logger.debug(f"Removed {removed} expired log entries")
        return removed

    def recent(self, n: int | None = None) -> list[LogEntry]:
        """Return the last n entries, oldest first (all entries if n is None)."""
        if n is None:
            return list(self._entries)
        if n <= 0:
            return []
        return list(self._entries)[-n:]

    def clear(self) -> None:
        self._entries.clear()
