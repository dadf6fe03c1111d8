"""
Response classification for Marlin serial output.

Marlin replies are free-form text lines with no correlation ids. `classify()`
runs every line through an ordered list of independent matchers and returns
the set of ResponseEvents that fired. A single line can carry several
meanings, e.g. `ok T:201.3 /200.0 B:60.0 /60.0` is both an acknowledgment
and a temperature report.

Matchers never raise: a malformed line simply does not match.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from marlin_link.core.logging import get_logger
from marlin_link.state.bed_mesh import GridSize, MeshPoint
from marlin_link.state.settings import SETTINGS_PREFIX_RE
from marlin_link.state.telemetry import HeaterReading, Position, TemperatureReport

logger = get_logger()


class EventKind(str, Enum):
    """Semantic categories a response line can belong to."""

    ACK = "ack"
    DEVICE_ERROR = "device_error"
    BUSY = "busy"
    WAIT_FOR_USER = "wait_for_user"
    TEMPERATURE = "temperature"
    POSITION = "position"
    SETTINGS_ECHO = "settings_echo"
    MESH_POINT = "mesh_point"
    MESH_ROW = "mesh_row"
    GRID_SIZE = "grid_size"
    LEVELING_COMPLETE = "leveling_complete"
    NO_MESH_DATA = "no_mesh_data"
    FIRMWARE_INFO = "firmware_info"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ResponseEvent:
    """
    A tagged interpretation of one response line.

    Payloads by kind:
        DEVICE_ERROR: the error line
        TEMPERATURE: TemperatureReport
        POSITION: Position
        SETTINGS_ECHO: the echo line
        MESH_POINT: MeshPoint
        MESH_ROW: tuple of heights
        GRID_SIZE: GridSize
        FIRMWARE_INFO: tuple of (key, value) pairs
        others: None
    """

    kind: EventKind
    payload: Any = None


_NUM = r"(-?\d+\.?\d*)"

ACK_RE = re.compile(r"^ok\b|\sok$", re.IGNORECASE)
ERROR_RE = re.compile(r"^(error|!!)|unknown command", re.IGNORECASE)
BUSY_RE = re.compile(r"busy:\s*processing", re.IGNORECASE)
WAIT_FOR_USER_RE = re.compile(
    r"wait for user|paused for user|click to resume|waiting for user input",
    re.IGNORECASE,
)
HOTEND_TEMP_RE = re.compile(r"\bT:" + _NUM + r"\s*/\s*" + _NUM)
BED_TEMP_RE = re.compile(r"\bB:" + _NUM + r"\s*/\s*" + _NUM)
POSITION_RE = re.compile(
    r"(?<!Bed )X:\s*" + _NUM + r"\s+Y:\s*" + _NUM + r"\s+Z:\s*" + _NUM
    + r"(?:\s+E:\s*" + _NUM + r")?"
)
MESH_POINT_RE = re.compile(r"G29\s+W\s+I(\d+)\s+J(\d+)\s+Z(-?\d+(?:\.\d+)?)", re.IGNORECASE)
GRID_HEADER_RE = re.compile(
    r"Bed Leveling Grid:|Bilinear Leveling Grid:|Mesh Bed Leveling|Bilinear Leveling",
    re.IGNORECASE,
)
GRID_SIZE_RE = re.compile(r"Size (\d+)x(\d+)", re.IGNORECASE)
LEVELING_COMPLETE_RE = re.compile(r"Bed leveling done|G29 finished", re.IGNORECASE)
NO_MESH_DATA_RE = re.compile(
    r"no (bed leveling|mesh) data|bed leveling not active", re.IGNORECASE
)
FIRMWARE_RE = re.compile(r"FIRMWARE_NAME:")
FIRMWARE_FIELD_RE = re.compile(r"([A-Z][A-Z0-9_]*):(.*?)(?=\s+[A-Z][A-Z0-9_]*:|$)")
_NUMBER_TOKEN_RE = re.compile(r"^[-+]?\d+(\.\d+)?$")


def _match_ack(line: str) -> ResponseEvent | None:
    if ACK_RE.search(line):
        return ResponseEvent(EventKind.ACK)
    return None


def _match_error(line: str) -> ResponseEvent | None:
    if ERROR_RE.search(line):
        return ResponseEvent(EventKind.DEVICE_ERROR, line)
    return None


def _match_busy(line: str) -> ResponseEvent | None:
    if BUSY_RE.search(line):
        return ResponseEvent(EventKind.BUSY)
    return None


def _match_wait_for_user(line: str) -> ResponseEvent | None:
    if WAIT_FOR_USER_RE.search(line):
        return ResponseEvent(EventKind.WAIT_FOR_USER)
    return None


def _match_temperature(line: str) -> ResponseEvent | None:
    hotend = HOTEND_TEMP_RE.search(line)
    bed = BED_TEMP_RE.search(line)
    if not hotend and not bed:
        return None
    report = TemperatureReport(
        hotend=HeaterReading(float(hotend.group(1)), float(hotend.group(2))) if hotend else None,
        bed=HeaterReading(float(bed.group(1)), float(bed.group(2))) if bed else None,
    )
    return ResponseEvent(EventKind.TEMPERATURE, report)


def _match_position(line: str) -> ResponseEvent | None:
    match = POSITION_RE.search(line)
    if not match:
        return None
    x, y, z, e = match.groups()
    position = Position(
        x=float(x), y=float(y), z=float(z), e=float(e) if e is not None else None
    )
    return ResponseEvent(EventKind.POSITION, position)


def _match_settings_echo(line: str) -> ResponseEvent | None:
    if SETTINGS_PREFIX_RE.search(line):
        return ResponseEvent(EventKind.SETTINGS_ECHO, line)
    return None


def _match_mesh_point(line: str) -> ResponseEvent | None:
    match = MESH_POINT_RE.search(line)
    if not match:
        return None
    point = MeshPoint(i=int(match.group(1)), j=int(match.group(2)), z=float(match.group(3)))
    return ResponseEvent(EventKind.MESH_POINT, point)


def _match_mesh_row(line: str) -> ResponseEvent | None:
    text = line.strip()
    if text.lower().startswith("echo:"):
        text = text[5:]
    tokens = text.replace("[", " ").replace("]", " ").split()

    if len(tokens) < 3 or not all(_NUMBER_TOKEN_RE.match(t) for t in tokens):
        return None

    # Column headers are plain integers
    if not any("." in t for t in tokens):
        return None

    # Grid rows from M420 V start with an integer row index
    if "." not in tokens[0] and all("." in t for t in tokens[1:]):
        tokens = tokens[1:]

    return ResponseEvent(EventKind.MESH_ROW, tuple(float(t) for t in tokens))


def _match_grid_size(line: str) -> ResponseEvent | None:
    if not GRID_HEADER_RE.search(line):
        return None
    match = GRID_SIZE_RE.search(line)
    if not match:
        return None
    return ResponseEvent(EventKind.GRID_SIZE, GridSize(int(match.group(1)), int(match.group(2))))


def _match_leveling_complete(line: str) -> ResponseEvent | None:
    if LEVELING_COMPLETE_RE.search(line):
        return ResponseEvent(EventKind.LEVELING_COMPLETE)
    return None


def _match_no_mesh_data(line: str) -> ResponseEvent | None:
    if NO_MESH_DATA_RE.search(line):
        return ResponseEvent(EventKind.NO_MESH_DATA)
    return None


def _match_firmware_info(line: str) -> ResponseEvent | None:
    if not FIRMWARE_RE.search(line):
        return None
    start = line.index("FIRMWARE_NAME:")
    fields = tuple(
        (key, value.strip()) for key, value in FIRMWARE_FIELD_RE.findall(line[start:])
    )
    return ResponseEvent(EventKind.FIRMWARE_INFO, fields)


MATCHERS: list[Callable[[str], ResponseEvent | None]] = [
    _match_ack,
    _match_error,
    _match_busy,
    _match_wait_for_user,
    _match_temperature,
    _match_position,
    _match_settings_echo,
    _match_mesh_point,
    _match_mesh_row,
    _match_grid_size,
    _match_leveling_complete,
    _match_no_mesh_data,
    _match_firmware_info,
]


def classify(line: str) -> frozenset[ResponseEvent]:
    """
    Tag a response line with every category it matches.

    Args:
        line: One decoded line, without its terminator.

    Returns:
        The matched events; empty if the line is not recognized.
    """
    events = set()
    for matcher in MATCHERS:
        try:
            event = matcher(line)
        except (ValueError, IndexError) as e:
            logger.debug(f"Matcher {matcher.__name__} rejected {line!r}: {e}")
            continue
        if event is not None:
            events.add(event)
    return frozenset(events)


def kinds(events: frozenset[ResponseEvent]) -> frozenset[EventKind]:
    """Project a classification result onto its event kinds."""
    return frozenset(e.kind for e in events)


def first(events: frozenset[ResponseEvent], kind: EventKind) -> ResponseEvent | None:
    for event in events:
        if event.kind == kind:
            return event
    return None
