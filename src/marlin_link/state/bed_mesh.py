"""
Bed mesh reconstruction.

Marlin reports leveling data in several shapes depending on the leveling
system and the command that asked for it:

    G29 W I0 J0 Z0.10000          explicit point (M503 / G29 W)
     0 +0.100 +0.050 -0.020       numeric row (M420 V grids)
    Bilinear Leveling Grid: Size 5x5  explicit grid size

The BedMeshAssembler buffers these fragments while a fetch or leveling run is
outstanding and turns them into one dense BedMesh on a completion marker or
an explicit process() call. Every publish replaces the previous mesh object
as a whole.
"""

import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from marlin_link.core.logging import get_logger

logger = get_logger()

MAX_FRAGMENTS = 1024

# Number of reported rows -> (x, y) for the usual square probe grids
ROW_COUNT_GRID_SIZES: dict[int, tuple[int, int]] = {
    9: (3, 3),
    16: (4, 4),
    25: (5, 5),
    49: (7, 7),
}


@dataclass(frozen=True)
class MeshPoint:
    i: int
    j: int
    z: float


@dataclass(frozen=True)
class GridSize:
    x: int
    y: int


class MeshState(str, Enum):
    """What the published mesh represents."""

    NONE = "none"  # nothing fetched yet
    VALID = "valid"
    EMPTY = "empty"  # the printer reported no leveling data
    UNKNOWN = "unknown"  # fragments arrived but no grid size could be inferred

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class BedMesh:
    """
    Immutable snapshot of the bed height map.

    grid[j][i] is the height at probe column i, row j; cells that were never
    reported are None.
    """

    state: MeshState = MeshState.NONE
    grid: tuple[tuple[float | None, ...], ...] = ()
    grid_size: GridSize | None = None
    min: float = 0.0
    max: float = 0.0
    range: float = 0.0
    timestamp: float | None = None

    @property
    def is_valid(self) -> bool:
        return self.state == MeshState.VALID

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "grid": [list(row) for row in self.grid],
            "grid_size": (
                {"x": self.grid_size.x, "y": self.grid_size.y} if self.grid_size else None
            ),
            "min": self.min,
            "max": self.max,
            "range": self.range,
            "timestamp": self.timestamp,
        }


class FragmentKind(str, Enum):
    POINT = "point"
    ROW = "row"
    GRID_SIZE = "grid_size"


def infer_grid_size(
    points: list[MeshPoint],
    rows: list[tuple[float, ...]],
) -> GridSize | None:
    """
    Infer the grid size from fragments when none was declared.

    Point extents win; rows are matched against the common square sizes and
    fall back to the first row's length.
    """
    if points:
        return GridSize(
            x=max(p.i for p in points) + 1,
            y=max(p.j for p in points) + 1,
        )

    if not rows:
        return None

    total = sum(len(row) for row in rows)
    for count in (len(rows), total):
        size = ROW_COUNT_GRID_SIZES.get(count)
        if size and size[0] * size[1] == total:
            return GridSize(*size)

    first_len = len(rows[0])
    if first_len == 0:
        return None
    return GridSize(x=first_len, y=math.ceil(total / first_len))


def _assemble_points(points: list[MeshPoint], size: GridSize) -> list[list[float | None]]:
    grid: list[list[float | None]] = [[None] * size.x for _ in range(size.y)]
    for p in points:
        if 0 <= p.i < size.x and 0 <= p.j < size.y:
            grid[p.j][p.i] = p.z
    return grid


def _assemble_rows(rows: list[tuple[float, ...]], size: GridSize) -> list[list[float | None]]:
    values = [v for row in rows for v in row]
    grid: list[list[float | None]] = []
    for j in range(size.y):
        row: list[float | None] = list(values[j * size.x:(j + 1) * size.x])
        row.extend([None] * (size.x - len(row)))
        grid.append(row)
    return grid


class BedMeshAssembler:
    """
    Buffer of raw mesh fragments and owner of the published BedMesh.

    Args:
        on_publish: Called with every newly published BedMesh.
        clock: Wall-clock source, injectable for tests.
    """

    def __init__(
        self,
        on_publish: Callable[[BedMesh], None] | None = None,
        clock: Callable[[], float] = time.time,
        max_fragments: int = MAX_FRAGMENTS,
    ):
        self._on_publish = on_publish
        self._clock = clock
        self._fragments: deque[tuple[FragmentKind, Any]] = deque(maxlen=max_fragments)
        self._collecting = False
        self._mesh = BedMesh()

    @property
    def collecting(self) -> bool:
        return self._collecting

    @property
    def pending(self) -> int:
        return len(self._fragments)

    @property
    def mesh(self) -> BedMesh:
        return self._mesh

    def begin(self) -> None:
        """Start collecting fragments for a new fetch or leveling run."""
        self._fragments.clear()
        self._collecting = True
        logger.debug("Bed mesh collection started")

    def cancel(self) -> None:
        self._fragments.clear()
        self._collecting = False

    def add_point(self, point: MeshPoint) -> None:
        if self._collecting:
            self._fragments.append((FragmentKind.POINT, point))

    def add_row(self, values: tuple[float, ...]) -> None:
        if self._collecting:
            self._fragments.append((FragmentKind.ROW, tuple(values)))

    def set_grid_size(self, size: GridSize) -> None:
        if self._collecting:
            self._fragments.append((FragmentKind.GRID_SIZE, size))

    def mark_no_data(self) -> BedMesh:
        """Publish an explicit empty mesh and drop anything buffered."""
        self._fragments.clear()
        self._collecting = False
        logger.info("Printer reports no bed leveling data")
        return self._publish(BedMesh(state=MeshState.EMPTY, timestamp=self._clock()))

    def process(self) -> BedMesh | None:
        """
        Assemble the buffered fragments into a new mesh and publish it.

        Returns:
            The published mesh, or None when nothing was buffered.
        """
        if not self._fragments:
            self._collecting = False
            return None

        points: list[MeshPoint] = []
        rows: list[tuple[float, ...]] = []
        declared: GridSize | None = None

        for kind, value in self._fragments:
            if kind == FragmentKind.POINT:
                points.append(value)
            elif kind == FragmentKind.ROW:
                rows.append(value)
            elif kind == FragmentKind.GRID_SIZE:
                declared = value

        self._fragments.clear()
        self._collecting = False

        size = declared or infer_grid_size(points, rows)
        if size is None or size.x <= 0 or size.y <= 0 or not (points or rows):
            logger.warning(
                f"Could not determine bed mesh grid size "
                f"({len(points)} points, {len(rows)} rows)"
            )
            return self._publish(BedMesh(state=MeshState.UNKNOWN, timestamp=self._clock()))

        if points:
            grid = _assemble_points(points, size)
        else:
            grid = _assemble_rows(rows, size)

        values = [v for row in grid for v in row if v is not None]
        if not values:
            return self._publish(BedMesh(state=MeshState.UNKNOWN, timestamp=self._clock()))

        low = min(values)
        high = max(values)
        mesh = BedMesh(
            state=MeshState.VALID,
            grid=tuple(tuple(row) for row in grid),
            grid_size=size,
            min=low,
            max=high,
            range=round(high - low, 6),
            timestamp=self._clock(),
        )
        logger.info(f"Bed mesh loaded: {size.x}x{size.y} grid, range {mesh.range:.3f}")
        return self._publish(mesh)

    def _publish(self, mesh: BedMesh) -> BedMesh:
        self._mesh = mesh
        if self._on_publish:
            self._on_publish(mesh)
        return mesh
