"""
Settings snapshot parsing.

Folds the echo lines of a bulk settings dump (`M503`) into a structured
SettingsSnapshot. Each recognized command prefix has one extraction rule
with a fixed set of required parameter letters; a line missing any of them
is ignored. Fields start from fixed defaults, so a partial dump still yields
a complete record.

Example dump lines:
    echo:  M92 X80.00 Y80.00 Z400.00 E93.00
    echo:  M145 S0 H200.00 B60.00 F0
    echo:  M301 P21.73 I1.54 D73.76
"""

import re
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from typing import Any

from marlin_link.core.logging import get_logger

logger = get_logger()

# Command prefixes whose echo lines belong to the settings dump
SETTINGS_PREFIXES = (
    "M92",
    "M203",
    "M201",
    "M204",
    "M205",
    "M206",
    "M420",
    "G29 W",
    "M145",
    "M301",
    "M304",
    "M413",
    "M851",
    "M900",
    "M603",
    "M200",
)

SETTINGS_PREFIX_RE = re.compile(
    r"\b(" + "|".join(p.replace(" ", r"\s+") for p in SETTINGS_PREFIXES) + r")\b",
    re.IGNORECASE,
)
_PARAM_RE = re.compile(r"([A-Z])(-?\d+\.?\d*)")

MATERIAL_NAMES = {0: "pla", 1: "abs"}
DEFAULT_MATERIAL = "petg"


@dataclass
class Axes:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0


@dataclass
class AxesE(Axes):
    e: float = 0.0


@dataclass
class Acceleration:
    max: float = 1000.0
    print: float = 1000.0
    retract: float = 1000.0
    travel: float = 1000.0
    max_per_axis: AxesE = field(default_factory=lambda: AxesE(1000.0, 1000.0, 1000.0, 1000.0))
    jerk: AxesE = field(default_factory=AxesE)


@dataclass
class BedLeveling:
    enabled: bool = False
    fade_height: float = 10.0
    mesh: list[tuple[int, int, float]] = field(default_factory=list)


@dataclass
class HeatPreset:
    hotend: float
    bed: float


@dataclass
class Pid:
    p: float
    i: float
    d: float


@dataclass
class Filament:
    diameter: float = 1.75
    load_length: float = 0.0
    unload_length: float = 0.0


def _default_materials() -> dict[str, HeatPreset]:
    return {
        "pla": HeatPreset(hotend=200.0, bed=60.0),
        "abs": HeatPreset(hotend=240.0, bed=100.0),
        "petg": HeatPreset(hotend=230.0, bed=80.0),
    }


@dataclass
class SettingsSnapshot:
    """Structured printer configuration folded from a settings dump."""

    steps_per_unit: AxesE = field(default_factory=lambda: AxesE(80.0, 80.0, 400.0, 93.0))
    feedrates: AxesE = field(default_factory=lambda: AxesE(500.0, 500.0, 5.0, 25.0))
    acceleration: Acceleration = field(default_factory=Acceleration)
    home_offset: Axes = field(default_factory=Axes)
    bed_leveling: BedLeveling = field(default_factory=BedLeveling)
    material_heating: dict[str, HeatPreset] = field(default_factory=_default_materials)
    pid_hotend: Pid = field(default_factory=lambda: Pid(21.73, 1.54, 73.76))
    pid_bed: Pid = field(default_factory=lambda: Pid(301.25, 24.20, 73.76))
    z_probe_offset: Axes = field(default_factory=Axes)
    linear_advance: float = 0.0
    power_loss_recovery: bool = True
    filament: Filament = field(default_factory=Filament)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["bed_leveling"]["mesh"] = [
            {"i": i, "j": j, "z": z} for i, j, z in self.bed_leveling.mesh
        ]
        return data


class _ParseState:
    """Mutable accumulator used while folding one dump."""

    def __init__(self) -> None:
        self.snapshot = SettingsSnapshot()
        self.mesh_points: dict[tuple[int, int], float] = {}


def _axes_e(p: dict[str, float]) -> AxesE:
    return AxesE(x=p["X"], y=p["Y"], z=p["Z"], e=p["E"])


def _apply_m92(state: _ParseState, p: dict[str, float]) -> None:
    state.snapshot.steps_per_unit = _axes_e(p)


def _apply_m203(state: _ParseState, p: dict[str, float]) -> None:
    state.snapshot.feedrates = _axes_e(p)


def _apply_m201(state: _ParseState, p: dict[str, float]) -> None:
    per_axis = _axes_e(p)
    state.snapshot.acceleration.max_per_axis = per_axis
    state.snapshot.acceleration.max = max(per_axis.x, per_axis.y, per_axis.z, per_axis.e)


def _apply_m204(state: _ParseState, p: dict[str, float]) -> None:
    accel = state.snapshot.acceleration
    accel.print = p["P"]
    accel.retract = p["R"]
    accel.travel = p["T"]


def _apply_m205(state: _ParseState, p: dict[str, float]) -> None:
    state.snapshot.acceleration.jerk = _axes_e(p)


def _apply_m206(state: _ParseState, p: dict[str, float]) -> None:
    state.snapshot.home_offset = Axes(x=p["X"], y=p["Y"], z=p["Z"])


def _apply_m420(state: _ParseState, p: dict[str, float]) -> None:
    state.snapshot.bed_leveling.enabled = int(p["S"]) == 1
    state.snapshot.bed_leveling.fade_height = p["Z"]


def _apply_g29_w(state: _ParseState, p: dict[str, float]) -> None:
    state.mesh_points[(int(p["I"]), int(p["J"]))] = p["Z"]


def _apply_m145(state: _ParseState, p: dict[str, float]) -> None:
    material = MATERIAL_NAMES.get(int(p["S"]), DEFAULT_MATERIAL)
    state.snapshot.material_heating[material] = HeatPreset(hotend=p["H"], bed=p["B"])


def _apply_m301(state: _ParseState, p: dict[str, float]) -> None:
    state.snapshot.pid_hotend = Pid(p=p["P"], i=p["I"], d=p["D"])


def _apply_m304(state: _ParseState, p: dict[str, float]) -> None:
    state.snapshot.pid_bed = Pid(p=p["P"], i=p["I"], d=p["D"])


def _apply_m413(state: _ParseState, p: dict[str, float]) -> None:
    state.snapshot.power_loss_recovery = int(p["S"]) == 1


def _apply_m851(state: _ParseState, p: dict[str, float]) -> None:
    state.snapshot.z_probe_offset = Axes(x=p["X"], y=p["Y"], z=p["Z"])


def _apply_m900(state: _ParseState, p: dict[str, float]) -> None:
    state.snapshot.linear_advance = p["K"]


def _apply_m603(state: _ParseState, p: dict[str, float]) -> None:
    state.snapshot.filament.load_length = p["L"]
    state.snapshot.filament.unload_length = p["U"]


def _apply_m200(state: _ParseState, p: dict[str, float]) -> None:
    state.snapshot.filament.diameter = p["D"]


# prefix -> (required parameter letters, rule)
SETTINGS_RULES: dict[str, tuple[str, Callable[[_ParseState, dict[str, float]], None]]] = {
    "M92": ("XYZE", _apply_m92),
    "M203": ("XYZE", _apply_m203),
    "M201": ("XYZE", _apply_m201),
    "M204": ("PRT", _apply_m204),
    "M205": ("XYZE", _apply_m205),
    "M206": ("XYZ", _apply_m206),
    "M420": ("SZ", _apply_m420),
    "G29 W": ("IJZ", _apply_g29_w),
    "M145": ("SHB", _apply_m145),
    "M301": ("PID", _apply_m301),
    "M304": ("PID", _apply_m304),
    "M413": ("S", _apply_m413),
    "M851": ("XYZ", _apply_m851),
    "M900": ("K", _apply_m900),
    "M603": ("LU", _apply_m603),
    "M200": ("D", _apply_m200),
}


def match_settings_prefix(line: str) -> tuple[str, str] | None:
    """
    Find the settings command prefix on a line.

    Returns:
        (canonical prefix, parameter text after the prefix), or None.
    """
    match = SETTINGS_PREFIX_RE.search(line)
    if not match:
        return None
    prefix = " ".join(match.group(1).upper().split())
    return prefix, line[match.end():]


def parse_params(text: str) -> dict[str, float]:
    """Extract letter/number parameter pairs, e.g. "X80 Y-1.5" -> {"X": 80.0, "Y": -1.5}."""
    params: dict[str, float] = {}
    for letter, value in _PARAM_RE.findall(text.upper()):
        try:
            params[letter] = float(value)
        except ValueError:
            continue
    return params


def parse_settings_dump(lines: Iterable[str]) -> SettingsSnapshot:
    """
    Fold an ordered sequence of dump lines into a SettingsSnapshot.

    Lines that do not carry a known prefix, or lack a required parameter,
    are ignored. A repeated prefix overwrites earlier values.
    """
    state = _ParseState()
    applied = 0

    for line in lines:
        found = match_settings_prefix(line.strip())
        if not found:
            continue

        prefix, rest = found
        required, rule = SETTINGS_RULES[prefix]
        params = parse_params(rest)
        if any(letter not in params for letter in required):
            logger.debug(f"Ignoring incomplete {prefix} line: {line!r}")
            continue

        rule(state, params)
        applied += 1

    state.snapshot.bed_leveling.mesh = [
        (i, j, z) for (i, j), z in sorted(state.mesh_points.items())
    ]
    logger.debug(f"Parsed settings dump: {applied} lines applied")
    return state.snapshot
