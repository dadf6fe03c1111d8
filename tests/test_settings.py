"""Tests for settings dump parsing."""

import pytest

from marlin_link.device.simulator import DEFAULT_SETTINGS_DUMP
from marlin_link.state.settings import (
    Axes,
    AxesE,
    HeatPreset,
    Pid,
    SettingsSnapshot,
    match_settings_prefix,
    parse_params,
    parse_settings_dump,
)


class TestHelpers:
    """Tests for prefix matching and parameter extraction."""

    @pytest.mark.parametrize(
        "line,prefix",
        [
            ("echo:  M92 X80.00 Y80.00 Z400.00 E93.00", "M92"),
            ("M203 X500 Y500 Z5 E25", "M203"),
            ("echo:  G29 W I1 J2 Z0.1", "G29 W"),
            ("echo:  g29  w I1 J2 Z0.1", "G29 W"),
        ],
    )
    def test_match_prefix(self, line, prefix):
        assert match_settings_prefix(line)[0] == prefix

    def test_prefix_is_a_whole_word(self):
        assert match_settings_prefix("echo:  M9200 X1") is None

    def test_parse_params(self):
        assert parse_params(" X80 Y-1.5 z0.25") == {"X": 80.0, "Y": -1.5, "Z": 0.25}


class TestParseSettingsDump:
    """Tests for parse_settings_dump."""

    def test_empty_dump_yields_defaults(self):
        snapshot = parse_settings_dump([])

        assert snapshot == SettingsSnapshot()
        assert snapshot.steps_per_unit == AxesE(80.0, 80.0, 400.0, 93.0)
        assert snapshot.material_heating["petg"] == HeatPreset(230.0, 80.0)
        assert snapshot.pid_hotend == Pid(21.73, 1.54, 73.76)
        assert snapshot.power_loss_recovery
        assert snapshot.filament.diameter == 1.75

    def test_full_dump(self):
        snapshot = parse_settings_dump(DEFAULT_SETTINGS_DUMP)

        assert snapshot.feedrates == AxesE(500.0, 500.0, 5.0, 25.0)
        assert snapshot.acceleration.max_per_axis == AxesE(500.0, 500.0, 100.0, 5000.0)
        assert snapshot.acceleration.max == 5000.0
        assert (snapshot.acceleration.print, snapshot.acceleration.retract, snapshot.acceleration.travel) == (
            500.0,
            500.0,
            500.0,
        )
        assert snapshot.acceleration.jerk == AxesE(10.0, 10.0, 0.3, 5.0)
        assert snapshot.home_offset == Axes(0.0, 0.0, 0.0)
        assert snapshot.bed_leveling.enabled
        assert snapshot.bed_leveling.fade_height == 10.0
        assert snapshot.material_heating["pla"] == HeatPreset(200.0, 60.0)
        assert snapshot.material_heating["abs"] == HeatPreset(240.0, 110.0)
        assert snapshot.pid_bed == Pid(301.25, 24.20, 73.76)
        assert snapshot.z_probe_offset == Axes(-36.0, -8.0, -1.5)
        assert snapshot.linear_advance == 0.0
        assert snapshot.filament.load_length == 400.0
        assert snapshot.filament.unload_length == 420.0

    def test_parsing_is_idempotent(self):
        first = parse_settings_dump(DEFAULT_SETTINGS_DUMP)
        second = parse_settings_dump(DEFAULT_SETTINGS_DUMP)
        assert first.to_dict() == second.to_dict()

    def test_incomplete_lines_are_ignored(self):
        snapshot = parse_settings_dump([
            "echo:  M92 X100.00 Y100.00 Z400.00",
            "echo:  M301 P10.0 I1.0",
            "echo:  M900 K0.08",
        ])

        assert snapshot.steps_per_unit == SettingsSnapshot().steps_per_unit
        assert snapshot.pid_hotend == SettingsSnapshot().pid_hotend
        assert snapshot.linear_advance == 0.08

    def test_other_material_slots_map_to_petg(self):
        snapshot = parse_settings_dump(["echo:  M145 S2 H235 B85 F0"])
        assert snapshot.material_heating["petg"] == HeatPreset(235.0, 85.0)

    def test_flags(self):
        snapshot = parse_settings_dump(["echo:  M413 S0", "echo:  M420 S0 Z0.00"])
        assert not snapshot.power_loss_recovery
        assert not snapshot.bed_leveling.enabled
        assert snapshot.bed_leveling.fade_height == 0.0

    def test_mesh_points_are_sorted(self):
        snapshot = parse_settings_dump([
            "echo:  G29 W I1 J1 Z0.40000",
            "echo:  G29 W I0 J1 Z0.30000",
            "echo:  G29 W I1 J0 Z0.20000",
            "echo:  G29 W I0 J0 Z0.10000",
        ])

        assert snapshot.bed_leveling.mesh == [(0, 0, 0.1), (0, 1, 0.3), (1, 0, 0.2), (1, 1, 0.4)]
        assert snapshot.to_dict()["bed_leveling"]["mesh"][0] == {"i": 0, "j": 0, "z": 0.1}

    def test_last_write_wins(self):
        snapshot = parse_settings_dump([
            "echo:  M92 X80.00 Y80.00 Z400.00 E93.00",
            "echo:  M92 X100.00 Y100.00 Z800.00 E415.00",
            "echo:  G29 W I0 J0 Z0.10000",
            "echo:  G29 W I0 J0 Z-0.05000",
        ])

        assert snapshot.steps_per_unit == AxesE(100.0, 100.0, 800.0, 415.0)
        assert snapshot.bed_leveling.mesh == [(0, 0, -0.05)]

    def test_filament_diameter(self):
        assert parse_settings_dump(["echo:  M200 D2.85"]).filament.diameter == 2.85
