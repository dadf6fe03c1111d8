"""Tests for the command-line interface against the simulated printer."""

import yaml
from click.testing import CliRunner

from marlin_link.cli import main

NO_CONFIG = ["-c", "/nonexistent/marlin-link.yaml"]


class TestCli:
    """Tests for the marlin-link CLI in dry-run mode."""

    def test_send(self):
        result = CliRunner().invoke(main, NO_CONFIG + ["--dry-run", "send", "G28", "m105"])

        assert result.exit_code == 0, result.output
        assert "G28: ok" in result.output
        assert "m105: ok" in result.output

    def test_settings(self):
        result = CliRunner().invoke(main, NO_CONFIG + ["-q", "--dry-run", "settings"])

        assert result.exit_code == 0, result.output
        data = yaml.safe_load(result.output)
        assert data["steps_per_unit"]["z"] == 400.0
        assert len(data["bed_leveling"]["mesh"]) == 25

    def test_mesh(self):
        result = CliRunner().invoke(main, NO_CONFIG + ["--dry-run", "mesh"])

        assert result.exit_code == 0, result.output
        assert "+0.100" in result.output
        assert "range 0.310" in result.output

    def test_stream(self, tmp_path):
        program = tmp_path / "part.gcode"
        program.write_text("; test part\nG28\nG1 X10 Y10 ; move\nM84\n", encoding="utf-8")

        result = CliRunner().invoke(main, NO_CONFIG + ["--dry-run", "stream", str(program)])

        assert result.exit_code == 0, result.output
        assert "completed (3/3)" in result.output

    def test_invalid_baud_rate(self):
        result = CliRunner().invoke(main, NO_CONFIG + ["-b", "0", "--dry-run", "send", "M105"])

        assert result.exit_code == 2
        assert "baud" in result.output.lower()

    def test_generate_config(self, tmp_path):
        config_path = tmp_path / "config.yaml"

        result = CliRunner().invoke(
            main, ["-c", str(config_path), "-d", "1a86:7523", "generate-config"]
        )

        assert result.exit_code == 0, result.output
        data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        assert data["connection"]["usb-id"] == "1a86:7523"
