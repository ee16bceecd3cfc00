"""Unit tests for sensors.py."""
# pyright: basic
# ruff: noqa: SLF001

from __future__ import annotations

import pathlib
import tempfile
from unittest.mock import patch

import pytest

import sensors


class TestRunCmd:
    """Tests for run_cmd helper function."""

    def test_success(self) -> None:
        result = sensors.run_cmd(["echo", "hello"])
        assert result == "hello\n"

    def test_failure_nonzero_exit(self) -> None:
        result = sensors.run_cmd(["false"])
        assert result is None

    def test_timeout(self) -> None:
        result = sensors.run_cmd(["sleep", "10"], timeout=0.1)
        assert result is None

    def test_command_not_found(self) -> None:
        result = sensors.run_cmd(["nonexistent_command_12345"])
        assert result is None


class TestValidTemp:
    """Tests for _valid_temp helper function."""

    def test_valid_in_range(self) -> None:
        assert sensors._valid_temp(50.0) == 50.0

    def test_valid_at_lower_boundary(self) -> None:
        assert sensors._valid_temp(0.0) == 0.0

    def test_valid_at_upper_boundary(self) -> None:
        assert sensors._valid_temp(120.0) == 120.0

    def test_invalid_below_range(self) -> None:
        assert sensors._valid_temp(-0.1) is None

    def test_invalid_above_range(self) -> None:
        assert sensors._valid_temp(120.1) is None


class TestThermalZone:
    """Tests for ThermalZone sysfs sensor."""

    def _zone(self, root: pathlib.Path, content: str | None, zone: int = 0) -> None:
        zone_dir = root / f"thermal_zone{zone}"
        zone_dir.mkdir()
        if content is not None:
            (zone_dir / "temp").write_text(content)

    def test_reads_millidegrees(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = pathlib.Path(tmpdir)
            self._zone(root, "48312\n")
            assert sensors.ThermalZone(root=root).get() == 48.312

    def test_other_zone(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = pathlib.Path(tmpdir)
            self._zone(root, "40000\n")
            self._zone(root, "65500\n", zone=1)
            assert sensors.ThermalZone(zone=1, root=root).get() == 65.5

    def test_missing_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            sensor = sensors.ThermalZone(root=pathlib.Path(tmpdir))
            assert sensor.get() is None

    def test_missing_file_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            _ = sensors.ThermalZone(root=pathlib.Path(tmpdir))
        assert any("not found" in m for m in caplog.messages)

    def test_malformed_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = pathlib.Path(tmpdir)
            self._zone(root, "not a number\n")
            assert sensors.ThermalZone(root=root).get() is None

    def test_out_of_range(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = pathlib.Path(tmpdir)
            self._zone(root, "150000\n")
            assert sensors.ThermalZone(root=root).get() is None

    def test_negative_reading(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = pathlib.Path(tmpdir)
            self._zone(root, "-5000\n")
            assert sensors.ThermalZone(root=root).get() is None

    def test_recovers_after_failure(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = pathlib.Path(tmpdir)
            self._zone(root, None)
            sensor = sensors.ThermalZone(root=root)
            assert sensor.get() is None
            (root / "thermal_zone0" / "temp").write_text("51000\n")
            assert sensor.get() == 51.0


class TestVcgencmd:
    """Tests for Vcgencmd firmware sensor."""

    @pytest.fixture
    def sensor(self) -> sensors.Vcgencmd:
        return sensors.Vcgencmd()

    def test_get(self, sensor: sensors.Vcgencmd) -> None:
        with patch.object(sensors, "run_cmd", return_value="temp=48.3'C\n"):
            assert sensor.get() == 48.3

    def test_get_integer(self, sensor: sensors.Vcgencmd) -> None:
        with patch.object(sensors, "run_cmd", return_value="temp=61'C\n"):
            assert sensor.get() == 61.0

    def test_command(self, sensor: sensors.Vcgencmd) -> None:
        with patch.object(sensors, "run_cmd", return_value="temp=48.3'C\n") as cmd:
            _ = sensor.get()
        cmd.assert_called_once_with(["vcgencmd", "measure_temp"])

    def test_command_failure(self, sensor: sensors.Vcgencmd) -> None:
        with patch.object(sensors, "run_cmd", return_value=None):
            assert sensor.get() is None

    def test_unexpected_output(self, sensor: sensors.Vcgencmd) -> None:
        with patch.object(sensors, "run_cmd", return_value="VCHI initialization failed\n"):
            assert sensor.get() is None

    def test_empty_output(self, sensor: sensors.Vcgencmd) -> None:
        with patch.object(sensors, "run_cmd", return_value=""):
            assert sensor.get() is None

    def test_out_of_range(self, sensor: sensors.Vcgencmd) -> None:
        with patch.object(sensors, "run_cmd", return_value="temp=150.0'C\n"):
            assert sensor.get() is None


def test_sources_registry() -> None:
    assert set(sensors.SOURCES) == {"thermal", "vcgencmd"}
    assert isinstance(sensors.SOURCES["vcgencmd"](), sensors.Vcgencmd)
