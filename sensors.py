"""CPU temperature sources for the fan daemon.

Each source implements get() -> float | None, where None means the
measurement failed.
"""

from __future__ import annotations

import logging
import pathlib
import re
import subprocess
from typing import Callable, Protocol

log = logging.getLogger("pi-fan-daemon")

THERMAL_ROOT = pathlib.Path("/sys/class/thermal")


class TemperatureSource(Protocol):
    """Protocol for temperature sources."""

    def get(self) -> float | None:
        """Read the CPU temperature in Celsius. Returns None on failure."""
        ...


class ThermalZone:
    """CPU temperature via the kernel thermal zone (millidegrees in sysfs)."""

    _path: pathlib.Path

    def __init__(self, zone: int = 0, root: pathlib.Path = THERMAL_ROOT) -> None:
        self._path = root / f"thermal_zone{zone}" / "temp"
        if not self._path.exists():
            log.warning("%s not found", self._path)

    def get(self) -> float | None:
        """Read CPU temp from the thermal zone."""
        try:
            millidegrees = int(self._path.read_text().strip())
        except (ValueError, OSError) as e:
            log.debug("Failed to read %s: %s", self._path, e)
            return None
        return _valid_temp(millidegrees / 1000.0)


class Vcgencmd:
    """CPU temperature via the VideoCore firmware (vcgencmd measure_temp)."""

    _pattern = re.compile(r"temp=(-?\d+(?:\.\d+)?)")

    def get(self) -> float | None:
        """Read CPU temp from vcgencmd."""
        out = run_cmd(["vcgencmd", "measure_temp"])
        if out is None:
            return None
        # Output: "temp=48.3'C"
        match = self._pattern.search(out)
        if match is None:
            log.debug("Unexpected vcgencmd output: %r", out)
            return None
        return _valid_temp(float(match.group(1)))


SOURCES: dict[str, Callable[[], TemperatureSource]] = {
    "thermal": ThermalZone,
    "vcgencmd": Vcgencmd,
}


def run_cmd(cmd: list[str], timeout: float = 5.0) -> str | None:
    """Run command with timeout. Returns stdout on success, None on failure."""
    try:
        r = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        return r.stdout if r.returncode == 0 else None
    except (subprocess.TimeoutExpired, OSError):
        return None


def _valid_temp(value: float) -> float | None:
    """Return value if in valid range (0-120C), else None."""
    if 0 <= value <= 120:
        return value
    return None
