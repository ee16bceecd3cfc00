#!/usr/bin/env python3
# pyright: basic
"""
Visualize pi-fan-daemon temperature logs from journalctl.

Parses logs, stores data in npz, generates plots.

The daemon logs a line on every fan transition; run it with --debug to get a
sample on every tick.

Usage:
    visualize-fan-temps                         # scrape since the daemon last started
    visualize-fan-temps --all                   # scrape all history
    visualize-fan-temps --since 2h              # scrape last 2 hours (relative)
    visualize-fan-temps --since "2026-01-04 10:30:00"  # scrape since time (absolute)
    visualize-fan-temps --npz data.npz          # load existing npz, skip collection
"""

from __future__ import annotations

import argparse
import re
import subprocess
import sys
import time
from datetime import datetime
from pathlib import Path

import numpy as np

from sensors import run_cmd

DEFAULT_UNIT = "pi-fan-daemon"
RESULTS_DIR = Path("results")
DEFAULT_NPZ = RESULTS_DIR / "temps.npz"
DEFAULT_PNG = RESULTS_DIR / "temps.png"

# "INFO: 76.0C: Fan started because temp is too high!" / "DEBUG: 48.2C: fan=off"
MESSAGE_PATTERN = re.compile(r"^(?:[A-Z]+:\s*)?(\d+(?:\.\d+)?)C:\s*(.*)$")
UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_flexible_datetime(s: str) -> float:
    """Unix timestamp for "30m", "2h", "1d" ago, or for an ISO date/time."""
    s = s.strip()
    match = re.fullmatch(r"(\d+)\s*([smhd])", s)
    if match:
        return time.time() - int(match.group(1)) * UNIT_SECONDS[match.group(2)]
    try:
        return datetime.fromisoformat(s).timestamp()
    except ValueError:
        raise ValueError(
            f"Expected a relative time (30m, 2h, 1d) or YYYY-MM-DD[ HH:MM:SS], got: {s!r}"
        ) from None


def service_start_time(unit: str = DEFAULT_UNIT) -> float | None:
    """Local timestamp of the unit's last start, None if it never started."""
    out = run_cmd(
        ["systemctl", "show", unit, "--property=ActiveEnterTimestamp", "--value"]
    )
    # "Sat 2026-01-04 08:30:00 CET"
    fields = (out or "").split()
    if len(fields) < 3:
        return None
    try:
        return datetime.fromisoformat(f"{fields[1]} {fields[2]}").timestamp()
    except ValueError:
        return None


def parse_journalctl(
    since: float | None = None, unit: str = DEFAULT_UNIT
) -> dict[str, list[float]]:
    """Parse journalctl output for daemon logs.

    Args:
        since: Unix timestamp to start from, or None for all.
        unit: systemd unit name.
    """
    cmd = ["journalctl", "-u", unit, "--no-pager", "--output=short-iso"]
    if since is not None and since > 0:
        cmd.extend(["--since", f"@{int(since)}"])

    result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    if result.returncode != 0:
        print(f"journalctl failed: {result.stderr}", file=sys.stderr)
        return {}

    return parse_logs(result.stdout, unit)


def fan_state(status: str, previous: float) -> float:
    """Fan state (1.0 on, 0.0 off) after a logged status message."""
    if status == "fan=on" or status.startswith("Fan started"):
        return 1.0
    if status == "fan=off" or status.startswith("Fan stopped"):
        return 0.0
    return previous


def parse_logs(log_text: str, unit: str = DEFAULT_UNIT) -> dict[str, list[float]]:
    """Parse log text into 'timestamps', 'temp' and 'fan' lists.

    Every daemon line that carries a temperature becomes one sample. Lines
    without one (errors, banner) are skipped.
    """
    data: dict[str, list[float]] = {"timestamps": [], "temp": [], "fan": []}

    # Pattern: "2026-01-04T10:08:06+01:00 host pi-fan-daemon[123]: MSG"
    line_pattern = re.compile(
        r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}[+-]\d{2}:?\d{2})\s+\S+\s+"
        + re.escape(unit)
        + r"\[\d+\]:\s*(.*)"
    )

    fan = 0.0
    for line in log_text.splitlines():
        match = line_pattern.match(line)
        if not match:
            continue
        timestamp_str, msg = match.groups()

        message = MESSAGE_PATTERN.match(msg.strip())
        if not message:
            continue

        try:
            timestamp = datetime.fromisoformat(timestamp_str).timestamp()
        except ValueError:
            continue

        fan = fan_state(message.group(2).strip(), fan)
        data["timestamps"].append(timestamp)
        data["temp"].append(float(message.group(1)))
        data["fan"].append(fan)

    return data


def align_data(data: dict[str, list[float]]) -> dict[str, np.ndarray]:
    """Convert lists to numpy arrays."""
    if not data or not data.get("timestamps"):
        return {}
    return {key: np.array(values, dtype=np.float64) for key, values in data.items()}


def load_npz(path: Path) -> dict[str, np.ndarray]:
    """Load data from npz file."""
    if not path.exists():
        return {}
    npz = np.load(path)
    return {k: npz[k] for k in npz.files}


def save_npz(data: dict[str, np.ndarray], path: Path) -> None:
    """Save data to npz file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez(path, **data)
    print(f"Saved {path} ({len(data.get('timestamps', []))} samples)")


def merge_data(
    old: dict[str, np.ndarray],
    new: dict[str, np.ndarray],
) -> dict[str, np.ndarray]:
    """Merge old and new data, avoiding duplicates by timestamp.

    The result is sorted by timestamp.
    """
    if not old:
        return new
    if not new:
        return old

    old_ts = set(old["timestamps"].tolist())
    mask = np.array([t not in old_ts for t in new["timestamps"]], dtype=bool)
    if not mask.any():
        return old

    merged = {
        key: np.concatenate([old[key], new[key][mask]])
        for key in ("timestamps", "temp", "fan")
    }
    order = np.argsort(merged["timestamps"], kind="stable")
    return {key: values[order] for key, values in merged.items()}


def fan_on_fraction(data: dict[str, np.ndarray]) -> float:
    """Fraction of the covered time the fan was on (states held until the next sample)."""
    timestamps = data.get("timestamps")
    if timestamps is None or len(timestamps) < 2:
        return 0.0
    durations = np.diff(timestamps)
    total = durations.sum()
    if total <= 0:
        return 0.0
    return float((durations * data["fan"][:-1]).sum() / total)


def plot_data(
    data: dict[str, np.ndarray], path: Path, since: float | None = None
) -> None:
    """Plot temperature with the fan-on periods shaded.

    Args:
        data: Dict with numpy arrays.
        path: Output path for PNG.
        since: If provided, only show data from this timestamp onwards.
    """
    try:
        import matplotlib.dates as mdates
        import matplotlib.pyplot as plt
    except ImportError:
        print("matplotlib not installed, skipping plot", file=sys.stderr)
        return

    if not data or len(data.get("timestamps", [])) == 0:
        print("No samples to plot", file=sys.stderr)
        return

    dates = [datetime.fromtimestamp(t) for t in data["timestamps"]]
    temps = data["temp"]
    fan_on = data["fan"] > 0.5

    fig, ax = plt.subplots(figsize=(14, 7))
    marker_every = max(1, len(dates) // 200)

    ax.plot(
        dates,  # pyright: ignore[reportArgumentType]
        temps,
        label="cpu",
        color="tab:blue",
        linewidth=0.8,
        marker=".",
        markersize=2,
        markevery=marker_every,
    )
    ax.fill_between(
        dates,  # pyright: ignore[reportArgumentType]
        0,
        1,
        where=fan_on,
        step="post",
        transform=ax.get_xaxis_transform(),
        color="tab:red",
        alpha=0.15,
        label="fan on",
    )

    ax.set_xlabel("Time")
    ax.set_ylabel("Temperature (C)")
    ax.set_ylim(20, 90)
    ax.grid(True, alpha=0.3)

    xlim_left = datetime.fromtimestamp(since) if since is not None else dates[0]
    xlim_right = dates[-1]
    if xlim_right > xlim_left:
        ax.set_xlim(xlim_left, xlim_right)  # pyright: ignore[reportArgumentType]
    ax.xaxis.set_major_formatter(mdates.DateFormatter("%m-%d %H:%M"))
    fig.autofmt_xdate()

    ax.legend(loc="upper left", fontsize=8)
    plt.title(f"Fan daemon: CPU temperature (fan on {fan_on_fraction(data):.0%})")
    plt.tight_layout()

    path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(path, dpi=150)
    plt.close()
    print(f"Saved {path}")


def main() -> None:
    parser = argparse.ArgumentParser(
        description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        "--since",
        type=str,
        default=None,
        help="Scrape logs since time: relative ('2h', '30m') or absolute ('2026-01-04 10:30:00').",
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="Scrape all history (default: since service start).",
    )
    parser.add_argument(
        "--unit",
        type=str,
        default=DEFAULT_UNIT,
        help=f"systemd unit of the daemon (default: {DEFAULT_UNIT}).",
    )
    parser.add_argument(
        "--npz",
        type=Path,
        default=None,
        help="Load from this npz file (skips collection, just plots).",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=DEFAULT_NPZ,
        help=f"Output npz path (default: {DEFAULT_NPZ}).",
    )
    parser.add_argument(
        "--png",
        type=Path,
        default=DEFAULT_PNG,
        help=f"Output png path (default: {DEFAULT_PNG}).",
    )
    args = parser.parse_args()

    since_ts: float | None = None
    if args.since is not None:
        try:
            since_ts = parse_flexible_datetime(args.since)
        except ValueError as e:
            parser.error(str(e))

    if args.npz:
        data = load_npz(args.npz)
        if not data:
            print(f"Failed to load {args.npz}", file=sys.stderr)
            sys.exit(1)
    else:
        old_data = load_npz(args.output)

        if args.all:
            print("Scraping all history")
            new_data = parse_journalctl(since=None, unit=args.unit)
        elif since_ts is not None:
            print(f"Scraping since {datetime.fromtimestamp(since_ts)}")
            new_data = parse_journalctl(since=since_ts, unit=args.unit)
        else:
            start_time = service_start_time(args.unit)
            if start_time:
                print(
                    f"Scraping since service start ({datetime.fromtimestamp(start_time)})"
                )
                new_data = parse_journalctl(since=start_time, unit=args.unit)
            else:
                print("Could not get service start time, scraping all")
                new_data = parse_journalctl(since=None, unit=args.unit)

        aligned = align_data(new_data)
        if not aligned:
            if old_data:
                print("No new data, using existing")
                data = old_data
            else:
                print("No data found", file=sys.stderr)
                sys.exit(1)
        else:
            data = merge_data(old_data, aligned)
            save_npz(data, args.output)

    plot_data(data, args.png, since=since_ts)


if __name__ == "__main__":
    main()
