#!/usr/bin/env python3
"""
Fan daemon for Raspberry Pi class boards driving an on/off fan from one GPIO pin.

The fan is kept idle most of the time. It starts when the CPU reaches the
upper threshold and stops again once the CPU has cooled to the lower threshold
and the fan has run for a minimum duration. Optionally the fan is spun after a
long idle period to blow out dust.

Run with --help for configuration options.

Monitor logs:
    journalctl -u pi-fan-daemon -f

Dependencies:
    pip install gpiozero
    # vcgencmd (libraspberrypi-bin) is only needed with --sensor vcgencmd
"""

from __future__ import annotations

import argparse
import dataclasses
import enum
import logging
import re
import signal
import sys
import time
from typing import Callable, Protocol, cast

import gpiozero

import sensors

__version__ = "1.1.0"

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s: %(message)s",
)
log = logging.getLogger("pi-fan-daemon")

MS_PER_SECOND = 1000
MS_PER_HOUR = 3_600_000

PARAMETER_HELP = """\
Parameters:

  min=<value> = Temp (C) at which the fan will turn off. Range 30 - 65, default 50.
  max=<value> = Temp (C) at which the fan will turn on. Range 70 - 82, default 75.
  dur=<value> = Minimum duration (seconds) the fan runs. Default 300.
  dus=<value> = Max time (hours) between fan spins. Used to remove dust. Default 0 (disabled).

Parameter usage example:

  min=45 max=82 dur=600 dus=24
"""


def _parse_int(text: str) -> int:
    """Plain decimal integer, no whitespace or digit separators."""
    if not re.fullmatch(r"[+-]?[0-9]+", text):
        raise ValueError("not an integer: %r" % text)
    return int(text)


def _parse_float(text: str) -> float:
    """Plain decimal number, no whitespace, separators, exponents or nan/inf."""
    if not re.fullmatch(r"[+-]?([0-9]+\.?[0-9]*|\.[0-9]+)", text):
        raise ValueError("not a number: %r" % text)
    return float(text)


# key -> (field, parser, multiplier to config units, lowest, highest or None)
PARAMETERS: dict[str, tuple[str, Callable[[str], float], int, float, float | None]] = {
    "min": ("min_temp", _parse_float, 1, 30.0, 65.0),
    "max": ("max_temp", _parse_float, 1, 70.0, 82.0),
    "dur": ("min_run_duration_ms", _parse_int, MS_PER_SECOND, 0, None),
    "dus": ("max_idle_interval_ms", _parse_int, MS_PER_HOUR, 0, None),
}

REASON_DUST = "Fan started for scheduled anti-dust run."
REASON_HOT = "Fan started because temp is too high!"
REASON_COOL = "Fan stopped. Everything is ok."


class ConfigError(ValueError):
    """One or more configuration parameters are invalid."""

    errors: list[str]

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


@dataclasses.dataclass(frozen=True, slots=True, kw_only=True)
class Config:
    """Daemon configuration. Durations are in milliseconds."""

    min_temp: float = 50.0
    max_temp: float = 75.0
    min_run_duration_ms: int = 300 * MS_PER_SECOND
    max_idle_interval_ms: int = 0  # 0 = no anti-dust runs
    pin: int = 17  # BCM numbering, physical pin 11
    sensor: str = "thermal"
    interval_seconds: float = 1.0
    debug: bool = False

    def __post_init__(self) -> None:
        if self.max_temp <= self.min_temp:
            raise ConfigError(
                [
                    "max=%s  Value must be higher than min (%s)."
                    % (self.max_temp, self.min_temp)
                ]
            )

    @classmethod
    def parse_params(cls, params: list[str], **settings: object) -> Config:
        """Build a Config from "key=value" parameters.

        Every faulty parameter is collected before raising, so the user sees
        all of them at once. Later occurrences of a key win.

        Raises:
            ConfigError: with one entry per faulty parameter.
        """
        values: dict[str, float] = {}
        errors: list[str] = []
        for arg in params:
            pieces = arg.split("=")
            if len(pieces) != 2 or pieces[0] not in PARAMETERS:
                errors.append(arg)
                continue
            field, parse, multiplier, lowest, highest = PARAMETERS[pieces[0]]
            try:
                value = parse(pieces[1])
            except ValueError:
                errors.append(arg)
                continue
            if highest is None:
                if not value >= lowest:
                    errors.append("%s  Value must be %d or higher." % (arg, lowest))
                    continue
            elif not lowest <= value <= highest:
                errors.append(
                    "%s  Value is outside the accepted range (%s - %s)."
                    % (arg, lowest, highest)
                )
                continue
            values[field] = value * multiplier
        if errors:
            raise ConfigError(errors)
        return cls(**values, **settings)  # pyright: ignore[reportArgumentType]

    @classmethod
    def from_args(cls, argv: list[str] | None = None) -> Config:
        """Parse command-line arguments and return Config.

        Faulty key=value parameters print the parameter help and exit with
        status 1.
        """
        p = argparse.ArgumentParser(
            prog="pi-fan-daemon",
            description="On/off CPU fan controller with hysteresis.",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog=PARAMETER_HELP,
        )
        _ = p.add_argument(
            "params",
            nargs="*",
            metavar="KEY=VALUE",
            help="Control parameters, see below.",
        )
        _ = p.add_argument(
            "--pin",
            type=int,
            default=17,
            help="BCM GPIO pin driving the fan (default: 17).",
        )
        _ = p.add_argument(
            "--sensor",
            choices=sorted(sensors.SOURCES),
            default="thermal",
            help="Temperature source (default: thermal).",
        )
        _ = p.add_argument(
            "--interval",
            type=float,
            default=1.0,
            help="Poll interval (seconds).",
        )
        _ = p.add_argument(
            "-d",
            "--debug",
            action="store_true",
            help="Log every measurement.",
        )
        args = p.parse_intermixed_args(argv)
        interval = cast(float, args.interval)
        if interval <= 0:
            p.error("--interval must be positive")
        try:
            return cls.parse_params(
                cast(list[str], args.params),
                pin=cast(int, args.pin),
                sensor=cast(str, args.sensor),
                interval_seconds=interval,
                debug=cast(bool, args.debug),
            )
        except ConfigError as e:
            print_help(e.errors)
            sys.exit(1)


def print_help(notes: list[str]) -> None:
    """Print the offending parameters followed by the parameter documentation."""
    print()
    print("Error, the following parameters are not recognized:")
    print()
    for note in notes:
        print(" " + note)
    print()
    print()
    print(PARAMETER_HELP)


class Action(enum.Enum):
    NO_CHANGE = "no change"
    STARTED_FAN = "started fan"
    STOPPED_FAN = "stopped fan"
    MEASUREMENT_FAILED = "measurement failed"


@dataclasses.dataclass(frozen=True, slots=True)
class Decision:
    """Outcome of one engine tick."""

    action: Action
    reason: str | None = None

    @property
    def changed(self) -> bool:
        return self.action in (Action.STARTED_FAN, Action.STOPPED_FAN)


NO_CHANGE = Decision(Action.NO_CHANGE)
MEASUREMENT_FAILED = Decision(Action.MEASUREMENT_FAILED)


@dataclasses.dataclass(slots=True, kw_only=True)
class EngineState:
    """Fan state owned by one FanEngine."""

    fan_running: bool = False
    last_transition_at: int = 0  # ms; 0 = fan never switched
    last_temp: float | None = None


class FanEngine:
    """Hysteresis state machine deciding when the fan starts and stops.

    The engine has no hardware access. Each tick takes one temperature
    sample (None if the measurement failed) and the current time in
    milliseconds, updates the state and returns what the caller must do.
    """

    config: Config
    state: EngineState

    def __init__(self, config: Config, state: EngineState | None = None) -> None:
        self.config = config
        self.state = state if state is not None else EngineState()

    @property
    def fan_running(self) -> bool:
        return self.state.fan_running

    @property
    def last_temp(self) -> float | None:
        return self.state.last_temp

    def tick(self, temperature: float | None, now: int) -> Decision:
        """Evaluate the transition rules once.

        Rules in priority order:
          1. idle past the anti-dust interval -> start
          2. idle and temperature >= max_temp -> start
          3. running for the minimum duration and temperature <= min_temp -> stop
        Rules 2 and 3 need a valid temperature; rule 1 only needs the time.
        """
        cfg = self.config
        st = self.state
        if temperature is not None:
            st.last_temp = temperature

        if not st.fan_running:
            if (
                cfg.max_idle_interval_ms > 0
                and now >= st.last_transition_at + cfg.max_idle_interval_ms
            ):
                return self._switch(True, now, REASON_DUST)
            if temperature is not None and temperature >= cfg.max_temp:
                return self._switch(True, now, REASON_HOT)
        elif (
            temperature is not None
            and now >= st.last_transition_at + cfg.min_run_duration_ms
            and temperature <= cfg.min_temp
        ):
            return self._switch(False, now, REASON_COOL)

        return MEASUREMENT_FAILED if temperature is None else NO_CHANGE

    def mark_never_run_due(self, now: int) -> None:
        """Make a fan that never ran due for its anti-dust run at `now`.

        Keeps the first dust run independent of the clock origin (monotonic
        time starts at boot).
        """
        st = self.state
        if (
            self.config.max_idle_interval_ms > 0
            and not st.fan_running
            and st.last_transition_at == 0
        ):
            st.last_transition_at = now - self.config.max_idle_interval_ms

    def _switch(self, on: bool, now: int, reason: str) -> Decision:
        self.state.fan_running = on
        self.state.last_transition_at = now
        return Decision(Action.STARTED_FAN if on else Action.STOPPED_FAN, reason)


class FanActuator(Protocol):
    """Fan output interface protocol."""

    def set(self, on: bool) -> bool: ...
    def close(self) -> None: ...


class GpioFan:
    """Fan switched through a MOSFET/transistor on one GPIO pin. HIGH = on."""

    _device: gpiozero.DigitalOutputDevice

    def __init__(self, pin: int) -> None:
        self._device = gpiozero.DigitalOutputDevice(pin, initial_value=False)

    def set(self, on: bool) -> bool:
        """Drive the pin. Returns False if the pin could not be set."""
        try:
            if on:
                self._device.on()
            else:
                self._device.off()
        except gpiozero.GPIOZeroError as e:
            log.error("Failed to switch fan %s: %s", "on" if on else "off", e)
            return False
        return True

    def close(self) -> None:
        self._device.close()


def _monotonic_ms() -> int:
    return time.monotonic_ns() // 1_000_000


def _format_temp(temp: float | None) -> str:
    return "-" if temp is None else "%.1fC" % temp


class FanDaemon:
    """Main fan control daemon."""

    config: Config
    engine: FanEngine
    sensor: sensors.TemperatureSource
    fan: FanActuator
    running: bool
    _clock: Callable[[], int]
    _measuring: bool

    def __init__(
        self,
        config: Config,
        sensor: sensors.TemperatureSource,
        fan: FanActuator,
        clock: Callable[[], int] = _monotonic_ms,
    ) -> None:
        self.config = config
        self.engine = FanEngine(config)
        self.sensor = sensor
        self.fan = fan
        self.running = False
        self._clock = clock
        self._measuring = False

    def log_banner(self) -> None:
        cfg = self.config
        log.info("Raspberry Pi Fan Controller v%s", __version__)
        log.info(" fan control pin: GPIO%d", cfg.pin)
        log.info(" fan lower threshold: %.1fC", cfg.min_temp)
        log.info(" fan upper threshold: %.1fC", cfg.max_temp)
        log.info(" fan run duration: %ds", cfg.min_run_duration_ms // MS_PER_SECOND)
        if cfg.max_idle_interval_ms:
            log.info(
                " fan max spin interval: %dh", cfg.max_idle_interval_ms // MS_PER_HOUR
            )
        else:
            log.info(" fan max spin interval: disabled")

    def control_loop(self) -> Decision:
        """Main control loop iteration."""
        temp = self.sensor.get()
        now = self._clock()
        if not self._measuring:
            log.info("%s: Measurement started.", _format_temp(temp))
            self.engine.mark_never_run_due(now)
            self._measuring = True
        if temp is None:
            log.error("Error, temperature not measured.")

        decision = self.engine.tick(temp, now)
        shown = _format_temp(self.engine.last_temp)
        if decision.changed:
            log.info("%s: %s", shown, decision.reason)
            if not self.fan.set(self.engine.fan_running):
                log.error("Fan did not follow the %s command", decision.action.value)
        else:
            log.debug("%s: fan=%s", shown, "on" if self.engine.fan_running else "off")
        return decision

    def shutdown(
        self,
        signum: int | None = None,
        _frame: object = None,
    ) -> None:
        """Clean shutdown - switch the fan off and release the pin."""
        log.info("Shutting down (signal %d)", signum or 0)
        self.running = False
        _ = self.fan.set(False)
        self.fan.close()
        sys.exit(0)

    def run(self) -> None:
        """Main daemon loop."""
        _ = signal.signal(signal.SIGTERM, self.shutdown)
        _ = signal.signal(signal.SIGINT, self.shutdown)

        self.log_banner()
        if not self.fan.set(False):
            log.error("Failed to set initial fan state")

        self.running = True
        while self.running:
            try:
                _ = self.control_loop()
            except Exception:
                log.exception("Control loop error")

            time.sleep(self.config.interval_seconds)


def main(argv: list[str] | None = None) -> None:
    config = Config.from_args(argv)
    if config.debug:
        log.setLevel(logging.DEBUG)
    sensor = sensors.SOURCES[config.sensor]()
    try:
        fan = GpioFan(config.pin)
    except gpiozero.GPIOZeroError as e:
        log.error("Failed to provision GPIO%d: %s", config.pin, e)
        sys.exit(1)
    FanDaemon(config, sensor, fan).run()


if __name__ == "__main__":
    main()
