from __future__ import annotations
import logging
import math
import struct
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .errors import SensorTimeout, SensorUnavailable

log = logging.getLogger("notportable.sensor")

# Half the speed of sound in cm/s (343 m/s, round trip).
CM_PER_ECHO_SECOND = 17150.0

# MPU-6050 style register map
ACCEL_PWR_MGMT_1 = 0x6B
ACCEL_XOUT_H     = 0x3B


def safe_int(x, default=None):
    try:
        return int(x)
    except (TypeError, ValueError):
        return default


def parse_address(x, default: int) -> int:
    """I2C address from YAML: int (0x68 unquoted) or string ("0x69", "105")."""
    if x is None:
        return default
    try:
        return x if isinstance(x, int) else int(str(x).strip(), 0)
    except ValueError:
        log.warning("bad_i2c_address; using default", extra={"address": x, "default": hex(default)})
        return default


# ---------- config snapshot ----------

@dataclass
class SensorConfig:
    enabled: bool = True
    # rangefinder | accelerometer
    type: str = "rangefinder"

    # rangefinder
    gpiochip: int = 0
    trig_pin: int = 23
    echo_pin: int = 24
    echo_timeout_s: float = 0.1
    min_cm: float = 2.0
    max_cm: float = 400.0

    # accelerometer
    i2c_bus: int = 1
    i2c_address: int = 0x68

    # baseline / checks
    baseline_samples: int = 3
    baseline_spacing_s: float = 0.1
    threshold: float = 10.0
    check_interval_s: float = 2.0
    tick_s: float = 0.25

    @classmethod
    def from_app(cls, sensor_dict: Dict[str, Any]) -> "SensorConfig":
        sen = sensor_dict or {}
        rf = sen.get("rangefinder", {}) or {}
        acc = sen.get("accelerometer", {}) or {}
        base = sen.get("baseline", {}) or {}

        return cls(
            enabled=bool(sen.get("enabled", True)),
            type=str(sen.get("type", "rangefinder")).lower(),

            gpiochip=int(rf.get("gpiochip", 0)),
            trig_pin=int(rf.get("trig_pin", 23)),
            echo_pin=int(rf.get("echo_pin", 24)),
            echo_timeout_s=float(rf.get("echo_timeout_s", 0.1)),
            min_cm=float(rf.get("min_cm", 2.0)),
            max_cm=float(rf.get("max_cm", 400.0)),

            i2c_bus=int(acc.get("bus", 1)),
            i2c_address=parse_address(acc.get("address"), 0x68),

            baseline_samples=int(base.get("samples", 3)),
            baseline_spacing_s=float(base.get("spacing_s", 0.1)),
            threshold=float(sen.get("threshold", 10.0)),
            check_interval_s=float(sen.get("check_interval_s", 2.0)),
            tick_s=float(sen.get("tick_s", 0.25)),
        )


@dataclass(frozen=True)
class Sample:
    value: float
    timestamp: float
    unit: str = "cm"


# ---------- hardware capabilities ----------

class GpioChip:
    """
    Thin wrapper over lgpio so the sampler only ever sees
    open/claim_output/claim_input/write/read/close.
    """
    def __init__(self, chip: int = 0):
        self.chip = chip
        self._lg = None
        self._h: Optional[int] = None

    def open(self) -> int:
        # Lazy import so the process can still run without lgpio
        try:
            import lgpio  # type: ignore
        except ImportError as e:
            raise SensorUnavailable(f"lgpio not installed: {e}") from e
        try:
            self._h = lgpio.gpiochip_open(self.chip)
        except lgpio.error as e:
            raise SensorUnavailable(f"gpiochip{self.chip} open failed: {e}") from e
        self._lg = lgpio
        return self._h

    def claim_output(self, pin: int) -> None:
        try:
            self._lg.gpio_claim_output(self._h, pin, 0)
        except self._lg.error as e:
            raise SensorUnavailable(f"claim output pin {pin} failed: {e}") from e

    def claim_input(self, pin: int) -> None:
        try:
            self._lg.gpio_claim_input(self._h, pin)
        except self._lg.error as e:
            raise SensorUnavailable(f"claim input pin {pin} failed: {e}") from e

    def write(self, pin: int, level: int) -> None:
        self._lg.gpio_write(self._h, pin, level)

    def read(self, pin: int) -> int:
        return self._lg.gpio_read(self._h, pin)

    def close(self) -> None:
        if self._h is not None and self._lg is not None:
            self._lg.gpiochip_close(self._h)
        self._h = None


class I2CDevice:
    """Register access to one I2C device through smbus2."""
    def __init__(self, bus: int = 1, address: int = 0x68):
        self.bus = bus
        self.address = address
        self._bus = None

    def open(self):
        try:
            from smbus2 import SMBus  # type: ignore
        except ImportError as e:
            raise SensorUnavailable(f"smbus2 not installed: {e}") from e
        try:
            self._bus = SMBus(self.bus)
        except OSError as e:
            raise SensorUnavailable(f"i2c bus {self.bus} open failed: {e}") from e
        return self._bus

    def write_register(self, reg: int, value: int) -> None:
        self._bus.write_byte_data(self.address, reg, value)

    def read_block(self, reg: int, count: int) -> bytes:
        return bytes(self._bus.read_i2c_block_data(self.address, reg, count))

    def close(self) -> None:
        if self._bus is not None:
            self._bus.close()
        self._bus = None


# ---------- samplers ----------

class BaseSampler:
    unit = "cm"

    def __init__(self, cfg: SensorConfig, clock: Callable[[], float] = time.perf_counter):
        self.cfg = cfg
        self.clock = clock
        self._open = False

    def open(self) -> None:  # pragma: no cover
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover
        raise NotImplementedError

    def sample(self) -> Optional[Sample]:  # pragma: no cover
        raise NotImplementedError

    @property
    def is_open(self) -> bool:
        return self._open


class RangeSampler(BaseSampler):
    """
    HC-SR04 style rangefinder.

    One measurement:
      trig LOW (settle ~2us) -> trig HIGH (~10us) -> trig LOW
      wait echo rise  (bounded by echo_timeout_s)
      wait echo fall  (bounded by echo_timeout_s)
      distance_cm = pulse_seconds * 17150

    Readings outside [min_cm, max_cm] are reflections/noise and come back as None.
    A stuck echo line raises SensorTimeout.
    """
    SETTLE_S = 2e-6
    PULSE_S  = 10e-6

    def __init__(
        self,
        cfg: SensorConfig,
        chip: Optional[GpioChip] = None,
        *,
        clock: Callable[[], float] = time.perf_counter,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(cfg, clock)
        self.chip = chip or GpioChip(cfg.gpiochip)
        self.sleep = sleep

    def open(self) -> None:
        self.chip.open()
        try:
            self.chip.claim_output(self.cfg.trig_pin)
            self.chip.claim_input(self.cfg.echo_pin)
        except SensorUnavailable:
            self.chip.close()
            raise
        self._open = True
        log.info("rangefinder_open", extra={"trig": self.cfg.trig_pin, "echo": self.cfg.echo_pin})

    def close(self) -> None:
        if self._open:
            self.chip.close()
            self._open = False
            log.info("rangefinder_closed")

    def plausible(self, distance_cm: float) -> bool:
        return self.cfg.min_cm <= distance_cm <= self.cfg.max_cm

    def _wait_for(self, level: int, stage: str) -> float:
        deadline = self.clock() + self.cfg.echo_timeout_s
        while self.chip.read(self.cfg.echo_pin) != level:
            if self.clock() > deadline:
                raise SensorTimeout(f"echo {stage} timeout")
        return self.clock()

    def sample(self) -> Optional[Sample]:
        trig = self.cfg.trig_pin
        self.chip.write(trig, 0)
        self.sleep(self.SETTLE_S)
        self.chip.write(trig, 1)
        self.sleep(self.PULSE_S)
        self.chip.write(trig, 0)

        rise = self._wait_for(1, "rise")
        fall = self._wait_for(0, "fall")

        distance = (fall - rise) * CM_PER_ECHO_SECOND
        if not self.plausible(distance):
            log.debug("implausible_distance", extra={"distance_cm": round(distance, 2)})
            return None
        return Sample(value=distance, timestamp=time.time(), unit="cm")


class AccelSampler(BaseSampler):
    """
    Three-axis accelerometer over I2C. Axis registers are 16-bit big-endian
    two's complement (X_H, X_L, Y_H, Y_L, Z_H, Z_L). The sample is the raw
    Euclidean magnitude; there is no plausibility window.
    """
    unit = "raw"

    def __init__(self, cfg: SensorConfig, device: Optional[I2CDevice] = None,
                 *, clock: Callable[[], float] = time.perf_counter):
        super().__init__(cfg, clock)
        self.device = device or I2CDevice(cfg.i2c_bus, cfg.i2c_address)

    def open(self) -> None:
        self.device.open()
        try:
            # clear sleep bit
            self.device.write_register(ACCEL_PWR_MGMT_1, 0)
        except OSError as e:
            self.device.close()
            raise SensorUnavailable(f"accelerometer wake failed: {e}") from e
        self._open = True
        log.info("accelerometer_open", extra={"bus": self.cfg.i2c_bus, "address": hex(self.cfg.i2c_address)})

    def close(self) -> None:
        if self._open:
            self.device.close()
            self._open = False
            log.info("accelerometer_closed")

    def sample(self) -> Optional[Sample]:
        try:
            raw = self.device.read_block(ACCEL_XOUT_H, 6)
        except OSError as e:
            raise SensorTimeout(f"i2c read failed: {e}") from e
        if len(raw) != 6:
            return None
        x, y, z = struct.unpack(">hhh", raw)
        return Sample(value=math.sqrt(x * x + y * y + z * z), timestamp=time.time(), unit="raw")


# ---------- factory ----------

SAMPLER_TYPES: Dict[str, Callable[[SensorConfig], BaseSampler]] = {
    "rangefinder":   RangeSampler,
    "accelerometer": AccelSampler,
}


def open_sampler(cfg: SensorConfig) -> Optional[BaseSampler]:
    """
    Build and open the configured sampler. Returns None (after one notice)
    when the sensor is disabled or unavailable; the caller keeps running
    without anomaly detection.
    """
    if not cfg.enabled:
        log.info("sensor_disabled")
        return None
    cls = SAMPLER_TYPES.get(cfg.type)
    if cls is None:
        log.warning("sensor_unknown_type", extra={"type": cfg.type})
        return None
    sampler = cls(cfg)
    try:
        sampler.open()
    except SensorUnavailable as e:
        log.warning("sensor_unavailable; anomaly detection disabled", extra={"type": cfg.type, "err": str(e)})
        return None
    return sampler
