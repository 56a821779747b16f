from __future__ import annotations
import logging
import time
from typing import Callable, List, Optional

from .errors import NoBaseline, SensorTimeout
from .sensor import BaseSampler, Sample

log = logging.getLogger("notportable.monitor")


class BaselineTracker:
    """
    Reference reading for one session.

    - establish(): mean of a short burst (default 3 samples, 100 ms apart).
      Timeouts and implausible readings are dropped; zero survivors -> NoBaseline.
      Once set the baseline never changes for the life of the tracker.
    - check(): rate-limited comparison. A call within check_interval_s of the
      previous one returns False and does not touch the sampler.
    """
    def __init__(
        self,
        threshold: float = 10.0,
        check_interval_s: float = 2.0,
        *,
        samples: int = 3,
        spacing_s: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.threshold = float(threshold)
        self.check_interval_s = float(check_interval_s)
        self.samples = int(samples)
        self.spacing_s = float(spacing_s)
        self.clock = clock
        self.sleep = sleep

        self.baseline: Optional[float] = None
        self.last_sample: Optional[Sample] = None
        self._last_check: Optional[float] = None

    def establish(self, sampler: BaseSampler) -> float:
        if self.baseline is not None:
            return self.baseline

        values: List[float] = []
        for i in range(self.samples):
            if i:
                self.sleep(self.spacing_s)
            try:
                s = sampler.sample()
            except SensorTimeout as e:
                log.debug("baseline_sample_timeout", extra={"attempt": i + 1, "err": str(e)})
                continue
            if s is not None:
                values.append(s.value)

        if not values:
            raise NoBaseline(f"0/{self.samples} baseline samples succeeded")

        self.baseline = sum(values) / len(values)
        log.info("baseline_set", extra={"baseline": round(self.baseline, 2), "used": len(values)})
        return self.baseline

    def exceeds(self, current: float) -> bool:
        if self.baseline is None:
            return False
        return abs(current - self.baseline) > self.threshold

    def check(self, sampler: BaseSampler) -> bool:
        now = self.clock()
        if self._last_check is not None and (now - self._last_check) < self.check_interval_s:
            return False
        self._last_check = now

        try:
            s = sampler.sample()
        except SensorTimeout as e:
            log.debug("sample_timeout", extra={"err": str(e)})
            return False
        if s is None:
            return False

        self.last_sample = s
        hit = self.exceeds(s.value)
        log.debug(
            "sample",
            extra={
                "value": round(s.value, 2),
                "delta": round(abs(s.value - self.baseline), 2) if self.baseline is not None else None,
                "anomaly": hit,
            },
        )
        return hit
