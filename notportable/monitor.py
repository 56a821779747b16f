from __future__ import annotations
import contextlib
import logging
import threading
from typing import Any, Dict, Iterator, Optional

from .baseline import BaselineTracker
from .errors import NoBaseline
from .sensor import BaseSampler, SensorConfig

log = logging.getLogger("notportable.monitor")


class AnomalyState:
    """
    Process-wide "anomaly observed" flag. Written by the monitor thread,
    read by the ingest pipeline. Backed by threading.Event so set/clear/read
    are atomic.
    """
    def __init__(self):
        self._evt = threading.Event()

    def set(self) -> None:
        self._evt.set()

    def clear(self) -> None:
        self._evt.clear()

    def is_set(self) -> bool:
        return self._evt.is_set()

    def __bool__(self) -> bool:
        return self._evt.is_set()


class AnomalyMonitor:
    """
    idle -> monitoring -> idle, once per game session.

    start() resets the flag and spawns the sampling thread. The thread builds
    a fresh baseline, then on every tick runs a rate-limited check; the first
    deviation beyond the threshold sets the flag, which stays set until the
    next start(). stop() is cooperative: it signals the loop, waits for the
    thread to exit, and returns the final flag value.

    With no sampler (sensor disabled or absent) start()/stop() are no-ops and
    the flag stays False.
    """
    def __init__(self, sampler: Optional[BaseSampler], cfg: SensorConfig,
                 state: Optional[AnomalyState] = None):
        self.sampler = sampler
        self.cfg = cfg
        self.state = state or AnomalyState()
        self.tracker: Optional[BaselineTracker] = None
        self._t: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._status = "idle" if sampler is not None else "disabled"

    # ---------- lifecycle ----------

    def start(self) -> None:
        if self._t and self._t.is_alive():
            return
        self.state.clear()
        if self.sampler is None:
            return
        self.tracker = BaselineTracker(
            self.cfg.threshold,
            self.cfg.check_interval_s,
            samples=self.cfg.baseline_samples,
            spacing_s=self.cfg.baseline_spacing_s,
        )
        self._stop.clear()
        self._status = "monitoring"
        self._t = threading.Thread(target=self._run_loop, name="AnomalyMonitor", daemon=True)
        self._t.start()
        log.info("monitor_start", extra={"threshold": self.cfg.threshold, "interval_s": self.cfg.check_interval_s})

    def stop(self) -> bool:
        self._stop.set()
        if self._t is not None:
            # Bounded: one tick plus at most two echo timeouts.
            self._t.join()
            self._t = None
        if self.sampler is not None:
            self._status = "idle"
        anomalous = self.state.is_set()
        log.info("monitor_stop", extra={"anomaly": anomalous})
        return anomalous

    @contextlib.contextmanager
    def session(self) -> Iterator["AnomalyMonitor"]:
        """Wrap a game process: monitoring runs for the body of the with-block."""
        self.start()
        try:
            yield self
        finally:
            self.stop()

    def is_running(self) -> bool:
        return bool(self._t and self._t.is_alive())

    def status(self) -> Dict[str, Any]:
        tr = self.tracker
        last = tr.last_sample if tr else None
        return {
            "state": self._status,
            "running": self.is_running(),
            "baseline": tr.baseline if tr else None,
            "anomaly": self.state.is_set(),
            "last_sample": last.value if last else None,
        }

    # ---------- worker ----------

    def _run_loop(self) -> None:
        assert self.sampler is not None and self.tracker is not None
        try:
            self.tracker.establish(self.sampler)
        except NoBaseline as e:
            self._status = "no baseline"
            log.warning("no_baseline; detection disabled for this session", extra={"err": str(e)})
            return
        except Exception as e:
            self._status = f"error: {e}"
            log.warning("baseline_error; detection disabled for this session", extra={"err": str(e)})
            return

        while not self._stop.is_set():
            try:
                if self.tracker.check(self.sampler):
                    if not self.state.is_set():
                        last = self.tracker.last_sample
                        log.warning(
                            "anomaly_detected",
                            extra={
                                "value": round(last.value, 2) if last else None,
                                "baseline": round(self.tracker.baseline or 0.0, 2),
                            },
                        )
                    self.state.set()
            except Exception as e:
                # read error on a live handle: skip this tick
                log.warning("sample_error", extra={"err": str(e)})
            self._stop.wait(self.cfg.tick_s)
