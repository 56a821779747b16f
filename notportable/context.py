from __future__ import annotations
import contextlib
import functools
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from .config_loader import get_collector_cfg, get_games_cfg, get_sensor_cfg, resolve_path
from .dispatcher import CollectorConfig, Dispatcher
from .monitor import AnomalyMonitor, AnomalyState
from .parsers import PARSERS, parse_supertux
from .sensor import BaseSampler, SensorConfig, open_sampler
from .watcher import ChangeWatcher

log = logging.getLogger("notportable")


def build_parsers(games_cfg: Dict[str, Any]) -> Dict[str, Callable[[str], List[Any]]]:
    """One text -> records callable per configured game."""
    out: Dict[str, Callable[[str], List[Any]]] = {}
    for game, gcfg in (games_cfg or {}).items():
        if game not in PARSERS:
            log.warning("unknown_game", extra={"game": game})
            continue
        if game == "supertux":
            out[game] = functools.partial(parse_supertux, username=str((gcfg or {}).get("username", "")))
        else:
            out[game] = PARSERS[game]
    return out


def game_paths(games_cfg: Dict[str, Any]) -> Dict[str, Path]:
    paths: Dict[str, Path] = {}
    for game, gcfg in (games_cfg or {}).items():
        p = (gcfg or {}).get("log_path")
        if game in PARSERS and p:
            paths[game] = resolve_path(p)
    return paths


class AppContext:
    """
    Everything the process owns, created once at startup and torn down once:
    sensor handle, anomaly flag + monitor, change watcher, dispatcher with its
    de-dup sets. close() stops the sampling thread before releasing the sensor.
    """
    def __init__(
        self,
        sensor_cfg: SensorConfig,
        sampler: Optional[BaseSampler],
        watcher: ChangeWatcher,
        dispatcher: Dispatcher,
        parsers: Dict[str, Callable[[str], List[Any]]],
        state: Optional[AnomalyState] = None,
    ):
        self.sensor_cfg = sensor_cfg
        self.sampler = sampler
        self.state = state or AnomalyState()
        self.monitor = AnomalyMonitor(sampler, sensor_cfg, self.state)
        self.watcher = watcher
        self.dispatcher = dispatcher
        self.parsers = parsers
        self._closed = False

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]] = None) -> "AppContext":
        """Build from an explicit config dict, or from the loaded CONFIG when omitted."""
        if cfg is None:
            sensor_dict, games_cfg, collector_dict = get_sensor_cfg(), get_games_cfg(), get_collector_cfg()
        else:
            sensor_dict = cfg.get("sensor", {}) or {}
            games_cfg = cfg.get("games", {}) or {}
            collector_dict = cfg.get("collector", {}) or {}
        sensor_cfg = SensorConfig.from_app(sensor_dict)
        collector = CollectorConfig.from_app(collector_dict)

        sampler = open_sampler(sensor_cfg)
        return cls(
            sensor_cfg,
            sampler,
            ChangeWatcher(game_paths(games_cfg)),
            Dispatcher.from_config(collector),
            build_parsers(games_cfg),
        )

    @property
    def detection_enabled(self) -> bool:
        return self.sampler is not None

    @contextlib.contextmanager
    def game_session(self) -> Iterator[AnomalyMonitor]:
        """Bracket an externally launched game process."""
        with self.monitor.session() as mon:
            yield mon

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.monitor.stop()
        if self.sampler is not None:
            self.sampler.close()
