from __future__ import annotations
import logging
from pathlib import Path
from typing import Dict, Mapping, Optional

log = logging.getLogger("notportable.watch")


class ChangeWatcher:
    """
    mtime-based change detection, one entry per game.

    poll(game) is True when the file's mtime differs from the last committed
    value. The observed mtime is held as pending until commit(game), which the
    caller only issues after a successful ingest, so a failed dispatch leaves
    the file eligible on the next poll. A missing file is "no update".
    """
    def __init__(self, paths: Mapping[str, Path]):
        self.paths: Dict[str, Path] = {g: Path(p) for g, p in paths.items()}
        self._committed: Dict[str, Optional[int]] = {g: None for g in self.paths}
        self._pending: Dict[str, Optional[int]] = {g: None for g in self.paths}

    def _mtime(self, game: str) -> Optional[int]:
        try:
            return self.paths[game].stat().st_mtime_ns
        except FileNotFoundError:
            return None
        except OSError as e:
            log.warning("stat_error", extra={"game": game, "path": str(self.paths[game]), "err": str(e)})
            return None

    def poll(self, game: str) -> bool:
        mtime = self._mtime(game)
        if mtime is None:
            return False
        if mtime == self._committed.get(game):
            return False
        self._pending[game] = mtime
        log.debug("changed", extra={"game": game, "mtime_ns": mtime})
        return True

    def commit(self, game: str) -> None:
        pending = self._pending.get(game)
        if pending is not None:
            self._committed[game] = pending
            self._pending[game] = None

    def read(self, game: str) -> str:
        return self.paths[game].read_text(encoding="utf-8", errors="replace")
