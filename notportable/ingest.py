"""
NotPortable - score-log ingest service
======================================

Purpose
-------
Watch each game's score log, re-parse it whenever it changes, tag the records
with the current anomaly flag and hand them to the collector.

    ChangeWatcher.poll -> parser(text) -> tag_anomaly -> Dispatcher.submit
                                                        (de-dup, POST, counters)

Key behaviors
-------------
- Poll cadence is fixed (watcher.poll_interval_s, default 10 s); a missing
  log is "no update" and retried next cycle.
- The whole file is re-parsed on every change. Records already delivered are
  suppressed by the dispatcher's de-dup sets, so an unchanged re-parse sends
  nothing new.
- If any record in a pass fails to deliver, the file's mtime is not
  committed; the next poll re-parses and re-offers what was dropped.
- Records are tagged with the session's sticky anomaly flag. The monitor
  thread is the only reader of the sensor.
- Periodic heartbeat log line with dispatcher counters.

CLI
---
    python -m notportable.ingest --config config/config.yaml
    --once       one pass over all games, then exit
    --session    keep the anomaly monitor running for the life of the service
"""

from __future__ import annotations
import argparse
import asyncio
import contextlib
import logging
from typing import Dict

from . import config_loader as _config_module
from .config_loader import get_log_level, get_watcher_cfg, load_config
from .context import AppContext
from .errors import DispatchFailure
from .records import tag_anomaly

log = logging.getLogger("notportable.ingest")


class IngestService:
    def __init__(self, ctx: AppContext, *, poll_interval_s: float = 10.0, heartbeat_s: float = 60.0):
        self.ctx = ctx
        self.poll_interval_s = float(poll_interval_s)
        self.heartbeat_s = float(heartbeat_s)

        self.passes_total = 0
        self.passes_failed = 0

    async def ingest_once(self, game: str) -> bool:
        """
        One poll for one game. Returns True only when the file changed and
        every record in it was delivered or already known.
        """
        watcher = self.ctx.watcher
        if not watcher.poll(game):
            return False

        try:
            text = watcher.read(game)
        except OSError as e:
            log.warning("read_error", extra={"game": game, "err": str(e)})
            return False

        records = self.ctx.parsers[game](text)
        anomalous = self.ctx.state.is_set()
        self.passes_total += 1

        delivered = 0
        failed = 0
        for rec in records:
            try:
                if await self.ctx.dispatcher.submit(game, tag_anomaly(rec, anomalous)):
                    delivered += 1
            except DispatchFailure:
                failed += 1

        if failed:
            self.passes_failed += 1
        else:
            watcher.commit(game)

        log.info(
            "ingest_pass",
            extra={"game": game, "records": len(records), "delivered": delivered,
                   "failed": failed, "anomaly": anomalous},
        )
        return failed == 0

    async def poll_all(self) -> Dict[str, bool]:
        return {game: await self.ingest_once(game) for game in self.ctx.parsers}

    async def run(self, stop_evt: asyncio.Event):
        await self.ctx.dispatcher.start()
        log.info(
            "ingest_start",
            extra={
                "games": sorted(self.ctx.parsers),
                "poll_interval_s": self.poll_interval_s,
                "detection": self.ctx.detection_enabled,
            },
        )
        hb_task = asyncio.create_task(self._heartbeat(), name="ingest_heartbeat")
        try:
            while not stop_evt.is_set():
                await self.poll_all()
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(stop_evt.wait(), timeout=self.poll_interval_s)
        except asyncio.CancelledError:
            stop_evt.set()
            log.info("ingest_cancelled")
        finally:
            hb_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await hb_task
            await self.ctx.dispatcher.stop()
            log.info("ingest_stop", extra={"passes": self.passes_total, **self.ctx.dispatcher.counters()})

    async def _heartbeat(self):
        """Periodic log line so counters are visible without scraping."""
        while True:
            await asyncio.sleep(self.heartbeat_s)
            payload = {
                "passes": self.passes_total,
                "passes_failed": self.passes_failed,
                "anomaly": self.ctx.state.is_set(),
                **self.ctx.dispatcher.counters(),
            }
            logging.getLogger("notportable.hb").info("heartbeat", extra=payload)


# ------------------------------------------------------------
# Entry point
# ------------------------------------------------------------

def _parse_args(argv=None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="NotPortable score-log ingester")
    ap.add_argument("--config", help="Path to config/config.yaml (optional)")
    ap.add_argument("--once", action="store_true", help="Single pass over all games, then exit")
    ap.add_argument("--session", action="store_true",
                    help="Run the anomaly monitor for the lifetime of the service")
    return ap.parse_args(argv)


async def _amain(argv=None) -> None:
    args = _parse_args(argv)

    cfg_dict = load_config(args.config)
    _config_module.CONFIG = cfg_dict  # ensure helper accessors read the same config

    logging.basicConfig(
        level=getattr(logging, get_log_level("INFO"), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    wcfg = get_watcher_cfg()
    ctx = AppContext.from_config()
    svc = IngestService(
        ctx,
        poll_interval_s=float(wcfg.get("poll_interval_s", 10.0)),
        heartbeat_s=float(wcfg.get("heartbeat_s", 60.0)),
    )
    try:
        if args.once:
            async with ctx.dispatcher:
                await svc.poll_all()
            return

        if args.session:
            ctx.monitor.start()
        stop_evt = asyncio.Event()
        task = asyncio.create_task(svc.run(stop_evt))
        try:
            await task
        finally:
            if not task.done():
                stop_evt.set()
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
    finally:
        # sampling thread is joined before the sensor handle is released
        ctx.close()


def main() -> None:
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_amain())


if __name__ == "__main__":
    main()
