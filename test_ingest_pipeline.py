"""
Watcher -> parser -> dispatcher pipeline tests.

Tests verify:
1. ChangeWatcher: missing file is "no update"; mtime only committed on request
2. Dispatcher: identical record twice -> one success; duplicates never hit the network
3. Only HTTP 200 counts; failures raise DispatchFailure and leave the key unseen
4. Re-parsing an unchanged file after a full ingest sends nothing new
5. A failed pass is retried on the next poll
6. Records are tagged with the session's anomaly flag
7. Non-finite times are skipped or refused, never crash the loop
8. Context shutdown joins the monitor thread before releasing the sensor
"""

import asyncio
import json
import os
import sys
import time
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent))

from notportable.config_loader import load_config
from notportable.context import AppContext, build_parsers, game_paths
from notportable.dispatcher import CollectorConfig, Dispatcher
from notportable.errors import DispatchFailure
from notportable.ingest import IngestService
from notportable.records import EtrRecord, NeverballRecord
from notportable.sensor import Sample, SensorConfig
from notportable.watcher import ChangeWatcher

NEVERBALL_TEXT = "level 2 1 map-easy/easy.sol\n2695 11 jungwooD\n3378 17 Hard\n2800 9 alice\n"


class Collector:
    """Records every request; status codes come from `statuses` (last one repeats)."""
    def __init__(self, *statuses):
        self.statuses = list(statuses) or [200]
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.url.path, json.loads(request.content)))
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return httpx.Response(status, json={"ok": status == 200})


def make_dispatcher(collector) -> Dispatcher:
    return Dispatcher("http://collector.test", transport=httpx.MockTransport(collector))


def bump_mtime(path: Path, step_ns: int = 5_000_000_000) -> None:
    st = path.stat()
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + step_ns))


def make_service(tmp_path: Path, collector, text: str = NEVERBALL_TEXT):
    log_file = tmp_path / "neverball-scores.txt"
    if text is not None:
        log_file.write_text(text, encoding="utf-8")
    ctx = AppContext(
        SensorConfig(enabled=False),
        None,
        ChangeWatcher({"neverball": log_file}),
        make_dispatcher(collector),
        build_parsers({"neverball": {"log_path": str(log_file)}}),
    )
    return IngestService(ctx, poll_interval_s=0.01), log_file


# ---------- ChangeWatcher ----------

def test_watcher_missing_file_is_no_update(tmp_path):
    w = ChangeWatcher({"etr": tmp_path / "absent.txt"})
    assert w.poll("etr") is False, "Missing log is not an error, just no update"


def test_watcher_commit_semantics(tmp_path):
    f = tmp_path / "scores.txt"
    w = ChangeWatcher({"etr": f})
    f.write_text("x", encoding="utf-8")
    assert w.poll("etr") is True
    assert w.poll("etr") is True, "Without commit the file stays eligible"
    w.commit("etr")
    assert w.poll("etr") is False, "Committed mtime -> no update"
    bump_mtime(f)
    assert w.poll("etr") is True, "New mtime -> update"


# ---------- Dispatcher ----------

def test_duplicate_submit_counts_once():
    collector = Collector(200)
    disp = make_dispatcher(collector)
    rec = NeverballRecord(username="jungwooD", level="map-easy/easy.sol", score=2695, coins=11)

    async def go():
        async with disp:
            first = await disp.submit("neverball", rec)
            second = await disp.submit("neverball", rec)
            return first, second

    first, second = asyncio.run(go())
    print(f"[OK] submit twice -> {first}, {second}; counters={disp.counters()}")
    assert (first, second) == (True, False)
    assert disp.sent == 1, "Exactly one success increment"
    assert disp.duplicates == 1
    assert len(collector.requests) == 1, "Duplicate never reaches the network"
    path, body = collector.requests[0]
    assert path == "/neverball/log"
    assert body == {"username": "jungwooD", "level": "map-easy/easy.sol",
                    "score": 2695, "coins": 11, "is_anomaly": False}


def test_dedup_is_per_game():
    collector = Collector(200)
    disp = make_dispatcher(collector)
    rec = EtrRecord(username="tux", course="c", score=1, herring=1, time=1.0)

    async def go():
        async with disp:
            await disp.submit("etr", rec)
            await disp.submit("other", rec)

    asyncio.run(go())
    assert disp.sent == 2, "Seen keys are held per game"


@pytest.mark.parametrize("status", [201, 204, 404, 500])
def test_non_200_is_failure(status):
    collector = Collector(status, 200)
    disp = make_dispatcher(collector)
    rec = NeverballRecord(username="a", level="l", score=1, coins=1, is_anomaly=True)

    async def go():
        async with disp:
            with pytest.raises(DispatchFailure) as ei:
                await disp.submit("neverball", rec)
            assert ei.value.status == status
            assert not disp.seen("neverball", rec), "Failed key stays unseen"
            return await disp.submit("neverball", rec)

    assert asyncio.run(go()) is True, "Record is accepted on the next attempt"
    assert disp.counters() == {"sent": 1, "failed": 1, "anomalies": 1, "duplicates": 0}


def test_transport_error_is_failure():
    def boom(request):
        raise httpx.ConnectError("collector down", request=request)

    disp = Dispatcher("http://collector.test", transport=httpx.MockTransport(boom))
    rec = NeverballRecord(username="a", level="l", score=1, coins=1)

    async def go():
        async with disp:
            with pytest.raises(DispatchFailure):
                await disp.submit("neverball", rec)

    asyncio.run(go())
    assert disp.failed == 1 and disp.sent == 0


def test_non_finite_payload_is_failure_not_crash():
    collector = Collector(200)
    disp = make_dispatcher(collector)
    rec = EtrRecord(username="tux", course="c", score=1, herring=1, time=float("nan"))

    async def go():
        async with disp:
            with pytest.raises(DispatchFailure, match="not encodable"):
                await disp.submit("etr", rec)

    asyncio.run(go())
    assert collector.requests == [], "Unencodable payload never reaches the network"
    assert disp.failed == 1 and not disp.seen("etr", rec)


def test_collector_config_from_app():
    cfg = CollectorConfig.from_app({"base_url": "http://x:9/", "timeout_ms": 750})
    disp = Dispatcher.from_config(cfg)
    assert disp.base_url == "http://x:9"
    assert disp.timeout == pytest.approx(0.75)


# ---------- IngestService ----------

def test_full_ingest_then_idempotent_reparse(tmp_path):
    collector = Collector(200)
    svc, log_file = make_service(tmp_path, collector)

    async def go():
        async with svc.ctx.dispatcher:
            ok1 = await svc.ingest_once("neverball")
            ok2 = await svc.ingest_once("neverball")   # unchanged mtime: no poll hit
            bump_mtime(log_file)                       # touched, same content
            ok3 = await svc.ingest_once("neverball")
            return ok1, ok2, ok3

    ok1, ok2, ok3 = asyncio.run(go())
    print(f"[OK] passes -> {ok1}, {ok2}, {ok3}; counters={svc.ctx.dispatcher.counters()}")
    assert ok1 is True
    assert ok2 is False, "No change, no parse"
    assert ok3 is True
    assert len(collector.requests) == 2, "Two players, sentinel excluded, no re-sends"
    assert svc.ctx.dispatcher.duplicates == 2, "Re-parse hits the de-dup set"


def test_failed_pass_is_retried(tmp_path):
    collector = Collector(500, 200)
    svc, _ = make_service(tmp_path, collector)

    async def go():
        async with svc.ctx.dispatcher:
            first = await svc.ingest_once("neverball")
            second = await svc.ingest_once("neverball")
            third = await svc.ingest_once("neverball")
            return first, second, third

    first, second, third = asyncio.run(go())
    assert first is False, "One record failed -> pass not committed"
    assert second is True, "Same mtime is re-offered on the next poll"
    assert third is False, "Committed after the successful pass"
    users = [body["username"] for _, body in collector.requests]
    assert users == ["jungwooD", "alice", "jungwooD"], "Only the dropped record is re-sent"
    assert svc.ctx.dispatcher.sent == 2


def test_missing_log_is_skipped(tmp_path):
    collector = Collector(200)
    svc, _ = make_service(tmp_path, collector, text=None)

    async def go():
        async with svc.ctx.dispatcher:
            return await svc.poll_all()

    assert asyncio.run(go()) == {"neverball": False}
    assert collector.requests == []


def test_records_tagged_with_session_flag(tmp_path):
    collector = Collector(200)
    svc, _ = make_service(tmp_path, collector)
    svc.ctx.state.set()

    async def go():
        async with svc.ctx.dispatcher:
            await svc.ingest_once("neverball")

    asyncio.run(go())
    assert all(body["is_anomaly"] is True for _, body in collector.requests)
    assert svc.ctx.dispatcher.anomalies == 2


def test_run_loop_stops_cleanly(tmp_path):
    collector = Collector(200)
    svc, _ = make_service(tmp_path, collector)

    async def go():
        stop = asyncio.Event()
        task = asyncio.create_task(svc.run(stop))
        for _ in range(200):
            if len(collector.requests) >= 2:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=2.0)

    asyncio.run(go())
    assert len(collector.requests) == 2
    svc.ctx.close()
    assert not svc.ctx.monitor.is_running()


def test_etr_non_finite_time_does_not_stop_ingest(tmp_path):
    """An [time] inf line is skipped; the valid line next to it is delivered."""
    collector = Collector(200)
    log_file = tmp_path / "etr-scores.txt"
    log_file.write_text(
        "*[course] frozen_river [plyr] bo [pts] 100 [herr] 2 [time] inf\n"
        "*[course] frozen_river [plyr] ann [pts] 120 [herr] 3 [time] 41.5\n",
        encoding="utf-8",
    )
    ctx = AppContext(
        SensorConfig(enabled=False),
        None,
        ChangeWatcher({"etr": log_file}),
        make_dispatcher(collector),
        build_parsers({"etr": {"log_path": str(log_file)}}),
    )
    svc = IngestService(ctx, poll_interval_s=0.01)

    async def go():
        stop = asyncio.Event()
        task = asyncio.create_task(svc.run(stop))
        for _ in range(200):
            if collector.requests:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=2.0)

    asyncio.run(go())
    print(f"[OK] etr with inf -> {collector.requests}")
    assert [body["username"] for _, body in collector.requests] == ["ann"]
    assert ctx.dispatcher.failed == 0
    ctx.close()


class ClosingSampler:
    """Remembers whether the monitor thread was still alive when close() ran."""
    def __init__(self, monitor_ref):
        self.monitor_ref = monitor_ref
        self.closed = False
        self.running_at_close = None

    def sample(self):
        return Sample(value=100.0, timestamp=time.time())

    def close(self):
        self.running_at_close = self.monitor_ref().is_running()
        self.closed = True


def test_context_close_stops_monitor_before_sensor(tmp_path):
    holder = {}
    sampler = ClosingSampler(lambda: holder["ctx"].monitor)
    ctx = AppContext(
        SensorConfig(check_interval_s=0.0, tick_s=0.01, baseline_spacing_s=0.0),
        sampler,
        ChangeWatcher({}),
        make_dispatcher(Collector(200)),
        {},
    )
    holder["ctx"] = ctx
    ctx.monitor.start()
    deadline = time.monotonic() + 2.0
    while not ctx.monitor.is_running() and time.monotonic() < deadline:
        time.sleep(0.01)
    assert ctx.monitor.is_running(), "Monitor should be sampling before close"

    ctx.close()
    assert sampler.closed, "close() releases the sensor"
    assert sampler.running_at_close is False, "Sampling thread is joined before the sensor is released"
    ctx.close()


def test_context_helpers(tmp_path):
    games = {
        "neverball": {"log_path": str(tmp_path / "nb.txt")},
        "supertux": {"log_path": "~/st.stsg", "username": "jungwoo"},
        "pong": {"log_path": "x"},
    }
    paths = game_paths(games)
    parsers = build_parsers(games)
    assert set(paths) == {"neverball", "supertux"}, "Unknown games are ignored"
    assert paths["supertux"] == Path("~/st.stsg").expanduser()
    st = parsers["supertux"]('("a.stl" (solved #t) ("statistics" (coins-collected 1)'
                             ' (secrets-found 0) (time-needed 2.5) (badguys-killed 0)))')
    assert st[0].username == "jungwoo", "SuperTux records carry the configured profile owner"


# ---------- config ----------

def test_load_config_and_context(tmp_path):
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(
        "sensor:\n"
        "  enabled: false\n"
        "  threshold: 12.5\n"
        "games:\n"
        f"  etr:\n    log_path: {tmp_path / 'etr.txt'}\n"
        "collector:\n"
        "  base_url: http://collector.test/\n",
        encoding="utf-8",
    )
    cfg = load_config(cfg_file)
    ctx = AppContext.from_config(cfg)
    assert ctx.detection_enabled is False, "Disabled sensor -> no sampler, program continues"
    assert ctx.sensor_cfg.threshold == 12.5
    assert set(ctx.parsers) == {"etr"}
    assert ctx.dispatcher.base_url == "http://collector.test"
    ctx.close()


def test_load_config_rejects_non_mapping(tmp_path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(RuntimeError, match="mapping"):
        load_config(bad)
    with pytest.raises(RuntimeError, match="Missing configuration file"):
        load_config(tmp_path / "nope.yaml")


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
