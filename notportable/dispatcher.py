from __future__ import annotations
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set, Tuple

import httpx

from .errors import DispatchFailure
from .records import ScoreRecord

log = logging.getLogger("notportable.dispatch")


@dataclass
class CollectorConfig:
    base_url: str = "http://127.0.0.1:8000"
    timeout_ms: int = 2000

    @classmethod
    def from_app(cls, collector_dict: Dict[str, Any]) -> "CollectorConfig":
        col = collector_dict or {}
        return cls(
            base_url=str(col.get("base_url", "http://127.0.0.1:8000")),
            timeout_ms=int(col.get("timeout_ms", 2000)),
        )


class Dispatcher:
    """
    Posts score records to POST {base_url}/{game}/log.

      - local de-dup first: a key already delivered never reaches the network
      - 200 is the only success; the key is remembered only then
      - anything else is logged, counted and raised as DispatchFailure;
        there is no retry queue (the next file poll re-offers the record)
    """
    def __init__(self, base_url: str, *, timeout_ms: int = 2000,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout_ms / 1000.0
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._seen: Dict[str, Set[Tuple[Any, ...]]] = {}

        # Observability counters (simple integers; emit in logs)
        self.sent = 0
        self.failed = 0
        self.anomalies = 0
        self.duplicates = 0

    @classmethod
    def from_config(cls, cfg: CollectorConfig) -> "Dispatcher":
        return cls(cfg.base_url, timeout_ms=cfg.timeout_ms)

    async def start(self):
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout,
                                             transport=self._transport)

    async def stop(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "Dispatcher":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    def seen(self, game: str, record: ScoreRecord) -> bool:
        return record.dedup_key() in self._seen.get(game, ())

    async def submit(self, game: str, record: ScoreRecord) -> bool:
        """True when delivered, False when suppressed as a duplicate."""
        key = record.dedup_key()
        if key in self._seen.get(game, ()):
            self.duplicates += 1
            return False

        if self._client is None:
            await self.start()
        assert self._client is not None

        try:
            body = json.dumps(record.to_payload(), allow_nan=False).encode("utf-8")
        except (TypeError, ValueError) as e:
            self.failed += 1
            log.warning("dispatch_encode_error", extra={"game": game, "key": key, "err": str(e)})
            raise DispatchFailure(f"{game}: payload not encodable: {e}") from e

        t0 = time.perf_counter()
        try:
            resp = await self._client.post(
                f"/{game}/log", content=body, headers={"Content-Type": "application/json"}
            )
        except httpx.HTTPError as e:
            self.failed += 1
            log.warning("dispatch_error", extra={"game": game, "key": key, "err": str(e)})
            raise DispatchFailure(f"{game}: {type(e).__name__}: {e}") from e

        latency_ms = round((time.perf_counter() - t0) * 1000, 1)
        if resp.status_code != 200:
            self.failed += 1
            log.warning(
                "dispatch_non_200",
                extra={"game": game, "key": key, "status": resp.status_code, "latency_ms": latency_ms},
            )
            raise DispatchFailure(f"{game}: HTTP {resp.status_code}", status=resp.status_code)

        self._seen.setdefault(game, set()).add(key)
        self.sent += 1
        if record.is_anomaly:
            self.anomalies += 1
        log.info(
            "dispatched",
            extra={"game": game, "key": key, "anomaly": record.is_anomaly, "latency_ms": latency_ms},
        )
        return True

    def counters(self) -> Dict[str, int]:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "anomalies": self.anomalies,
            "duplicates": self.duplicates,
        }
