"""
Score-log parsers
=================

Each parser is a pure function: raw file text in, list of frozen records out.
A malformed line/block raises ParseSkip internally, is logged at DEBUG and
skipped; the rest of the file is still parsed.

Formats
-------
Neverball (line-oriented, carries the current level across lines):

    level 2 1 map-easy/easy.sol
    2695 11 jungwooD            <score> <coins> <name>
    3378 17 Hard                goal placeholder, never a player

SuperTux (nested s-expressions, scanned over the whole document):

    ("level1.stl"
      (solved #t)
      ("statistics"
        (coins-collected 42) (badguys-killed 3)
        (secrets-found 1) (time-needed 57.25)))

Extreme Tux Racer (one line per run, bracketed key/value tokens):

    *[course] bunny_hill [plyr] tux [pts] 8562 [herr] 23 [time] 135.32
"""

from __future__ import annotations
import logging
import math
import re
from typing import Callable, Dict, List, Optional

from .errors import ParseSkip
from .records import EtrRecord, NeverballRecord, SuperTuxRecord

log = logging.getLogger("notportable.parse")


def _skip(game: str, where: str, err: ParseSkip) -> None:
    log.debug("parse_skip", extra={"game": game, "where": where, "err": str(err)})


def _to_int(raw: str, field: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ParseSkip(f"{field}: not an integer: {raw!r}") from None


def _to_float(raw: str, field: str) -> float:
    try:
        value = float(raw)
    except ValueError:
        raise ParseSkip(f"{field}: not a number: {raw!r}") from None
    # float() accepts nan/inf; neither is a real time nor JSON-encodable
    if not math.isfinite(value):
        raise ParseSkip(f"{field}: not finite: {raw!r}")
    return value


# ------------------------------------------------------------
# Neverball
# ------------------------------------------------------------

NEVERBALL_GOAL_SENTINELS = frozenset({"Hard", "Medium", "Easy"})

_NB_LEVEL = re.compile(r"^level\s+(\S+)\s+(\S+)\s+(\S+)$")
_NB_SCORE = re.compile(r"^(\S+)\s+(\S+)\s+(\S+)$")


def parse_neverball(raw_text: str) -> List[NeverballRecord]:
    out: List[NeverballRecord] = []
    level: Optional[str] = None

    for lineno, raw in enumerate(raw_text.splitlines(), 1):
        line = raw.strip()
        if not line:
            continue
        try:
            m = _NB_LEVEL.match(line)
            if m:
                # a broken directive must not leave scores under the previous level
                level = None
                _to_int(m.group(1), "level.index")
                _to_int(m.group(2), "level.flags")
                level = m.group(3)
                continue

            m = _NB_SCORE.match(line)
            if not m:
                continue
            name = m.group(3)
            if name in NEVERBALL_GOAL_SENTINELS:
                continue
            if level is None:
                raise ParseSkip("score line before any level directive")
            out.append(NeverballRecord(
                username=name,
                level=level,
                score=_to_int(m.group(1), "score"),
                coins=_to_int(m.group(2), "coins"),
            ))
        except ParseSkip as e:
            _skip("neverball", f"line {lineno}", e)
    return out


# ------------------------------------------------------------
# SuperTux
# ------------------------------------------------------------

_ST_LEVEL  = re.compile(r'"([^"]+\.stl)"')
_ST_SOLVED = re.compile(r"\(\s*solved\s+#t\s*\)")
_ST_STATS  = '"statistics"'
_ST_FIELDS = ("coins-collected", "secrets-found", "time-needed", "badguys-killed")


def _st_field(block: str, name: str) -> str:
    # "coins-collected" must not match "coins-collected-total"
    m = re.search(r"\(\s*" + re.escape(name) + r"\s+([^\s()]+)\s*\)", block)
    if not m:
        raise ParseSkip(f"missing {name}")
    return m.group(1)


def parse_supertux(raw_text: str, username: str = "") -> List[SuperTuxRecord]:
    """
    Save files carry no player name, so the caller passes the profile owner.
    Unsolved levels are skipped silently.
    """
    out: List[SuperTuxRecord] = []
    heads = list(_ST_LEVEL.finditer(raw_text))

    for i, head in enumerate(heads):
        level = head.group(1)
        end = heads[i + 1].start() if i + 1 < len(heads) else len(raw_text)
        block = raw_text[head.end():end]

        if not _ST_SOLVED.search(block):
            continue
        try:
            at = block.find(_ST_STATS)
            if at < 0:
                raise ParseSkip("no statistics block")
            stats = block[at + len(_ST_STATS):]
            vals = {name: _st_field(stats, name) for name in _ST_FIELDS}
            out.append(SuperTuxRecord(
                username=username,
                level=level,
                coins=_to_int(vals["coins-collected"], "coins-collected"),
                secrets=_to_int(vals["secrets-found"], "secrets-found"),
                time=_to_float(vals["time-needed"], "time-needed"),
                kills=_to_int(vals["badguys-killed"], "badguys-killed"),
            ))
        except ParseSkip as e:
            _skip("supertux", level, e)
    return out


# ------------------------------------------------------------
# Extreme Tux Racer
# ------------------------------------------------------------

_ETR_TOKEN = re.compile(r"\[(\w+)\]\s*([^\[]*)")
_ETR_REQUIRED = ("course", "plyr", "pts", "herr", "time")


def _etr_time(raw: str) -> float:
    # plain seconds ("135.32") or clock form ("02:15.32")
    if ":" in raw:
        mins, _, secs = raw.partition(":")
        return _to_int(mins, "time.minutes") * 60 + _to_float(secs, "time.seconds")
    return _to_float(raw, "time")


def parse_etr(raw_text: str) -> List[EtrRecord]:
    out: List[EtrRecord] = []
    for lineno, raw in enumerate(raw_text.splitlines(), 1):
        tokens = {m.group(1): m.group(2).strip() for m in _ETR_TOKEN.finditer(raw)}
        if not tokens:
            continue
        try:
            missing = [k for k in _ETR_REQUIRED if not tokens.get(k)]
            if missing:
                raise ParseSkip(f"missing {','.join(missing)}")
            out.append(EtrRecord(
                username=tokens["plyr"],
                course=tokens["course"],
                score=_to_int(tokens["pts"], "pts"),
                herring=_to_int(tokens["herr"], "herr"),
                time=_etr_time(tokens["time"]),
            ))
        except ParseSkip as e:
            _skip("etr", f"line {lineno}", e)
    return out


PARSERS: Dict[str, Callable[..., list]] = {
    "neverball": parse_neverball,
    "supertux":  parse_supertux,
    "etr":       parse_etr,
}
