from __future__ import annotations
import dataclasses
from dataclasses import dataclass
from typing import Any, Dict, Tuple, Union


@dataclass(frozen=True)
class NeverballRecord:
    username: str
    level: str
    score: int
    coins: int
    is_anomaly: bool = False

    def dedup_key(self) -> Tuple[Any, ...]:
        return (self.username, self.level, self.score, self.coins)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "level": self.level,
            "score": self.score,
            "coins": self.coins,
            "is_anomaly": self.is_anomaly,
        }


@dataclass(frozen=True)
class SuperTuxRecord:
    username: str
    level: str
    coins: int
    secrets: int
    time: float
    kills: int
    is_anomaly: bool = False

    def dedup_key(self) -> Tuple[Any, ...]:
        return (self.username, self.level, self.time, self.coins)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "level": self.level,
            "coins": self.coins,
            "secrets": self.secrets,
            "time": self.time,
            "kills": self.kills,
            "is_anomaly": self.is_anomaly,
        }


@dataclass(frozen=True)
class EtrRecord:
    username: str
    course: str
    score: int
    herring: int
    time: float
    is_anomaly: bool = False

    def dedup_key(self) -> Tuple[Any, ...]:
        return (self.username, self.course, self.time, self.score)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "course": self.course,
            "score": self.score,
            "herring": self.herring,
            "time": self.time,
            "is_anomaly": self.is_anomaly,
        }


ScoreRecord = Union[NeverballRecord, SuperTuxRecord, EtrRecord]


def tag_anomaly(record: ScoreRecord, anomalous: bool) -> ScoreRecord:
    """Return a copy carrying the anomaly flag; records themselves are frozen."""
    return dataclasses.replace(record, is_anomaly=bool(anomalous))
