from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Iterator, Set

from .exceptions import PayloadError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True)
class BeaconReading:
    beacon_id: int
    rssi: float


def _is_int(value: Any) -> bool:
    # bool 是 int 的子类，需要排除
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return (_is_int(value) or isinstance(value, float)) and math.isfinite(value)


def _pick(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


@dataclass(frozen=True)
class PositionReport:
    """
    标签上报的信标扫描结果
    """

    tag_id: int
    readings: List[BeaconReading]

    def __len__(self) -> int:
        return len(self.readings)

    def __iter__(self) -> Iterator[BeaconReading]:
        return iter(self.readings)

    @property
    def beacon_ids(self) -> List[int]:
        # 去重并保持出现顺序
        return list(dict.fromkeys(r.beacon_id for r in self.readings))

    @classmethod
    def parse(cls, payload: str | bytes, envelope_key: str = "") -> "PositionReport":
        """
        解析上报的 JSON，支持两种格式：
          {"tag": 1, "beacons": [{"id": 1, "rssi": -50}, ...]}
          {"": {"Tag": 1, "Beacons": [{"id": 1, "rssi": -50}, ...]}}
        """
        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError as e:
                raise PayloadError(f"payload is not utf-8: {e}") from e
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise PayloadError(f"payload is not valid JSON: {e}", payload=payload) from e
        if not isinstance(data, dict):
            raise PayloadError("payload is not a JSON object", payload=payload)

        # 外层信封
        envelope = data.get(envelope_key)
        if isinstance(envelope, dict):
            data = envelope

        tag = _pick(data, "tag", "Tag")
        beacons = _pick(data, "beacons", "Beacons")
        if not _is_int(tag):
            raise PayloadError("'tag' must be an integer", payload=payload)
        if not isinstance(beacons, list):
            raise PayloadError("'beacons' must be an array", payload=payload)

        readings: List[BeaconReading] = []
        for item in beacons:
            if not isinstance(item, dict):
                logger.warning("忽略无效信标数据: %r", item)
                continue
            beacon_id = item.get("id")
            rssi = item.get("rssi")
            if not _is_int(beacon_id) or not _is_number(rssi):
                logger.warning("忽略无效信标数据: %r", item)
                continue
            readings.append(BeaconReading(beacon_id=beacon_id, rssi=float(rssi)))
        return cls(tag_id=tag, readings=readings)


@dataclass(frozen=True)
class BeaconRecord:
    beacon_id: int
    floor_id: Optional[float] = None
    x: Optional[float] = None
    y: Optional[float] = None
    last_rssi: Optional[float] = None

    @property
    def has_position(self) -> bool:
        return self.floor_id is not None and self.x is not None and self.y is not None

    @property
    def position(self) -> Optional[Point]:
        if self.x is None or self.y is None:
            return None
        return Point(x=self.x, y=self.y)


@dataclass(frozen=True)
class TagPosition:
    tag_id: int
    x: float
    y: float
    accuracy: float
    floor_id: float
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        return d


@dataclass(frozen=True)
class TagRecord:
    """
    标签存储记录，尚未定位过的标签坐标为空
    """

    tag_id: int
    x: Optional[float] = None
    y: Optional[float] = None
    accuracy: Optional[float] = None
    floor_id: Optional[float] = None
    timestamp: Optional[datetime] = None

    def to_position(self) -> Optional[TagPosition]:
        if self.x is None or self.y is None or self.floor_id is None:
            return None
        return TagPosition(
            tag_id=self.tag_id,
            x=self.x,
            y=self.y,
            accuracy=self.accuracy if self.accuracy is not None else 0.0,
            floor_id=self.floor_id,
            timestamp=self.timestamp or datetime.now(),
        )


@dataclass(frozen=True)
class DeviceRecord:
    """
    其他设备（如空气传感器），仅做存储
    """

    device_id: int
    type: str = "air_sensing"
    name: Optional[str] = None
    x: Optional[float] = None
    y: Optional[float] = None


@dataclass(frozen=True)
class LivenessEntry:
    device_id: int
    last_seen: datetime
    alive: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"lastSeen": self.last_seen.isoformat(), "alive": self.alive}


@dataclass(frozen=True)
class Whitelist:
    tags: Set[int] = field(default_factory=set)
    beacons: Set[int] = field(default_factory=set)

    def to_dict(self) -> Dict[str, List[int]]:
        return {"tags": sorted(self.tags), "beacons": sorted(self.beacons)}

    def to_payload(self) -> str:
        return json.dumps(self.to_dict())


class PositionStatus(Enum):
    SUCCESS = "success"
    INSUFFICIENT_DATA = "insufficient_data"
    DEGENERATE = "degenerate"
    STORE_ERROR = "store_error"


@dataclass(frozen=True)
class SideEffectResult:
    """信标 RSSI 回写结果（尽力而为，不影响定位结果）"""

    beacon_id: int
    ok: bool
    error: Optional[str] = None


@dataclass
class PositionResult:
    """
    定位计算结果
    """

    tag_id: int
    status: PositionStatus
    message: str = ""
    position: Optional[TagPosition] = None
    floor_id: Optional[float] = None
    beacon_ids: List[int] = field(default_factory=list)
    side_effects: List[SideEffectResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is PositionStatus.SUCCESS and self.position is not None

    @classmethod
    def failure(cls, tag_id: int, status: PositionStatus, message: str) -> "PositionResult":
        return cls(tag_id=tag_id, status=status, message=message)
