from __future__ import annotations

import logging
import os
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, cast

import pandas as pd

from .exceptions import StoreError
from .models import BeaconRecord, DeviceRecord, TagPosition, TagRecord


logger = logging.getLogger(__name__)


def _opt_float(value: Any) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    return float(value)


def _opt_str(value: Any) -> Optional[str]:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    return str(value)


class CsvStore:
    """CSV 持久化的表（pandas），索引为 id，每次修改都会落盘"""

    name = "store"
    numeric_columns: List[str] = []
    text_columns: List[str] = []

    def __init__(self, path: Optional[str] = None):
        self._path = path
        self._lock = threading.RLock()
        # 最近一次读写时文件的 (mtime_ns, size)，用于发现其他进程的修改
        self._stamp: Optional[tuple] = None
        self._df = self._normalize_df(pd.DataFrame(columns=["id", *self.columns]).set_index("id"))

    @property
    def columns(self) -> List[str]:
        return [*self.numeric_columns, *self.text_columns]

    @property
    def path(self) -> Optional[str]:
        return self._path

    # ---- Utils ----
    def _normalize_df(self, df: pd.DataFrame) -> pd.DataFrame:
        df = df.copy()
        for col in self.columns:
            if col not in df.columns:
                df[col] = None
        for col in self.numeric_columns:
            df[col] = pd.to_numeric(df[col], errors="coerce").astype("float64")
        for col in self.text_columns:
            df[col] = df[col].astype(object).where(df[col].notna(), None)
        df = df[self.columns]
        df.index = pd.Index(df.index, dtype="int64", name="id")
        df = df[~df.index.duplicated(keep="last")]
        return df.sort_index()

    def _file_stamp(self) -> Optional[tuple]:
        try:
            st = os.stat(self._path)  # type: ignore[arg-type]
        except OSError:
            return None
        return (st.st_mtime_ns, st.st_size)

    def _refresh(self) -> None:
        """文件被其他进程（如命令行）改写过则重新加载，调用方需持有锁"""
        if self._path is None:
            return
        stamp = self._file_stamp()
        if stamp is not None and stamp != self._stamp:
            logger.info("%s 文件已变更，重新加载: %s", self.name, self._path)
            self.load()

    def _to_record(self, key: int, row: pd.Series) -> Any:
        raise NotImplementedError

    def _record(self, key: Any) -> Any:
        row = cast(pd.Series, self._df.loc[key])
        return self._to_record(int(key), row)

    # ---- Load/Save ----
    def load(self, path: Optional[str] = None) -> None:
        path = path or self._path
        if path is None:
            return
        self._path = path
        with self._lock:
            if not os.path.exists(path):
                logger.info("%s 文件不存在，使用空表: %s", self.name, path)
                self._df = self._normalize_df(self._df.iloc[0:0])
                return
            try:
                df = pd.read_csv(path)
                if "id" not in df.columns:
                    raise KeyError("CSV 文件缺少 'id' 列")
                df = df.dropna(subset=["id"])
                df["id"] = df["id"].astype("int64")
                self._df = self._normalize_df(df.set_index("id"))
                self._stamp = self._file_stamp()
            except (OSError, KeyError, ValueError, pd.errors.ParserError) as e:
                raise StoreError(f"failed to load {path}: {e}", store=self.name) from e
            logger.info("已加载 %s: %d 条记录", self.name, len(self._df))

    def save(self) -> None:
        if self._path is None:
            return
        with self._lock:
            try:
                os.makedirs(os.path.dirname(self._path) or ".", exist_ok=True)
                self._df.to_csv(self._path, index=True, index_label="id", encoding="utf-8")
                self._stamp = self._file_stamp()
            except OSError as e:
                raise StoreError(f"failed to save {self._path}: {e}", store=self.name) from e

    # ---- CRUD ----
    def upsert(self, key: int, **fields: Any) -> Any:
        """新增或部分字段覆盖，返回更新后的记录"""
        unknown = set(fields) - set(self.columns)
        if unknown:
            raise ValueError(f"unknown {self.name} fields: {sorted(unknown)}")
        key = int(key)
        with self._lock:
            self._refresh()
            if key in self._df.index:
                df = self._df.copy()
                for col, value in fields.items():
                    df.at[key, col] = value
            else:
                row = {col: None for col in self.columns}
                row.update(fields)
                new = pd.DataFrame([row], index=pd.Index([key], name="id"))
                df = new if self._df.empty else pd.concat([self._df, new])
            self._df = self._normalize_df(df)
            self.save()
            return self._record(key)

    def delete(self, key: int) -> bool:
        with self._lock:
            self._refresh()
            if key not in self._df.index:
                return False
            self._df = self._df.drop(index=key)
            self.save()
            return True

    # ---- Accessors ----
    def get(self, key: int) -> Any:
        with self._lock:
            self._refresh()
            if key not in self._df.index:
                return None
            return self._record(key)

    def get_many(self, keys: Iterable[int]) -> Dict[int, Any]:
        """批量查询，不存在的 id 不出现在结果中"""
        wanted = set(keys)
        with self._lock:
            self._refresh()
            found = self._df[self._df.index.isin(list(wanted))]
            return {int(k): self._to_record(int(k), cast(pd.Series, row)) for k, row in found.iterrows()}

    def all(self) -> Dict[int, Any]:
        with self._lock:
            self._refresh()
            return {int(k): self._to_record(int(k), cast(pd.Series, row)) for k, row in self._df.iterrows()}

    def ids(self) -> set[int]:
        with self._lock:
            self._refresh()
            return {int(k) for k in self._df.index}

    def __len__(self) -> int:
        return len(self._df)


class BeaconStore(CsvStore):
    """信标：楼层、坐标与最近一次 RSSI"""

    name = "beacons"
    numeric_columns = ["floor_id", "x", "y", "rssi"]

    def _to_record(self, key: int, row: pd.Series) -> BeaconRecord:
        return BeaconRecord(
            beacon_id=key,
            floor_id=_opt_float(row.at["floor_id"]),
            x=_opt_float(row.at["x"]),
            y=_opt_float(row.at["y"]),
            last_rssi=_opt_float(row.at["rssi"]),
        )

    def set_beacon(self, beacon: BeaconRecord) -> BeaconRecord:
        return self.upsert(
            beacon.beacon_id,
            floor_id=beacon.floor_id,
            x=beacon.x,
            y=beacon.y,
            rssi=beacon.last_rssi,
        )

    def update_rssi(self, beacon_id: int, rssi: float) -> BeaconRecord:
        return self.upsert(beacon_id, rssi=float(rssi))


class TagStore(CsvStore):
    """标签：最近一次定位结果"""

    name = "tags"
    numeric_columns = ["x", "y", "accuracy", "floor_id"]
    text_columns = ["timestamp"]

    def _to_record(self, key: int, row: pd.Series) -> TagRecord:
        ts = _opt_str(row.at["timestamp"])
        return TagRecord(
            tag_id=key,
            x=_opt_float(row.at["x"]),
            y=_opt_float(row.at["y"]),
            accuracy=_opt_float(row.at["accuracy"]),
            floor_id=_opt_float(row.at["floor_id"]),
            timestamp=datetime.fromisoformat(ts) if ts else None,
        )

    def upsert_position(self, position: TagPosition) -> TagRecord:
        return self.upsert(
            position.tag_id,
            x=position.x,
            y=position.y,
            accuracy=position.accuracy,
            floor_id=position.floor_id,
            timestamp=position.timestamp.isoformat(),
        )


class DeviceStore(CsvStore):
    """其他设备（如空气传感器）"""

    name = "devices"
    numeric_columns = ["x", "y"]
    text_columns = ["type", "name"]

    def _to_record(self, key: int, row: pd.Series) -> DeviceRecord:
        return DeviceRecord(
            device_id=key,
            type=_opt_str(row.at["type"]) or "air_sensing",
            name=_opt_str(row.at["name"]),
            x=_opt_float(row.at["x"]),
            y=_opt_float(row.at["y"]),
        )

    def set_device(self, device: DeviceRecord) -> DeviceRecord:
        return self.upsert(device.device_id, type=device.type, name=device.name, x=device.x, y=device.y)


def seed_sample_data(beacon_store: BeaconStore, tag_store: TagStore) -> None:
    """写入示例数据：同一楼层的三个信标与一个标签"""
    for beacon in (
        BeaconRecord(beacon_id=1, floor_id=1.0, x=0.0, y=0.0, last_rssi=-50.0),
        BeaconRecord(beacon_id=2, floor_id=1.0, x=4.0, y=0.0, last_rssi=-60.0),
        BeaconRecord(beacon_id=3, floor_id=1.0, x=2.0, y=3.0, last_rssi=-70.0),
    ):
        beacon_store.set_beacon(beacon)
    tag_store.upsert(1, x=1.5, y=1.5, timestamp=datetime.now().isoformat())
    logger.info("示例数据已写入: %d 个信标, %d 个标签", len(beacon_store), len(tag_store))
