from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from .calculator import TrilaterationSolver
from .exceptions import ConfigError, DegenerateGeometryError, InsufficientDataError, StoreError
from .models import (
    BeaconReading,
    BeaconRecord,
    Point,
    PositionReport,
    PositionResult,
    PositionStatus,
    SideEffectResult,
    TagPosition,
)
from .stores import BeaconStore, TagStore
from .config_manager import FLOOR_FALLBACK_POLICIES


logger = logging.getLogger(__name__)

MIN_BEACONS = 3


class PositioningEngine:
    """
    定位流程：
      1. 少于 3 个读数直接失败
      2. 批量查询信标位置
      3. 按楼层分组（楼层从小到大），选第一个有 >=3 个信标的楼层
      4. 取 RSSI 最强的 3 个信标，回写 RSSI（失败不影响定位）
      5. 三边定位 + 残差评估，写入标签位置
    """

    def __init__(
        self,
        beacon_store: BeaconStore,
        tag_store: TagStore,
        solver: TrilaterationSolver | None = None,
        floor_fallback: str = "reject",
        clock: Callable[[], datetime] = datetime.now,
    ):
        if floor_fallback not in FLOOR_FALLBACK_POLICIES:
            raise ConfigError(f"unknown floor_fallback {floor_fallback!r}")
        self.beacon_store = beacon_store
        self.tag_store = tag_store
        self.solver = solver or TrilaterationSolver()
        self.floor_fallback = floor_fallback
        self._clock = clock

    # ---------- Core processing ----------
    def process(self, report: PositionReport) -> PositionResult:
        tag_id = report.tag_id
        try:
            return self._process(report)
        except InsufficientDataError as e:
            logger.warning("标签 %s 信标数据不足: %s", tag_id, e)
            return PositionResult.failure(tag_id, PositionStatus.INSUFFICIENT_DATA, str(e))
        except DegenerateGeometryError as e:
            logger.warning("标签 %s 三边定位失败: %s", tag_id, e)
            return PositionResult.failure(tag_id, PositionStatus.DEGENERATE, str(e))
        except StoreError as e:
            logger.error("标签 %s 存储访问失败: %s", tag_id, e)
            return PositionResult.failure(tag_id, PositionStatus.STORE_ERROR, str(e))

    def _process(self, report: PositionReport) -> PositionResult:
        if len(report) < MIN_BEACONS:
            raise InsufficientDataError(
                f"{len(report)} readings, at least {MIN_BEACONS} are required"
            )

        resolved = self.beacon_store.get_many(report.beacon_ids)
        logger.debug("标签 %s 查询到信标: %s", report.tag_id, resolved)

        floor_id, candidates = self.select_floor(resolved)
        top3 = self.strongest_readings(report.readings, candidates)
        if len(top3) < MIN_BEACONS:
            raise InsufficientDataError(
                f"only {len(top3)} usable beacons after floor selection"
            )
        if floor_id is None:
            # 跨楼层混合：取最强信标所在楼层
            floor_id = resolved[top3[0].beacon_id].floor_id

        rssi_map: Dict[int, float] = {}
        position_map: Dict[int, Point] = {}
        side_effects: List[SideEffectResult] = []
        for reading in top3:
            record = resolved[reading.beacon_id]
            if not record.has_position:
                logger.warning("信标 %s 缺少位置信息", reading.beacon_id)
                continue
            rssi_map[reading.beacon_id] = reading.rssi
            position_map[reading.beacon_id] = record.position
            side_effects.append(self._write_back_rssi(reading))

        if len(position_map) < MIN_BEACONS:
            raise InsufficientDataError(f"only {len(position_map)} beacons have a known position")

        point = self.solver.solve(rssi_map, position_map)
        accuracy = self.solver.residual_error(point, rssi_map, position_map)

        position = TagPosition(
            tag_id=report.tag_id,
            x=point.x,
            y=point.y,
            accuracy=accuracy,
            floor_id=float(floor_id),
            timestamp=self._clock(),
        )
        self.tag_store.upsert_position(position)
        logger.info(
            "标签 %s 定位成功: (%.3f, %.3f), 精度: %.3f, 楼层: %s",
            report.tag_id,
            position.x,
            position.y,
            position.accuracy,
            position.floor_id,
        )
        return PositionResult(
            tag_id=report.tag_id,
            status=PositionStatus.SUCCESS,
            message="ok",
            position=position,
            floor_id=position.floor_id,
            beacon_ids=sorted(position_map),
            side_effects=side_effects,
        )

    # ---------- Steps ----------
    def select_floor(
        self, resolved: Dict[int, BeaconRecord]
    ) -> Tuple[Optional[float], Dict[int, BeaconRecord]]:
        """按楼层从小到大取第一个 >=3 个信标的楼层；都不够时按策略拒绝或跨楼层混合"""
        by_floor: Dict[float, Dict[int, BeaconRecord]] = {}
        for beacon_id, record in resolved.items():
            # 楼层与坐标都已知的信标才参与分组
            if not record.has_position:
                continue
            by_floor.setdefault(record.floor_id, {})[beacon_id] = record

        for floor_id in sorted(by_floor):
            if len(by_floor[floor_id]) >= MIN_BEACONS:
                return floor_id, by_floor[floor_id]

        if self.floor_fallback == "mix":
            logger.warning("没有楼层满足 %d 个信标，跨楼层使用全部信标", MIN_BEACONS)
            return None, {k: r for k, r in resolved.items() if r.has_position}
        raise InsufficientDataError(f"no floor has at least {MIN_BEACONS} known beacons")

    @staticmethod
    def strongest_readings(
        readings: List[BeaconReading], candidates: Dict[int, BeaconRecord]
    ) -> List[BeaconReading]:
        """每个信标保留最强读数，再按 RSSI 从强到弱取前 3 个"""
        best: Dict[int, BeaconReading] = {}
        for reading in readings:
            if reading.beacon_id not in candidates:
                continue
            current = best.get(reading.beacon_id)
            if current is None or reading.rssi > current.rssi:
                best[reading.beacon_id] = reading
        ranked = sorted(best.values(), key=lambda r: (-r.rssi, r.beacon_id))
        return ranked[:MIN_BEACONS]

    def _write_back_rssi(self, reading: BeaconReading) -> SideEffectResult:
        try:
            self.beacon_store.update_rssi(reading.beacon_id, reading.rssi)
        except StoreError as e:
            logger.error("信标 %s RSSI 回写失败: %s", reading.beacon_id, e)
            return SideEffectResult(beacon_id=reading.beacon_id, ok=False, error=str(e))
        logger.debug("信标 %s RSSI 已更新: %s", reading.beacon_id, reading.rssi)
        return SideEffectResult(beacon_id=reading.beacon_id, ok=True)
