from __future__ import annotations

import logging
import math
from typing import Mapping

import numpy as np

from .exceptions import DegenerateGeometryError
from .models import Point


logger = logging.getLogger(__name__)


class RssiDistanceModel:
    """对数距离路径损耗模型: d = 10 ^ ((P0 - rssi) / (10 * n))"""

    def __init__(self, measured_power: float = -57.0, path_loss_exponent: float = 4.0):
        # 1米处的RSSI值 (dBm)
        self.measured_power = float(measured_power)
        # 环境衰减因子
        self.path_loss_exponent = float(path_loss_exponent)

    @classmethod
    def from_config(cls, rssi_config: Mapping[str, float]) -> "RssiDistanceModel":
        return cls(
            measured_power=rssi_config.get("measured_power", -57.0),
            path_loss_exponent=rssi_config.get("path_loss_exponent", 4.0),
        )

    def distance(self, rssi: float) -> float:
        """基于RSSI计算距离 (单位: 米)，非负RSSI返回 inf"""
        if rssi >= 0:
            logger.warning("无效RSSI值 %s，应为负数", rssi)
            return math.inf
        exponent = (self.measured_power - rssi) / (10.0 * self.path_loss_exponent)
        return math.pow(10, exponent)


class TrilaterationSolver:
    """三个信标的线性三边定位（二维）"""

    def __init__(self, distance_model: RssiDistanceModel | None = None):
        self.distance_model = distance_model or RssiDistanceModel()

    @staticmethod
    def _check_inputs(rssi_map: Mapping[int, float], position_map: Mapping[int, Point]) -> list[int]:
        if len(rssi_map) != 3 or set(rssi_map) != set(position_map):
            raise ValueError(
                f"trilateration needs the same three beacons in both maps, "
                f"got rssi={sorted(rssi_map)} positions={sorted(position_map)}"
            )
        return sorted(rssi_map)

    def solve(self, rssi_map: Mapping[int, float], position_map: Mapping[int, Point]) -> Point:
        """
        由圆方程 B-A、C-B 相减得到二元一次方程组:
            a*x + b*y = c
            d*x + e*y = f
        行列式为 0（共线或重合）时抛出 DegenerateGeometryError
        """
        ids = self._check_inputs(rssi_map, position_map)
        pa, pb, pc = (position_map[i] for i in ids)
        da, db, dc = (self.distance_model.distance(rssi_map[i]) for i in ids)

        if not all(math.isfinite(d) for d in (da, db, dc)):
            raise DegenerateGeometryError("distance is not finite, rssi must be negative")

        a = np.array(
            [
                [2 * (pb.x - pa.x), 2 * (pb.y - pa.y)],
                [2 * (pc.x - pb.x), 2 * (pc.y - pb.y)],
            ],
            dtype=float,
        )
        b = np.array(
            [
                da**2 - db**2 - pa.x**2 + pb.x**2 - pa.y**2 + pb.y**2,
                db**2 - dc**2 - pb.x**2 + pc.x**2 - pb.y**2 + pc.y**2,
            ],
            dtype=float,
        )
        logger.debug("三边定位系数: a=%s b=%s", a.tolist(), b.tolist())

        det = a[0, 0] * a[1, 1] - a[0, 1] * a[1, 0]
        if det == 0:
            raise DegenerateGeometryError(f"beacons {ids} are collinear or coincident")

        x, y = np.linalg.solve(a, b)
        return Point(x=float(x), y=float(y))

    def residual_error(
        self, point: Point, rssi_map: Mapping[int, float], position_map: Mapping[int, Point]
    ) -> float:
        """RSSI 推算距离与几何距离之差的平均绝对值，越小越好"""
        residuals = []
        for beacon_id, pos in position_map.items():
            expected = self.distance_model.distance(rssi_map[beacon_id])
            actual = math.hypot(point.x - pos.x, point.y - pos.y)
            residuals.append(abs(expected - actual))
        return sum(residuals) / len(residuals)
