from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .models import LivenessEntry


logger = logging.getLogger(__name__)


class LivenessTracker:
    """设备在线状态：收到上报即在线，超过 timeout 未上报由定时巡检置为离线"""

    def __init__(
        self,
        timeout: float = 20.0,
        check_interval: float = 10.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.timeout = timedelta(seconds=timeout)
        self.check_interval = float(check_interval)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[int, LivenessEntry] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(cls, liveness_config) -> "LivenessTracker":
        return cls(
            timeout=liveness_config.get("timeout", 20.0),
            check_interval=liveness_config.get("check_interval", 10.0),
        )

    def mark_seen(self, device_id: int) -> None:
        now = self._clock()
        with self._lock:
            self._entries[device_id] = LivenessEntry(device_id=device_id, last_seen=now, alive=True)

    def sweep(self) -> List[int]:
        """返回本次被置为离线的设备"""
        now = self._clock()
        offline: List[int] = []
        with self._lock:
            for device_id, entry in self._entries.items():
                if entry.alive and now - entry.last_seen > self.timeout:
                    self._entries[device_id] = LivenessEntry(
                        device_id=device_id, last_seen=entry.last_seen, alive=False
                    )
                    offline.append(device_id)
        for device_id in offline:
            logger.warning("设备 %s 已离线", device_id)
        return offline

    def is_alive(self, device_id: int) -> bool:
        with self._lock:
            entry = self._entries.get(device_id)
            return entry is not None and entry.alive

    def snapshot(self) -> Dict[int, LivenessEntry]:
        # LivenessEntry 不可变，拷贝字典即为一致快照
        with self._lock:
            return dict(self._entries)

    def to_status(self) -> Dict[int, Dict[str, object]]:
        return {device_id: entry.to_dict() for device_id, entry in self.snapshot().items()}

    # ---------- Sweeper thread ----------
    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="liveness-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self.check_interval):
            try:
                self.sweep()
            except Exception as e:
                logger.exception("在线状态巡检出错: %s", e)
