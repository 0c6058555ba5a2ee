from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, Optional

import paho.mqtt.client as mqtt
from paho.mqtt.client import MQTTMessage

from .config_manager import ConfigManager
from .engine import PositioningEngine
from .exceptions import PayloadError
from .liveness import LivenessTracker
from .models import LivenessEntry, PositionReport, PositionResult, TagPosition


logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class MQTTIngestionService:
    """
    订阅标签上报主题，更新在线状态并计算位置。

    连接由一个守护线程管理：连接 -> 等待断开/出错 -> 固定延时 -> 重连。
    同一时刻只存在一个 MQTT 客户端对象。
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        engine: PositioningEngine,
        liveness: LivenessTracker,
        client_factory: Optional[Callable[[], Any]] = None,
        on_connected: Optional[Callable[[], None]] = None,
    ):
        self.lock = threading.Lock()
        self.config_manager = config_manager
        self.engine = engine
        self.liveness = liveness
        self.on_connected = on_connected

        mqtt_config = self.config_manager.get_mqtt_config()
        self.reconnect_delay = float(mqtt_config.get("reconnect_delay", 30.0))
        self.qos = int(mqtt_config.get("qos", 1))
        self.envelope_key = str(mqtt_config.get("envelope_key", ""))

        self._client_factory = client_factory or self._default_client
        self._client: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._latest_position: Optional[TagPosition] = None

        self._closed = threading.Event()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---------- Queries ----------
    @property
    def state(self) -> ConnectionState:
        with self.lock:
            return self._state

    @property
    def latest_position(self) -> Optional[TagPosition]:
        with self.lock:
            return self._latest_position

    def status(self) -> Dict[int, LivenessEntry]:
        return self.liveness.snapshot()

    # ---------- Core processing ----------
    def handle_message(self, topic: str, payload: bytes | str) -> Optional[PositionResult]:
        logger.debug("收到消息 %s: %r", topic, payload)
        try:
            report = PositionReport.parse(payload, self.envelope_key)
        except PayloadError as e:
            logger.warning("消息格式错误，已丢弃 (%s): %s", topic, e)
            return None

        try:
            for reading in report.readings:
                self.liveness.mark_seen(reading.beacon_id)
            self.liveness.mark_seen(report.tag_id)

            result = self.engine.process(report)
            if result.ok:
                with self.lock:
                    self._latest_position = result.position
            return result
        except Exception as e:
            logger.exception("处理消息时出错: %s", e)
            return None

    def publish(self, topic: str, payload: str, qos: Optional[int] = None) -> bool:
        with self.lock:
            client = self._client
            state = self._state
        if client is None or state is not ConnectionState.CONNECTED:
            logger.warning("MQTT未连接，无法发布到 %s", topic)
            return False
        info = client.publish(topic, payload, qos=self.qos if qos is None else qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.error("发布到 %s 失败，返回码: %s", topic, info.rc)
            return False
        return True

    # ---------- MQTT ----------
    def _default_client(self) -> mqtt.Client:
        mqtt_config = self.config_manager.get_mqtt_config()
        return mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=mqtt_config.get("client_id") or "",
        )

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._supervise, name="mqtt-supervisor", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        self._closed.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("MQTT连接已断开")

    def _supervise(self) -> None:
        while not self._stop_event.is_set():
            self._run_connection()
            if self._stop_event.is_set():
                break
            logger.info("%.0f 秒后重连MQTT服务器", self.reconnect_delay)
            if self._stop_event.wait(self.reconnect_delay):
                break
        self._set_state(ConnectionState.DISCONNECTED)

    def _run_connection(self) -> None:
        """建立一次连接并阻塞到断开为止"""
        self._closed.clear()
        # stop() 的信号可能已被 clear 吞掉
        if self._stop_event.is_set():
            return
        self._set_state(ConnectionState.CONNECTING)
        mqtt_config = self.config_manager.get_mqtt_config()
        client = None
        try:
            client = self._client_factory()
            client.on_connect = self.on_connect
            client.on_message = self.on_message
            client.on_disconnect = self.on_disconnect
            logger.info("连接到MQTT服务器 %s:%s", mqtt_config["ip"], mqtt_config["port"])
            client.connect(mqtt_config["ip"], int(mqtt_config["port"]), int(mqtt_config.get("keepalive", 60)))
            with self.lock:
                self._client = client
            client.loop_start()
            self._closed.wait()
        except Exception as e:
            logger.error("MQTT连接错误: %s", e)
        finally:
            self._teardown(client)

    def _teardown(self, client: Any) -> None:
        with self.lock:
            self._client = None
            self._state = ConnectionState.DISCONNECTED
        if client is None:
            return
        try:
            client.disconnect()
            client.loop_stop()
        except Exception as e:
            logger.error("断开MQTT连接时出错: %s", e)

    def _set_state(self, state: ConnectionState) -> None:
        with self.lock:
            self._state = state

    def _is_current(self, client: Any) -> bool:
        with self.lock:
            return client is self._client

    # ---------- MQTT handlers ----------
    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        if not self._is_current(client):
            return
        if reason_code != 0:
            logger.error("连接失败，返回码: %s", reason_code)
            self._closed.set()
            return
        logger.info("成功连接到MQTT服务器")
        self._set_state(ConnectionState.CONNECTED)
        topic = self.config_manager.get_mqtt_config().get("report_topic", "smartclassroom/tag/#")
        client.subscribe(topic, qos=self.qos)
        logger.info("已订阅主题: %s", topic)
        if self.on_connected is not None:
            try:
                self.on_connected()
            except Exception as e:
                logger.exception("连接回调出错: %s", e)

    def on_disconnect(self, client, userdata, disconnect_flags=None, reason_code=None, properties=None):
        if not self._is_current(client):
            return
        logger.warning("MQTT连接断开: %s", reason_code)
        self._set_state(ConnectionState.DISCONNECTED)
        self._closed.set()

    def on_message(self, client, userdata, msg: MQTTMessage):
        self.handle_message(msg.topic, msg.payload)
