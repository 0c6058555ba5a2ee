from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Mapping

import paho.mqtt.publish as mqtt_publish

from .exceptions import StoreError
from .models import Whitelist
from .stores import BeaconStore, TagStore


logger = logging.getLogger(__name__)

PublishFn = Callable[[str, str, int], bool]


def oneshot_publisher(mqtt_config: Mapping[str, Any]) -> PublishFn:
    """单次连接发布，供命令行修改信标/标签后使用"""

    def publish(topic: str, payload: str, qos: int) -> bool:
        try:
            mqtt_publish.single(
                topic,
                payload,
                qos=qos,
                hostname=mqtt_config["ip"],
                port=int(mqtt_config["port"]),
                keepalive=int(mqtt_config.get("keepalive", 60)),
            )
        except Exception as e:
            logger.error("发布到 %s 失败: %s", topic, e)
            return False
        return True

    return publish


class WhitelistPublisher:
    """将已登记的标签/信标 id 整体同步到 MQTT，调用方在目录变更后调用 refresh()"""

    def __init__(
        self,
        beacon_store: BeaconStore,
        tag_store: TagStore,
        publish_fn: PublishFn,
        topic: str = "smartclassroom/whitelist",
        qos: int = 1,
    ):
        self.beacon_store = beacon_store
        self.tag_store = tag_store
        self.publish_fn = publish_fn
        self.topic = topic
        self.qos = qos
        self._lock = threading.Lock()
        self._whitelist = Whitelist()

    @property
    def whitelist(self) -> Whitelist:
        with self._lock:
            return self._whitelist

    def refresh(self) -> Whitelist:
        try:
            whitelist = Whitelist(tags=self.tag_store.ids(), beacons=self.beacon_store.ids())
        except StoreError as e:
            logger.error("读取白名单失败，保留旧白名单: %s", e)
            return self.whitelist

        with self._lock:
            self._whitelist = whitelist
        logger.info("白名单已更新: %s", whitelist.to_dict())

        if self.publish_fn(self.topic, whitelist.to_payload(), self.qos):
            logger.info("白名单已发布到主题 %s", self.topic)
        else:
            logger.error("白名单发布失败: %s", self.topic)
        return whitelist
