from __future__ import annotations

import time
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from beacon_position_server.config_manager import ConfigManager
from beacon_position_server.models import BeaconRecord
from beacon_position_server.stores import BeaconStore, DeviceStore, TagStore


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMQTTClient:
    """Stands in for paho's Client; loop_start() acknowledges the connection immediately."""

    def __init__(self, fail_connect: bool = False, reason_code: int = 0) -> None:
        self.fail_connect = fail_connect
        self.reason_code = reason_code
        self.on_connect = None
        self.on_message = None
        self.on_disconnect = None
        self.connect_args: tuple | None = None
        self.subscriptions: list[tuple[str, int]] = []
        self.published: list[tuple[str, str, int]] = []
        self.loop_running = False
        self.disconnected = False

    def connect(self, host, port, keepalive):
        if self.fail_connect:
            raise OSError("connection refused")
        self.connect_args = (host, port, keepalive)

    def loop_start(self):
        self.loop_running = True
        self.on_connect(self, None, {}, self.reason_code, None)

    def loop_stop(self):
        self.loop_running = False

    def disconnect(self):
        self.disconnected = True

    def subscribe(self, topic, qos=0):
        self.subscriptions.append((topic, qos))

    def publish(self, topic, payload, qos=0):
        self.published.append((topic, payload, qos))
        return SimpleNamespace(rc=0)

    def drop(self, reason_code: int = 7) -> None:
        self.on_disconnect(self, None, None, reason_code, None)


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config(tmp_path) -> ConfigManager:
    manager = ConfigManager(str(tmp_path / "config" / "config.yaml"))
    manager.config["paths"] = {
        "beacon_db": str(tmp_path / "data" / "beacons.csv"),
        "tag_db": str(tmp_path / "data" / "tags.csv"),
        "device_db": str(tmp_path / "data" / "devices.csv"),
    }
    manager.config["mqtt"]["reconnect_delay"] = 0.01
    manager.save_config()
    return manager


@pytest.fixture
def beacon_store(config) -> BeaconStore:
    store = BeaconStore(config.get_beacon_db_path())
    store.load()
    return store


@pytest.fixture
def tag_store(config) -> TagStore:
    store = TagStore(config.get_tag_db_path())
    store.load()
    return store


@pytest.fixture
def device_store(config) -> DeviceStore:
    store = DeviceStore(config.get_device_db_path())
    store.load()
    return store


@pytest.fixture
def seeded_beacons(beacon_store) -> BeaconStore:
    beacon_store.set_beacon(BeaconRecord(beacon_id=1, floor_id=1.0, x=0.0, y=0.0))
    beacon_store.set_beacon(BeaconRecord(beacon_id=2, floor_id=1.0, x=4.0, y=0.0))
    beacon_store.set_beacon(BeaconRecord(beacon_id=3, floor_id=1.0, x=2.0, y=3.0))
    return beacon_store
