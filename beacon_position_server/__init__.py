"""Beacon Position Server package.

This package provides:
- ConfigManager: YAML-based configuration management
- RssiDistanceModel / TrilaterationSolver: RSSI ranging and 3-beacon trilateration
- PositioningEngine: floor selection, solving and tag position persistence
- LivenessTracker: online/offline status of beacons and tags
- MQTTIngestionService: MQTT ingestion with fixed-delay reconnect
- WhitelistPublisher: mirrors known tag/beacon ids back onto MQTT
"""

from .config_manager import ConfigManager
from .calculator import RssiDistanceModel, TrilaterationSolver
from .engine import PositioningEngine
from .liveness import LivenessTracker
from .mqtt_processor import ConnectionState, MQTTIngestionService
from .stores import BeaconStore, DeviceStore, TagStore
from .whitelist import WhitelistPublisher

__all__ = [
    "ConfigManager",
    "RssiDistanceModel",
    "TrilaterationSolver",
    "PositioningEngine",
    "LivenessTracker",
    "ConnectionState",
    "MQTTIngestionService",
    "BeaconStore",
    "DeviceStore",
    "TagStore",
    "WhitelistPublisher",
]
