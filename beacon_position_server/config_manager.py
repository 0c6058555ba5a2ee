from __future__ import annotations

import copy
import logging
import os
import yaml

from typing import Callable, Any

from .exceptions import ConfigError


logger = logging.getLogger(__name__)

FLOOR_FALLBACK_POLICIES = ("reject", "mix")


def _env_or_default(env_key: str, default: Any, cast: Callable[[str], Any] = str) -> Any:
    v = os.environ.get(env_key)
    if v is not None:
        try:
            return cast(v)
        except Exception:
            return v
    return default


DEFAULT_CONFIG_PATH = _env_or_default(
    "BEACON_POSITION_CONFIG",
    os.path.join(".", "config", "config.yaml"),
)


class ConfigManager:
    """配置管理类，负责读写YAML配置文件"""

    def __init__(self, config_file: str | None = None):
        self.config_file = config_file or DEFAULT_CONFIG_PATH
        self.default_config = {
            "mqtt": {
                "ip": _env_or_default("BPS_MQTT_IP", "localhost"),
                "port": _env_or_default("BPS_MQTT_PORT", 1883, int),
                "keepalive": _env_or_default("BPS_MQTT_KEEPALIVE", 60, int),
                "client_id": _env_or_default("BPS_MQTT_CLIENT_ID", ""),
                "report_topic": _env_or_default("BPS_MQTT_REPORT_TOPIC", "smartclassroom/tag/#"),
                "whitelist_topic": _env_or_default(
                    "BPS_MQTT_WHITELIST_TOPIC", "smartclassroom/whitelist"
                ),
                "qos": _env_or_default("BPS_MQTT_QOS", 1, int),
                "reconnect_delay": _env_or_default("BPS_MQTT_RECONNECT_DELAY", 30.0, float),
                "envelope_key": _env_or_default("BPS_MQTT_ENVELOPE_KEY", ""),
            },
            "rssi_model": {
                # 1米处的RSSI值 (dBm)
                "measured_power": _env_or_default("BPS_RSSI_MEASURED_POWER", -57.0, float),
                # 环境衰减因子
                "path_loss_exponent": _env_or_default("BPS_RSSI_PATH_LOSS", 4.0, float),
            },
            "liveness": {
                "check_interval": _env_or_default("BPS_LIVENESS_CHECK_INTERVAL", 10.0, float),
                "timeout": _env_or_default("BPS_LIVENESS_TIMEOUT", 20.0, float),
            },
            "positioning": {
                "floor_fallback": _env_or_default("BPS_FLOOR_FALLBACK", "reject"),
            },
            "paths": {
                "beacon_db": _env_or_default(
                    "BPS_PATH_BEACON_DB", os.path.join(".", "data", "beacons.csv")
                ),
                "tag_db": _env_or_default("BPS_PATH_TAG_DB", os.path.join(".", "data", "tags.csv")),
                "device_db": _env_or_default(
                    "BPS_PATH_DEVICE_DB", os.path.join(".", "data", "devices.csv")
                ),
            },
            "logging": {
                "level": _env_or_default("BPS_LOG_LEVEL", "INFO"),
            },
        }
        self.load_config()

    def load_config(self) -> None:
        """加载配置文件，如果不存在则创建默认配置"""
        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, "r", encoding="utf-8") as f:
                    self.config = yaml.safe_load(f) or {}
                self._merge_default_config()
            else:
                self.config = copy.deepcopy(self.default_config)
                self.save_config()
        except (OSError, yaml.YAMLError) as e:
            # 发生异常时回退到默认配置
            logger.warning("读取配置文件 %s 失败，使用默认配置: %s", self.config_file, e)
            self.config = copy.deepcopy(self.default_config)
            self.save_config()

    def _merge_default_config(self) -> None:
        def merge_dict(default, current):
            for key, value in default.items():
                if key not in current:
                    current[key] = copy.deepcopy(value)
                elif isinstance(value, dict) and isinstance(current[key], dict):
                    merge_dict(value, current[key])

        merge_dict(self.default_config, self.config)

    def save_config(self) -> None:
        try:
            os.makedirs(os.path.dirname(self.config_file) or ".", exist_ok=True)
            with open(self.config_file, "w", encoding="utf-8") as f:
                yaml.dump(
                    self.config,
                    f,
                    default_flow_style=False,
                    allow_unicode=True,
                    indent=2,
                )
        except OSError as e:
            logger.warning("保存配置文件 %s 失败: %s", self.config_file, e)

    # ---------- Accessors ----------
    def get_mqtt_config(self):
        return self.config["mqtt"]

    def get_rssi_model_config(self):
        return self.config["rssi_model"]

    def get_liveness_config(self):
        return self.config["liveness"]

    def get_floor_fallback(self) -> str:
        policy = str(self.config["positioning"].get("floor_fallback", "reject")).lower()
        if policy not in FLOOR_FALLBACK_POLICIES:
            raise ConfigError(
                f"unknown floor_fallback {policy!r}, expected one of {FLOOR_FALLBACK_POLICIES}"
            )
        return policy

    def get_paths(self):
        return self.config.get("paths", {})

    def get_beacon_db_path(self):
        return self.get_paths()["beacon_db"]

    def get_tag_db_path(self):
        return self.get_paths()["tag_db"]

    def get_device_db_path(self):
        return self.get_paths()["device_db"]

    def get_log_level(self) -> str:
        return str(self.config.get("logging", {}).get("level", "INFO")).upper()

    def set_rssi_model_config(self, measured_power: float, path_loss_exponent: float):
        self.config["rssi_model"]["measured_power"] = measured_power
        self.config["rssi_model"]["path_loss_exponent"] = path_loss_exponent
        self.save_config()

    def set_floor_fallback(self, policy: str):
        if policy not in FLOOR_FALLBACK_POLICIES:
            raise ConfigError(
                f"unknown floor_fallback {policy!r}, expected one of {FLOOR_FALLBACK_POLICIES}"
            )
        self.config["positioning"]["floor_fallback"] = policy
        self.save_config()
