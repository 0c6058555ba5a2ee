import pytest
import yaml

from beacon_position_server.config_manager import ConfigManager
from beacon_position_server.exceptions import ConfigError


def test_missing_file_is_created_with_defaults(tmp_path):
    path = tmp_path / "cfg" / "config.yaml"
    manager = ConfigManager(str(path))
    assert path.exists()
    assert manager.get_mqtt_config()["report_topic"] == "smartclassroom/tag/#"
    assert manager.get_mqtt_config()["qos"] == 1
    assert manager.get_mqtt_config()["reconnect_delay"] == 30.0
    assert manager.get_rssi_model_config() == {"measured_power": -57.0, "path_loss_exponent": 4.0}
    assert manager.get_liveness_config() == {"check_interval": 10.0, "timeout": 20.0}
    assert manager.get_floor_fallback() == "reject"


def test_partial_file_is_merged_with_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({"mqtt": {"ip": "broker.local"}, "liveness": {"timeout": 45}}))
    manager = ConfigManager(str(path))
    assert manager.get_mqtt_config()["ip"] == "broker.local"
    assert manager.get_mqtt_config()["port"] == 1883
    assert manager.get_liveness_config() == {"check_interval": 10.0, "timeout": 45}


def test_environment_overrides_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("BPS_MQTT_PORT", "8883")
    monkeypatch.setenv("BPS_LIVENESS_TIMEOUT", "5")
    manager = ConfigManager(str(tmp_path / "config.yaml"))
    assert manager.get_mqtt_config()["port"] == 8883
    assert manager.get_liveness_config()["timeout"] == 5.0


def test_broken_yaml_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("mqtt: [unclosed")
    manager = ConfigManager(str(path))
    assert manager.get_mqtt_config()["ip"] == "localhost"


def test_setters_persist(tmp_path):
    path = tmp_path / "config.yaml"
    ConfigManager(str(path)).set_rssi_model_config(-60.0, 2.5)
    assert ConfigManager(str(path)).get_rssi_model_config() == {"measured_power": -60.0, "path_loss_exponent": 2.5}


def test_unknown_floor_fallback(tmp_path):
    manager = ConfigManager(str(tmp_path / "config.yaml"))
    with pytest.raises(ConfigError):
        manager.set_floor_fallback("nearest")
    manager.config["positioning"]["floor_fallback"] = "nearest"
    with pytest.raises(ConfigError):
        manager.get_floor_fallback()
