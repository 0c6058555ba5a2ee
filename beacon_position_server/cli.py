from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading

from .calculator import RssiDistanceModel, TrilaterationSolver
from .config_manager import ConfigManager
from .engine import PositioningEngine
from .exceptions import PositioningError
from .liveness import LivenessTracker
from .models import BeaconRecord, DeviceRecord
from .mqtt_processor import MQTTIngestionService
from .stores import BeaconStore, DeviceStore, TagStore, seed_sample_data
from .whitelist import WhitelistPublisher, oneshot_publisher


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT)


def _open_stores(config: ConfigManager):
    beacon_store = BeaconStore(config.get_beacon_db_path())
    tag_store = TagStore(config.get_tag_db_path())
    beacon_store.load()
    tag_store.load()
    return beacon_store, tag_store


def _cli_whitelist(config: ConfigManager, beacon_store: BeaconStore, tag_store: TagStore) -> WhitelistPublisher:
    mqtt_config = config.get_mqtt_config()
    return WhitelistPublisher(
        beacon_store,
        tag_store,
        oneshot_publisher(mqtt_config),
        topic=mqtt_config["whitelist_topic"],
        qos=int(mqtt_config.get("qos", 1)),
    )


def _print_records(records) -> None:
    for record in records.values():
        print(record)


def run_mqtt(args):
    config = ConfigManager(args.config)
    beacon_store, tag_store = _open_stores(config)

    solver = TrilaterationSolver(RssiDistanceModel.from_config(config.get_rssi_model_config()))
    engine = PositioningEngine(
        beacon_store, tag_store, solver, floor_fallback=config.get_floor_fallback()
    )
    liveness = LivenessTracker.from_config(config.get_liveness_config())
    service = MQTTIngestionService(config, engine, liveness)

    mqtt_config = config.get_mqtt_config()
    whitelist = WhitelistPublisher(
        beacon_store,
        tag_store,
        service.publish,
        topic=mqtt_config["whitelist_topic"],
        qos=int(mqtt_config.get("qos", 1)),
    )
    # 每次(重)连接后重新发布白名单
    service.on_connected = whitelist.refresh

    stopped = threading.Event()

    # graceful shutdown
    def handle_signal(sig, frame):
        logger.info("收到信号 %s，正在退出", sig)
        stopped.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    liveness.start()
    service.start()
    try:
        while not stopped.wait(1.0):
            pass
    finally:
        service.stop(timeout=5.0)
        liveness.stop(timeout=5.0)
    return 0


def run_seed(args):
    config = ConfigManager(args.config)
    beacon_store, tag_store = _open_stores(config)
    seed_sample_data(beacon_store, tag_store)
    return 0


def run_beacon(args):
    config = ConfigManager(args.config)
    beacon_store, tag_store = _open_stores(config)
    if args.action == "list":
        _print_records(beacon_store.all())
        return 0
    if args.action == "set":
        beacon_store.set_beacon(
            BeaconRecord(beacon_id=args.id, floor_id=args.floor, x=args.x, y=args.y, last_rssi=args.rssi)
        )
    elif not beacon_store.delete(args.id):
        logger.error("信标 %s 不存在", args.id)
        return 1
    _cli_whitelist(config, beacon_store, tag_store).refresh()
    return 0


def run_tag(args):
    config = ConfigManager(args.config)
    beacon_store, tag_store = _open_stores(config)
    if args.action == "list":
        _print_records(tag_store.all())
        return 0
    if args.action == "add":
        tag_store.upsert(args.id)
    elif not tag_store.delete(args.id):
        logger.error("标签 %s 不存在", args.id)
        return 1
    _cli_whitelist(config, beacon_store, tag_store).refresh()
    return 0


def run_device(args):
    config = ConfigManager(args.config)
    device_store = DeviceStore(config.get_device_db_path())
    device_store.load()
    if args.action == "list":
        _print_records(device_store.all())
    elif args.action == "set":
        device_store.set_device(
            DeviceRecord(device_id=args.id, type=args.type, name=args.name, x=args.x, y=args.y)
        )
    elif not device_store.delete(args.id):
        logger.error("设备 %s 不存在", args.id)
        return 1
    return 0


def run_whitelist(args):
    config = ConfigManager(args.config)
    beacon_store, tag_store = _open_stores(config)
    whitelist = _cli_whitelist(config, beacon_store, tag_store).refresh()
    print(json.dumps(whitelist.to_dict()))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="beacon-position-server", description="Beacon Position Server CLI")
    parser.add_argument("--config", default=None, help="配置文件路径，默认读取 ./config/config.yaml 或环境变量 BEACON_POSITION_CONFIG")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="运行 MQTT 定位服务")
    p_run.set_defaults(func=run_mqtt)

    p_seed = sub.add_parser("seed", help="写入示例信标与标签")
    p_seed.set_defaults(func=run_seed)

    p_beacon = sub.add_parser("beacon", help="管理信标")
    beacon_sub = p_beacon.add_subparsers(dest="action", required=True)
    beacon_sub.add_parser("list")
    p_bset = beacon_sub.add_parser("set")
    p_bset.add_argument("id", type=int)
    p_bset.add_argument("--floor", type=float, default=None)
    p_bset.add_argument("--x", type=float, default=None)
    p_bset.add_argument("--y", type=float, default=None)
    p_bset.add_argument("--rssi", type=float, default=None)
    beacon_sub.add_parser("remove").add_argument("id", type=int)
    p_beacon.set_defaults(func=run_beacon)

    p_tag = sub.add_parser("tag", help="管理标签")
    tag_sub = p_tag.add_subparsers(dest="action", required=True)
    tag_sub.add_parser("list")
    tag_sub.add_parser("add").add_argument("id", type=int)
    tag_sub.add_parser("remove").add_argument("id", type=int)
    p_tag.set_defaults(func=run_tag)

    p_device = sub.add_parser("device", help="管理其他设备")
    device_sub = p_device.add_subparsers(dest="action", required=True)
    device_sub.add_parser("list")
    p_dset = device_sub.add_parser("set")
    p_dset.add_argument("id", type=int)
    p_dset.add_argument("--type", default="air_sensing")
    p_dset.add_argument("--name", default=None)
    p_dset.add_argument("--x", type=float, default=None)
    p_dset.add_argument("--y", type=float, default=None)
    device_sub.add_parser("remove").add_argument("id", type=int)
    p_device.set_defaults(func=run_device)

    p_whitelist = sub.add_parser("whitelist", help="立即发布白名单")
    p_whitelist.set_defaults(func=run_whitelist)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    if not logging.getLogger().handlers:
        setup_logging(ConfigManager(args.config).get_log_level())
    try:
        # 无子命令/无参数时默认启动服务器
        if not hasattr(args, "func"):
            return run_mqtt(args)
        return args.func(args)
    except PositioningError as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
