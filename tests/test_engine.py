import math

import pytest

from beacon_position_server.engine import PositioningEngine
from beacon_position_server.exceptions import ConfigError, StoreError
from beacon_position_server.models import (
    BeaconReading,
    BeaconRecord,
    PositionReport,
    PositionStatus,
)
from beacon_position_server.stores import BeaconStore


def _report(tag_id, *pairs):
    return PositionReport(tag_id=tag_id, readings=[BeaconReading(b, r) for b, r in pairs])


def test_successful_solve_persists_tag_position(seeded_beacons, tag_store, clock):
    engine = PositioningEngine(seeded_beacons, tag_store, clock=clock)
    result = engine.process(_report(1, (1, -50), (2, -60), (3, -70)))

    assert result.status is PositionStatus.SUCCESS
    assert result.ok
    assert result.beacon_ids == [1, 2, 3]
    assert result.floor_id == 1.0
    assert math.isfinite(result.position.x) and math.isfinite(result.position.y)
    assert result.position.accuracy > 0
    assert result.position.timestamp == clock.now

    stored = tag_store.get(1)
    assert stored.x == pytest.approx(result.position.x)
    assert stored.accuracy == pytest.approx(result.position.accuracy)
    assert stored.floor_id == 1.0


def test_rssi_written_back_for_used_beacons(seeded_beacons, tag_store):
    engine = PositioningEngine(seeded_beacons, tag_store)
    result = engine.process(_report(1, (1, -50), (2, -60), (3, -70)))
    assert [s.ok for s in result.side_effects] == [True, True, True]
    assert seeded_beacons.get(2).last_rssi == -60.0


def test_fewer_than_three_readings_is_rejected(seeded_beacons, tag_store):
    engine = PositioningEngine(seeded_beacons, tag_store)
    result = engine.process(_report(1, (1, -50), (2, -60)))
    assert result.status is PositionStatus.INSUFFICIENT_DATA
    assert result.position is None
    assert len(tag_store) == 0
    assert seeded_beacons.get(1).last_rssi is None


def test_unknown_beacons_are_rejected(seeded_beacons, tag_store):
    engine = PositioningEngine(seeded_beacons, tag_store)
    result = engine.process(_report(1, (11, -50), (12, -60), (13, -70)))
    assert result.status is PositionStatus.INSUFFICIENT_DATA
    assert len(tag_store) == 0


def test_strongest_three_beacons_are_used(seeded_beacons, tag_store):
    seeded_beacons.set_beacon(BeaconRecord(beacon_id=4, floor_id=1.0, x=10.0, y=10.0))
    engine = PositioningEngine(seeded_beacons, tag_store)
    result = engine.process(_report(1, (4, -90), (1, -50), (2, -60), (3, -70)))
    assert result.beacon_ids == [1, 2, 3]
    assert seeded_beacons.get(4).last_rssi is None


def test_lowest_floor_with_three_beacons_wins(seeded_beacons, tag_store):
    for beacon_id, x, y in ((21, 0.0, 0.0), (22, 5.0, 0.0), (23, 0.0, 5.0)):
        seeded_beacons.set_beacon(BeaconRecord(beacon_id=beacon_id, floor_id=0.5, x=x, y=y))
    engine = PositioningEngine(seeded_beacons, tag_store)
    result = engine.process(
        _report(1, (1, -40), (2, -41), (3, -42), (21, -80), (22, -81), (23, -82))
    )
    assert result.floor_id == 0.5
    assert result.beacon_ids == [21, 22, 23]


def test_beacons_without_floor_are_not_grouped(seeded_beacons, tag_store):
    seeded_beacons.upsert(3, floor_id=None)
    engine = PositioningEngine(seeded_beacons, tag_store)
    result = engine.process(_report(1, (1, -50), (2, -60), (3, -70)))
    assert result.status is PositionStatus.INSUFFICIENT_DATA
    assert len(tag_store) == 0


def test_mixed_floors_rejected_by_default(beacon_store, tag_store):
    beacon_store.set_beacon(BeaconRecord(beacon_id=1, floor_id=1.0, x=0.0, y=0.0))
    beacon_store.set_beacon(BeaconRecord(beacon_id=2, floor_id=1.0, x=4.0, y=0.0))
    beacon_store.set_beacon(BeaconRecord(beacon_id=3, floor_id=2.0, x=2.0, y=3.0))
    engine = PositioningEngine(beacon_store, tag_store)
    result = engine.process(_report(1, (1, -50), (2, -60), (3, -70)))
    assert result.status is PositionStatus.INSUFFICIENT_DATA
    assert len(tag_store) == 0


def test_mixed_floors_allowed_with_mix_policy(beacon_store, tag_store):
    beacon_store.set_beacon(BeaconRecord(beacon_id=1, floor_id=2.0, x=0.0, y=0.0))
    beacon_store.set_beacon(BeaconRecord(beacon_id=2, floor_id=1.0, x=4.0, y=0.0))
    beacon_store.set_beacon(BeaconRecord(beacon_id=3, floor_id=1.0, x=2.0, y=3.0))
    engine = PositioningEngine(beacon_store, tag_store, floor_fallback="mix")
    result = engine.process(_report(1, (1, -50), (2, -60), (3, -70)))
    assert result.status is PositionStatus.SUCCESS
    # 最强信标所在楼层
    assert result.floor_id == 2.0


def test_unknown_floor_policy_is_rejected(beacon_store, tag_store):
    with pytest.raises(ConfigError):
        PositioningEngine(beacon_store, tag_store, floor_fallback="guess")


def test_collinear_beacons_do_not_persist(beacon_store, tag_store):
    for beacon_id, x in ((1, 0.0), (2, 2.0), (3, 4.0)):
        beacon_store.set_beacon(BeaconRecord(beacon_id=beacon_id, floor_id=1.0, x=x, y=0.0))
    engine = PositioningEngine(beacon_store, tag_store)
    result = engine.process(_report(1, (1, -50), (2, -60), (3, -70)))
    assert result.status is PositionStatus.DEGENERATE
    assert len(tag_store) == 0


def test_second_report_overwrites_first(seeded_beacons, tag_store):
    engine = PositioningEngine(seeded_beacons, tag_store)
    first = engine.process(_report(5, (1, -50), (2, -60), (3, -70)))
    second = engine.process(_report(5, (1, -70), (2, -60), (3, -50)))
    assert (first.position.x, first.position.y) != (second.position.x, second.position.y)

    assert tag_store.ids() == {5}
    stored = tag_store.get(5)
    assert stored.x == pytest.approx(second.position.x)
    assert stored.y == pytest.approx(second.position.y)


class _ReadOnlyBeaconStore(BeaconStore):
    def update_rssi(self, beacon_id, rssi):
        raise StoreError("disk full", store=self.name)


class _BrokenBeaconStore(BeaconStore):
    def get_many(self, keys):
        raise StoreError("unavailable", store=self.name)


def _copy_beacons(source, store_cls):
    store = store_cls()
    for record in source.all().values():
        store.set_beacon(record)
    return store


def test_rssi_write_back_failure_does_not_abort_solve(seeded_beacons, tag_store):
    store = _copy_beacons(seeded_beacons, _ReadOnlyBeaconStore)
    engine = PositioningEngine(store, tag_store)
    result = engine.process(_report(1, (1, -50), (2, -60), (3, -70)))
    assert result.status is PositionStatus.SUCCESS
    assert len(result.side_effects) == 3
    assert not any(s.ok for s in result.side_effects)
    assert tag_store.get(1) is not None


def test_lookup_failure_aborts_solve(seeded_beacons, tag_store):
    store = _copy_beacons(seeded_beacons, _BrokenBeaconStore)
    engine = PositioningEngine(store, tag_store)
    result = engine.process(_report(1, (1, -50), (2, -60), (3, -70)))
    assert result.status is PositionStatus.STORE_ERROR
    assert len(tag_store) == 0


def test_beacon_without_coordinates_does_not_take_a_slot(seeded_beacons, tag_store):
    seeded_beacons.set_beacon(BeaconRecord(beacon_id=9, floor_id=1.0))
    engine = PositioningEngine(seeded_beacons, tag_store)
    result = engine.process(_report(1, (9, -40), (1, -50), (2, -60), (3, -70)))
    assert result.status is PositionStatus.SUCCESS
    assert result.beacon_ids == [1, 2, 3]
    assert seeded_beacons.get(9).last_rssi is None
