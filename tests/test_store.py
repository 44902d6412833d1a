import json

import redis

from dutysync.core.cache import (
    Invalidation,
    MemoryInvalidationChannel,
    RedisInvalidationChannel,
    VersionedCache,
)
from dutysync.db import make_session_factory
from dutysync.entities import PERSONNEL, UNITS, HierarchyLevel, Unit
from dutysync.store import LocalStore


def make_store(tmp_path, channel=None, **kwargs):
    session_factory = make_session_factory(f"sqlite:///{tmp_path / 'store_test.db'}")
    return LocalStore(session_factory, channel, **kwargs)


def test_versioned_cache_put_bumps_and_invalidate_purges():
    cache = VersionedCache()
    assert cache.get("units") == (False, None)

    assert cache.put("units", [1]) == 1
    assert cache.get("units") == (True, [1])

    assert cache.invalidate("units") == 2
    assert cache.get("units") == (False, None)

    assert cache.fill("units", [2]) == 2
    assert cache.get("units") == (True, [2])
    assert cache.invalidate("units", version=10) == 10


def test_write_then_read_round_trips_through_cache_and_database(tmp_path):
    store = make_store(tmp_path)
    assert store.read_rows(UNITS) == []

    assert store.write_rows(UNITS, [{"id": "u1"}]) is True
    assert store.version(UNITS) == 1
    assert store.read_rows(UNITS) == [{"id": "u1"}]

    fresh = make_store(tmp_path)
    assert fresh.read_rows(UNITS) == [{"id": "u1"}]
    assert fresh.version(UNITS) == 1


def test_read_rows_returns_copies(tmp_path):
    store = make_store(tmp_path)
    store.write_rows(UNITS, [{"id": "u1"}])
    rows = store.read_rows(UNITS)
    rows[0]["id"] = "changed"
    assert store.read_rows(UNITS) == [{"id": "u1"}]


def test_write_many_bumps_every_key_together(tmp_path):
    store = make_store(tmp_path)
    store.write_rows(UNITS, [])
    assert store.write_rows_many({UNITS: [{"id": "u1"}], PERSONNEL: [{"id": "p1"}]}) is True
    assert store.version(UNITS) == 2
    assert store.version(PERSONNEL) == 1

    fresh = make_store(tmp_path)
    assert fresh.read_rows(PERSONNEL) == [{"id": "p1"}]


def test_quota_failure_keeps_new_value_in_memory(tmp_path):
    store = make_store(tmp_path, max_payload_bytes=64)
    assert store.write_rows(UNITS, [{"id": "small"}]) is True

    big = [{"id": f"unit-{i}", "name": "x" * 20} for i in range(10)]
    assert store.write_rows(UNITS, big) is False
    assert store.failed_writes == 1
    assert "quota" in store.last_error
    assert store.read_rows(UNITS) == big
    assert store.version(UNITS) == 2

    fresh = make_store(tmp_path)
    assert fresh.read_rows(UNITS) == [{"id": "small"}]


def test_typed_collections_validate_rows(tmp_path):
    store = make_store(tmp_path)
    unit = Unit(unit_name="HQ", hierarchy_level=HierarchyLevel.UNIT)
    store.save(UNITS, [unit])

    loaded = store.get(UNITS, unit.id)
    assert loaded is not None
    assert loaded.unit_name == "HQ"
    assert loaded.hierarchy_level == HierarchyLevel.UNIT
    assert store.get(UNITS, "missing") is None


def test_invalidation_from_another_store_forces_reload(tmp_path):
    channel = MemoryInvalidationChannel()
    writer = make_store(tmp_path, channel)
    reader = make_store(tmp_path, channel)

    writer.write_rows(UNITS, [{"id": "u1"}])
    assert reader.read_rows(UNITS) == [{"id": "u1"}]

    writer.write_rows(UNITS, [{"id": "u1"}, {"id": "u2"}])
    assert reader.version(UNITS) >= writer.version(UNITS)
    assert reader.read_rows(UNITS) == [{"id": "u1"}, {"id": "u2"}]


def test_own_invalidations_are_ignored(tmp_path):
    store = make_store(tmp_path)
    store.write_rows(UNITS, [{"id": "u1"}])
    store.handle_invalidation(Invalidation(key=UNITS, version=50, origin=store.origin))
    assert store.version(UNITS) == 1
    assert store.read_rows(UNITS) == [{"id": "u1"}]


def test_poll_changes_detects_writes_without_a_channel(tmp_path):
    writer = make_store(tmp_path)
    reader = make_store(tmp_path)

    writer.write_rows(UNITS, [{"id": "u1"}])
    assert reader.read_rows(UNITS) == [{"id": "u1"}]
    writer.write_rows(UNITS, [{"id": "u2"}])

    assert reader.read_rows(UNITS) == [{"id": "u1"}]
    assert reader.poll_changes() == [UNITS]
    assert reader.read_rows(UNITS) == [{"id": "u2"}]
    assert reader.poll_changes() == []


def test_persisted_versions_stay_monotonic_across_stores(tmp_path):
    first = make_store(tmp_path)
    second = make_store(tmp_path)
    first.write_rows(UNITS, [{"id": "a"}])
    first.write_rows(UNITS, [{"id": "b"}])

    second.write_rows(UNITS, [{"id": "c"}])
    assert second.version(UNITS) == 3

    fresh = make_store(tmp_path)
    assert fresh.read_rows(UNITS) == [{"id": "c"}]


class FakeRedis:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    def publish(self, channel, message):
        if self.fail:
            raise redis.ConnectionError("redis down")
        self.published.append((channel, message))


def test_redis_channel_publishes_json_messages():
    client = FakeRedis()
    channel = RedisInvalidationChannel("redis://unused", "dutysync.test", client=client)
    channel.publish(Invalidation(key=UNITS, version=3, origin="abc"))

    assert len(client.published) == 1
    name, raw = client.published[0]
    assert name == "dutysync.test"
    assert json.loads(raw) == {"key": UNITS, "version": 3, "origin": "abc"}


def test_redis_channel_publish_failure_is_not_raised():
    channel = RedisInvalidationChannel("redis://unused", "dutysync.test", client=FakeRedis(fail=True))
    channel.publish(Invalidation(key=UNITS, version=1, origin="abc"))


def test_redis_channel_dispatch_skips_malformed_messages():
    channel = RedisInvalidationChannel("redis://unused", "dutysync.test", client=FakeRedis())
    received = []
    channel._handlers.append(received.append)

    channel._dispatch({"data": "not json"})
    channel._dispatch({"data": json.dumps({"key": UNITS, "version": 4, "origin": "other"})})

    assert received == [Invalidation(key=UNITS, version=4, origin="other")]


def test_entities_and_rows_share_one_clock():
    from dutysync import entities, models

    assert entities.utc_now_naive is models.utc_now_naive
    assert Unit(unit_name="x", hierarchy_level=HierarchyLevel.UNIT).created_at.tzinfo is None
