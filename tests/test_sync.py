import json
import threading
from datetime import date

import httpx
import pytest

from dutysync import directory, rosters, swaps
from dutysync.db import make_session_factory
from dutysync.entities import DUTY_SLOTS, UNITS, HierarchyLevel, RequestStatus, SlotStatus, Unit
from dutysync.sync import (
    HttpRemoteBackend,
    SyncOperation,
    SyncRelay,
    merge_by_id,
    pull_remote_collections,
)


class FlakyRemote:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.pushed = []

    def push(self, op):
        if self.failures > 0:
            self.failures -= 1
            raise httpx.ConnectError("remote unavailable")
        self.pushed.append(op)


def make_relay(tmp_path, remote, **kwargs):
    sleeps = []
    relay = SyncRelay(
        remote,
        session_factory=make_session_factory(f"sqlite:///{tmp_path / 'sync_test.db'}"),
        sleep=sleeps.append,
        **kwargs,
    )
    return relay, sleeps


def _op(**overrides):
    values = {
        "entity": "duty_slot",
        "natural_key": {"unit_code": "A-CO", "duty_type_name": "Duty NCO", "service_id": "S1", "date": "2026-03-02"},
        "payload": {"status": "scheduled"},
    }
    values.update(overrides)
    return SyncOperation(**values)


def test_backoff_doubles_and_caps():
    relay = SyncRelay(None, backoff_base=1.0, backoff_max=60.0)
    assert [relay.backoff_seconds(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]
    assert relay.backoff_seconds(7) == 60.0
    assert relay.backoff_seconds(20) == 60.0


def test_disabled_relay_drops_operations():
    relay = SyncRelay(None)
    relay.submit(_op())
    stats = relay.stats()
    assert stats["enabled"] is False
    assert stats["dropped"] == 1
    assert stats["queue_depth"] == 0


def test_transient_failures_are_retried_with_backoff(tmp_path):
    remote = FlakyRemote(failures=2)
    relay, sleeps = make_relay(tmp_path, remote, max_attempts=5)
    relay.submit(_op())

    assert relay.run_pending() == {"processed": 1, "delivered": 1, "failed": 0}
    assert sleeps == [1.0, 2.0]
    assert len(remote.pushed) == 1
    stats = relay.stats()
    assert stats["retried"] == 2
    assert stats["delivered"] == 1
    assert stats["recent"][0]["outcome"] == "delivered"
    assert stats["recent"][0]["attempts"] == 3


def test_exhausted_delivery_is_recorded_and_replayable(tmp_path):
    remote = FlakyRemote(failures=3)
    relay, sleeps = make_relay(tmp_path, remote, max_attempts=3)
    relay.submit(_op())

    assert relay.run_pending()["failed"] == 1
    assert len(sleeps) == 2
    failures = relay.list_failures(status="failed")
    assert len(failures) == 1
    row = failures[0]
    assert row.entity == "duty_slot"
    assert row.attempts == 3
    assert "remote unavailable" in row.last_error
    assert json.loads(row.natural_key_json)["service_id"] == "S1"

    assert relay.replay_failures() == 1
    assert relay.list_failures(status="failed") == []
    assert relay.run_pending()["delivered"] == 1
    replayed = relay.list_failures(status="replayed")
    assert len(replayed) == 1
    assert replayed[0].replayed_at is not None
    assert remote.pushed[0].natural_key["date"] == "2026-03-02"


def test_failed_replay_updates_the_same_row(tmp_path):
    remote = FlakyRemote(failures=10)
    relay, _ = make_relay(tmp_path, remote, max_attempts=2)
    relay.submit(_op())
    relay.run_pending()

    relay.replay_failures()
    relay.run_pending()
    rows = relay.list_failures()
    assert len(rows) == 1
    assert rows[0].status == "failed"
    assert rows[0].attempts == 4


def test_worker_thread_delivers_in_background(tmp_path):
    remote = FlakyRemote()
    relay, _ = make_relay(tmp_path, remote)
    relay.start()
    try:
        relay.submit_many([_op(), _op(entity="personnel", natural_key={"service_id": "S1"})])
        relay.join()
        assert relay.stats()["running"] is True
        assert [op.entity for op in remote.pushed] == ["duty_slot", "personnel"]
    finally:
        relay.stop()
    assert relay.stats()["running"] is False


def test_http_backend_posts_natural_keys():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/sync/collections":
            return httpx.Response(200, json={"units": [{"id": "u1"}], "unknown": [{"id": "x"}]})
        return httpx.Response(200, json={"ok": True})

    backend = HttpRemoteBackend(
        "https://remote.example/",
        api_key="secret",
        transport=httpx.MockTransport(handler),
    )
    backend.push(_op())
    backend.push(_op(operation="delete"))
    collections = backend.fetch_collections()
    backend.close()

    assert seen[0].method == "POST"
    assert seen[0].url.path == "/sync/duty_slot"
    assert seen[0].headers["Authorization"] == "Bearer secret"
    body = json.loads(seen[0].content)
    assert body["natural_key"]["unit_code"] == "A-CO"
    assert body["payload"] == {"status": "scheduled"}

    assert seen[1].method == "DELETE"
    assert json.loads(seen[1].content) == {"natural_key": _op().natural_key}
    assert collections == {"units": [{"id": "u1"}]}


def test_http_backend_raises_on_server_errors():
    backend = HttpRemoteBackend(
        "https://remote.example",
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    with pytest.raises(httpx.HTTPStatusError):
        backend.push(_op())


def test_relay_retries_http_errors_from_backend(tmp_path):
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        return httpx.Response(500 if calls["n"] == 1 else 200)

    backend = HttpRemoteBackend("https://remote.example", transport=httpx.MockTransport(handler))
    relay, sleeps = make_relay(tmp_path, backend)
    relay.submit(_op())
    assert relay.run_pending()["delivered"] == 1
    assert sleeps == [1.0]


def test_merge_by_id_prefers_remote_rows():
    local = [{"id": "a", "v": 1}, {"id": "b", "v": 1}]
    remote = [{"id": "b", "v": 2}, {"id": "c", "v": 1}, {"id": "c", "v": 3}]
    merged = merge_by_id(local, remote)
    assert merged == [{"id": "a", "v": 1}, {"id": "b", "v": 2}, {"id": "c", "v": 3}]


def test_pull_merges_remote_collections_into_store(ctx, remote):
    local = Unit(unit_name="Local", hierarchy_level=HierarchyLevel.UNIT)
    shared = Unit(unit_name="Old name", hierarchy_level=HierarchyLevel.UNIT)
    ctx.store.save(UNITS, [local, shared])

    remote.collections = {
        UNITS: [
            {**shared.model_dump(mode="json"), "unit_name": "New name"},
            {"id": "bad", "unit_name": "No level"},
        ]
    }
    result = pull_remote_collections(ctx.store, remote)

    assert result["persisted"] is True
    assert result["skipped"] == 1
    assert result["collections"] == {UNITS: 1}
    names = {u.id: u.unit_name for u in ctx.store.all(UNITS)}
    assert names == {local.id: "Local", shared.id: "New name"}


def test_local_changes_stand_while_the_remote_keeps_failing(ctx, org, remote, make_ctx):
    remote.failures = 10_000
    p1, p2 = org["people"]["p1"], org["people"]["p2"]
    slot_a = org["slot"]("p1", date(2026, 3, 2))
    slot_b = org["slot"]("p2", date(2026, 3, 9))

    pair = swaps.create_swap_request(
        ctx, personnel_id=p1.id, giving_slot_id=slot_a.id, partner_id=p2.id, partner_slot_id=slot_b.id
    )
    swaps.accept_swap(ctx, request_id=pair.partner.request.id, accepted_by=p2.id)
    for side in pair.sides:
        pair = swaps.approve_swap_step(ctx, approval_id=side.approvals[0].id, approved_by="wsm")
    result = rosters.approve_roster(ctx, unit_id=org["units"]["A-CO"].id, year=2026, month=3)

    outcome = ctx.relay.run_pending()
    assert outcome["processed"] > 0
    assert outcome["delivered"] == 0
    assert remote.pushed == []

    failed = ctx.relay.list_failures(status="failed", limit=1000)
    assert len(failed) == outcome["failed"]
    assert {"duty_slot", "duty_score_event", "approved_roster"} <= {row.entity for row in failed}

    assert pair.status == RequestStatus.APPROVED
    assert result.persisted is True
    reopened = make_ctx()
    moved = reopened.store.get(DUTY_SLOTS, slot_a.id)
    assert moved.personnel_id == p2.id
    assert moved.status == SlotStatus.APPROVED
    assert directory.get_personnel(reopened, p2.id).current_duty_score == 1.0
    assert directory.get_personnel(reopened, p1.id).current_duty_score == 1.0


def test_pull_merge_does_not_overwrite_a_concurrent_write(ctx, remote, monkeypatch):
    shared = Unit(unit_name="Old name", hierarchy_level=HierarchyLevel.UNIT)
    ctx.store.save(UNITS, [shared])
    remote.collections = {UNITS: [{**shared.model_dump(mode="json"), "unit_name": "New name"}]}

    writer = threading.Thread(
        target=directory.create_unit,
        args=(ctx,),
        kwargs={"unit_name": "Added meanwhile", "hierarchy_level": HierarchyLevel.UNIT},
    )
    original_read = ctx.store.read_rows

    def read_then_race(key):
        rows = original_read(key)
        if writer.ident is None:
            writer.start()
            writer.join(timeout=0.2)
        return rows

    monkeypatch.setattr(ctx.store, "read_rows", read_then_race)
    pull_remote_collections(ctx.store, remote)
    writer.join(timeout=5)

    assert not writer.is_alive()
    names = sorted(u.unit_name for u in ctx.store.all(UNITS))
    assert names == ["Added meanwhile", "New name"]
