from datetime import date

import pytest

from dutysync import directory
from dutysync.context import build_context
from dutysync.core.cache import MemoryInvalidationChannel
from dutysync.entities import HierarchyLevel


class RecordingRemote:
    def __init__(self, failures: int = 0):
        self.pushed = []
        self.failures = failures
        self.calls = 0
        self.collections = {}

    def push(self, op):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("remote unavailable")
        self.pushed.append(op)

    def fetch_collections(self):
        return self.collections

    def close(self):
        pass


@pytest.fixture
def remote():
    return RecordingRemote()


@pytest.fixture
def make_ctx(tmp_path):
    contexts = []

    def factory(remote=None, db_name="dutysync_test.db", channel=None):
        ctx = build_context(
            database_url=f"sqlite:///{tmp_path / db_name}",
            channel=channel or MemoryInvalidationChannel(),
            remote=remote,
            sleep=lambda seconds: None,
            start_relay=False,
        )
        contexts.append(ctx)
        return ctx

    yield factory
    for ctx in contexts:
        ctx.close()


@pytest.fixture
def ctx(make_ctx, remote):
    return make_ctx(remote=remote)


@pytest.fixture
def org(ctx, remote):
    """Battalion with two companies.

    1BN
      A-CO
        A1 (section): A1a, A1b (work sections)
        A2 (section): A2a
      B-CO
        B1 (section): B1a
    """
    units = {}

    def unit(key, level, parent=None):
        units[key] = directory.create_unit(
            ctx,
            unit_name=key,
            unit_code=key,
            hierarchy_level=level,
            parent_id=units[parent].id if parent else None,
        )

    unit("1BN", HierarchyLevel.UNIT)
    unit("A-CO", HierarchyLevel.COMPANY, "1BN")
    unit("B-CO", HierarchyLevel.COMPANY, "1BN")
    unit("A1", HierarchyLevel.SECTION, "A-CO")
    unit("A2", HierarchyLevel.SECTION, "A-CO")
    unit("B1", HierarchyLevel.SECTION, "B-CO")
    unit("A1a", HierarchyLevel.WORK_SECTION, "A1")
    unit("A1b", HierarchyLevel.WORK_SECTION, "A1")
    unit("A2a", HierarchyLevel.WORK_SECTION, "A2")
    unit("B1a", HierarchyLevel.WORK_SECTION, "B1")

    people = {}
    for key, unit_key in [
        ("p1", "A1a"),
        ("p2", "A1a"),
        ("p3", "A1b"),
        ("p4", "B1a"),
        ("p5", "A2a"),
    ]:
        people[key] = directory.create_personnel(
            ctx,
            service_id=f"SID-{key}",
            unit_id=units[unit_key].id,
            first_name=key.upper(),
            last_name=f"Last{key}",
            rank="SGT",
        )

    duty_a = directory.create_duty_type(ctx, unit_id=units["A-CO"].id, duty_name="Duty NCO", slots_needed=4)
    duty_b = directory.create_duty_type(ctx, unit_id=units["B-CO"].id, duty_name="Duty NCO", slots_needed=4)

    def slot(person_key, day: date, duty=None):
        return directory.assign_slot(
            ctx,
            duty_type_id=(duty or duty_a).id,
            date_assigned=day,
            personnel_id=people[person_key].id if person_key else None,
        )

    ctx.relay.run_pending()
    remote.pushed.clear()
    return {"units": units, "people": people, "duty_a": duty_a, "duty_b": duty_b, "slot": slot}
