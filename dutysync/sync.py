"""Remote mirroring of local mutations.

Local state is the source of truth. Every mutating operation hands a batch of
``SyncOperation`` messages to the ``SyncRelay``, which delivers them from a
background thread with bounded retries and exponential backoff. Deliveries
that exhaust their retries land in the ``sync_failures`` table for operators;
nothing here ever raises back into the local operation.

Local and remote ids are not guaranteed to match, so remote writes carry
natural keys (unit code, duty type name, service id, date) instead.
"""

import json
import queue
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

import httpx
import structlog
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .entities import (
    COLLECTIONS,
    DUTY_TYPES,
    PERSONNEL,
    UNITS,
    ApprovedRoster,
    DutyChangeRequest,
    DutyScoreEvent,
    DutySlot,
    Personnel,
    Unit,
)
from .models import SyncFailure, utc_now_naive

logger = structlog.get_logger("dutysync.sync")

_STOP = object()


@dataclass
class SyncOperation:
    entity: str
    natural_key: dict[str, Any]
    payload: dict[str, Any] = field(default_factory=dict)
    operation: str = "upsert"
    attempts: int = 0
    failure_id: int | None = None


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)


# ----------------------------------------------------------------------
# Natural keys
# ----------------------------------------------------------------------


class NaturalKeyResolver:
    """Maps local rows onto identifiers the remote replica understands."""

    def __init__(self, units: Iterable[Unit], personnel: Iterable[Personnel], duty_types: Iterable):
        self.units = {u.id: u for u in units}
        self.personnel = {p.id: p for p in personnel}
        self.duty_types = {d.id: d for d in duty_types}
        self.unresolved = 0

    @classmethod
    def from_store(cls, store) -> "NaturalKeyResolver":
        data = store.snapshot(UNITS, PERSONNEL, DUTY_TYPES)
        return cls(data[UNITS], data[PERSONNEL], data[DUTY_TYPES])

    def _unit_code(self, unit_id: str | None) -> str | None:
        unit = self.units.get(unit_id or "")
        if unit is None:
            return None
        return unit.unit_code or unit.unit_name

    def _service_id(self, personnel_id: str | None) -> str | None:
        person = self.personnel.get(personnel_id or "")
        return person.service_id if person else None

    def slot_key(self, slot: DutySlot, occupant_id: str | None = None) -> dict | None:
        duty_type = self.duty_types.get(slot.duty_type_id)
        if duty_type is None or self._unit_code(duty_type.unit_id) is None:
            self.unresolved += 1
            return None
        lookup_personnel = occupant_id if occupant_id is not None else slot.personnel_id
        service_id = self._service_id(lookup_personnel)
        if lookup_personnel and service_id is None:
            self.unresolved += 1
            return None
        return {
            "unit_code": self._unit_code(duty_type.unit_id),
            "duty_type_name": duty_type.duty_name,
            "service_id": service_id,
            "date": slot.date_assigned.isoformat(),
        }

    def slot_operations(self, slots: Iterable[DutySlot], operation: str = "upsert") -> list[SyncOperation]:
        ops: list[SyncOperation] = []
        for slot in slots:
            # a swapped slot is still filed remotely under its previous occupant
            key = self.slot_key(slot, occupant_id=slot.swapped_from_personnel_id)
            if key is None:
                continue
            payload = {
                "status": slot.status.value,
                "service_id": self._service_id(slot.personnel_id),
                "swap_pair_id": slot.swap_pair_id,
                "swapped_at": slot.swapped_at.isoformat() if slot.swapped_at else None,
            }
            ops.append(SyncOperation(entity="duty_slot", natural_key=key, payload=payload, operation=operation))
        return ops

    def score_event_operations(self, events: Iterable[DutyScoreEvent]) -> list[SyncOperation]:
        ops: list[SyncOperation] = []
        for event in events:
            service_id = self._service_id(event.personnel_id)
            unit_code = self._unit_code(event.unit_id)
            if service_id is None or unit_code is None:
                self.unresolved += 1
                continue
            key = {
                "unit_code": unit_code,
                "duty_type_name": event.duty_type_name,
                "service_id": service_id,
                "date": event.date_earned.isoformat(),
                "roster_month": event.roster_month,
            }
            payload = {"points": event.points, "approved_by": event.approved_by}
            ops.append(SyncOperation(entity="duty_score_event", natural_key=key, payload=payload))
        return ops

    def request_operations(
        self,
        requests: Iterable[DutyChangeRequest],
        slots_by_id: dict[str, DutySlot],
        operation: str = "upsert",
    ) -> list[SyncOperation]:
        ops: list[SyncOperation] = []
        for request in requests:
            service_id = self._service_id(request.personnel_id)
            giving = slots_by_id.get(request.giving_slot_id)
            giving_key = self.slot_key(giving, occupant_id=request.personnel_id) if giving else None
            if service_id is None or giving_key is None:
                if giving is None:
                    self.unresolved += 1
                continue
            key = {"swap_pair_id": request.swap_pair_id, "service_id": service_id, "giving_slot": giving_key}
            payload = {
                "status": request.status.value,
                "partner_accepted": request.partner_accepted,
                "partner_service_id": self._service_id(request.swap_partner_id),
                "required_approver_level": request.required_approver_level.value,
                "reason": request.reason,
                "rejection_reason": request.rejection_reason,
            }
            ops.append(
                SyncOperation(entity="duty_change_request", natural_key=key, payload=payload, operation=operation)
            )
        return ops

    def unit_operations(self, units: Iterable[Unit], operation: str = "upsert") -> list[SyncOperation]:
        ops: list[SyncOperation] = []
        for unit in units:
            payload = {
                "unit_name": unit.unit_name,
                "hierarchy_level": unit.hierarchy_level.value,
                "parent_code": self._unit_code(unit.parent_id),
                "description": unit.description,
            }
            key = {"unit_code": unit.unit_code or unit.unit_name}
            ops.append(SyncOperation(entity="unit", natural_key=key, payload=payload, operation=operation))
        return ops

    def personnel_operations(self, people: Iterable[Personnel], operation: str = "upsert") -> list[SyncOperation]:
        ops: list[SyncOperation] = []
        for person in people:
            payload = {
                "unit_code": self._unit_code(person.unit_id),
                "first_name": person.first_name,
                "last_name": person.last_name,
                "rank": person.rank,
                "current_duty_score": person.current_duty_score,
            }
            ops.append(
                SyncOperation(
                    entity="personnel",
                    natural_key={"service_id": person.service_id},
                    payload=payload,
                    operation=operation,
                )
            )
        return ops

    def roster_operations(self, rosters: Iterable[ApprovedRoster], operation: str = "upsert") -> list[SyncOperation]:
        ops: list[SyncOperation] = []
        for roster in rosters:
            unit_code = self._unit_code(roster.unit_id)
            if unit_code is None:
                self.unresolved += 1
                continue
            key = {"unit_code": unit_code, "year": roster.year, "month": roster.month}
            payload = {
                "approved_by": roster.approved_by,
                "approved_at": roster.approved_at.isoformat(),
                "scores_applied": roster.scores_applied,
            }
            ops.append(SyncOperation(entity="approved_roster", natural_key=key, payload=payload, operation=operation))
        return ops


# ----------------------------------------------------------------------
# Remote backend
# ----------------------------------------------------------------------


class HttpRemoteBackend:
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    def push(self, op: SyncOperation) -> None:
        if op.operation == "delete":
            self.delete(op)
            return
        body = {"natural_key": op.natural_key, "payload": op.payload}
        response = self._client.post(f"/sync/{op.entity}", json=body)
        response.raise_for_status()

    def delete(self, op: SyncOperation) -> None:
        response = self._client.request("DELETE", f"/sync/{op.entity}", json={"natural_key": op.natural_key})
        response.raise_for_status()

    def fetch_collections(self) -> dict[str, list[dict]]:
        response = self._client.get("/sync/collections")
        response.raise_for_status()
        data = response.json() or {}
        return {key: list(data[key]) for key in COLLECTIONS if isinstance(data.get(key), list)}

    def close(self) -> None:
        self._client.close()


# ----------------------------------------------------------------------
# Relay
# ----------------------------------------------------------------------


class SyncRelay:
    def __init__(
        self,
        remote=None,
        *,
        session_factory: sessionmaker | None = None,
        max_attempts: int = 5,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        recent_limit: int = 500,
        sleep: Callable[[float], Any] | None = None,
    ):
        self.remote = remote
        self._session_factory = session_factory
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base = max(0.0, float(backoff_base))
        self.backoff_max = max(0.0, float(backoff_max))
        self._queue: queue.Queue = queue.Queue()
        self._stop = threading.Event()
        self._sleep = sleep or self._stop.wait
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._counters = {"submitted": 0, "delivered": 0, "retried": 0, "failed": 0, "dropped": 0}
        self._recent: deque[dict] = deque(maxlen=max(1, int(recent_limit)))

    @property
    def enabled(self) -> bool:
        return self.remote is not None

    def _count(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def submit(self, op: SyncOperation) -> None:
        if not self.enabled:
            self._count("dropped")
            logger.debug("sync_disabled_drop", entity=op.entity)
            return
        self._queue.put(op)
        self._count("submitted")

    def submit_many(self, ops: Iterable[SyncOperation]) -> int:
        count = 0
        for op in ops:
            self.submit(op)
            count += 1
        return count

    def start(self) -> None:
        if not self.enabled or (self._thread is not None and self._thread.is_alive()):
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="dutysync-sync-relay", daemon=True)
        self._thread.start()
        logger.info("sync_relay_started", max_attempts=self.max_attempts)

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None
        logger.info("sync_relay_stopped", pending=self._queue.qsize())

    def join(self) -> None:
        """Block until the worker has handled everything queued so far."""
        self._queue.join()

    def _run(self) -> None:
        while True:
            op = self._queue.get()
            try:
                if op is _STOP:
                    return
                self.deliver(op)
            except Exception as exc:
                logger.error("sync_worker_error", error=str(exc))
            finally:
                self._queue.task_done()

    def run_pending(self) -> dict:
        """Deliver everything queued, in the calling thread."""
        processed = delivered = 0
        while True:
            try:
                op = self._queue.get_nowait()
            except queue.Empty:
                break
            try:
                if op is _STOP:
                    continue
                processed += 1
                if self.deliver(op):
                    delivered += 1
            finally:
                self._queue.task_done()
        return {"processed": processed, "delivered": delivered, "failed": processed - delivered}

    def backoff_seconds(self, attempt: int) -> float:
        attempt_i = max(1, int(attempt))
        return min(self.backoff_max, self.backoff_base * (2 ** (attempt_i - 1)))

    def deliver(self, op: SyncOperation) -> bool:
        last_error = "unknown error"
        for attempt in range(1, self.max_attempts + 1):
            op.attempts += 1
            try:
                self.remote.push(op)
            except Exception as exc:
                last_error = str(exc)[:500] or exc.__class__.__name__
                if attempt < self.max_attempts:
                    delay = self.backoff_seconds(attempt)
                    self._count("retried")
                    logger.warning(
                        "sync_retry_scheduled",
                        entity=op.entity,
                        attempt=attempt,
                        delay_s=delay,
                        error=last_error,
                    )
                    self._sleep(delay)
                continue
            self._count("delivered")
            self._remember(op, "delivered", None)
            if op.failure_id is not None:
                self._mark_replayed(op.failure_id)
            return True

        self._count("failed")
        self._remember(op, "failed", last_error)
        logger.error(
            "sync_delivery_failed",
            entity=op.entity,
            natural_key=op.natural_key,
            attempts=op.attempts,
            error=last_error,
        )
        self._record_failure(op, last_error)
        return False

    def _remember(self, op: SyncOperation, outcome: str, error: str | None) -> None:
        with self._lock:
            self._recent.append(
                {
                    "ts": utc_now_naive().isoformat() + "Z",
                    "entity": op.entity,
                    "operation": op.operation,
                    "outcome": outcome,
                    "attempts": op.attempts,
                    "error": error,
                }
            )

    def _record_failure(self, op: SyncOperation, error: str) -> None:
        if self._session_factory is None:
            return
        try:
            with self._session_factory() as db:
                row = db.get(SyncFailure, op.failure_id) if op.failure_id is not None else None
                if row is None:
                    row = SyncFailure(
                        entity=op.entity,
                        operation=op.operation,
                        natural_key_json=_json_dumps(op.natural_key),
                        payload_json=_json_dumps(op.payload),
                        created_at=utc_now_naive(),
                    )
                    db.add(row)
                row.attempts = int(op.attempts)
                row.last_error = error[:500]
                row.status = "failed"
                db.commit()
        except SQLAlchemyError as exc:
            logger.error("sync_failure_record_failed", entity=op.entity, error=str(exc))

    def _mark_replayed(self, failure_id: int) -> None:
        if self._session_factory is None:
            return
        try:
            with self._session_factory() as db:
                row = db.get(SyncFailure, failure_id)
                if row is not None:
                    row.status = "replayed"
                    row.replayed_at = utc_now_naive()
                    db.commit()
        except SQLAlchemyError as exc:
            logger.error("sync_failure_update_failed", failure_id=failure_id, error=str(exc))

    def list_failures(self, status: str | None = None, limit: int = 100) -> list[SyncFailure]:
        if self._session_factory is None:
            return []
        with self._session_factory() as db:
            stmt = select(SyncFailure)
            if status:
                stmt = stmt.where(SyncFailure.status == status.strip().lower())
            stmt = stmt.order_by(SyncFailure.created_at.asc(), SyncFailure.id.asc()).limit(max(1, min(limit, 1000)))
            return list(db.execute(stmt).scalars().all())

    def replay_failures(self, limit: int = 100) -> int:
        """Queue recorded failures for another round of attempts."""
        if not self.enabled or self._session_factory is None:
            return 0
        with self._session_factory() as db:
            rows = (
                db.execute(
                    select(SyncFailure)
                    .where(SyncFailure.status == "failed")
                    .order_by(SyncFailure.id.asc())
                    .limit(max(1, min(limit, 1000)))
                )
                .scalars()
                .all()
            )
            ops = []
            for row in rows:
                row.status = "replaying"
                ops.append(
                    SyncOperation(
                        entity=row.entity,
                        operation=row.operation,
                        natural_key=json.loads(row.natural_key_json or "{}"),
                        payload=json.loads(row.payload_json or "{}"),
                        attempts=int(row.attempts or 0),
                        failure_id=row.id,
                    )
                )
            db.commit()
        self.submit_many(ops)
        logger.info("sync_failures_requeued", count=len(ops))
        return len(ops)

    def stats(self) -> dict:
        with self._lock:
            counters = dict(self._counters)
            recent = list(self._recent)
        return {
            "enabled": self.enabled,
            "running": bool(self._thread is not None and self._thread.is_alive()),
            "queue_depth": self._queue.qsize(),
            **counters,
            "recent": list(reversed(recent))[:50],
        }


# ----------------------------------------------------------------------
# Pull
# ----------------------------------------------------------------------


def merge_by_id(local_rows: list[dict], remote_rows: list[dict]) -> list[dict]:
    """Remote rows replace local rows with the same id; other local rows stay."""
    remote_by_id: dict[str, dict] = {}
    for row in remote_rows:
        if row.get("id"):
            remote_by_id[str(row["id"])] = row
    kept = [row for row in local_rows if str(row.get("id")) not in remote_by_id]
    return kept + list(remote_by_id.values())


def pull_remote_collections(store, remote) -> dict:
    """Merge the remote's bulk collections into the store as one update."""
    fetched = remote.fetch_collections()
    incoming: dict[str, list[dict]] = {}
    skipped = 0
    for key, rows in fetched.items():
        model = COLLECTIONS[key]
        valid_rows = []
        for row in rows:
            try:
                valid_rows.append(model.model_validate(row).model_dump(mode="json"))
            except ValidationError:
                skipped += 1
        incoming[key] = valid_rows
    counts = {key: len(rows) for key, rows in incoming.items()}

    with store.batch():
        merged = {key: merge_by_id(store.read_rows(key), rows) for key, rows in incoming.items()}
        persisted = store.write_rows_many(merged)
    if skipped:
        logger.warning("remote_rows_skipped", skipped=skipped)
    logger.info("remote_pull_merged", collections=counts, persisted=persisted)
    return {"collections": counts, "skipped": skipped, "persisted": persisted}

