"""Local store: entity collections persisted under stable keys.

Each collection (units, personnel, slots, swap rows, score events, ...) is one
JSON document in the ``store_entries`` table. Reads are served from a
``VersionedCache``; writes bump the key's version and replace the cached value
together, then notify other processes through the invalidation channel.

A failed persist (database error or payload over the configured quota) is
reported to the caller, but the in-memory view keeps the new value so this
process carries on with accurate, if unpersisted, data.
"""

import contextlib
import copy
import json
import threading
import uuid
from typing import Any, Iterable

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .core.cache import Invalidation, VersionedCache
from .entities import COLLECTIONS
from .models import StoreEntry, utc_now_naive

logger = structlog.get_logger("dutysync.store")


class StorageQuotaExceeded(Exception):
    pass


class LocalStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        channel=None,
        *,
        max_payload_bytes: int = 0,
        origin: str | None = None,
    ):
        self.origin = origin or uuid.uuid4().hex
        self._session_factory = session_factory
        self._channel = channel
        self._max_payload_bytes = max(0, int(max_payload_bytes or 0))
        self._cache = VersionedCache()
        self._lock = threading.RLock()
        self._unsubscribe = channel.subscribe(self.handle_invalidation) if channel is not None else None
        self.failed_writes = 0
        self.last_error: str | None = None

    # ------------------------------------------------------------------
    # Raw rows
    # ------------------------------------------------------------------

    def version(self, key: str) -> int:
        return self._cache.version(key)

    @contextlib.contextmanager
    def batch(self):
        """Hold the store lock across a read-modify-write sequence."""
        with self._lock:
            yield self

    def read_rows(self, key: str) -> list[dict]:
        with self._lock:
            hit, value = self._cache.get(key)
            if not hit:
                value, persisted_version = self._load(key)
                self._cache.fill(key, value, persisted_version)
            return copy.deepcopy(value)

    def write_rows(self, key: str, rows: list[dict]) -> bool:
        return self.write_rows_many({key: rows})

    def write_rows_many(self, values: dict[str, list[dict]]) -> bool:
        """Replace several collections as one update.

        Returns False when the change could not be persisted; the cache still
        holds the new values.
        """
        if not values:
            return True
        staged = {key: copy.deepcopy(list(rows)) for key, rows in values.items()}
        bumped: dict[str, int] | None = None

        with self._lock:
            try:
                with self._session_factory() as session:
                    entries = {key: session.get(StoreEntry, key) for key in staged}
                    floors = {key: int(e.version or 0) for key, e in entries.items() if e is not None}
                    bumped = self._bump(staged, floors)
                    for key, rows in staged.items():
                        payload = self._encode(key, rows)
                        entry = entries[key]
                        if entry is None:
                            entry = StoreEntry(key=key)
                            session.add(entry)
                        entry.version = bumped[key]
                        entry.payload_json = payload
                        entry.origin = self.origin
                        entry.updated_at = utc_now_naive()
                    session.commit()
            except (SQLAlchemyError, StorageQuotaExceeded) as exc:
                if bumped is None:
                    bumped = self._bump(staged, {})
                self.failed_writes += 1
                self.last_error = str(exc)[:500]
                logger.error(
                    "store_persist_failed",
                    keys=sorted(staged),
                    error=self.last_error,
                )
                return False

        if self._channel is not None:
            for key, version in bumped.items():
                self._channel.publish(Invalidation(key=key, version=version, origin=self.origin))
        return True

    def _bump(self, staged: dict[str, list[dict]], floors: dict[str, int]) -> dict[str, int]:
        for key, floor in floors.items():
            if floor > self._cache.version(key):
                self._cache.invalidate(key, floor)
        return self._cache.put_many(staged)

    def _encode(self, key: str, rows: list[dict]) -> str:
        payload = json.dumps(rows, ensure_ascii=False, default=str)
        if self._max_payload_bytes and len(payload.encode("utf-8")) > self._max_payload_bytes:
            raise StorageQuotaExceeded(
                f"Collection '{key}' exceeds storage quota of {self._max_payload_bytes} bytes"
            )
        return payload

    def _load(self, key: str) -> tuple[list[dict], int]:
        with self._session_factory() as session:
            entry = session.get(StoreEntry, key)
            if entry is None:
                return [], 0
            try:
                rows = json.loads(entry.payload_json or "[]")
            except ValueError:
                logger.error("store_payload_corrupt", key=key, version=entry.version)
                rows = []
            return rows, int(entry.version or 0)

    # ------------------------------------------------------------------
    # Typed collections
    # ------------------------------------------------------------------

    def all(self, key: str) -> list[Any]:
        model = COLLECTIONS[key]
        return [model.model_validate(row) for row in self.read_rows(key)]

    def snapshot(self, *keys: str) -> dict[str, list[Any]]:
        with self._lock:
            return {key: self.all(key) for key in keys}

    def save(self, key: str, items: Iterable[BaseModel]) -> bool:
        return self.save_many({key: items})

    def save_many(self, collections: dict[str, Iterable[BaseModel]]) -> bool:
        return self.write_rows_many(
            {key: [item.model_dump(mode="json") for item in items] for key, items in collections.items()}
        )

    def get(self, key: str, item_id: str) -> Any | None:
        for item in self.all(key):
            if item.id == item_id:
                return item
        return None

    # ------------------------------------------------------------------
    # Cross-process invalidation
    # ------------------------------------------------------------------

    def handle_invalidation(self, message: Invalidation) -> None:
        if message.origin == self.origin:
            return
        with self._lock:
            new_version = self._cache.invalidate(message.key, message.version)
        logger.debug("store_key_invalidated", key=message.key, version=new_version, origin=message.origin)

    def poll_changes(self) -> list[str]:
        """Invalidate keys whose persisted version moved past ours."""
        with self._session_factory() as session:
            rows = session.execute(select(StoreEntry.key, StoreEntry.version)).all()
        changed: list[str] = []
        with self._lock:
            for key, version in rows:
                if int(version or 0) > self._cache.version(key):
                    self._cache.invalidate(key, int(version))
                    changed.append(key)
        if changed:
            logger.info("store_poll_invalidated", keys=changed)
        return changed

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
