import json
import threading
from dataclasses import asdict, dataclass
from typing import Any, Callable

import redis
import structlog

logger = structlog.get_logger("dutysync.cache")


@dataclass(frozen=True)
class Invalidation:
    key: str
    version: int
    origin: str


class VersionedCache:
    """
    Read cache keyed by (key, version).

    A key's version only moves forward. Writers bump the version and store the
    new value in one call; invalidations bump the version and leave the slot
    empty so the next read reloads from storage.
    """

    def __init__(self):
        self._versions: dict[str, int] = {}
        self._entries: dict[tuple[str, int], Any] = {}
        self._lock = threading.RLock()

    def version(self, key: str) -> int:
        with self._lock:
            return self._versions.get(key, 0)

    def versions(self) -> dict[str, int]:
        with self._lock:
            return dict(self._versions)

    def get(self, key: str) -> tuple[bool, Any]:
        with self._lock:
            entry_key = (key, self._versions.get(key, 0))
            if entry_key in self._entries:
                return True, self._entries[entry_key]
            return False, None

    def fill(self, key: str, value: Any, version: int | None = None) -> int:
        """Populate the current (or a newer) version without bumping it."""
        with self._lock:
            current = self._versions.get(key, 0)
            target = max(current, int(version or 0))
            self._purge(key)
            self._versions[key] = target
            self._entries[(key, target)] = value
            return target

    def put(self, key: str, value: Any) -> int:
        with self._lock:
            return self.put_many({key: value})[key]

    def put_many(self, values: dict[str, Any]) -> dict[str, int]:
        with self._lock:
            bumped: dict[str, int] = {}
            for key, value in values.items():
                new_version = self._versions.get(key, 0) + 1
                self._purge(key)
                self._versions[key] = new_version
                self._entries[(key, new_version)] = value
                bumped[key] = new_version
            return bumped

    def invalidate(self, key: str, version: int | None = None) -> int:
        with self._lock:
            current = self._versions.get(key, 0)
            new_version = max(current + 1, int(version or 0))
            self._purge(key)
            self._versions[key] = new_version
            return new_version

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _purge(self, key: str) -> None:
        for entry_key in [k for k in self._entries if k[0] == key]:
            del self._entries[entry_key]


InvalidationHandler = Callable[[Invalidation], None]


class MemoryInvalidationChannel:
    """In-process fan-out, used when stores share one interpreter."""

    def __init__(self):
        self._handlers: list[InvalidationHandler] = []
        self._lock = threading.Lock()

    def publish(self, message: Invalidation) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(message)
            except Exception as exc:
                logger.error("invalidation_handler_failed", key=message.key, error=str(exc))

    def subscribe(self, handler: InvalidationHandler) -> Callable[[], None]:
        with self._lock:
            self._handlers.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return unsubscribe

    def close(self) -> None:
        with self._lock:
            self._handlers.clear()


class RedisInvalidationChannel:
    """Redis pub/sub fan-out between processes sharing one store database."""

    def __init__(self, redis_url: str, channel: str, client: redis.Redis | None = None):
        self._channel = channel
        self._client = client or redis.from_url(redis_url, decode_responses=True)
        self._pubsub = None
        self._thread = None
        self._handlers: list[InvalidationHandler] = []
        self._lock = threading.Lock()

    def publish(self, message: Invalidation) -> None:
        try:
            self._client.publish(self._channel, json.dumps(asdict(message)))
        except redis.RedisError as exc:
            # peers fall back to version polling
            logger.warning("invalidation_publish_failed", key=message.key, error=str(exc))

    def subscribe(self, handler: InvalidationHandler) -> Callable[[], None]:
        with self._lock:
            self._handlers.append(handler)
            if self._pubsub is None:
                self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
                self._pubsub.subscribe(**{self._channel: self._dispatch})
                self._thread = self._pubsub.run_in_thread(sleep_time=0.5, daemon=True)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return unsubscribe

    def _dispatch(self, raw: dict) -> None:
        try:
            data = json.loads(raw.get("data") or "{}")
            message = Invalidation(key=str(data["key"]), version=int(data["version"]), origin=str(data["origin"]))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("invalidation_message_malformed", error=str(exc))
            return
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(message)
            except Exception as exc:
                logger.error("invalidation_handler_failed", key=message.key, error=str(exc))

    def close(self) -> None:
        with self._lock:
            self._handlers.clear()
            if self._thread is not None:
                self._thread.stop()
                self._thread = None
            if self._pubsub is not None:
                self._pubsub.close()
                self._pubsub = None
