from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy.orm import sessionmaker

from .config import Settings, settings
from .core.cache import MemoryInvalidationChannel, RedisInvalidationChannel
from .core.holidays import HolidayCalendar
from .db import make_session_factory
from .store import LocalStore
from .sync import HttpRemoteBackend, SyncRelay

logger = structlog.get_logger("dutysync.context")


@dataclass
class AppContext:
    store: LocalStore
    relay: SyncRelay
    calendar: HolidayCalendar
    session_factory: sessionmaker
    channel: Any = None
    remote: Any = None

    def close(self) -> None:
        self.relay.stop()
        self.store.close()
        if self.channel is not None:
            self.channel.close()
        if self.remote is not None and hasattr(self.remote, "close"):
            self.remote.close()


def build_context(
    cfg: Settings = settings,
    *,
    database_url: str | None = None,
    channel=None,
    remote=None,
    sleep=None,
    start_relay: bool | None = None,
) -> AppContext:
    session_factory = make_session_factory(database_url or cfg.DATABASE_URL)

    if channel is None:
        if cfg.REDIS_URL:
            channel = RedisInvalidationChannel(cfg.REDIS_URL, cfg.STORE_INVALIDATION_CHANNEL)
        else:
            channel = MemoryInvalidationChannel()

    if remote is None and cfg.REMOTE_SYNC_URL:
        remote = HttpRemoteBackend(
            cfg.REMOTE_SYNC_URL,
            api_key=cfg.REMOTE_SYNC_API_KEY,
            timeout=cfg.REMOTE_SYNC_TIMEOUT_SECONDS,
        )

    store = LocalStore(session_factory, channel, max_payload_bytes=cfg.STORE_MAX_PAYLOAD_BYTES)
    relay = SyncRelay(
        remote,
        session_factory=session_factory,
        max_attempts=cfg.SYNC_MAX_ATTEMPTS,
        backoff_base=cfg.SYNC_BACKOFF_BASE_SECONDS,
        backoff_max=cfg.SYNC_BACKOFF_MAX_SECONDS,
        recent_limit=cfg.SYNC_RECENT_OUTCOMES,
        sleep=sleep,
    )
    calendar = HolidayCalendar(cfg.EXTRA_HOLIDAYS, country=cfg.HOLIDAY_COUNTRY or None)

    if cfg.SYNC_WORKER_AUTOSTART if start_relay is None else start_relay:
        relay.start()

    logger.info(
        "context_ready",
        store_origin=store.origin,
        channel=channel.__class__.__name__,
        sync_enabled=relay.enabled,
    )
    return AppContext(
        store=store,
        relay=relay,
        calendar=calendar,
        session_factory=session_factory,
        channel=channel,
        remote=remote,
    )
