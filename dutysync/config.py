import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except Exception:
        return int(default)


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        return float(raw)
    except Exception:
        return float(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


def _get_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [part.strip() for part in raw.split(",") if part.strip()]


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./dutysync.db")
    REDIS_URL = os.getenv("REDIS_URL", "").strip()
    STORE_INVALIDATION_CHANNEL = os.getenv("STORE_INVALIDATION_CHANNEL", "dutysync.store.invalidate").strip()
    # Mirrors the ~5MB browser storage quota the roster data was sized for.
    STORE_MAX_PAYLOAD_BYTES = _get_int("STORE_MAX_PAYLOAD_BYTES", 5 * 1024 * 1024)

    REMOTE_SYNC_URL = os.getenv("REMOTE_SYNC_URL", "").strip()
    REMOTE_SYNC_API_KEY = os.getenv("REMOTE_SYNC_API_KEY", "").strip()
    REMOTE_SYNC_TIMEOUT_SECONDS = _get_float("REMOTE_SYNC_TIMEOUT_SECONDS", 10.0)
    SYNC_MAX_ATTEMPTS = _get_int("SYNC_MAX_ATTEMPTS", 5)
    SYNC_BACKOFF_BASE_SECONDS = _get_float("SYNC_BACKOFF_BASE_SECONDS", 1.0)
    SYNC_BACKOFF_MAX_SECONDS = _get_float("SYNC_BACKOFF_MAX_SECONDS", 60.0)
    SYNC_RECENT_OUTCOMES = _get_int("SYNC_RECENT_OUTCOMES", 500)
    SYNC_WORKER_AUTOSTART = _get_bool("SYNC_WORKER_AUTOSTART", True)

    HOLIDAY_COUNTRY = os.getenv("HOLIDAY_COUNTRY", "US").strip()
    EXTRA_HOLIDAYS = _get_list("EXTRA_HOLIDAYS")

    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip()
    LOG_JSON = _get_bool("LOG_JSON", True)


settings = Settings()
