from contextlib import asynccontextmanager
from pathlib import Path

import redis
import structlog
from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .api import get_context, router
from .config import settings
from .context import AppContext, build_context
from .core.logging_config import setup_logging
from .core.middleware import RequestTracingMiddleware, SecurityHeadersMiddleware

logger = structlog.get_logger("dutysync.main")


def _read_app_version() -> str:
    version_file = Path(__file__).resolve().parents[1] / "VERSION"
    try:
        value = version_file.read_text(encoding="utf-8").strip()
        return value or "0.1.0"
    except OSError:
        return "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    owned = getattr(app.state, "context", None) is None
    if owned:
        app.state.context = build_context()
    try:
        yield
    finally:
        if owned:
            app.state.context.close()
            app.state.context = None
            logger.info("context_closed")


setup_logging()

app = FastAPI(
    title="DutySync",
    description="Duty rosters, swap approvals and fairness scoring",
    version=_read_app_version(),
    lifespan=lifespan,
)
app.state.context = None
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestTracingMiddleware)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/health/ready")
def ready(ctx: AppContext = Depends(get_context)):
    checks = {
        "db": "ok",
        "redis": "skipped",
        "sync": "enabled" if ctx.relay.enabled else "disabled",
    }

    db_ok = True
    redis_ok = True

    try:
        with ctx.session_factory() as db:
            db.execute(text("SELECT 1"))
    except Exception:
        checks["db"] = "error"
        db_ok = False

    redis_url = (settings.REDIS_URL or "").strip()
    if redis_url:
        client = redis.from_url(redis_url, decode_responses=True)
        try:
            client.ping()
            checks["redis"] = "ok"
        except redis.RedisError:
            checks["redis"] = "error"
            redis_ok = False
        finally:
            client.close()

    if db_ok and redis_ok:
        return {"status": "ready", "checks": checks}
    return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})


app.include_router(router)
