from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from helpdesk.api.error_handling import register_exception_handlers
from helpdesk.api.routes import router
from helpdesk.config import Settings
from helpdesk.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

# Hourly sweep of expired refresh grants
GRANT_PURGE_INTERVAL_SECONDS = 3600

_purge_task: asyncio.Task | None = None


async def _run_grant_purge(interval_seconds: int) -> None:
    """Background loop dropping refresh grants past their expiry."""
    from helpdesk.service.runtime import get_runtime

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                get_runtime().store.purge_expired_grants(datetime.now(timezone.utc))
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("grant_purge_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("grant_purge_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _purge_task
    from helpdesk.service.runtime import get_runtime

    runtime = get_runtime()
    _purge_task = asyncio.create_task(_run_grant_purge(GRANT_PURGE_INTERVAL_SECONDS))
    logger.info("app_started", version=__version__)

    yield

    try:
        if _purge_task:
            _purge_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _purge_task
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Helpdesk Realtime", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id.

    Taken from ``X-Request-ID`` when the client sends one, otherwise
    generated; echoed back in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from helpdesk.service.runtime import get_runtime

    stats = get_runtime().hub.stats()
    return {
        "status": "healthy",
        "version": __version__,
        "connected_identities": stats.connected_identity_count,
    }


def create_app() -> FastAPI:
    return app
