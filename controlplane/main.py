"""FastAPI application entrypoint."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from controlplane.api.v1 import v1_router
from controlplane.core.config import get_settings
from controlplane.core.database import init_db
from controlplane.core.errors import ControlPlaneError
from controlplane.core.runtime import get_broker, get_session_registry
from controlplane.workers.maintenance import start_background_tasks, stop_background_tasks

_settings = get_settings()

logging.basicConfig(
    level=_settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup: ensure tables exist (use Alembic in production)
    await init_db()
    tasks = start_background_tasks(get_broker(), get_session_registry())
    yield
    # Shutdown: stop the periodic jobs
    await stop_background_tasks(tasks)


app = FastAPI(
    title="Control Plane",
    version="0.1.0",
    description="Multi-tenant LLM routing with metering, plus a realtime session broker",
    lifespan=lifespan,
)

# ── CORS ─────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _settings.allowed_origins.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Error mapping ────────────────────────────────────────────
@app.exception_handler(ControlPlaneError)
async def control_plane_error_handler(_request: Request, exc: ControlPlaneError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s: %s", type(exc).__name__, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "type": type(exc).__name__},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    detail = "Internal server error" if get_settings().is_production else str(exc)
    return JSONResponse(
        status_code=500,
        content={"detail": detail, "type": "InternalError"},
    )


# ── API routes ───────────────────────────────────────────────
app.include_router(v1_router)


@app.get("/health", tags=["system"])
async def health_check() -> dict:
    return {"status": "ok"}
