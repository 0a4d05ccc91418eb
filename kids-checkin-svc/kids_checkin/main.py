from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from .core.config import get_settings
from .core.nats import nats_connect, nats_close
from .core.redis import ping_redis
from .db import init_db, async_session_maker
from .errors import CheckInError
from .routers import checkin_requests
from .services.sweeper import ExpirySweeper

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

sweeper = ExpirySweeper(async_session_maker, interval_seconds=settings.sweep_interval_seconds)

@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    # best-effort connect to infra; service still runs if these fail
    if settings.notification_backend == "nats":
        try:
            await nats_connect()
        except Exception as e:
            logger.warning(f"NATS unavailable at startup: {e}")
    if settings.rl_enabled and not await ping_redis():
        logger.warning("Redis unavailable at startup; rate limited endpoints will fail")
    if settings.sweep_enabled:
        sweeper.start()
    yield
    await sweeper.shutdown()
    try:
        await nats_close()
    except Exception as e:
        logger.warning(f"NATS drain failed: {e}")

app = FastAPI(title="kids-checkin-svc", lifespan=lifespan)

@app.exception_handler(CheckInError)
async def checkin_error_handler(request: Request, exc: CheckInError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "error": exc.kind})

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(checkin_requests.router)

@app.get("/health")
async def health():
    return {"status": "ok", "service": "kids-checkin-svc"}

Instrumentator().instrument(app).expose(app)
