"""FastAPI backend for realtime pothole detection and mapping."""
from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from auth.config import settings as auth_settings
from common.config import INFERENCE_TIMEOUT_SECONDS, REDIS_RELAY_ENABLED, create_async_redis_client
from db.database import SessionLocal
from db.init_db import init_db
from db.store import PotholeStore
from orchestrator.orchestrator import DetectionOrchestrator
from realtime.broadcaster import RecentRecordsBroadcaster
from realtime.hub import RegionHub
from realtime.relay import RedisRegionRelay
from realtime.routes import router as detections_router
from realtime.session import SessionManager
from routes.potholes import limiter, router as potholes_router
from storage.s3 import S3BlobStore, s3_enabled
from vision.client import RoboflowClient

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()

    store = PotholeStore(SessionLocal)
    blob_store = S3BlobStore()
    if not s3_enabled():
        logger.warning("[s3] Not configured; detections will be stored with placeholder images")
    elif not await asyncio.to_thread(blob_store.check_access):
        logger.warning("[s3] Bucket check failed; uploads will fall back to placeholders")

    inference_http = httpx.AsyncClient(timeout=INFERENCE_TIMEOUT_SECONDS)
    vision = RoboflowClient(http_client=inference_http)
    if not vision.configured:
        logger.warning("[inference] ROBOFLOW_PROJECT_ID / ROBOFLOW_API_KEY not set; no frame will be detected")

    hub = RegionHub()
    orchestrator = DetectionOrchestrator(vision, blob_store, store)
    session_manager = SessionManager(orchestrator, store, hub)
    broadcaster = RecentRecordsBroadcaster(store, hub)

    redis_client = None
    relay = None
    if REDIS_RELAY_ENABLED:
        redis_client = create_async_redis_client()
        relay = RedisRegionRelay(redis_client, hub)
        await relay.start()

    app.state.store = store
    app.state.blob_store = blob_store
    app.state.hub = hub
    app.state.orchestrator = orchestrator
    app.state.session_manager = session_manager
    app.state.broadcaster = broadcaster

    broadcaster.start()

    yield

    await broadcaster.stop()
    if relay is not None:
        await relay.stop()
    if redis_client is not None:
        await redis_client.aclose()
    await inference_http.aclose()


app = FastAPI(
    title="Pothole Map API",
    description="Realtime pothole detection, deduplication and map queries",
    version="0.1.0",
    lifespan=lifespan,
)

# Origins are read from CORS_ORIGINS, falling back to localhost dev
# defaults. See auth/config.py for parsing logic.
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(auth_settings.cors_origins),
    allow_origin_regex=r"^https?://(10\.\d+\.\d+\.\d+|192\.168\.\d+\.\d+|172\.(1[6-9]|2\d|3[0-1])\.\d+\.\d+)(:\d+)?$",
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.include_router(potholes_router)
app.include_router(detections_router)


@app.get("/")
def read_root():
    return {
        "status": "ok",
        "message": "Pothole Map API is running",
        "endpoints": {
            "potholes": "/api/potholes",
            "potholes_bounds": "/api/potholes/bounds",
            "detections_ws": "/api/detections/ws",
            "health": "/health",
        },
    }


@app.get("/health")
async def health_check():
    database_ok = await asyncio.to_thread(app.state.store.ping)
    storage_ok = s3_enabled() and await asyncio.to_thread(app.state.blob_store.check_access)
    return {
        "status": "ok" if database_ok else "degraded",
        "database": database_ok,
        "storage": storage_ok,
        "connections": app.state.hub.connection_count,
    }


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")), workers=1, loop="asyncio")
