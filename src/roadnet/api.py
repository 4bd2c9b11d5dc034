"""FastAPI surface of the road network engine."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from roadnet.config import settings
from roadnet.errors import AggregationConflict, SourceUnavailable, ValidationError
from roadnet.geo import datasets
from roadnet.routers import ratings, roads, tiles
from roadnet.services import reset_services
from roadnet.storage.db import get_engine, init_db

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    init_db()
    yield
    reset_services()


app = FastAPI(title="Road Network Engine", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Include routers
# ---------------------------------------------------------------------------
app.include_router(roads.router)
app.include_router(tiles.router)
app.include_router(ratings.router)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

@app.exception_handler(ValidationError)
async def _validation_error(_request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(SourceUnavailable)
async def _source_unavailable(_request: Request, exc: SourceUnavailable):
    log.error("All geometry sources unavailable: %s", exc)
    return JSONResponse(status_code=503, content={"detail": "Road data temporarily unavailable, try again"})


@app.exception_handler(AggregationConflict)
async def _aggregation_conflict(_request: Request, exc: AggregationConflict):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
def health():
    redis_ok = False
    try:
        from roadnet.cache.redis_client import get_redis
        r = get_redis()
        if r is not None:
            r.ping()
            redis_ok = True
    except Exception:
        pass

    database_ok = False
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        database_ok = True
    except Exception as exc:
        log.warning("Database health check failed: %s", exc)

    files = []
    if Path(settings.dataset_dir).is_dir():
        files = [d.name for d in datasets.discover(settings.dataset_dir, settings.dataset_scopes)]

    return {"status": "ok", "redis": redis_ok, "database": database_ok, "datasets": files}
