"""FastAPI service serving the price heatmap as GeoJSON hexagon tiles."""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from contextlib import asynccontextmanager
from typing import Any

import duckdb
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

from jobs.config import load_tile_config
from pipelines.tiles import (
    TileCache,
    TileQueryEngine,
    TileResult,
    TileValidationError,
    parse_viewport,
)
from storage.db import PersistenceError, connect, fetch_runs, get_aggregates, get_data_epoch

DEFAULT_RUNS_LIMIT = 20
MAX_RUNS_LIMIT = 200
DISCONNECT_POLL_SECONDS = 0.1
GEOJSON_MEDIA_TYPE = "application/geo+json"
load_dotenv()

logger = logging.getLogger(__name__)

tile_config = load_tile_config()
tile_cache = TileCache(tile_config.cache_entries)


@asynccontextmanager
async def lifespan(_: FastAPI):
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    conn = connect()
    conn.close()
    yield


app = FastAPI(title="Property Hex Heatmap API", version="0.1.0", lifespan=lifespan)


def _configure_cors() -> None:
    raw_origins = os.getenv("API_CORS_ORIGINS", "*")
    origins = [origin.strip() for origin in raw_origins.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )


_configure_cors()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


class _TileSession:
    """One read-only connection plus the engine that queries through it."""

    def __init__(self) -> None:
        self.conn: duckdb.DuckDBPyConnection | None = None
        self._lock = threading.Lock()

    def _open(self) -> duckdb.DuckDBPyConnection:
        with self._lock:
            if self.conn is None:
                self.conn = connect(read_only=True)
            return self.conn

    def _fetch(self, resolution, bbox, limit):
        return get_aggregates(self._open(), resolution, bbox=bbox, limit=limit)

    def _epoch(self) -> int:
        return get_data_epoch(self._open())

    def query(self, z: str, x: str, y: str) -> TileResult:
        engine = TileQueryEngine(
            self._fetch,
            epoch=self._epoch,
            max_features=tile_config.max_features,
            cache=tile_cache,
        )
        return engine.query(z, x, y)

    def run(self, z: str, x: str, y: str) -> TileResult:
        """Query and close on the calling worker thread."""
        try:
            return self.query(z, x, y)
        finally:
            self.close()

    def interrupt(self) -> None:
        with self._lock:
            if self.conn is not None:
                self.conn.interrupt()

    def close(self) -> None:
        with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None


async def _query_until_disconnect(
    request: Request, session: _TileSession, z: str, x: str, y: str
) -> TileResult:
    task = asyncio.ensure_future(run_in_threadpool(session.run, z, x, y))
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info(
                    "Client disconnected during tile %s/%s/%s; interrupting query.", z, x, y
                )
                session.interrupt()
                await asyncio.wait({task})
                return task.result()
    except asyncio.CancelledError:
        # the worker thread still owns the connection and closes it once interrupted
        session.interrupt()
        raise


@app.get("/tiles/{z}/{x}/{y}")
async def get_tile(request: Request, z: str, x: str, y: str):
    try:
        viewport = parse_viewport(z, x, y)
    except TileValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    result = await _query_until_disconnect(
        request, _TileSession(), str(viewport.z), str(viewport.x), str(viewport.y)
    )

    headers = {
        "Cache-Control": result.cache_control,
        "X-H3-Resolution": str(result.resolution),
    }
    if result.degraded:
        headers["X-Tile-Degraded"] = "true"
    return JSONResponse(content=result.geojson, media_type=GEOJSON_MEDIA_TYPE, headers=headers)


@app.get("/runs")
def get_runs(
    limit: int = Query(
        DEFAULT_RUNS_LIMIT, ge=1, le=MAX_RUNS_LIMIT, description="Maximum runs returned"
    ),
) -> dict[str, Any]:
    try:
        conn = connect(read_only=True)
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail="Run history unavailable") from exc
    try:
        runs = fetch_runs(conn, limit=limit)
    except duckdb.Error as exc:
        raise HTTPException(status_code=503, detail="Run history unavailable") from exc
    finally:
        conn.close()
    return {"count": len(runs), "items": [run.model_dump(mode="json") for run in runs]}
