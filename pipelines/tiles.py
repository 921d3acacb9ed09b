"""Viewport (z/x/y) to GeoJSON tile translation over aggregated grid cells.

A request moves through RECEIVED -> BBOX_COMPUTED -> RESOLUTION_SELECTED ->
CELLS_FETCHED -> GEOMETRY_BUILT -> SERIALIZED and ends SERVED or FAILED.

Persistence failures follow the lenient policy: the tile degrades to an empty,
well-formed FeatureCollection (flagged ``degraded``) instead of an error, so a
flaky store never breaks client rendering. Degraded tiles are not cached.
"""

from __future__ import annotations

import logging
import math
import re
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Sequence

from pydantic import ValidationError

from pipelines.model import DEFAULT_NORMALIZED_VALUE, AggregatedCell, ViewportRequest
from pipelines.spatial import BBox, GeometryError, boundary_of, to_geojson_ring
from storage.db import PersistenceError

MIN_ZOOM = 0
MAX_ZOOM = 20
MAX_FEATURES_PER_TILE = 2000
DEFAULT_CACHE_ENTRIES = 1024

LOW_ZOOM_MAX_AGE = 7 * 24 * 3600
MID_ZOOM_MAX_AGE = 24 * 3600
HIGH_ZOOM_MAX_AGE = 3600
STALE_WHILE_REVALIDATE = 7 * 24 * 3600

_TILE_SUFFIXES = (".geojson", ".json")
_INTEGER = re.compile(r"-?[0-9]+")

logger = logging.getLogger(__name__)

CellFetcher = Callable[[int, BBox, int], Sequence[AggregatedCell]]


class TileValidationError(ValueError):
    """Tile coordinates are missing, non-numeric or out of range."""


class TileState(str, Enum):
    RECEIVED = "received"
    BBOX_COMPUTED = "bbox_computed"
    RESOLUTION_SELECTED = "resolution_selected"
    CELLS_FETCHED = "cells_fetched"
    GEOMETRY_BUILT = "geometry_built"
    SERIALIZED = "serialized"
    SERVED = "served"
    FAILED = "failed"


def zoom_to_resolution(zoom: int) -> int:
    """Grid resolution shown at ``zoom``; monotonic and total on [0, 20]."""
    if not MIN_ZOOM <= zoom <= MAX_ZOOM:
        raise TileValidationError(f"Zoom {zoom} outside [{MIN_ZOOM}, {MAX_ZOOM}].")
    if zoom <= 1:
        return 2
    if zoom == 2:
        return 3
    if zoom <= 4:
        return 4
    if zoom == 5:
        return 5
    if zoom == 6:
        return 6
    if zoom <= 8:
        return 7
    if zoom <= 10:
        return 8
    if zoom <= 12:
        return 9
    if zoom <= 15:
        return 10
    if zoom <= 18:
        return 11
    return 12


def served_resolutions() -> tuple[int, ...]:
    return tuple(sorted({zoom_to_resolution(z) for z in range(MIN_ZOOM, MAX_ZOOM + 1)}))


def cache_max_age(zoom: int) -> int:
    """Seconds a tile at ``zoom`` may be cached: 7 days to zoom 6, 1 day to 12, then 1 hour."""
    if zoom <= 6:
        return LOW_ZOOM_MAX_AGE
    if zoom <= 12:
        return MID_ZOOM_MAX_AGE
    return HIGH_ZOOM_MAX_AGE


def cache_control_header(zoom: int, *, degraded: bool = False) -> str:
    if degraded:
        return "no-store"
    return f"public, max-age={cache_max_age(zoom)}, stale-while-revalidate={STALE_WHILE_REVALIDATE}"


def tile_to_bbox(z: int, x: int, y: int) -> BBox:
    """Web-Mercator tile to geographic ``(west, south, east, north)`` degrees."""
    n = 2.0**z
    west = x / n * 360.0 - 180.0
    east = (x + 1) / n * 360.0 - 180.0
    north = math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * y / n))))
    south = math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * (y + 1) / n))))
    return west, south, east, north


def _parse_int(name: str, raw: Any) -> int:
    if isinstance(raw, bool):
        raise TileValidationError(f"Tile {name} must be an integer, got {raw!r}.")
    if isinstance(raw, int):
        return raw
    text = str(raw).strip()
    if name == "y":
        for suffix in _TILE_SUFFIXES:
            if text.endswith(suffix):
                text = text[: -len(suffix)]
                break
    if _INTEGER.fullmatch(text) is None:
        raise TileValidationError(f"Tile {name} must be an integer, got {raw!r}.")
    return int(text)


def parse_viewport(z: Any, x: Any, y: Any) -> ViewportRequest:
    """Validate raw tile coordinates; nothing downstream runs on bad input."""
    zoom = _parse_int("z", z)
    tile_x = _parse_int("x", x)
    tile_y = _parse_int("y", y)
    if not MIN_ZOOM <= zoom <= MAX_ZOOM:
        raise TileValidationError(f"Zoom {zoom} outside [{MIN_ZOOM}, {MAX_ZOOM}].")
    limit = 2**zoom
    if not (0 <= tile_x < limit and 0 <= tile_y < limit):
        raise TileValidationError(
            f"Tile ({tile_x}, {tile_y}) outside [0, {limit}) at zoom {zoom}."
        )
    try:
        return ViewportRequest(z=zoom, x=tile_x, y=tile_y)
    except ValidationError as exc:  # pragma: no cover - guarded above
        raise TileValidationError(str(exc)) from exc


def _number(value: Any, default: float) -> float:
    if value is None:
        return default
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(numeric) or math.isinf(numeric):
        return default
    return numeric


def build_feature(cell: AggregatedCell) -> dict[str, Any]:
    """GeoJSON feature for one cell; raises ``GeometryError`` if the ring fails."""
    ring = to_geojson_ring(boundary_of(cell.cell_id))
    return {
        "type": "Feature",
        "id": cell.cell_id,
        "properties": {
            "price": _number(cell.weighted_metric, 0.0),
            "count": int(_number(cell.transaction_count, 0)),
            "confidence": _number(cell.avg_confidence, 0.0),
            "value": _number(cell.normalized_value, DEFAULT_NORMALIZED_VALUE),
            "h3_index": cell.cell_id,
            "resolution": cell.resolution,
        },
        "geometry": {"type": "Polygon", "coordinates": [ring]},
    }


def feature_collection(features: list[dict[str, Any]]) -> dict[str, Any]:
    return {"type": "FeatureCollection", "features": features}


@dataclass
class TileResult:
    viewport: ViewportRequest
    bbox: BBox
    resolution: int
    geojson: dict[str, Any]
    cell_ids: list[str] = field(default_factory=list)
    degraded: bool = False
    dropped_features: int = 0
    state: TileState = TileState.RECEIVED
    history: list[TileState] = field(default_factory=list)

    @property
    def cache_control(self) -> str:
        return cache_control_header(self.viewport.z, degraded=self.degraded)


class TileCache:
    """Thread-safe LRU of tile results keyed by (z, x, y, resolution, epoch).

    A new data epoch changes every key, so tiles built from older aggregate
    state are never served again and age out of the LRU.
    """

    def __init__(self, max_entries: int = DEFAULT_CACHE_ENTRIES) -> None:
        self.max_entries = max_entries
        self._entries: OrderedDict[tuple[int, ...], TileResult] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: tuple[int, ...]) -> TileResult | None:
        with self._lock:
            result = self._entries.get(key)
            if result is not None:
                self._entries.move_to_end(key)
            return result

    def put(self, key: tuple[int, ...], result: TileResult) -> None:
        if self.max_entries <= 0:
            return
        with self._lock:
            self._entries[key] = result
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class TileQueryEngine:
    """Read-only tile builder; never mutates persisted state."""

    def __init__(
        self,
        fetch_cells: CellFetcher,
        *,
        epoch: Callable[[], int] | None = None,
        max_features: int = MAX_FEATURES_PER_TILE,
        cache: TileCache | None = None,
    ) -> None:
        self._fetch_cells = fetch_cells
        self._epoch = epoch
        self.max_features = max_features
        self.cache = cache

    def query(self, z: Any, x: Any, y: Any) -> TileResult:
        viewport = parse_viewport(z, x, y)
        history = [TileState.RECEIVED]

        bbox = tile_to_bbox(viewport.z, viewport.x, viewport.y)
        history.append(TileState.BBOX_COMPUTED)
        resolution = zoom_to_resolution(viewport.z)
        history.append(TileState.RESOLUTION_SELECTED)

        try:
            epoch = self._epoch() if self._epoch is not None else 0
            cache_key = (viewport.z, viewport.x, viewport.y, resolution, epoch)
            if self.cache is not None:
                cached = self.cache.get(cache_key)
                if cached is not None:
                    return cached
            cells = list(self._fetch_cells(resolution, bbox, self.max_features))
        except PersistenceError as exc:
            logger.error(
                "Store unavailable for tile %s/%s/%s; serving empty tile: %s",
                viewport.z,
                viewport.x,
                viewport.y,
                exc,
            )
            history.extend([TileState.SERIALIZED, TileState.SERVED])
            return TileResult(
                viewport=viewport,
                bbox=bbox,
                resolution=resolution,
                geojson=feature_collection([]),
                degraded=True,
                state=TileState.SERVED,
                history=history,
            )
        except Exception:
            history.append(TileState.FAILED)
            logger.exception("Tile %s/%s/%s failed.", viewport.z, viewport.x, viewport.y)
            raise

        cells = cells[: self.max_features]
        history.append(TileState.CELLS_FETCHED)

        features: list[dict[str, Any]] = []
        cell_ids: list[str] = []
        dropped = 0
        for cell in cells:
            try:
                features.append(build_feature(cell))
            except GeometryError as exc:
                dropped += 1
                logger.warning("Dropping cell %s from tile: %s", cell.cell_id, exc)
                continue
            cell_ids.append(cell.cell_id)
        history.append(TileState.GEOMETRY_BUILT)

        geojson = feature_collection(features)
        history.extend([TileState.SERIALIZED, TileState.SERVED])
        result = TileResult(
            viewport=viewport,
            bbox=bbox,
            resolution=resolution,
            geojson=geojson,
            cell_ids=cell_ids,
            dropped_features=dropped,
            state=TileState.SERVED,
            history=history,
        )
        if self.cache is not None:
            self.cache.put(cache_key, result)
        return result


__all__ = [
    "MAX_FEATURES_PER_TILE",
    "MAX_ZOOM",
    "MIN_ZOOM",
    "TileCache",
    "TileQueryEngine",
    "TileResult",
    "TileState",
    "TileValidationError",
    "build_feature",
    "cache_control_header",
    "cache_max_age",
    "feature_collection",
    "parse_viewport",
    "served_resolutions",
    "tile_to_bbox",
    "zoom_to_resolution",
]
