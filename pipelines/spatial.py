"""Thin adapter over the H3 hexagonal grid.

Resolution follows H3: 0 is the coarsest level, 15 the finest, so a larger
integer always means smaller and more numerous cells.
"""

from __future__ import annotations

import h3

MIN_RESOLUTION = 0
MAX_RESOLUTION = 15

LatLon = tuple[float, float]
BBox = tuple[float, float, float, float]


class GeometryError(ValueError):
    """Raised when a cell boundary cannot be produced."""


def _check_resolution(resolution: int) -> None:
    if not isinstance(resolution, int) or isinstance(resolution, bool):
        raise ValueError(f"Resolution must be an integer, got {resolution!r}.")
    if not MIN_RESOLUTION <= resolution <= MAX_RESOLUTION:
        raise ValueError(
            f"Resolution {resolution} outside [{MIN_RESOLUTION}, {MAX_RESOLUTION}]."
        )


def cell_for(lat: float, lon: float, resolution: int) -> str:
    """Return the id of the cell containing ``(lat, lon)`` at ``resolution``."""
    _check_resolution(resolution)
    if not -90.0 <= lat <= 90.0:
        raise ValueError(f"Latitude {lat} outside [-90, 90].")
    if not -180.0 <= lon <= 180.0:
        raise ValueError(f"Longitude {lon} outside [-180, 180].")
    return h3.latlng_to_cell(lat, lon, resolution)


def is_cell(cell_id: str) -> bool:
    return isinstance(cell_id, str) and h3.is_valid_cell(cell_id)


def resolution_of(cell_id: str) -> int:
    if not is_cell(cell_id):
        raise GeometryError(f"Invalid cell id {cell_id!r}.")
    return h3.get_resolution(cell_id)


def boundary_of(cell_id: str) -> list[LatLon]:
    """Closed ``(lat, lon)`` ring for ``cell_id``; first and last vertex coincide."""
    if not is_cell(cell_id):
        raise GeometryError(f"Invalid cell id {cell_id!r}.")
    try:
        vertices = [(float(lat), float(lon)) for lat, lon in h3.cell_to_boundary(cell_id)]
    except ValueError as exc:
        raise GeometryError(f"Could not build boundary for {cell_id!r}: {exc}") from exc
    if len(vertices) < 3:
        raise GeometryError(f"Degenerate boundary for {cell_id!r}.")
    vertices.append(vertices[0])
    return vertices


def cell_bounds(cell_id: str) -> BBox:
    """Envelope ``(west, south, east, north)`` of the cell boundary.

    Cells straddling the antimeridian get the full longitude span.
    """
    ring = boundary_of(cell_id)
    lats = [lat for lat, _ in ring]
    lons = [lon for _, lon in ring]
    west, east = min(lons), max(lons)
    if east - west > 180.0:
        west, east = -180.0, 180.0
    return west, min(lats), east, max(lats)


def to_geojson_ring(boundary: list[LatLon]) -> list[list[float]]:
    """Swap a ``(lat, lon)`` ring to GeoJSON ``[lon, lat]`` order."""
    return [[lon, lat] for lat, lon in boundary]


__all__ = [
    "BBox",
    "GeometryError",
    "LatLon",
    "MAX_RESOLUTION",
    "MIN_RESOLUTION",
    "boundary_of",
    "cell_bounds",
    "cell_for",
    "is_cell",
    "resolution_of",
    "to_geojson_ring",
]
