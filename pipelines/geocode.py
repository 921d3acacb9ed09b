"""Postcode to coordinate resolution backed by a preloaded, read-only lookup."""

from __future__ import annotations

import csv
import logging
import math
import re
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, NamedTuple

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


class Coordinate(NamedTuple):
    lat: float
    lon: float


def normalize_location_key(key: str | None) -> str:
    """Strip all whitespace and upper-case, so ``"sw1a 1aa"`` matches ``"SW1A1AA"``."""
    if not key:
        return ""
    return _WHITESPACE.sub("", key).upper()


class CoordinateResolver:
    """Immutable lookup from normalized location key to coordinate.

    Built once per run and handed to the aggregation engine; nothing mutates it
    afterwards. A miss is deterministic for a given table, so callers never retry.
    """

    def __init__(
        self,
        entries: Mapping[str, tuple[float, float]] | Iterable[tuple[str, tuple[float, float]]],
    ) -> None:
        items = entries.items() if isinstance(entries, Mapping) else entries
        table: dict[str, Coordinate] = {}
        for raw_key, (lat, lon) in items:
            key = normalize_location_key(raw_key)
            if key:
                table[key] = Coordinate(float(lat), float(lon))
        self._table = MappingProxyType(table)

    def __len__(self) -> int:
        return len(self._table)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and normalize_location_key(key) in self._table

    def resolve(self, key: str | None) -> Coordinate | None:
        """Return the coordinate for ``key`` or ``None`` when it is not in the lookup."""
        normalized = normalize_location_key(key)
        if not normalized:
            return None
        return self._table.get(normalized)


def _parse_coordinate(lat_raw: str | None, lon_raw: str | None) -> Coordinate | None:
    try:
        lat = float(lat_raw)  # type: ignore[arg-type]
        lon = float(lon_raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if math.isnan(lat) or math.isnan(lon):
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return None
    return Coordinate(lat, lon)


def load_postcode_lookup(
    path: str | Path,
    *,
    key_column: str = "postcode",
    lat_column: str = "latitude",
    lon_column: str = "longitude",
) -> CoordinateResolver:
    """Read a postcode centroid CSV (with a header row) into a resolver."""

    lookup_path = Path(path)
    entries: dict[str, tuple[float, float]] = {}
    rejected = 0
    with lookup_path.open(newline="", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        missing = {key_column, lat_column, lon_column} - set(reader.fieldnames or ())
        if missing:
            raise ValueError(
                f"Postcode lookup {lookup_path} is missing columns: {', '.join(sorted(missing))}"
            )
        for row in reader:
            coordinate = _parse_coordinate(row.get(lat_column), row.get(lon_column))
            if coordinate is None or not row.get(key_column):
                rejected += 1
                continue
            entries[row[key_column]] = coordinate

    if rejected:
        logger.warning(
            "Skipped %s postcode rows without usable coordinates in %s.", rejected, lookup_path
        )
    resolver = CoordinateResolver(entries)
    logger.info("Loaded %s postcodes from %s.", len(resolver), lookup_path)
    return resolver


__all__ = ["Coordinate", "CoordinateResolver", "load_postcode_lookup", "normalize_location_key"]
