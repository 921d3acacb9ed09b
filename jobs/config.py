"""Pipeline configuration resolved from the environment (and an optional ``.env``)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterable

from dotenv import load_dotenv

from pipelines.aggregate import DEFAULT_PRICE_CEILING, DEFAULT_PRICE_FLOOR, AggregationSettings
from pipelines.model import DEFAULT_METRIC
from pipelines.normalize import PercentileScope
from pipelines.spatial import MAX_RESOLUTION, MIN_RESOLUTION
from pipelines.stats import DEFAULT_RECENCY_FLOOR, DEFAULT_SATURATION
from pipelines.tiles import DEFAULT_CACHE_ENTRIES, MAX_FEATURES_PER_TILE, served_resolutions

load_dotenv()

UK_LAND_REGISTRY = "uk_land_registry"
NUMBEO = "numbeo"
FHFA = "fhfa"
KNOWN_SOURCES: tuple[str, ...] = (UK_LAND_REGISTRY, NUMBEO, FHFA)

MEDIAN_PRICE = DEFAULT_METRIC
PRICE_PER_SQM = "price_per_sqm"
RENTAL_PRICE = "rental_price"
KNOWN_METRICS: tuple[str, ...] = (MEDIAN_PRICE, PRICE_PER_SQM, RENTAL_PRICE)

DEFAULT_PRICE_PAID_PATH = Path("data/pp-complete.csv")
DEFAULT_POSTCODE_LOOKUP_PATH = Path("data/postcodes.csv")


def parse_resolutions(raw: str | Iterable[int] | None) -> tuple[int, ...]:
    """Parse ``"6,8,10"`` (or an iterable of ints) into sorted unique resolutions."""
    if raw is None or raw == "":
        return served_resolutions()
    if isinstance(raw, str):
        items = [item.strip() for item in raw.split(",") if item.strip()]
        try:
            values = {int(item) for item in items}
        except ValueError as exc:
            raise ValueError(f"Resolutions must be comma-separated integers, got {raw!r}.") from exc
    else:
        values = {int(item) for item in raw}
    out_of_range = [v for v in values if not MIN_RESOLUTION <= v <= MAX_RESOLUTION]
    if out_of_range:
        raise ValueError(
            f"Resolutions {sorted(out_of_range)} outside [{MIN_RESOLUTION}, {MAX_RESOLUTION}]."
        )
    return tuple(sorted(values))


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


@dataclass(frozen=True)
class PipelineConfig:
    """Everything one pipeline run needs, fixed at start-up."""

    price_paid_path: Path = DEFAULT_PRICE_PAID_PATH
    postcode_lookup_path: Path = DEFAULT_POSTCODE_LOOKUP_PATH
    source: str = UK_LAND_REGISTRY
    metric_type: str = MEDIAN_PRICE
    default_metric: str = MEDIAN_PRICE
    country_code: str | None = "GB"
    resolutions: tuple[int, ...] = field(default_factory=served_resolutions)
    price_floor: float = DEFAULT_PRICE_FLOOR
    price_ceiling: float = DEFAULT_PRICE_CEILING
    saturation: float = DEFAULT_SATURATION
    recency_floor: float = DEFAULT_RECENCY_FLOOR
    percentile_scope: PercentileScope = field(default_factory=PercentileScope)
    max_rows: int | None = None

    def settings_for(self, resolution: int) -> AggregationSettings:
        return AggregationSettings(
            resolution=resolution,
            source=self.source,
            metric_type=self.metric_type,
            country_code=self.country_code,
            price_floor=self.price_floor,
            price_ceiling=self.price_ceiling,
            saturation=self.saturation,
            recency_floor=self.recency_floor,
        )

    def with_overrides(self, **changes) -> "PipelineConfig":
        return replace(self, **{key: value for key, value in changes.items() if value is not None})


def load_config() -> PipelineConfig:
    """Build a ``PipelineConfig`` from environment variables, falling back to defaults."""

    return PipelineConfig(
        price_paid_path=Path(os.getenv("PRICE_PAID_PATH", str(DEFAULT_PRICE_PAID_PATH))),
        postcode_lookup_path=Path(
            os.getenv("POSTCODE_LOOKUP_PATH", str(DEFAULT_POSTCODE_LOOKUP_PATH))
        ),
        source=os.getenv("METRIC_SOURCE", UK_LAND_REGISTRY),
        metric_type=os.getenv("METRIC_TYPE", MEDIAN_PRICE),
        default_metric=os.getenv("DEFAULT_METRIC", MEDIAN_PRICE),
        country_code=os.getenv("COUNTRY_CODE", "GB") or None,
        resolutions=parse_resolutions(os.getenv("AGGREGATION_RESOLUTIONS")),
        price_floor=_env_float("PRICE_FLOOR", DEFAULT_PRICE_FLOOR),
        price_ceiling=_env_float("PRICE_CEILING", DEFAULT_PRICE_CEILING),
        saturation=_env_float("CONFIDENCE_SATURATION", DEFAULT_SATURATION),
        recency_floor=_env_float("RECENCY_FLOOR", DEFAULT_RECENCY_FLOOR),
        percentile_scope=PercentileScope.parse(os.getenv("PERCENTILE_SCOPE")),
        max_rows=_env_int("ETL_MAX_ROWS", None),
    )


@dataclass(frozen=True)
class TileServiceConfig:
    max_features: int = MAX_FEATURES_PER_TILE
    cache_entries: int = DEFAULT_CACHE_ENTRIES


def load_tile_config() -> TileServiceConfig:
    return TileServiceConfig(
        max_features=_env_int("TILE_MAX_FEATURES", MAX_FEATURES_PER_TILE),
        cache_entries=_env_int("TILE_CACHE_SIZE", DEFAULT_CACHE_ENTRIES),
    )


__all__ = [
    "KNOWN_METRICS",
    "KNOWN_SOURCES",
    "MEDIAN_PRICE",
    "PipelineConfig",
    "TileServiceConfig",
    "UK_LAND_REGISTRY",
    "load_config",
    "load_tile_config",
    "parse_resolutions",
]
